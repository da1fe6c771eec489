"""Content-keyed store of solver evaluations.

Each record is keyed by the evaluation fingerprint of the specification, the sample
index and the environment fingerprint, so an evaluation is reused whenever (and only when)
the same solver would be run on the same parameter point. Records are append-only:
a key is never overwritten.

Concurrent fills of the same key through one store are collapsed into a single solver
invocation (single flight). The directory store also takes a lock file per key, so separate
stores (or processes) sharing a directory evaluate each key at most once at a time.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Future
from pathlib import Path

import attrs
import filelock
import numpy as np
import numpy.typing as npt

from emulator_build import data_IO

logger = logging.getLogger(__name__)

FAILURE_KINDS = ("permanent", "transient")


@attrs.frozen
class ExampleKey:
    evaluation_fingerprint: str
    index: int
    environment_fingerprint: str


@attrs.frozen
class ExampleFailure:
    """Failed evaluation of a sample.

    Attributes:
        kind: "permanent" (the solver rejects the point) or "transient" (retries exhausted).
        message: Description of the failure.
    """

    kind: str = attrs.field(validator=attrs.validators.in_(FAILURE_KINDS))
    message: str


def _read_only_outputs(outputs: Mapping[str, npt.ArrayLike] | None) -> dict[str, npt.NDArray[np.float64]] | None:
    if outputs is None:
        return None
    result = {}
    for name, values in outputs.items():
        array = np.array(values, dtype=np.float64, copy=True)
        array.flags.writeable = False
        result[name] = array
    return result


@attrs.frozen
class ExampleRecord:
    """Outcome of evaluating a sample: either outputs or a failure."""

    outputs: dict[str, npt.NDArray[np.float64]] | None = attrs.field(default=None, converter=_read_only_outputs)
    failure: ExampleFailure | None = None

    def __attrs_post_init__(self) -> None:
        if (self.outputs is None) == (self.failure is None):
            msg = "An example record requires exactly one of outputs or failure"
            raise ValueError(msg)

    @property
    def cacheable(self) -> bool:
        """Transient failures may succeed later, so they're never cached."""
        return self.failure is None or self.failure.kind == "permanent"


@attrs.define
class ExampleStore:
    """Base class for example stores. Subclasses implement `get` and `_put`."""

    _lock: threading.Lock = attrs.field(init=False, factory=threading.Lock)
    _in_flight: dict[ExampleKey, Future[ExampleRecord]] = attrs.field(init=False, factory=dict)

    def get(self, key: ExampleKey) -> ExampleRecord | None:
        raise NotImplementedError

    def _put(self, key: ExampleKey, record: ExampleRecord) -> None:
        raise NotImplementedError

    def _exclusive(self, key: ExampleKey) -> contextlib.AbstractContextManager[object]:
        """Held while computing a record. Coordinates with other stores sharing the same records."""
        return contextlib.nullcontext()

    def put(self, key: ExampleKey, record: ExampleRecord) -> None:
        """Store a record. Existing records are kept (append-only), and uncacheable records are ignored."""
        if not record.cacheable:
            return
        if self.get(key) is not None:
            logger.debug(f"Record for {key} already exists. Keeping the existing one")
            return
        self._put(key, record)

    def fill(self, key: ExampleKey, compute: Callable[[], ExampleRecord]) -> tuple[ExampleRecord, bool]:
        """Return the stored record, or compute (and store) it.

        Concurrent calls for the same key wait for the first one instead of computing again.

        Args:
            key: Example key.
            compute: Evaluates the example.
        Returns:
            Record, whether it was computed by this call.
        """
        record = self.get(key)
        if record is not None:
            return record, False

        with self._lock:
            future = self._in_flight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._in_flight[key] = future
        if not leader:
            return future.result(), False

        try:
            computed = False
            with self._exclusive(key):
                # Another store may have filled the key while we waited
                record = self.get(key)
                if record is None:
                    record = compute()
                    computed = True
                    self.put(key, record)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(record)
        finally:
            with self._lock:
                self._in_flight.pop(key, None)
        return record, computed


@attrs.define
class InMemoryExampleStore(ExampleStore):
    records: dict[ExampleKey, ExampleRecord] = attrs.field(factory=dict)

    def get(self, key: ExampleKey) -> ExampleRecord | None:
        return self.records.get(key)

    def _put(self, key: ExampleKey, record: ExampleRecord) -> None:
        self.records.setdefault(key, record)

    def __len__(self) -> int:
        return len(self.records)


@attrs.define
class DirectoryExampleStore(ExampleStore):
    """One HDF5 file per key, under `<root>/<evaluation fingerprint>/<environment fingerprint>/`."""

    root: Path = attrs.field(converter=Path)

    def path(self, key: ExampleKey) -> Path:
        return self.root / key.evaluation_fingerprint / key.environment_fingerprint / f"sample_{key.index:08d}.h5"

    def _exclusive(self, key: ExampleKey) -> contextlib.AbstractContextManager[object]:
        path = self.path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        return filelock.FileLock(path.with_suffix(".lock"))

    def get(self, key: ExampleKey) -> ExampleRecord | None:
        path = self.path(key)
        if not path.exists():
            return None
        stored = data_IO.read_dict_from_h5(path.parent, path.name, verbose=False)
        if "failure" in stored:
            failure = stored["failure"]
            return ExampleRecord(
                failure=ExampleFailure(kind=data_IO.as_str(failure["kind"]), message=data_IO.as_str(failure["message"]))
            )
        return ExampleRecord(outputs={name: np.asarray(values) for name, values in stored["outputs"].items()})

    def _put(self, key: ExampleKey, record: ExampleRecord) -> None:
        path = self.path(key)
        if record.failure is not None:
            contents = {"failure": {"kind": record.failure.kind, "message": record.failure.message}}
        else:
            contents = {"outputs": dict(record.outputs)}
        data_IO.write_dict_to_h5(contents, path.parent, path.name, verbose=False)
