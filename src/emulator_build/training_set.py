"""Build the training set by evaluating the solver at every parameter sample.

The builder evaluates samples concurrently (bounded by `build.max_workers`), reuses
stored evaluations, retries transient solver failures, validates the returned outputs,
and partitions the examples into the fit and held-out subsets. The partition only depends
on the sample index, and it's determined before any evaluation starts.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any

import attrs
import numpy as np
import numpy.typing as npt

from emulator_build import helpers
from emulator_build.cache import ExampleFailure, ExampleKey, ExampleRecord, ExampleStore
from emulator_build.exceptions import (
    BuildCancelledError,
    PermanentExecutionError,
    TrainingSetDegradedError,
    TransientExecutionError,
)
from emulator_build.execution.base import ExecutionAdapter, run_with_retries
from emulator_build.sampling.base import ParameterSample
from emulator_build.spec import BuildSettings, EmulatorSpec, OutputLayout

logger = logging.getLogger(__name__)


@attrs.frozen
class TrainingExample:
    """Evaluation of one parameter sample.

    Attributes:
        sample: Parameter sample.
        outputs: Output name -> values on the dense grid. None if the evaluation failed.
        failure: Failure description. None if the evaluation succeeded.
        from_cache: True if the evaluation was reused from the store.
        heldout: True if the example belongs to the held-out subset.
    """

    sample: ParameterSample
    outputs: dict[str, npt.NDArray[np.float64]] | None
    failure: ExampleFailure | None
    from_cache: bool = False
    heldout: bool = False

    @property
    def succeeded(self) -> bool:
        return self.failure is None


@attrs.frozen
class TrainingSet:
    """Examples ordered by sample index, together with their partition.

    Attributes:
        examples: Examples, ordered by sample index.
        layout: Map between outputs and features.
        n_solver_calls: Number of examples which were evaluated by the solver (rather than the store).
        n_cache_hits: Number of examples which were reused from the store.
    """

    examples: tuple[TrainingExample, ...]
    layout: OutputLayout
    n_solver_calls: int = 0
    n_cache_hits: int = 0

    @property
    def fit_examples(self) -> list[TrainingExample]:
        return [e for e in self.examples if e.succeeded and not e.heldout]

    @property
    def heldout_examples(self) -> list[TrainingExample]:
        return [e for e in self.examples if e.succeeded and e.heldout]

    @property
    def failures(self) -> list[TrainingExample]:
        return [e for e in self.examples if not e.succeeded]

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def failure_fraction(self) -> float:
        return self.failure_count / len(self.examples) if self.examples else 0.0

    @staticmethod
    def design(examples: Sequence[TrainingExample]) -> npt.NDArray[np.float64]:
        """Parameter values, with shape (n_examples, n_parameters)."""
        return np.array([e.sample.values for e in examples], dtype=np.float64)

    def features(self, examples: Sequence[TrainingExample]) -> npt.NDArray[np.float64]:
        """Features at the training nodes, with shape (n_examples, n_features)."""
        return np.array([self.layout.features_from_outputs(e.outputs) for e in examples], dtype=np.float64)

    def summary(self) -> dict[str, Any]:
        return {
            "n_samples": len(self.examples),
            "n_fit": len(self.fit_examples),
            "n_heldout": len(self.heldout_examples),
            "failure_count": self.failure_count,
            "n_solver_calls": self.n_solver_calls,
            "n_cache_hits": self.n_cache_hits,
        }


def validate_outputs(outputs: dict[str, npt.NDArray[np.float64]], spec: EmulatorSpec) -> str | None:
    """Check the solver outputs against the declared outputs.

    Returns:
        Description of the first problem, or None if the outputs are valid.
    """
    for declaration in spec.outputs:
        if declaration.name not in outputs:
            return f"Missing output '{declaration.name}'"
        values = outputs[declaration.name]
        if values.shape != declaration.dense_shape:
            return f"Output '{declaration.name}' has shape {values.shape}, expected {declaration.dense_shape}"
        if not np.all(np.isfinite(values)):
            return f"Output '{declaration.name}' contains non-finite values"
    return None


@attrs.define
class TrainingSetBuilder:
    """Evaluate the solver for a list of samples.

    Attributes:
        adapter: Execution adapter.
        store: Store of previous evaluations.
        settings: Build settings. If None, the settings of the specification are used.
        sleep: Sleep function used between retries. Default: time.sleep.
    """

    adapter: ExecutionAdapter
    store: ExampleStore
    settings: BuildSettings | None = None
    sleep: Callable[[float], None] = time.sleep

    def _evaluate(
        self, spec: EmulatorSpec, settings: BuildSettings, sample: ParameterSample
    ) -> ExampleRecord:
        requested = {declaration.name: declaration.dense_nodes() for declaration in spec.outputs}
        try:
            outputs, attempts = run_with_retries(
                self.adapter,
                spec.environment,
                spec.config,
                sample.as_dict(),
                requested,
                settings=settings.retry,
                sleep=self.sleep,
            )
        except PermanentExecutionError as e:
            logger.warning(f"Sample {sample.index} failed permanently: {e.message}")
            return ExampleRecord(failure=ExampleFailure(kind="permanent", message=e.message))
        except TransientExecutionError as e:
            logger.warning(f"Sample {sample.index} failed after {settings.retry.max_attempts} attempts: {e.message}")
            return ExampleRecord(
                failure=ExampleFailure(
                    kind="transient", message=f"{e.message} (after {settings.retry.max_attempts} attempts)"
                )
            )
        problem = validate_outputs(outputs, spec)
        if problem is not None:
            logger.warning(f"Sample {sample.index} returned invalid outputs: {problem}")
            return ExampleRecord(failure=ExampleFailure(kind="permanent", message=problem))
        if attempts > 1:
            logger.info(f"Sample {sample.index} succeeded after {attempts} attempts")
        return ExampleRecord(outputs={declaration.name: outputs[declaration.name] for declaration in spec.outputs})

    def build(
        self,
        spec: EmulatorSpec,
        samples: Sequence[ParameterSample],
        cancellation: helpers.CancellationToken | None = None,
        on_example: Callable[[TrainingExample], None] | None = None,
    ) -> TrainingSet:
        """Evaluate the samples and assemble the training set.

        Args:
            spec: Emulator specification.
            samples: Parameter samples.
            cancellation: Cancellation token. Once cancelled, no further solver invocations are
                dispatched, in-flight ones finish, and BuildCancelledError is raised.
            on_example: Called (from the calling thread) as each example completes.
        Returns:
            Training set, with examples ordered by sample index.
        Raises:
            TrainingSetDegradedError: If too many samples failed, or if either subset is empty.
            BuildCancelledError: If the build was cancelled.
        """
        settings = self.settings if self.settings is not None else spec.build
        environment_fingerprint = self.adapter.fingerprint(spec.environment)
        evaluation_fingerprint = spec.evaluation_fingerprint
        # The partition is fixed before anything is evaluated
        heldout = {sample.index: spec.split.is_heldout(sample.index) for sample in samples}
        logger.info(
            f"Building training set with {len(samples)} samples ({sum(heldout.values())} held out),"
            f" max_workers={settings.max_workers}"
        )

        stop = threading.Event()

        def _should_stop() -> bool:
            return stop.is_set() or (cancellation is not None and cancellation.cancelled)

        def _task(sample: ParameterSample) -> tuple[ExampleRecord, bool] | None:
            if _should_stop():
                return None
            key = ExampleKey(
                evaluation_fingerprint=evaluation_fingerprint,
                index=sample.index,
                environment_fingerprint=environment_fingerprint,
            )
            return self.store.fill(key, lambda: self._evaluate(spec, settings, sample))

        examples: dict[int, TrainingExample] = {}
        n_solver_calls = n_cache_hits = 0
        with ThreadPoolExecutor(max_workers=settings.max_workers) as executor:
            futures = {executor.submit(_task, sample): sample for sample in samples}
            try:
                for future in as_completed(futures):
                    result = future.result()
                    if result is None:
                        continue
                    record, computed = result
                    sample = futures[future]
                    if computed:
                        n_solver_calls += 1
                    else:
                        n_cache_hits += 1
                    example = TrainingExample(
                        sample=sample,
                        outputs=record.outputs,
                        failure=record.failure,
                        from_cache=not computed,
                        heldout=heldout[sample.index],
                    )
                    examples[sample.index] = example
                    if on_example is not None:
                        on_example(example)
            except BaseException:
                # Don't dispatch anything else. The executor waits for the in-flight evaluations.
                stop.set()
                raise

        if cancellation is not None and cancellation.cancelled:
            msg = f"Training set build cancelled after {len(examples)} of {len(samples)} samples"
            raise BuildCancelledError(msg)

        training_set = TrainingSet(
            examples=tuple(examples[index] for index in sorted(examples)),
            layout=spec.layout,
            n_solver_calls=n_solver_calls,
            n_cache_hits=n_cache_hits,
        )
        logger.info(f"Training set: {training_set.summary()}")

        if training_set.failure_fraction > settings.max_failure_fraction:
            msg = (
                f"{training_set.failure_count} of {len(samples)} samples failed"
                f" ({training_set.failure_fraction:.1%} > {settings.max_failure_fraction:.1%})"
            )
            raise TrainingSetDegradedError(msg, n_failed=training_set.failure_count, n_total=len(samples))
        if not training_set.fit_examples or not training_set.heldout_examples:
            msg = (
                f"Need at least one successful fit and held-out example, got {len(training_set.fit_examples)} fit"
                f" and {len(training_set.heldout_examples)} held-out"
            )
            raise TrainingSetDegradedError(msg, n_failed=training_set.failure_count, n_total=len(samples))
        return training_set
