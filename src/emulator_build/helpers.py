"""Shared helpers: logging, progress display, canonical serialization.

The canonical JSON form is the basis of every fingerprint and of the artifact identity,
so it must not change between releases without a deliberate migration.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import threading
from collections.abc import Mapping, Sequence
from typing import Any

import attrs
import numpy as np
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

logger = logging.getLogger(__name__)

console = Console()


def setup_logging(level: int = logging.INFO) -> None:
    """Configure the root logger with a rich handler.

    Args:
        level: Logging level for the console.
    Returns:
        None.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    # Avoid duplicated output if called more than once
    for handler in list(root_logger.handlers):
        if isinstance(handler, RichHandler):
            root_logger.removeHandler(handler)
    handler = RichHandler(console=console, rich_tracebacks=True, markup=False, show_path=False)
    handler.setLevel(level)
    root_logger.addHandler(handler)

    # Quiet noisy libraries
    for name in ["matplotlib", "h5py", "silx"]:
        logging.getLogger(name).setLevel(logging.WARNING)


def progress_bar() -> Progress:
    """Progress bar used by the build command."""
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )


####################################################################################################################
# Canonical serialization
####################################################################################################################
def to_builtin(value: Any) -> Any:
    """Convert numpy containers and scalars (recursively) into JSON compatible python objects.

    Non-finite floats are rejected since they have no canonical JSON representation.
    """
    if isinstance(value, Mapping):
        return {str(k): to_builtin(v) for k, v in value.items()}
    if isinstance(value, np.ndarray):
        return to_builtin(value.tolist())
    if isinstance(value, (str, bytes)):
        return value.decode() if isinstance(value, bytes) else value
    if isinstance(value, Sequence):
        return [to_builtin(v) for v in value]
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    if isinstance(value, (int, np.integer)):
        return int(value)
    if isinstance(value, (float, np.floating)):
        value = float(value)
        if not math.isfinite(value):
            msg = f"Cannot canonicalize non-finite value {value}"
            raise ValueError(msg)
        return value
    if value is None:
        return None
    msg = f"Cannot canonicalize value of type {type(value)}"
    raise TypeError(msg)


def canonical_json(value: Any) -> bytes:
    """Serialize to canonical JSON bytes (sorted keys, compact separators, UTF-8)."""
    return json.dumps(to_builtin(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha256_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


####################################################################################################################
# Cancellation
####################################################################################################################
@attrs.define
class CancellationToken:
    """Thread-safe flag for cooperative cancellation of a build."""

    _event: threading.Event = attrs.field(factory=threading.Event)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Wait until cancelled (or the timeout expires). Returns True if cancelled."""
        return self._event.wait(timeout)
