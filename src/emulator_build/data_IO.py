"""
Module related to reading and writing of solver outputs and training sets into HDF5

The main functionalities are:
 - write_dict_to_h5() / read_dict_from_h5(): HDF5 serialization for nested dictionaries of arrays.
   Writes are atomic (temporary file + rename), so readers never observe a partial file.
 - write_training_set(): export the training set (design, outputs, holdout mask, failures).
 - read_training_set(): read back an exported training set.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np
from silx.io.dictdump import dicttoh5, h5todict

if TYPE_CHECKING:
    from emulator_build.training_set import TrainingSet

logger = logging.getLogger(__name__)


####################################################################################################################
# HDF5 I/O
####################################################################################################################
def write_dict_to_h5(results: dict[str, Any], output_dir: Path | str, filename: str, verbose: bool = True) -> Path:
    """
    Write nested dictionary of ndarray to hdf5 file
    Note: all keys should be strings

    :param dict results: (nested) dictionary to write
    :param str output_dir: directory to write to
    :param str filename: name of hdf5 file to create (will overwrite)
    :return Path: path of the written file
    """
    output_dir = Path(output_dir)
    if verbose:
        logger.info(f"Writing results to {output_dir}/{filename}...")

    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / filename
    tmp_path = output_dir / f".{filename}.{uuid.uuid4().hex}.tmp"
    try:
        dicttoh5(results, str(tmp_path), mode="w")
        with tmp_path.open("rb+") as f:
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()

    if verbose:
        logger.info("Done.")
    return path


def read_dict_from_h5(input_dir: Path | str, filename: str, verbose: bool = True) -> dict[str, Any]:
    """
    Read dictionary of ndarrays from hdf5
    Note: all keys should be strings

    :param str input_dir: directory from which to read data
    :param str filename: name of hdf5 file to read
    """
    if verbose:
        logger.info(f"Loading results from {input_dir}/{filename}...")

    results: dict[str, Any] = h5todict(str(Path(input_dir) / filename))

    if verbose:
        logger.info("Done.")

    return results


def as_str(value: Any) -> str:
    """Strings may come back from HDF5 as bytes or 0-d arrays."""
    if isinstance(value, np.ndarray):
        value = value.item()
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


####################################################################################################################
# Training set export
####################################################################################################################
def write_training_set(training_set: TrainingSet, output_dir: Path | str, filename: str = "training_set.h5") -> Path:
    """Export the training set.

    Layout:
     - design: Parameter values of every sample, with shape (n_samples, n_parameters).
     - indices: Sample indices.
     - heldout: Holdout mask.
     - succeeded: Mask of successful samples.
     - outputs/<name>: Outputs of the successful samples, with shape (n_succeeded, *dense_shape).
     - failures: JSON encoded list of {index, kind, message}.
     - parameter_names: JSON encoded list of parameter names.

    Args:
        training_set: Training set to export.
        output_dir: Output directory.
        filename: Output filename. Default: "training_set.h5".
    Returns:
        Path of the written file.
    """
    examples = training_set.examples
    succeeded = [e for e in examples if e.succeeded]
    results: dict[str, Any] = {
        "design": np.array([e.sample.values for e in examples], dtype=np.float64),
        "indices": np.array([e.sample.index for e in examples], dtype=np.int64),
        "heldout": np.array([e.heldout for e in examples], dtype=bool),
        "succeeded": np.array([e.succeeded for e in examples], dtype=bool),
        "outputs": {
            name: np.array([e.outputs[name] for e in succeeded], dtype=np.float64)
            for name in training_set.layout.names
        },
        "failures": json.dumps(
            [
                {"index": e.sample.index, "kind": e.failure.kind, "message": e.failure.message}
                for e in examples
                if e.failure is not None
            ]
        ),
        "parameter_names": json.dumps(list(examples[0].sample.names) if examples else []),
    }
    return write_dict_to_h5(results, output_dir, filename)


def read_training_set(input_dir: Path | str, filename: str = "training_set.h5") -> dict[str, Any]:
    """Read an exported training set (as plain arrays)."""
    results = read_dict_from_h5(input_dir, filename)
    results["failures"] = json.loads(as_str(results["failures"]))
    results["parameter_names"] = json.loads(as_str(results["parameter_names"]))
    return results
