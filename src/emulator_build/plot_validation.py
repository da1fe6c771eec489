"""Validation plots of a trained emulator against the held-out examples."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import seaborn as sns
from matplotlib import pyplot as plt

from emulator_build.emulation.interface import Emulator
from emulator_build.training_set import TrainingSet

sns.set_context("paper", rc={"font.size": 18, "axes.titlesize": 18, "axes.labelsize": 18})

logger = logging.getLogger(__name__)


def plot(emulator: Emulator, training_set: TrainingSet, output_dir: Path | str) -> list[Path]:
    """Plot the relative error along the first axis of each output, for every held-out sample.

    For outputs with more than one axis, the worst error over the remaining axes is shown.
    Numerically zero truth values are left out.

    Args:
        emulator: Trained emulator.
        training_set: Training set, providing the held-out examples.
        output_dir: Directory where the figures are written (under `plots/`).
    Returns:
        Paths of the written figures.
    """
    plot_dir = Path(output_dir) / "plots"
    plot_dir.mkdir(parents=True, exist_ok=True)

    heldout = training_set.heldout_examples
    if not heldout:
        logger.warning("No held-out examples to plot")
        return []
    spec = emulator.spec
    predicted = emulator.predict_outputs(training_set.design(heldout))
    colors = sns.color_palette("viridis", n_colors=len(heldout))

    paths = []
    for declaration in spec.outputs:
        truth = np.array([e.outputs[declaration.name] for e in heldout])[(slice(None), *declaration.training_slices)]
        zero_threshold = spec.accuracy.zero_tolerance * float(np.max(np.abs(truth)))
        with np.errstate(divide="ignore", invalid="ignore"):
            relative_error = np.where(
                np.abs(truth) > zero_threshold,
                np.abs(predicted[declaration.name] - truth) / np.abs(truth),
                np.nan,
            )
        # Worst error along the remaining axes
        if relative_error.ndim > 2:
            relative_error = np.nanmax(relative_error.reshape(*relative_error.shape[:2], -1), axis=-1)
        # Exact predictions would vanish on the log scale
        relative_error = np.clip(relative_error, np.finfo(np.float64).eps, None)

        axis = declaration.axes[0]
        x = declaration.training_nodes()[axis.name]
        fig, ax = plt.subplots(figsize=(8, 6))
        for example, errors, color in zip(heldout, relative_error, colors):
            ax.plot(x, errors, color=color, linewidth=1.5, alpha=0.8, label=f"sample {example.sample.index}")
        ax.axhline(spec.accuracy.max_relative_error, color="black", linestyle="--", linewidth=2, label="bound")
        if axis.spacing == "log":
            ax.set_xscale("log")
        ax.set_yscale("log")
        ax.set_xlabel(axis.name)
        ax.set_ylabel(r"$|\mathrm{emulator} - \mathrm{truth}| / |\mathrm{truth}|$")
        ax.set_title(declaration.name)
        if len(heldout) <= 12:
            ax.legend(loc="upper right", fontsize=10, frameon=False)
        plt.tight_layout()

        path = plot_dir / f"relative_error_{declaration.name}.pdf"
        plt.savefig(path, dpi=300, bbox_inches="tight")
        plt.close()
        paths.append(path)
        logger.info(f"Wrote {path}")
    return paths
