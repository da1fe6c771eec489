"""
Main script to steer an emulator build: spec file in, packaged emulator out.
"""

from __future__ import annotations

import argparse
import logging
import shutil
import sys
from collections.abc import Sequence
from pathlib import Path

from emulator_build import data_IO, execution, helpers, hub, orchestrator
from emulator_build.cache import DirectoryExampleStore
from emulator_build.exceptions import EmulatorBuildError
from emulator_build.spec import EmulatorSpec

logger = logging.getLogger(__name__)


####################################################################################################################
class SteerBuild:
    """Build one emulator from a spec file.

    Args:
        config_file: Path to the emulator specification.
        output_dir: Directory for the artifact, the build log and the exports.
        cache_dir: Directory of the solver evaluation store. Default: `<output_dir>/cache`.
        hub_root: Local hub to push the artifact to (see `push_to_hub`). Default: None.
        plot: If True, write validation plots.
        export_training_set: If True, export the training set to HDF5.
    """

    def __init__(
        self,
        config_file: Path,
        output_dir: Path,
        cache_dir: Path | None = None,
        hub_root: Path | None = None,
        plot: bool = False,
        export_training_set: bool = False,
    ) -> None:
        self.config_file = config_file
        self.output_dir = output_dir
        self.cache_dir = cache_dir if cache_dir is not None else output_dir / "cache"
        self.hub_root = hub_root
        self.plot = plot
        self.export_training_set = export_training_set
        self.initialize()

    # ---------------------------------------------------------------
    # Initialize config
    # ---------------------------------------------------------------
    def initialize(self) -> None:
        logger.info("Initializing build")
        self.output_dir.mkdir(exist_ok=True, parents=True)

        # Keep track of log and config for each run for reproducibility.
        _root_log = logging.getLogger()
        self._file_handler = logging.FileHandler(self.output_dir / "build.log", "w")
        self._file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        _root_log.addHandler(self._file_handler)
        shutil.copy(self.config_file, self.output_dir / "emulator_spec.yaml")

    def close(self) -> None:
        logging.getLogger().removeHandler(self._file_handler)
        self._file_handler.close()

    def run_build(self) -> orchestrator.BuildResult:
        """Main steering function for a build.

        Raises:
            EmulatorBuildError: If the specification is invalid, or the adapter can't be resolved.
        """
        spec = EmulatorSpec.from_config_file(self.config_file)
        logger.info(f"Building emulator '{spec.name}' (author: {spec.author}, spec {spec.fingerprint[:12]})")
        adapter = execution.resolve_adapter(spec.environment, timeout=spec.build.timeout)
        pipeline = orchestrator.EmulatorBuildPipeline(
            spec=spec,
            adapter=adapter,
            store=DirectoryExampleStore(self.cache_dir),
            output_dir=self.output_dir,
        )

        with helpers.progress_bar() as progress:
            sample_task = progress.add_task("[deep_sky_blue1]Evaluating samples...", total=spec.sampling.n_samples)

            def _report(event: orchestrator.ProgressEvent) -> None:
                if event.total is not None:
                    progress.update(sample_task, completed=event.completed, total=event.total)
                    return
                if event.previous is orchestrator.PipelineState.BuildingTrainingSet:
                    progress.update(sample_task, visible=False)
                progress.console.print(event.status_line(), markup=False, soft_wrap=True)

            pipeline.add_listener(_report)
            result = pipeline.run()

        if result.succeeded:
            self._finalize(spec, result)
        return result

    def _finalize(self, spec: EmulatorSpec, result: orchestrator.BuildResult) -> None:
        if self.export_training_set and result.training_set is not None:
            data_IO.write_training_set(result.training_set, self.output_dir)
        if self.plot and result.training_set is not None:
            # Only import when needed since matplotlib is slow to import
            from emulator_build import plot_validation

            plot_validation.plot(result.artifact.emulator(), result.training_set, self.output_dir)

        helpers.console.print(f"[bold green]Built emulator '{spec.name}'[/bold green]")
        helpers.console.print(f"  elapsed: {result.elapsed:.2f} s")
        helpers.console.print(f"  max relative error: {result.report.max_relative_error:.3g}")
        helpers.console.print(f"  gradient error: {result.report.gradient_max_error:.3g}")
        helpers.console.print(f"  artifact: {result.artifact_path}")
        helpers.console.print(f"  identifier: {result.artifact.identifier}")

    def push_to_hub(self, result: orchestrator.BuildResult) -> str:
        """Push the artifact of a successful build to the local hub.

        Raises:
            EmulatorBuildError: If the artifact can't be verified or stored in the hub.
        """
        identifier = hub.LocalHub(self.hub_root).push(result.artifact_path)
        helpers.console.print(f"  hub: {identifier}")
        return identifier


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Build a reproducible emulator from an emulator spec")
    parser.add_argument(
        "-c",
        "--configFile",
        help="Path of the emulator spec",
        action="store",
        type=Path,
        required=True,
    )
    parser.add_argument(
        "-o",
        "--outputDir",
        help="Output directory for the artifact and the build log",
        action="store",
        type=Path,
        default=Path("./emulators"),
    )
    parser.add_argument(
        "--cacheDir",
        help="Directory of the solver evaluation cache. Default: <outputDir>/cache",
        action="store",
        type=Path,
        default=None,
    )
    parser.add_argument("--hub", help="Local hub to push the artifact to", action="store", type=Path, default=None)
    parser.add_argument("--plot", help="Write validation plots", action="store_true")
    parser.add_argument("--exportTrainingSet", help="Export the training set to HDF5", action="store_true")
    parser.add_argument(
        "--logLevel", help="Logging level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="INFO"
    )
    args = parser.parse_args(argv)

    helpers.setup_logging(level=getattr(logging, args.logLevel))

    logger.info("Configuring...")
    logger.info(f"  configFile: {args.configFile}")
    logger.info(f"  outputDir: {args.outputDir}")

    # If invalid configFile is given, exit
    config_file = Path(args.configFile)
    if not config_file.exists():
        msg = f"File {args.configFile} does not exist! Exiting!"
        logger.error(msg)
        sys.exit(1)

    steer_build = SteerBuild(
        config_file=config_file,
        output_dir=Path(args.outputDir),
        cache_dir=args.cacheDir,
        hub_root=args.hub,
        plot=args.plot,
        export_training_set=args.exportTrainingSet,
    )
    try:
        try:
            result = steer_build.run_build()
        except EmulatorBuildError as e:
            # Failures before the pipeline starts (e.g. an invalid spec)
            failure = orchestrator.PipelineFailure(stage=orchestrator.PipelineState.Initialized, cause=e)
            helpers.console.print(str(failure), style="bold red", markup=False, soft_wrap=True)
            sys.exit(1)

        if not result.succeeded:
            helpers.console.print(str(result.failure), style="bold red", markup=False, soft_wrap=True)
            sys.exit(1)

        if steer_build.hub_root is not None:
            try:
                steer_build.push_to_hub(result)
            except EmulatorBuildError as e:
                # The build itself succeeded, and the artifact was written
                msg = f"Built {result.artifact_path}, but pushing it to the hub at {steer_build.hub_root} failed: {e}"
                logger.error(msg)
                helpers.console.print(msg, style="bold red", markup=False, soft_wrap=True)
                sys.exit(1)
    finally:
        steer_build.close()


if __name__ == "__main__":
    main()
