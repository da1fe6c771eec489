"""Drive an emulator build through its stages.

The pipeline is a forward-only state machine:

    Initialized -> SamplingParameters -> BuildingTrainingSet -> Training -> Evaluating -> Packaging -> Done

with a terminal `Failed(stage, cause)` state reachable from every stage. There is no retry at this
level; transient solver failures are retried inside the training set builder. Every transition is
reported to the listeners as a `ProgressEvent`.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable, Sequence
from pathlib import Path

import attrs

from emulator_build import evaluation, packaging, sampling, training
from emulator_build.cache import ExampleStore, InMemoryExampleStore
from emulator_build.emulation.base import TrainedModel
from emulator_build.exceptions import AccuracyBelowThresholdError, EmulatorBuildError
from emulator_build.execution.base import ExecutionAdapter
from emulator_build.helpers import CancellationToken
from emulator_build.spec import EmulatorSpec
from emulator_build.training_set import TrainingExample, TrainingSet, TrainingSetBuilder

logger = logging.getLogger(__name__)

__all__ = [
    "BuildResult",
    "CancellationToken",
    "EmulatorBuildPipeline",
    "PipelineFailure",
    "PipelineState",
    "ProgressEvent",
]


class PipelineState(enum.Enum):
    Initialized = 0
    SamplingParameters = 1
    BuildingTrainingSet = 2
    Training = 3
    Evaluating = 4
    Packaging = 5
    Done = 6
    Failed = 7

    @property
    def terminal(self) -> bool:
        return self in (PipelineState.Done, PipelineState.Failed)


@attrs.frozen
class PipelineFailure:
    """Where and why a build failed.

    Attributes:
        stage: State in which the failure occurred.
        cause: Exception which ended the build.
    """

    stage: PipelineState
    cause: BaseException

    @property
    def cause_name(self) -> str:
        name = type(self.cause).__name__
        # Report the names used in the build documentation
        return name.removesuffix("Error") if isinstance(self.cause, AccuracyBelowThresholdError) else name

    def __str__(self) -> str:
        return f"Failed({self.stage.name}, {self.cause_name}: {self.cause})"


@attrs.frozen
class ProgressEvent:
    """Emitted on every state transition.

    Attributes:
        state: New state.
        previous: Previous state.
        message: Human readable description.
        elapsed: Seconds since the start of the build.
        failure: Failure description when entering the Failed state.
        completed: Number of completed items within the state (e.g. evaluated samples), if relevant.
        total: Total number of items within the state, if relevant.
    """

    state: PipelineState
    previous: PipelineState
    message: str
    elapsed: float
    failure: PipelineFailure | None = None
    completed: int | None = None
    total: int | None = None

    def status_line(self) -> str:
        progress = f" [{self.completed}/{self.total}]" if self.total is not None else ""
        return f"[{self.elapsed:8.2f}s] {self.state.name}{progress}: {self.message}"


@attrs.frozen
class BuildResult:
    """Outcome of a pipeline run.

    Attributes:
        state: Terminal state (Done or Failed).
        artifact: Packaged artifact. None unless Done.
        artifact_path: Path of the written archive. None unless Done.
        report: Accuracy report, if the evaluation completed (also when the accuracy gate failed).
        training_set: Training set, if it was built.
        failure: Failure description. None unless Failed.
        elapsed: Duration of the run in seconds.
    """

    state: PipelineState
    artifact: packaging.EmulatorArtifact | None = None
    artifact_path: Path | None = None
    report: evaluation.AccuracyReport | None = None
    training_set: TrainingSet | None = None
    failure: PipelineFailure | None = None
    elapsed: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.Done


Listener = Callable[[ProgressEvent], None]


@attrs.define
class EmulatorBuildPipeline:
    """Build, validate and package one emulator.

    Attributes:
        spec: Emulator specification.
        adapter: Execution adapter for the solver.
        store: Store of solver evaluations. Default: a new in-memory store.
        output_dir: Directory where the artifact is written.
        cancellation: Token for cooperative cancellation.
        clock: Monotonic clock used for elapsed times. Default: time.monotonic.
        wall_clock: Wall clock used for the build provenance. Default: time.time.
        listeners: Called with every progress event.
        sleep: Sleep function used between solver retries. Default: time.sleep.
    """

    spec: EmulatorSpec
    adapter: ExecutionAdapter
    store: ExampleStore = attrs.field(factory=InMemoryExampleStore)
    output_dir: Path = attrs.field(default=Path("emulators"), converter=Path)
    cancellation: CancellationToken = attrs.field(factory=CancellationToken)
    clock: Callable[[], float] = time.monotonic
    wall_clock: Callable[[], float] = time.time
    listeners: Sequence[Listener] = attrs.field(factory=list, converter=list)
    sleep: Callable[[float], None] = time.sleep
    _state: PipelineState = attrs.field(default=PipelineState.Initialized, init=False)
    _started: bool = attrs.field(default=False, init=False)
    _start_time: float = attrs.field(default=0.0, init=False)

    @property
    def state(self) -> PipelineState:
        return self._state

    def add_listener(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def cancel(self) -> None:
        self.cancellation.cancel()

    def _elapsed(self) -> float:
        return self.clock() - self._start_time

    def _emit(self, event: ProgressEvent) -> None:
        for listener in self.listeners:
            listener(event)

    def _transition(self, state: PipelineState, message: str, failure: PipelineFailure | None = None) -> None:
        if self._state.terminal or (state is not PipelineState.Failed and state.value <= self._state.value):
            msg = f"Invalid transition {self._state.name} -> {state.name}"
            raise RuntimeError(msg)
        previous, self._state = self._state, state
        logger.info(f"{previous.name} -> {state.name}: {message}")
        self._emit(
            ProgressEvent(state=state, previous=previous, message=message, elapsed=self._elapsed(), failure=failure)
        )

    def _on_example(self, total: int) -> Callable[[TrainingExample], None]:
        completed = 0

        def _report(example: TrainingExample) -> None:
            nonlocal completed
            completed += 1
            status = "cached" if example.from_cache else ("ok" if example.succeeded else example.failure.kind)
            self._emit(
                ProgressEvent(
                    state=self._state,
                    previous=self._state,
                    message=f"sample {example.sample.index} {status}",
                    elapsed=self._elapsed(),
                    completed=completed,
                    total=total,
                )
            )

        return _report

    def run(self) -> BuildResult:
        """Run the build. Can only be called once.

        Returns:
            Result in a terminal state. Build failures (EmulatorBuildError) end in the Failed state.
        Raises:
            RuntimeError: If called more than once.
            Exception: Anything other than an EmulatorBuildError is re-raised after entering the
                Failed state.
        """
        if self._started:
            msg = "The pipeline can only be run once. Create a new pipeline to rebuild."
            raise RuntimeError(msg)
        self._started = True
        self._start_time = self.clock()
        wall_start = self.wall_clock()

        training_set: TrainingSet | None = None
        report: evaluation.AccuracyReport | None = None
        try:
            spec = self.spec
            self._transition(
                PipelineState.SamplingParameters,
                f"Drawing {spec.sampling.n_samples} samples ({spec.sampling.strategy}, seed={spec.sampling.seed})",
            )
            samples = sampling.sample_parameters(
                spec.parameters, spec.sampling.n_samples, strategy=spec.sampling.strategy, seed=spec.sampling.seed
            )

            self._transition(PipelineState.BuildingTrainingSet, f"Evaluating {len(samples)} samples")
            builder = TrainingSetBuilder(adapter=self.adapter, store=self.store, sleep=self.sleep)
            training_set = builder.build(
                spec, samples, cancellation=self.cancellation, on_example=self._on_example(len(samples))
            )
            environment_fingerprint = self.adapter.fingerprint(spec.environment)

            summary = training_set.summary()
            self._transition(
                PipelineState.Training,
                f"Training '{spec.emulator_fn.type}' on {summary['n_fit']} examples"
                f" ({summary['n_solver_calls']} solver calls, {summary['n_cache_hits']} cached,"
                f" {summary['failure_count']} failed)",
            )
            trained_model: TrainedModel = training.train_model(training_set, spec, cancellation=self.cancellation)

            self._transition(
                PipelineState.Evaluating,
                f"Evaluating on {summary['n_heldout']} held-out examples"
                f" (trained for {trained_model.n_epochs} epochs, {trained_model.objective_name}="
                f"{trained_model.final_objective:.4g})",
            )
            report = evaluation.evaluate_model(
                trained_model,
                training_set,
                spec,
                environment_fingerprint=environment_fingerprint,
                clock=self.wall_clock,
                started_at=wall_start,
            )
            self._check_accuracy(report)

            self._transition(
                PipelineState.Packaging, f"Packaging (max relative error {report.max_relative_error:.3g})"
            )
            artifact = packaging.package_artifact(spec, trained_model, report)
            artifact_path = packaging.write_artifact(artifact, self.output_dir, provenance=report.provenance)

            self._transition(PipelineState.Done, f"Wrote {artifact.identifier} to {artifact_path}")
            return BuildResult(
                state=PipelineState.Done,
                artifact=artifact,
                artifact_path=artifact_path,
                report=report,
                training_set=training_set,
                elapsed=self._elapsed(),
            )
        except EmulatorBuildError as e:
            failure = self._fail(e)
            return BuildResult(
                state=PipelineState.Failed,
                report=report,
                training_set=training_set,
                failure=failure,
                elapsed=self._elapsed(),
            )
        except Exception as e:
            # Defects rather than build outcomes. Record them, but let them propagate.
            self._fail(e)
            raise

    def _check_accuracy(self, report: evaluation.AccuracyReport) -> None:
        """Gate for entering the Packaging state.

        NOTE: The failure is attributed to the Packaging stage, so we enter it before raising.
        """
        bounds = self.spec.accuracy
        problems = []
        if report.max_relative_error > bounds.max_relative_error:
            problems.append(
                f"max relative error {report.max_relative_error:.3g} exceeds {bounds.max_relative_error:.3g}"
            )
        if report.gradient_max_error > bounds.gradient_tolerance:
            problems.append(
                f"gradient error {report.gradient_max_error:.3g} exceeds {bounds.gradient_tolerance:.3g}"
            )
        if problems:
            self._transition(PipelineState.Packaging, "Checking accuracy bounds")
            msg = "; ".join(problems)
            raise AccuracyBelowThresholdError(msg, max_relative_error=report.max_relative_error)

    def _fail(self, cause: BaseException) -> PipelineFailure:
        failure = PipelineFailure(stage=self._state, cause=cause)
        logger.error(str(failure))
        if not self._state.terminal:
            self._transition(PipelineState.Failed, str(cause), failure=failure)
        return failure
