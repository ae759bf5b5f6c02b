"""Sequential step orchestration with short-circuit failure propagation."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Sequence, Set, Tuple
import logging

from .artifacts import locate
from .config_loader import ResolvedConfig
from .errors import ArtifactNotFound, PipelineError, ToolExecutionFailure, ValidationError
from .executor import ExecutionResult, PipedExecutor, PostProcessor
from .steps import CommandBuilder, StepContext, StepKind, StepSpec

logger = logging.getLogger(__name__)

# Exit status reported when a step succeeded but its expected artifact is missing.
EXIT_ARTIFACT_NOT_FOUND = 1
# sysexits EX_CONFIG, distinct from the statuses tools usually return.
EXIT_CONFIG_ERROR = 78
EXIT_FAILURE = 1

BUILD_REQUIRED: Tuple[str, ...] = ("action", "destination")
# Not needed when test-without-building runs prebuilt test products.
BUILD_PROJECT_REQUIRED: Tuple[str, ...] = ("scheme", "configuration")
RELEASE_REQUIRED: Tuple[str, ...] = (
    "project",
    "scheme",
    "configuration",
    "platform",
    "auth_key_path",
    "auth_key_id",
    "auth_key_issuer",
    "export_options_plist",
)


class PipelineState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


@dataclass(slots=True)
class PipelineEntry:
    step: StepSpec
    result: ExecutionResult


@dataclass(slots=True)
class PipelineRun:
    entries: List[PipelineEntry] = field(default_factory=list)
    state: PipelineState = PipelineState.IDLE
    current: int | None = None
    error: PipelineError | None = None

    @property
    def results(self) -> List[ExecutionResult]:
        return [entry.result for entry in self.entries]

    @property
    def success(self) -> bool:
        return self.state is PipelineState.SUCCEEDED

    def result_for(self, kind: StepKind) -> ExecutionResult | None:
        for entry in self.entries:
            if entry.step.kind is kind:
                return entry.result
        return None

    @property
    def exit_status(self) -> int:
        if self.state is PipelineState.SUCCEEDED:
            return 0
        if self.state is PipelineState.FAILED:
            if isinstance(self.error, ToolExecutionFailure):
                return self.error.status
            if isinstance(self.error, ArtifactNotFound):
                return EXIT_ARTIFACT_NOT_FOUND
            if isinstance(self.error, ValidationError):
                return EXIT_CONFIG_ERROR
            return EXIT_FAILURE
        raise RuntimeError(f"Pipeline has not finished (state: {self.state.value})")

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error


StepFactory = Callable[[PipelineRun], StepSpec]
Locator = Callable[[Path, str], Path]


def _masked(command: Sequence[str], secrets: Sequence[str]) -> List[str]:
    hidden = {value for value in secrets if value}
    return ["****" if part in hidden else part for part in command]


class StepOrchestrator:
    """Runs step factories in order and stops at the first failure.

    Each factory is called only after the previous step succeeded, so it may
    depend on artifacts that step produced. Steps that share a log path within
    one run append to it.
    """

    def __init__(
        self,
        executor: PipedExecutor,
        *,
        post_processors: Sequence[PostProcessor] = (),
        disable_formatter: bool = False,
    ) -> None:
        self._executor = executor
        self._post_processors = tuple(post_processors)
        self._disable_formatter = disable_formatter

    def _processors_for(self, step: StepSpec) -> Sequence[PostProcessor]:
        if self._disable_formatter or not step.kind.formattable:
            return ()
        return self._post_processors

    def run(self, factories: Iterable[StepFactory]) -> PipelineRun:
        run = PipelineRun()
        used_logs: Set[Path] = set()

        for index, factory in enumerate(factories):
            run.state = PipelineState.RUNNING
            run.current = index
            try:
                step = factory(run)
            except PipelineError as exc:
                logger.error("Error: %s", exc)
                run.state = PipelineState.FAILED
                run.error = exc
                return run

            result = self._executor.run(
                step,
                step.log_path,
                self._processors_for(step),
                append=step.log_path in used_logs,
            )
            used_logs.add(step.log_path)
            run.entries.append(PipelineEntry(step=step, result=result))

            if not result.success:
                failure = ToolExecutionFailure(
                    step.description,
                    _masked(step.command, step.secrets),
                    result.status,
                    result.log_path,
                )
                logger.error("%s", failure)
                run.state = PipelineState.FAILED
                run.error = failure
                return run
            logger.info("%s completed successfully", step.description)

        run.state = PipelineState.SUCCEEDED
        run.current = None
        for entry in run.entries:
            logger.info("%s log: %s", entry.step.description, entry.result.log_path)
        return run


def build_required(config: ResolvedConfig) -> Tuple[str, ...]:
    """Fields the build chain needs for ``config``'s action."""
    prebuilt = config.action == StepKind.TEST_WITHOUT_BUILDING.value and bool(config.test_products_path)
    if prebuilt:
        return BUILD_REQUIRED
    return (*BUILD_REQUIRED, *BUILD_PROJECT_REQUIRED)


def build_chain(builder: CommandBuilder) -> List[StepFactory]:
    """A single build or test action taken from the configured action."""
    builder.config.require(build_required(builder.config))
    kind = StepKind.from_action(builder.config.action or "")
    return [lambda run: builder.build(kind)]


def release_chain(
    builder: CommandBuilder,
    *,
    upload: bool = False,
    locator: Locator = locate,
) -> List[StepFactory]:
    """Archive then export, optionally followed by an upload of the exported package."""

    builder.config.require(RELEASE_REQUIRED)
    # Fixed up front so the archive step can clear a stale archive at this path.
    archive_path = builder.archive_path
    context = StepContext(archive_path=archive_path)

    factories: List[StepFactory] = [
        lambda run: builder.build(StepKind.ARCHIVE, context),
        lambda run: builder.build(StepKind.EXPORT, context),
    ]

    if upload:
        def upload_step(run: PipelineRun) -> StepSpec:
            extension = builder.config.artifact_extension or ".ipa"
            try:
                artifact = locator(builder.products_path(archive_path), extension)
            except ArtifactNotFound as exc:
                if not run.entries:
                    raise
                producer = run.entries[-1]
                raise ArtifactNotFound(
                    exc.root,
                    exc.extension,
                    step=producer.step.description,
                    command=_masked(producer.step.command, producer.step.secrets),
                    log_path=producer.result.log_path,
                ) from exc
            logger.info("Found artifact %s", artifact)
            return builder.build(
                StepKind.UPLOAD,
                StepContext(archive_path=archive_path, artifact_path=artifact),
            )

        factories.append(upload_step)
    return factories


def merge_chain(builder: CommandBuilder, *, output: Path, inputs: Sequence[Path]) -> List[StepFactory]:
    context = StepContext(output=output, inputs=tuple(inputs))
    # Build eagerly so too few inputs are rejected before anything runs.
    step = builder.build(StepKind.MERGE_PLIST, context)
    return [lambda run: step]
