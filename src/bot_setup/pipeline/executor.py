"""
Pipeline executor for the resumable setup pipeline.

Runs an ordered list of stages, persisting the last fully completed stage
after each success so an interrupted or failed run can resume. A failing
stage gets one chance to be repaired by its healer before the pipeline
aborts.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from ..errors import TerminalError, UnhealableError
from .retry import RetryExecutor
from .stage import Stage
from .state import StateStore

logger = logging.getLogger(__name__)


class PipelineStatus(str, Enum):
    """Pipeline execution status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PipelineResult:
    """Outcome of a pipeline run.

    Attributes:
        status: COMPLETED or FAILED
        completed: Stages that ran and succeeded during this run
        skipped: Stages skipped because a resumed state covered them
        failed_stage: Name of the stage that aborted the run
        cause: The error that aborted the run
    """
    status: PipelineStatus = PipelineStatus.PENDING
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed_stage: str | None = None
    cause: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status == PipelineStatus.COMPLETED

    @property
    def terminal(self) -> bool:
        """True when the failure needs intervention rather than another attempt."""
        return isinstance(self.cause, TerminalError)


# Event types for callbacks
@dataclass
class PipelineEvent:
    """Base class for pipeline events."""
    pass


@dataclass
class StageSkippedEvent(PipelineEvent):
    """Emitted for each stage covered by the resumed state."""
    stage: str


@dataclass
class StageStartedEvent(PipelineEvent):
    """Emitted when a stage begins execution."""
    stage: str
    index: int
    total: int


@dataclass
class StageCompletedEvent(PipelineEvent):
    """Emitted when a stage completes and its state is persisted."""
    stage: str
    healed: bool = False


@dataclass
class HealerInvokedEvent(PipelineEvent):
    """Emitted after a stage healer returns."""
    stage: str
    healer: str
    healed: bool
    reason: str = ""


@dataclass
class StageFailedEvent(PipelineEvent):
    """Emitted when a stage fails for good."""
    stage: str
    error: str


@dataclass
class PipelineCompletedEvent(PipelineEvent):
    """Emitted when the pipeline finishes."""
    status: PipelineStatus
    failed_stage: str | None = None


class PipelineExecutor:
    """Executes stages in order with persisted, resumable progress.

    Args:
        stages: Stages in execution order (identifiers must be unique)
        store: Durable record of the last completed stage
        retry: RetryExecutor wrapping each action invocation
        on_event: Optional callback for pipeline events
    """

    def __init__(
        self,
        stages: list[Stage],
        store: StateStore,
        retry: RetryExecutor | None = None,
        on_event: Callable[[PipelineEvent], None] | None = None,
    ):
        names = [s.name for s in stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate stage identifiers: {names}")
        self.stages = stages
        self.store = store
        self.retry = retry or RetryExecutor()
        self.on_event = on_event

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]

    def _emit(self, event: PipelineEvent) -> None:
        """Emit an event to the callback if registered."""
        if self.on_event:
            try:
                self.on_event(event)
            except Exception as e:
                logger.warning("Event callback error: %s", e)

    def last_completed(self) -> str | None:
        """The persisted stage, or None if absent, corrupt or unrecognized."""
        return self.store.load(valid=self.stage_names)

    def pending_stages(self, resume: bool) -> list[Stage]:
        """Stages that run(resume) would execute."""
        if not resume:
            return list(self.stages)
        last = self.last_completed()
        if last is None:
            return list(self.stages)
        return self.stages[self.stage_names.index(last) + 1:]

    def reset(self) -> None:
        """Forget recorded progress."""
        self.store.clear()
        logger.info("Pipeline state cleared")

    def run(self, resume: bool = True) -> PipelineResult:
        """Execute the pipeline.

        Args:
            resume: Skip stages at or before the persisted stage. When False
                any recorded progress is discarded and every stage runs.

        Returns:
            PipelineResult describing completion or the failing stage.
        """
        result = PipelineResult(status=PipelineStatus.RUNNING)

        if not resume:
            self.store.clear()

        pending = self.pending_stages(resume)
        skipped = self.stages[:len(self.stages) - len(pending)]
        for stage in skipped:
            result.skipped.append(stage.name)
            logger.info("Skipping stage '%s' (already completed)", stage.name)
            self._emit(StageSkippedEvent(stage=stage.name))

        if skipped:
            print(f"\n⏭  Resuming after '{skipped[-1].name}'")

        total = len(self.stages)
        for stage in pending:
            index = self.stage_names.index(stage.name) + 1
            print(f"\n{'='*60}")
            print(f"▶ [{index}/{total}] {stage.name}")
            if stage.description:
                print(f"   {stage.description}")
            print(f"{'='*60}")
            logger.info("Stage '%s' started", stage.name)
            self._emit(StageStartedEvent(stage=stage.name, index=index, total=total))

            try:
                healed = self._run_stage(stage)
            except Exception as e:
                logger.error("Stage '%s' failed: %s", stage.name, e)
                print(f"\n❌ [{stage.name}] failed: {e}")
                self._emit(StageFailedEvent(stage=stage.name, error=str(e)))
                result.status = PipelineStatus.FAILED
                result.failed_stage = stage.name
                result.cause = e
                self._emit(PipelineCompletedEvent(
                    status=PipelineStatus.FAILED,
                    failed_stage=stage.name,
                ))
                return result

            self.store.save(stage.name)
            result.completed.append(stage.name)
            logger.info("Stage '%s' completed%s", stage.name, " after healing" if healed else "")
            print(f"\n✅ [{stage.name}] complete")
            self._emit(StageCompletedEvent(stage=stage.name, healed=healed))

        self.store.clear()
        result.status = PipelineStatus.COMPLETED
        logger.info("Pipeline complete")
        self._emit(PipelineCompletedEvent(status=PipelineStatus.COMPLETED))
        return result

    def _run_stage(self, stage: Stage) -> bool:
        """Run one stage, consulting its healer on failure.

        Returns:
            True if the stage only succeeded after healing.

        Raises:
            Exception: The action's error when there is no healer, or the
                error of the single post-healing attempt
            UnhealableError: The healer could not repair the environment
        """
        try:
            self.retry.execute(stage.action, policy=stage.retry, label=stage.name)
            return False
        except Exception as e:
            if stage.healer is None:
                raise
            error = e

        healer = stage.healer
        logger.warning("Stage '%s' failed (%s), invoking healer '%s'", stage.name, error, healer.name)
        print(f"\n🩹 [{stage.name}] {error}; running healer '{healer.name}'")

        try:
            outcome = healer.heal()
        except Exception as e:
            logger.debug("Healer '%s' raised", healer.name, exc_info=True)
            self._emit(HealerInvokedEvent(stage=stage.name, healer=healer.name, healed=False, reason=str(e)))
            raise UnhealableError(healer.name, f"healer raised: {e}") from error

        self._emit(HealerInvokedEvent(
            stage=stage.name, healer=healer.name, healed=outcome.healed, reason=outcome.reason,
        ))
        if not outcome.healed:
            logger.error("Healer '%s' could not repair stage '%s': %s", healer.name, stage.name, outcome.reason)
            raise UnhealableError(healer.name, outcome.reason) from error

        logger.info("Healer '%s' repaired stage '%s'%s", healer.name, stage.name,
                    f": {outcome.reason}" if outcome.reason else "")

        # One more attempt, outside the retry policy
        stage.action()
        return True
