"""
Pipeline module for resumable, self-healing setup workflows.

Provides ordered stages with persisted progress, a retry executor with
exponential backoff, and the executor that ties them together.
"""

from .executor import PipelineExecutor, PipelineResult, PipelineStatus
from .retry import NO_RETRY, RetryExecutor, RetryPolicy
from .stage import STAGE_ORDER, Stage, StageId
from .state import StateStore

__all__ = [
    "NO_RETRY",
    "PipelineExecutor",
    "PipelineResult",
    "PipelineStatus",
    "RetryExecutor",
    "RetryPolicy",
    "STAGE_ORDER",
    "Stage",
    "StageId",
    "StateStore",
]
