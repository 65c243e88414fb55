"""
Stage definitions for the setup pipeline.

A stage is one named unit of setup work. Stages run in a fixed total order;
each has an action and may carry a healer that is consulted when the action
fails.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from .retry import RetryPolicy

if TYPE_CHECKING:
    from ..healers import Healer


class StageId(str, Enum):
    """Canonical stage identifiers, in execution order."""
    PREREQUISITES_CHECKED = "prerequisites_checked"
    REPOSITORY_READY = "repository_ready"
    DEPENDENCIES_INSTALLED = "dependencies_installed"
    DATABASE_CONFIGURED = "database_configured"
    ENV_CONFIGURED = "env_configured"
    BUILT = "built"
    SERVICE_CREATED = "service_created"


STAGE_ORDER: list[StageId] = list(StageId)


@dataclass
class Stage:
    """A single pipeline stage.

    Attributes:
        id: Stage identifier (a StageId for the canonical pipeline)
        action: Callable performing the stage's work; raises on failure
        healer: Optional repair capability invoked when the action fails
        retry: Per-stage retry policy (None = use the executor default)
        description: Human-readable summary for progress output
    """
    id: str
    action: Callable[[], Any]
    healer: "Healer | None" = None
    retry: RetryPolicy | None = None
    description: str = ""

    @property
    def name(self) -> str:
        """Stage identifier as a plain string."""
        return self.id.value if isinstance(self.id, StageId) else str(self.id)

