"""
Builds the canonical bot setup pipeline.

Wires each stage's action to its healer(s) using one SetupConfig, so every
stage shares the same resolved values without any module-level state.
"""

import logging
import time
from typing import Callable

from ..actions import SetupActions
from ..commands import CommandRunner
from ..config import SetupConfig
from ..healers import (
    DependencyCacheHealer,
    DependencyHealer,
    HealerChain,
    NetworkHealer,
    PurgingHealer,
    RepositoryHealer,
    ServiceLivenessHealer,
)
from ..service import ServiceSupervisor
from .retry import NO_RETRY
from .stage import Stage, StageId

logger = logging.getLogger(__name__)


def create_setup_pipeline(
    config: SetupConfig,
    runner: CommandRunner,
    actions: SetupActions | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> list[Stage]:
    """Create the seven setup stages in canonical order.

    Args:
        config: Resolved configuration for this run
        runner: CommandRunner shared by actions and healers
        actions: Pre-built SetupActions (built from config when None)
        sleep: Blocking delay used by healers (injectable for tests)

    Returns:
        Stages from prerequisites_checked through service_created.
    """
    actions = actions or SetupActions(config, runner)
    project = config.repository.path

    network = NetworkHealer(
        runner,
        host=config.network.probe_host,
        port=config.network.probe_port,
        timeout=config.network.probe_timeout,
        sleep=sleep,
    )
    dependencies = DependencyHealer(runner, [t.to_tool() for t in config.tools])
    repository = PurgingHealer(
        RepositoryHealer(runner, project, branch=config.repository.branch),
        purge=actions.discard_working_copy,
        reacquire=actions.clone_repository,
    )
    cache = PurgingHealer(
        DependencyCacheHealer(project),
        purge=actions.purge_dependency_cache,
    )
    rebuild_cache = PurgingHealer(
        DependencyCacheHealer(project),
        purge=actions.purge_dependency_cache,
        reacquire=actions.install_dependencies,
    )
    liveness = ServiceLivenessHealer(
        actions.supervisor,
        ceiling=config.service.restart_ceiling,
        sleep=sleep,
    )

    database_healer = None
    if config.database.local_service and config.database.host in ("localhost", "127.0.0.1", "::1"):
        database_healer = ServiceLivenessHealer(
            ServiceSupervisor(runner, config.database.local_service),
            ceiling=config.service.restart_ceiling,
            sleep=sleep,
        )

    return [
        Stage(
            id=StageId.PREREQUISITES_CHECKED,
            action=actions.check_prerequisites,
            healer=dependencies,
            description="Check git, node, yarn and psql are installed",
        ),
        Stage(
            id=StageId.REPOSITORY_READY,
            action=actions.prepare_repository,
            healer=HealerChain([network, repository]),
            description=f"Clone {config.repository.url}",
        ),
        Stage(
            id=StageId.DEPENDENCIES_INSTALLED,
            action=actions.install_dependencies,
            healer=HealerChain([network, cache]),
            description="Install dependencies with yarn",
        ),
        Stage(
            id=StageId.DATABASE_CONFIGURED,
            action=actions.configure_database,
            healer=database_healer,
            description=f"Create database '{config.database.name}' and role '{config.database.user}'",
        ),
        Stage(
            id=StageId.ENV_CONFIGURED,
            action=actions.configure_env,
            retry=NO_RETRY,
            description="Write .env secrets",
        ),
        Stage(
            id=StageId.BUILT,
            action=actions.build,
            healer=rebuild_cache,
            description="Build the bot",
        ),
        Stage(
            id=StageId.SERVICE_CREATED,
            action=actions.create_service,
            healer=liveness,
            description=f"Install and start the {config.service.name} service",
        ),
    ]
