"""
Stage actions for the bot setup pipeline.

Each public method performs one stage. Actions are written so that an
already-satisfied step counts as success: re-running a stage against an
environment where it already completed has no further side effects.
"""

import getpass
import logging
import re
import shutil
import sys
from datetime import datetime, timezone
from pathlib import Path

from .commands import LONG_TIMEOUT, CommandRunner
from .config import SetupConfig
from .database import DatabaseAdmin
from .envfile import EnvFile, database_url, mask_url
from .errors import (
    CommandError,
    CommandTimeout,
    ConfigurationError,
    MissingToolError,
    RepositoryError,
    ServiceInactiveError,
    TransientError,
)
from .service import ServiceSupervisor, UnitSpec, find_shell_rc, install_aliases, render_unit

logger = logging.getLogger(__name__)

ENV_EXAMPLE = ".env.example"
ENV_FILE = ".env"


class SetupActions:
    """Stage actions bound to one SetupConfig.

    Args:
        config: The run's configuration
        runner: CommandRunner for every external command
        admin: DatabaseAdmin (built from config when None)
        supervisor: ServiceSupervisor (built from config when None)
        platform: sys.platform override for tests
    """

    def __init__(
        self,
        config: SetupConfig,
        runner: CommandRunner,
        admin: DatabaseAdmin | None = None,
        supervisor: ServiceSupervisor | None = None,
        platform: str | None = None,
    ):
        self.config = config
        self.runner = runner
        db = config.database
        self.admin = admin or DatabaseAdmin(
            runner,
            host=db.host,
            port=db.port,
            superuser=db.superuser,
            superuser_password=db.superuser_password,
            via_sudo=db.admin_via_sudo,
        )
        self.supervisor = supervisor or ServiceSupervisor(runner, config.service.name)
        self.platform = platform or sys.platform

    @property
    def project_dir(self) -> Path:
        return self.config.repository.path

    # ------------------------------------------------------------------
    # prerequisites_checked
    # ------------------------------------------------------------------

    def check_prerequisites(self) -> None:
        """Verify every required tool is on PATH."""
        missing = [t.executable for t in self.config.tools if not self.runner.which(t.executable)]
        if missing:
            raise MissingToolError(missing)

        self._check_node_version()
        logger.info("All prerequisites are installed")

    def _check_node_version(self) -> None:
        if not self.runner.which("node"):
            return
        result = self.runner.run(["node", "--version"], check=False)
        match = re.match(r"v?(\d+)", result.stdout.strip())
        if not match:
            logger.warning("Could not determine Node.js version from %r", result.stdout.strip())
            return
        major = int(match.group(1))
        if major < self.config.node_min_major:
            logger.warning(
                "Node.js %d or higher is recommended. Current version: %s",
                self.config.node_min_major, result.stdout.strip(),
            )

    # ------------------------------------------------------------------
    # repository_ready
    # ------------------------------------------------------------------

    def prepare_repository(self) -> None:
        """Clone the repository, or verify an existing working copy."""
        path = self.project_dir
        if path.exists():
            if not (path / ".git").exists():
                raise RepositoryError(f"{path} exists but is not a git working copy")
            status = self.runner.run(["git", "-C", str(path), "status", "--porcelain"], check=False)
            if not status.ok:
                raise RepositoryError(f"git status failed in {path}: {status.stderr.strip()}")
            logger.info("Using existing working copy at %s", path)
            return

        self.clone_repository()

    def clone_repository(self) -> None:
        repo = self.config.repository
        path = self.project_dir
        path.parent.mkdir(parents=True, exist_ok=True)
        args = ["git", "clone"]
        if repo.branch:
            args += ["--branch", repo.branch]
        args += [repo.url, str(path)]
        logger.info("Cloning %s into %s", repo.url, path)
        try:
            self.runner.run(args, timeout=LONG_TIMEOUT)
        except TransientError:
            # A failed clone can leave a partial directory that would block the retry
            shutil.rmtree(path, ignore_errors=True)
            raise

    def discard_working_copy(self) -> None:
        if self.project_dir.exists():
            logger.warning("Removing working copy at %s", self.project_dir)
            shutil.rmtree(self.project_dir)

    # ------------------------------------------------------------------
    # dependencies_installed
    # ------------------------------------------------------------------

    def install_dependencies(self) -> None:
        self._require_project()
        logger.info("Installing dependencies with yarn")
        self.runner.run(["yarn", "install"], cwd=str(self.project_dir), timeout=LONG_TIMEOUT)

    def purge_dependency_cache(self) -> None:
        cache = self.project_dir / "node_modules"
        if cache.exists():
            logger.warning("Removing dependency cache %s", cache)
            shutil.rmtree(cache)

    # ------------------------------------------------------------------
    # database_configured
    # ------------------------------------------------------------------

    def configure_database(self) -> None:
        """Create the role and database, grant privileges and verify login."""
        db = self.config.database
        if not db.password:
            raise ConfigurationError("Database password is not set")

        self.admin.ensure_role(db.user, db.password)
        self.admin.ensure_database(db.name, db.user)
        self.admin.grant_all(db.name, db.user)

        if not self.admin.test_connection(db.user, db.password, db.name):
            raise TransientError(f"Could not connect to database '{db.name}' as '{db.user}'")

        self.save_credentials()
        logger.info("Database '%s' ready for role '%s'", db.name, db.user)

    def save_credentials(self) -> None:
        """Record resolved credentials so a resumed run reuses them."""
        db = self.config.database
        creds = EnvFile.load(self.config.credentials_file)
        values = {
            "POSTGRES_DB": db.name,
            "POSTGRES_USER": db.user,
            "POSTGRES_PASSWORD": db.password or "",
            "DB_HOST": db.host,
            "DB_PORT": str(db.port),
            "GENERATED_AT": datetime.now(timezone.utc).isoformat(),
        }
        if self.config.bot_token:
            values["BOT_TOKEN"] = self.config.bot_token
        creds.update(values)
        creds.save()

    # ------------------------------------------------------------------
    # env_configured
    # ------------------------------------------------------------------

    def configure_env(self) -> None:
        """Create .env from the example and fill in database and token values."""
        self._require_project()
        if not self.config.bot_token:
            raise ConfigurationError("Discord bot token is not set")
        db = self.config.database
        if not db.password:
            raise ConfigurationError("Database password is not set")

        env_path = self.project_dir / ENV_FILE
        example = self.project_dir / ENV_EXAMPLE
        if not env_path.exists():
            if not example.is_file():
                raise ConfigurationError(f"{ENV_EXAMPLE} not found in {self.project_dir}")
            shutil.copyfile(example, env_path)
            logger.info("Copied %s to %s", ENV_EXAMPLE, ENV_FILE)

        url = database_url(db.user, db.password, db.host, db.port, db.name)
        env = EnvFile.load(env_path)
        env.update({
            "POSTGRES_PASSWORD": db.password,
            "POSTGRES_USER": db.user,
            "DB_HOST": db.host,
            "DB_PORT": str(db.port),
            "POSTGRES_DB": db.name,
            "BOT_TOKEN": self.config.bot_token,
            "DATABASE_URL": url,
        })
        env.save()
        logger.info("Configured %s (DATABASE_URL=%s)", env_path, mask_url(url))

    # ------------------------------------------------------------------
    # built
    # ------------------------------------------------------------------

    def build(self) -> None:
        self._require_project()
        logger.info("Building the bot")
        self.runner.run(["yarn", "build"], cwd=str(self.project_dir), timeout=LONG_TIMEOUT)

    # ------------------------------------------------------------------
    # service_created
    # ------------------------------------------------------------------

    def create_service(self) -> None:
        """Install, enable and start the systemd unit."""
        svc = self.config.service
        if not svc.enabled:
            logger.info("Service creation disabled, skipping")
            return
        if not self.platform.startswith("linux"):
            logger.warning("systemd service creation is only available on Linux, skipping")
            return

        executable = self.runner.which(svc.start_command[0]) or svc.start_command[0]
        unit = UnitSpec(
            name=svc.name,
            description=svc.description,
            user=getpass.getuser(),
            working_directory=str(self.project_dir),
            exec_start=" ".join([executable] + svc.start_command[1:]),
        )
        self.supervisor.install_unit(render_unit(unit))

        if svc.enable_on_boot:
            self.supervisor.enable()

        if svc.aliases:
            rc_file = find_shell_rc()
            if rc_file is not None:
                install_aliases(svc.name, rc_file)
            else:
                logger.info("No ~/.bashrc or ~/.zshrc found, skipping aliases")

        if svc.start_now:
            # Start failures are bounded by the liveness healer's restart ceiling
            try:
                self.supervisor.start()
            except (CommandError, CommandTimeout) as e:
                raise ServiceInactiveError(f"{svc.name} failed to start: {e}") from e
            if not self.supervisor.is_active():
                raise ServiceInactiveError(f"{svc.name} is not active after start")
            logger.info("Service %s is running", svc.name)

    # ------------------------------------------------------------------

    def _require_project(self) -> None:
        if not self.project_dir.is_dir():
            raise RepositoryError(f"Project directory {self.project_dir} does not exist")


def restore_saved_credentials(config: SetupConfig) -> bool:
    """Load values recorded by an earlier database stage into config.

    Fills the database name, password and bot token when the config leaves
    them to defaults. Returns True if a credentials record was found.
    """
    saved = EnvFile.load(config.credentials_file)
    if not saved.as_dict():
        return False

    db = config.database
    if "name" not in db.model_fields_set and saved.get("POSTGRES_DB"):
        db.name = saved.get("POSTGRES_DB")
    if not db.password and saved.get("POSTGRES_USER") == db.user:
        db.password = saved.get("POSTGRES_PASSWORD") or None
    if not config.bot_token and saved.get("BOT_TOKEN"):
        config.bot_token = saved.get("BOT_TOKEN")
    return True
