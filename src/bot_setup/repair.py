"""
Post-install repair for an existing bot installation.

Fixes the problems most often seen after setup: a malformed DATABASE_URL or
DB_PORT in .env, a database role or database that went missing, a
deprecated directive in the unit file, missing shell aliases, and a service
that isn't running.
"""

import logging
import shutil
import time
from dataclasses import dataclass
from typing import Callable

from .commands import CommandRunner
from .config import SetupConfig
from .database import DatabaseAdmin
from .envfile import EnvFile, database_url, mask_url, normalize_port
from .errors import SetupError
from .healers import ServiceLivenessHealer
from .service import ServiceSupervisor, find_shell_rc, install_aliases

logger = logging.getLogger(__name__)


@dataclass
class RepairStep:
    """Outcome of one repair step."""
    name: str
    ok: bool
    detail: str = ""


class Repairer:
    """Runs the repair steps against an installed bot.

    Args:
        config: Configuration locating the installation
        runner: CommandRunner for psql/systemctl
        admin: DatabaseAdmin (built from config when None)
        supervisor: ServiceSupervisor (built from config when None)
        sleep: Blocking delay (injectable for tests)
    """

    def __init__(
        self,
        config: SetupConfig,
        runner: CommandRunner,
        admin: DatabaseAdmin | None = None,
        supervisor: ServiceSupervisor | None = None,
        sleep: Callable[[float], None] = time.sleep,
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
        self.sleep = sleep

    @property
    def env_path(self):
        return self.config.repository.path / ".env"

    def run(self) -> list[RepairStep]:
        """Run every step, continuing past failures."""
        steps = []
        for name, step in (
            ("env", self.fix_env),
            ("database", self.fix_database),
            ("unit-file", self.fix_unit_file),
            ("aliases", self.fix_aliases),
            ("service", self.fix_service),
        ):
            try:
                outcome = step()
            except (SetupError, OSError) as e:
                outcome = RepairStep(name, ok=False, detail=str(e))
            logger.info("Repair %s: %s %s", outcome.name, "ok" if outcome.ok else "FAILED", outcome.detail)
            steps.append(outcome)
        return steps

    def fix_env(self) -> RepairStep:
        """Normalise DB_PORT and rewrite DATABASE_URL from the .env values."""
        if not self.env_path.is_file():
            return RepairStep("env", ok=False, detail=f"{self.env_path} not found")

        shutil.copyfile(self.env_path, self.env_path.with_name(".env.backup"))
        env = EnvFile.load(self.env_path)

        port = normalize_port(env.get("DB_PORT"))
        url = database_url(
            env.get("POSTGRES_USER", ""),
            env.get("POSTGRES_PASSWORD", ""),
            env.get("DB_HOST", "localhost"),
            port,
            env.get("POSTGRES_DB", ""),
        )
        env.update({"DB_PORT": str(port), "DATABASE_URL": url})
        env.save()
        return RepairStep("env", ok=True, detail=f"DATABASE_URL={mask_url(url)}")

    def fix_database(self) -> RepairStep:
        """Test the app login; recreate the role/database if it fails."""
        env = EnvFile.load(self.env_path)
        user = env.get("POSTGRES_USER") or self.config.database.user
        password = env.get("POSTGRES_PASSWORD") or self.config.database.password or ""
        name = env.get("POSTGRES_DB") or self.config.database.name
        host = env.get("DB_HOST") or self.config.database.host
        port = normalize_port(env.get("DB_PORT") or self.config.database.port)

        if self.admin.test_connection(user, password, name, host=host, port=port):
            return RepairStep("database", ok=True, detail="connection successful")

        logger.warning("Database connection failed, checking role and database")
        self.admin.ensure_role(user, password)
        self.admin.ensure_database(name, user)
        self.admin.grant_all(name, user)

        self.sleep(2)
        if self.admin.test_connection(user, password, name, host=host, port=port):
            return RepairStep("database", ok=True, detail="connection restored")
        return RepairStep(
            "database", ok=False,
            detail=f"connection still failing; check {self.config.credentials_file}",
        )

    def fix_unit_file(self) -> RepairStep:
        """Replace the deprecated MemoryLimit= directive with MemoryMax=."""
        unit = self.supervisor.unit_path
        if not unit.is_file():
            return RepairStep("unit-file", ok=True, detail=f"{unit} not installed")

        content = unit.read_text(encoding="utf-8")
        if "MemoryLimit=" not in content:
            return RepairStep("unit-file", ok=True, detail="already current")

        self.supervisor.install_unit(content.replace("MemoryLimit=", "MemoryMax="))
        return RepairStep("unit-file", ok=True, detail="MemoryLimit replaced with MemoryMax")

    def fix_aliases(self) -> RepairStep:
        if not self.config.service.aliases:
            return RepairStep("aliases", ok=True, detail="disabled")
        rc_file = find_shell_rc()
        if rc_file is None:
            return RepairStep("aliases", ok=False, detail="no ~/.bashrc or ~/.zshrc found")
        added = install_aliases(self.config.service.name, rc_file)
        return RepairStep("aliases", ok=True, detail=f"{'added to' if added else 'present in'} {rc_file}")

    def fix_service(self) -> RepairStep:
        """Restart the service and confirm it stays up."""
        self.supervisor.restart()
        self.sleep(3)
        if self.supervisor.is_active():
            return RepairStep("service", ok=True, detail="running")

        healer = ServiceLivenessHealer(
            self.supervisor,
            ceiling=self.config.service.restart_ceiling,
            sleep=self.sleep,
        )
        outcome = healer.heal()
        if outcome.healed:
            return RepairStep("service", ok=True, detail=outcome.reason)

        logs = self.supervisor.recent_logs()
        if logs:
            logger.error("Recent %s logs:\n%s", self.supervisor.name, logs)
        return RepairStep("service", ok=False, detail=outcome.reason)
