"""
systemd supervision for the bot process.

Renders and installs the unit file, wraps systemctl/journalctl, and manages
the optional shell aliases for day-to-day service control.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .commands import CommandRunner

logger = logging.getLogger(__name__)

UNIT_DIR = Path("/etc/systemd/system")


@dataclass
class UnitSpec:
    """Values substituted into the unit template."""
    name: str
    description: str
    user: str
    working_directory: str
    exec_start: str
    after: str = "network.target postgresql.service"
    wants: str = "postgresql.service"
    restart_sec: int = 10


UNIT_TEMPLATE = """\
[Unit]
Description={description}
After={after}
Wants={wants}

[Service]
Type=simple
User={user}
WorkingDirectory={working_directory}
ExecStart={exec_start}
Restart=always
RestartSec={restart_sec}
StandardOutput=journal
StandardError=journal
SyslogIdentifier={name}

[Install]
WantedBy=multi-user.target
"""


def render_unit(unit: UnitSpec) -> str:
    """Render a systemd unit file for the bot."""
    return UNIT_TEMPLATE.format(
        name=unit.name,
        description=unit.description,
        user=unit.user,
        working_directory=unit.working_directory,
        exec_start=unit.exec_start,
        after=unit.after,
        wants=unit.wants,
        restart_sec=unit.restart_sec,
    )


class ServiceSupervisor:
    """systemctl operations for a single unit.

    Args:
        runner: CommandRunner (privileged calls go through sudo)
        name: Unit name without the .service suffix
        unit_dir: Directory unit files are installed into
    """

    def __init__(self, runner: CommandRunner, name: str, unit_dir: Path = UNIT_DIR):
        self.runner = runner
        self.name = name
        self.unit_dir = Path(unit_dir)

    @property
    def unit_path(self) -> Path:
        return self.unit_dir / f"{self.name}.service"

    def _systemctl(self, *args: str, check: bool = True):
        return self.runner.run(["systemctl", *args], privileged=True, check=check)

    def install_unit(self, content: str) -> bool:
        """Install the unit file. Returns False if it was already up to date."""
        if self.unit_path.is_file() and self.unit_path.read_text(encoding="utf-8") == content:
            logger.info("Unit file %s already up to date", self.unit_path)
            return False

        fd, temp_path = tempfile.mkstemp(prefix=f"{self.name}-", suffix=".service")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            self.runner.run(
                ["install", "-m", "644", temp_path, str(self.unit_path)], privileged=True,
            )
        finally:
            os.unlink(temp_path)

        self.daemon_reload()
        logger.info("Installed unit file %s", self.unit_path)
        return True

    def daemon_reload(self) -> None:
        self._systemctl("daemon-reload")

    def enable(self) -> None:
        self._systemctl("enable", self.name)

    def start(self) -> None:
        self._systemctl("start", self.name)

    def stop(self) -> None:
        self._systemctl("stop", self.name)

    def restart(self) -> None:
        self._systemctl("restart", self.name)

    def is_active(self) -> bool:
        result = self.runner.run(
            ["systemctl", "is-active", "--quiet", self.name], check=False,
        )
        return result.ok

    def recent_logs(self, lines: int = 20) -> str:
        result = self.runner.run(
            ["journalctl", "-u", self.name, "-n", str(lines), "--no-pager"],
            privileged=True,
            check=False,
        )
        return result.stdout


# ---------------------------------------------------------------------------
# Shell aliases
# ---------------------------------------------------------------------------


def alias_marker(service: str) -> str:
    return f"# {service} aliases"


def render_aliases(service: str) -> str:
    return "\n".join([
        "",
        alias_marker(service),
        f"alias botstart='sudo systemctl start {service}'",
        f"alias botstop='sudo systemctl stop {service}'",
        f"alias botrestart='sudo systemctl restart {service}'",
        f"alias botstatus='sudo systemctl status {service}'",
        f"alias botlogs='sudo journalctl -u {service} -f'",
        "",
    ])


def find_shell_rc(home: Path | None = None) -> Path | None:
    """Return the first existing shell startup file (~/.bashrc, then ~/.zshrc)."""
    home = home or Path.home()
    for candidate in (".bashrc", ".zshrc"):
        path = home / candidate
        if path.is_file():
            return path
    return None


def install_aliases(service: str, rc_file: Path) -> bool:
    """Append service aliases to rc_file once. Returns False if already present."""
    existing = rc_file.read_text(encoding="utf-8") if rc_file.exists() else ""
    if alias_marker(service) in existing:
        return False
    with rc_file.open("a", encoding="utf-8") as f:
        f.write(render_aliases(service))
    logger.info("Added %s aliases to %s", service, rc_file)
    return True
