"""
Stage healers.

A healer is consulted when a stage's action fails. It inspects the
environment, attempts a repair, and reports whether retrying the action can
now succeed. Some problems can't be repaired in place; the healer then asks
its caller to purge the damaged state and re-acquire it (see PurgingHealer).
"""

import logging
import socket
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .commands import LONG_TIMEOUT, CommandRunner
from .errors import SetupError
from .pipeline.retry import RetryExecutor, RetryPolicy
from .service import ServiceSupervisor

logger = logging.getLogger(__name__)


@dataclass
class HealResult:
    """Outcome of a heal() call.

    Attributes:
        healed: The environment was repaired (or found healthy)
        reason: Why healing failed, or what was done
        purge_required: The damaged state must be discarded and re-acquired
            by the caller before the action can succeed
    """
    healed: bool
    reason: str = ""
    purge_required: bool = False

    @classmethod
    def ok(cls, reason: str = "") -> "HealResult":
        return cls(healed=True, reason=reason)

    @classmethod
    def unhealable(cls, reason: str) -> "HealResult":
        return cls(healed=False, reason=reason)

    @classmethod
    def purge(cls, reason: str) -> "HealResult":
        return cls(healed=False, reason=reason, purge_required=True)


class Healer(ABC):
    """Base class for stage repair capabilities."""

    name: str = "healer"

    @abstractmethod
    def heal(self) -> HealResult:
        """Attempt to bring the environment into a state where the stage can succeed."""


# ---------------------------------------------------------------------------
# Combinators
# ---------------------------------------------------------------------------


class HealerChain(Healer):
    """Runs several healers in order, stopping at the first that can't heal.

    Args:
        healers: Healers to run, in order
    """

    name = "chain"

    def __init__(self, healers: list[Healer]):
        self.healers = healers

    def heal(self) -> HealResult:
        notes = []
        for healer in self.healers:
            result = healer.heal()
            if not result.healed:
                return result
            if result.reason:
                notes.append(f"{healer.name}: {result.reason}")
        return HealResult.ok("; ".join(notes))


class PurgingHealer(Healer):
    """Acts on a purge request from an inner healer.

    When the inner healer reports purge_required, the damaged state is
    discarded with ``purge`` and, if given, re-acquired with ``reacquire``.

    Args:
        inner: Healer that detects the damage
        purge: Discards the damaged state (e.g. delete the working copy)
        reacquire: Rebuilds it (e.g. clone again); None when the stage
            action itself re-acquires on the next attempt
    """

    def __init__(
        self,
        inner: Healer,
        purge: Callable[[], None],
        reacquire: Callable[[], None] | None = None,
    ):
        self.inner = inner
        self.purge = purge
        self.reacquire = reacquire
        self.name = inner.name

    def heal(self) -> HealResult:
        result = self.inner.heal()
        if result.healed or not result.purge_required:
            return result

        logger.warning("%s: %s; purging and re-acquiring", self.name, result.reason)
        try:
            self.purge()
            if self.reacquire is not None:
                self.reacquire()
        except (SetupError, OSError) as e:
            return HealResult.unhealable(f"purge/re-acquire failed: {e}")

        return HealResult.ok(f"purged after: {result.reason}")


# ---------------------------------------------------------------------------
# Network reachability
# ---------------------------------------------------------------------------


class NetworkHealer(Healer):
    """Probes an external address and cycles networking if it's unreachable.

    Args:
        runner: CommandRunner for interface cycling
        host: Probe host
        port: Probe TCP port
        timeout: Seconds per probe
        reprobe: Retry policy for the probes after cycling
        sleep: Blocking delay (injectable for tests)
    """

    name = "network"

    def __init__(
        self,
        runner: CommandRunner,
        host: str = "github.com",
        port: int = 443,
        timeout: float = 5.0,
        reprobe: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runner = runner
        self.host = host
        self.port = port
        self.timeout = timeout
        self.reprobe = reprobe or RetryPolicy(max_attempts=3, initial_delay=2.0, multiplier=2.0)
        self.sleep = sleep

    def probe(self) -> bool:
        """Return True if a TCP connection to the probe address succeeds."""
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                return True
        except OSError as e:
            logger.debug("Probe %s:%d failed: %s", self.host, self.port, e)
            return False

    def _require_probe(self) -> None:
        if not self.probe():
            raise OSError(f"{self.host}:{self.port} unreachable")

    def cycle_interface(self) -> bool:
        """Best-effort restart of local networking. Returns True if attempted."""
        if sys.platform.startswith("linux"):
            if self.runner.which("nmcli"):
                for state in ("off", "on"):
                    self.runner.run(["nmcli", "networking", state], privileged=True, check=False)
                return True
            if self.runner.which("ip"):
                route = self.runner.run(["ip", "route", "show", "default"], check=False)
                parts = route.stdout.split()
                if "dev" in parts and parts.index("dev") + 1 < len(parts):
                    iface = parts[parts.index("dev") + 1]
                    for state in ("down", "up"):
                        self.runner.run(
                            ["ip", "link", "set", iface, state], privileged=True, check=False,
                        )
                    return True
        elif sys.platform == "darwin" and self.runner.which("networksetup"):
            for state in ("off", "on"):
                self.runner.run(
                    ["networksetup", "-setairportpower", "en0", state],
                    privileged=True, check=False,
                )
            return True

        logger.info("No supported way to cycle the network interface on %s", sys.platform)
        return False

    def heal(self) -> HealResult:
        if self.probe():
            return HealResult.ok()

        logger.warning("%s:%d unreachable, cycling network interface", self.host, self.port)
        self.cycle_interface()

        executor = RetryExecutor(self.reprobe, sleep=self.sleep)
        try:
            executor.execute(self._require_probe, label="network probe")
        except OSError:
            return HealResult.unhealable(f"{self.host}:{self.port} still unreachable")
        return HealResult.ok("network restored")


# ---------------------------------------------------------------------------
# Dependency presence
# ---------------------------------------------------------------------------


@dataclass
class PackageManager:
    """A system package manager and how to install with it."""
    executable: str
    install: list[str]
    refresh: list[str] | None = None
    privileged: bool = True


# Probed in this order; the first one on PATH is used
PACKAGE_MANAGERS: list[PackageManager] = [
    PackageManager("apt-get", ["apt-get", "install", "-y"], refresh=["apt-get", "update"]),
    PackageManager("dnf", ["dnf", "install", "-y"]),
    PackageManager("yum", ["yum", "install", "-y"]),
    PackageManager("pacman", ["pacman", "-S", "--noconfirm"], refresh=["pacman", "-Sy"]),
    PackageManager("zypper", ["zypper", "--non-interactive", "install"]),
    PackageManager("apk", ["apk", "add"]),
    PackageManager("brew", ["brew", "install"], privileged=False),
]


@dataclass
class Tool:
    """A required executable and how to obtain it.

    Attributes:
        executable: Name looked up on PATH
        package: Default package name (the executable's name when None)
        packages: Per-package-manager overrides
        install: Command that installs the tool instead of a system
            package, e.g. ``npm install -g yarn``. Runs after the tools
            listed before it have been installed.
    """
    executable: str
    package: str | None = None
    packages: dict[str, str] = field(default_factory=dict)
    install: list[str] | None = None

    def package_for(self, manager: str) -> str:
        return self.packages.get(manager) or self.package or self.executable


class DependencyHealer(Healer):
    """Installs missing tools through the first available package manager.

    Tools are installed in list order, so a tool with its own install
    command can rely on the tools listed before it.

    Args:
        runner: CommandRunner used for lookups and installs
        tools: Required tools
        managers: Package managers in priority order
    """

    name = "dependencies"

    def __init__(
        self,
        runner: CommandRunner,
        tools: list[Tool],
        managers: list[PackageManager] | None = None,
    ):
        self.runner = runner
        self.tools = tools
        self.managers = managers if managers is not None else PACKAGE_MANAGERS
        self._refreshed = False

    def missing(self) -> list[Tool]:
        return [t for t in self.tools if not self.runner.which(t.executable)]

    def find_manager(self) -> PackageManager | None:
        for manager in self.managers:
            if self.runner.which(manager.executable):
                return manager
        return None

    def heal(self) -> HealResult:
        missing = self.missing()
        if not missing:
            return HealResult.ok()

        manager = self.find_manager()
        packaged = [t for t in missing if t.install is None]
        if packaged and manager is None:
            names = ", ".join(t.executable for t in packaged)
            return HealResult.unhealable(f"no supported package manager found to install: {names}")

        if packaged and manager.refresh and not self._refreshed:
            self.runner.run(
                manager.refresh, privileged=manager.privileged, check=False, timeout=LONG_TIMEOUT,
            )
            self._refreshed = True

        privileged = manager.privileged if manager is not None else True
        installed = []
        for tool in missing:
            if tool.install is not None:
                args = list(tool.install)
                source = " ".join(tool.install)
            else:
                package = tool.package_for(manager.executable)
                args = manager.install + [package]
                source = package
            logger.info("Installing %s with `%s`", tool.executable, " ".join(args))
            try:
                self.runner.run(args, privileged=privileged, timeout=LONG_TIMEOUT)
            except SetupError as e:
                return HealResult.unhealable(f"installing {source} failed: {e}")
            if not self.runner.which(tool.executable):
                return HealResult.unhealable(
                    f"{tool.executable} still missing after installing {source}"
                )
            installed.append(tool.executable)

        return HealResult.ok(f"installed {', '.join(installed)}")


# ---------------------------------------------------------------------------
# Repository integrity
# ---------------------------------------------------------------------------


class RepositoryHealer(Healer):
    """Repairs a git working copy in place, or asks for a fresh clone.

    Args:
        runner: CommandRunner for git
        path: Working copy location
        branch: Branch to check out (None = the remote's default)
    """

    name = "repository"

    def __init__(self, runner: CommandRunner, path: str | Path, branch: str | None = None):
        self.runner = runner
        self.path = Path(path)
        self.branch = branch

    def _git(self, *args: str, check: bool = True):
        return self.runner.run(["git", "-C", str(self.path), *args], check=check)

    def heal(self) -> HealResult:
        if not self.path.exists():
            return HealResult.ok("working copy absent, will clone")
        if not (self.path / ".git").exists():
            return HealResult.purge(f"{self.path} is not a git working copy")

        status = self._git("status", "--porcelain", check=False)
        if not status.ok:
            return HealResult.purge(f"git status failed: {status.stderr.strip()}")

        try:
            if status.stdout.strip():
                logger.info("Stashing local changes in %s", self.path)
                self._git("stash", "push", "--include-untracked", "-m", "bot-setup repair")
            self._git("fetch", "--prune", "origin")
            if self.branch:
                self._git("checkout", "-f", self.branch)
                self._git("reset", "--hard", f"origin/{self.branch}")
            else:
                self._git("reset", "--hard", "@{upstream}")
        except SetupError as e:
            return HealResult.purge(f"fetch/checkout repair failed: {e}")

        return HealResult.ok("working copy repaired")


# ---------------------------------------------------------------------------
# Dependency cache
# ---------------------------------------------------------------------------


class DependencyCacheHealer(Healer):
    """Detects a dependency cache that doesn't match its lockfile.

    Yarn writes an integrity marker inside node_modules after a complete
    install. A missing marker, or one older than the lockfile, means the
    cache is incomplete or stale.

    Args:
        project: Project directory
        cache_dir: Cache directory name inside the project
        lockfile: Lockfile name inside the project
        marker: Integrity marker path relative to the cache directory
    """

    name = "dependency-cache"

    def __init__(
        self,
        project: str | Path,
        cache_dir: str = "node_modules",
        lockfile: str = "yarn.lock",
        marker: str = ".yarn-integrity",
    ):
        self.project = Path(project)
        self.cache = self.project / cache_dir
        self.lockfile = self.project / lockfile
        self.marker = self.cache / marker

    def heal(self) -> HealResult:
        if not self.cache.exists():
            return HealResult.ok("no cache present")
        if not self.marker.exists():
            return HealResult.purge(f"{self.cache} has no integrity marker")
        if self.lockfile.exists() and self.lockfile.stat().st_mtime > self.marker.stat().st_mtime:
            return HealResult.purge(f"{self.lockfile.name} is newer than the installed cache")
        return HealResult.ok()


# ---------------------------------------------------------------------------
# Service liveness
# ---------------------------------------------------------------------------


class ServiceLivenessHealer(Healer):
    """Restarts an inactive service, up to a restart ceiling.

    The restart count persists for the lifetime of the healer, so repeated
    heal() calls never exceed the ceiling in total.

    Args:
        supervisor: ServiceSupervisor for the unit
        ceiling: Maximum restarts before manual intervention is required
        settle: Seconds to wait after a restart before checking liveness
        sleep: Blocking delay (injectable for tests)
    """

    name = "service-liveness"

    def __init__(
        self,
        supervisor: ServiceSupervisor,
        ceiling: int = 3,
        settle: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.supervisor = supervisor
        self.ceiling = ceiling
        self.settle = settle
        self.sleep = sleep
        self.restarts = 0

    def heal(self) -> HealResult:
        if self.supervisor.is_active():
            return HealResult.ok()

        while self.restarts < self.ceiling:
            self.restarts += 1
            logger.warning(
                "%s inactive, restart %d/%d",
                self.supervisor.name, self.restarts, self.ceiling,
            )
            try:
                self.supervisor.restart()
            except SetupError as e:
                logger.warning("Restart of %s failed: %s", self.supervisor.name, e)
                continue
            self.sleep(self.settle)
            if self.supervisor.is_active():
                return HealResult.ok(f"active after {self.restarts} restart(s)")

        return HealResult.unhealable(
            f"{self.supervisor.name} still inactive after {self.ceiling} restarts; "
            "manual intervention required"
        )
