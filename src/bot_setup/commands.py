"""
Subprocess boundary for setup actions.

Every external collaborator (package managers, git, psql, systemctl, yarn)
is invoked through a CommandRunner so that each call has a bounded wait and
failures surface as CommandError / CommandTimeout.
"""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass

from .errors import CommandError, CommandTimeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120

# Long-running steps (clone, install, build) get more room
LONG_TIMEOUT = 1800


@dataclass
class CommandResult:
    """Captured outcome of an external command."""
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs external commands with a timeout and optional privilege escalation.

    Args:
        use_sudo: Prefix privileged commands with sudo. Defaults to True
            unless running as root.
        default_timeout: Timeout in seconds when a call doesn't give one
    """

    def __init__(self, use_sudo: bool | None = None, default_timeout: float = DEFAULT_TIMEOUT):
        if use_sudo is None:
            use_sudo = hasattr(os, "geteuid") and os.geteuid() != 0
        self.use_sudo = use_sudo
        self.default_timeout = default_timeout

    def which(self, name: str) -> str | None:
        """Return the resolved path of an executable, or None."""
        return shutil.which(name)

    def run(
        self,
        args: list[str],
        *,
        check: bool = True,
        timeout: float | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        input: str | None = None,
        privileged: bool = False,
    ) -> CommandResult:
        """Run a command and capture its output.

        Args:
            args: argv to execute
            check: Raise CommandError on a non-zero exit
            timeout: Bounded wait in seconds
            cwd: Working directory
            env: Extra environment variables merged over os.environ
            input: Text fed to stdin
            privileged: Run through sudo when use_sudo is set

        Returns:
            CommandResult with exit code and decoded output.

        Raises:
            CommandError: Non-zero exit with check=True, or executable not found
            CommandTimeout: The command exceeded its timeout
        """
        argv = list(args)
        if privileged and self.use_sudo:
            argv = ["sudo"] + argv
        timeout = timeout if timeout is not None else self.default_timeout

        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        logger.debug("Running: %s (cwd=%s, timeout=%ss)", " ".join(argv), cwd or ".", timeout)
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=cwd,
                env=full_env,
                input=input,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(argv, timeout) from e
        except FileNotFoundError as e:
            raise CommandError(argv, 127, f"{argv[0]}: command not found") from e

        result = CommandResult(
            args=argv,
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
        if result.returncode != 0:
            logger.debug(
                "%s failed (exit %d): %s",
                " ".join(argv), result.returncode, result.stderr.strip(),
            )
            if check:
                raise CommandError(argv, result.returncode, result.stderr)
        return result
