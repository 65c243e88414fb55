"""
Error taxonomy for setup stages.

Transient errors may succeed when the same action is tried again later
(network hiccups, lock contention, a flaky external process). Terminal
errors need intervention first (missing permissions, an unresolvable tool,
an invalid user-supplied value) and are never retried.
"""


class SetupError(Exception):
    """Base class for all bot-setup failures."""


class TransientError(SetupError):
    """A failure that is eligible for retry."""


class TerminalError(SetupError):
    """A failure that retrying cannot fix."""


class CommandError(TransientError):
    """An external command exited with a non-zero status.

    Attributes:
        args_list: The argv that was executed
        returncode: Process exit status
        stderr: Tail of the captured error output
    """

    def __init__(self, args_list: list[str], returncode: int, stderr: str = ""):
        self.args_list = list(args_list)
        self.returncode = returncode
        self.stderr = stderr.strip()
        message = f"`{' '.join(self.args_list)}` exited with code {returncode}"
        if self.stderr:
            message += f": {self.stderr.splitlines()[-1]}"
        super().__init__(message)


class CommandTimeout(TransientError):
    """An external command exceeded its bounded wait."""

    def __init__(self, args_list: list[str], timeout: float):
        self.args_list = list(args_list)
        self.timeout = timeout
        super().__init__(f"`{' '.join(self.args_list)}` timed out after {timeout:g}s")


class MissingToolError(TerminalError):
    """One or more required executables are not on PATH."""

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required tools: {', '.join(self.missing)}")


class RepositoryError(TerminalError):
    """The working copy is missing, corrupted or not a git repository."""


class ConfigurationError(TerminalError):
    """A required value is missing or invalid."""


class ServiceInactiveError(TerminalError):
    """A supervised unit is not active after being started."""


class UnhealableError(TerminalError):
    """A healer could not repair the environment."""

    def __init__(self, healer: str, reason: str):
        self.healer = healer
        self.reason = reason
        super().__init__(f"{healer}: {reason}")
