"""Shared fixtures: a scripted stand-in for CommandRunner."""

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from bot_setup.commands import CommandResult
from bot_setup.config import DatabaseSettings, RepositorySettings, SetupConfig
from bot_setup.errors import CommandError


@dataclass
class Call:
    args: list[str]
    cwd: str | None = None
    env: dict | None = None
    input: str | None = None
    privileged: bool = False


@dataclass
class _Response:
    prefix: tuple
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    raises: Exception | None = None
    effect: object = None
    times: int | None = None


@dataclass
class FakeRunner:
    """Records commands and answers them from scripted responses.

    Responses match on an argv prefix; the first live match wins. A
    response with ``times`` is used that many times and then dropped.
    Unmatched commands succeed with empty output.
    """
    available: set = field(default_factory=set)
    calls: list = field(default_factory=list)
    responses: list = field(default_factory=list)
    use_sudo: bool = False

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.available else None

    def on(self, *prefix, returncode=0, stdout="", stderr="", raises=None, effect=None, times=None):
        self.responses.append(_Response(
            prefix=tuple(prefix), returncode=returncode, stdout=stdout,
            stderr=stderr, raises=raises, effect=effect, times=times,
        ))
        return self

    def run(self, args, *, check=True, timeout=None, cwd=None, env=None, input=None, privileged=False):
        argv = list(args)
        self.calls.append(Call(argv, cwd=cwd, env=env, input=input, privileged=privileged))

        response = None
        for candidate in self.responses:
            if tuple(argv[:len(candidate.prefix)]) == candidate.prefix:
                response = candidate
                break

        if response is None:
            return CommandResult(argv, 0)

        if response.times is not None:
            response.times -= 1
            if response.times <= 0:
                self.responses.remove(response)

        if response.effect is not None:
            response.effect(argv)
        if response.raises is not None:
            raise response.raises

        result = CommandResult(argv, response.returncode, response.stdout, response.stderr)
        if check and not result.ok:
            raise CommandError(argv, result.returncode, result.stderr)
        return result

    def commands(self, *prefix):
        """argv lists of recorded calls, optionally filtered by prefix."""
        return [c.args for c in self.calls if tuple(c.args[:len(prefix)]) == prefix]


@pytest.fixture
def runner():
    return FakeRunner(available={"git", "node", "npm", "yarn", "psql"})


@pytest.fixture
def config(tmp_path: Path) -> SetupConfig:
    """Config rooted in tmp_path with fixed database values."""
    return SetupConfig(
        repository=RepositorySettings(install_root=tmp_path / "home"),
        database=DatabaseSettings(name="snailycad_test", password="s3cret"),
        state_dir=tmp_path / "state",
        bot_token="token-123",
    )
