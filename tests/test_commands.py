"""Tests for CommandRunner."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from bot_setup.commands import DEFAULT_TIMEOUT, CommandRunner
from bot_setup.errors import CommandError, CommandTimeout


def completed(returncode=0, stdout="", stderr=""):
    proc = MagicMock()
    proc.returncode = returncode
    proc.stdout = stdout
    proc.stderr = stderr
    return proc


class TestCommandRunner:

    def test_captures_output(self):
        """Happy: stdout returned with the default timeout."""
        with patch("bot_setup.commands.subprocess.run", return_value=completed(stdout="v20.0.0\n")) as run:
            result = CommandRunner(use_sudo=False).run(["node", "--version"])

        assert result.ok
        assert result.stdout == "v20.0.0\n"
        assert run.call_args[0][0] == ["node", "--version"]
        assert run.call_args[1]["timeout"] == DEFAULT_TIMEOUT

    def test_privileged_uses_sudo(self):
        """Happy: privileged commands prefixed with sudo when enabled."""
        with patch("bot_setup.commands.subprocess.run", return_value=completed()) as run:
            CommandRunner(use_sudo=True).run(["systemctl", "start", "bot"], privileged=True)
            CommandRunner(use_sudo=True).run(["git", "status"])

        assert run.call_args_list[0][0][0] == ["sudo", "systemctl", "start", "bot"]
        assert run.call_args_list[1][0][0] == ["git", "status"]

    def test_env_merged_over_environment(self, monkeypatch):
        """Happy: extra variables added to the inherited environment."""
        monkeypatch.setenv("EXISTING", "1")
        with patch("bot_setup.commands.subprocess.run", return_value=completed()) as run:
            CommandRunner(use_sudo=False).run(["psql"], env={"PGPASSWORD": "pw"})

        env = run.call_args[1]["env"]
        assert env["PGPASSWORD"] == "pw"
        assert env["EXISTING"] == "1"

    def test_non_zero_exit_raises(self):
        """Failure: check=True raises with the last stderr line."""
        proc = completed(returncode=128, stderr="Cloning...\nfatal: repository not found\n")
        with patch("bot_setup.commands.subprocess.run", return_value=proc):
            with pytest.raises(CommandError) as exc_info:
                CommandRunner(use_sudo=False).run(["git", "clone", "x"])

        assert exc_info.value.returncode == 128
        assert str(exc_info.value) == "`git clone x` exited with code 128: fatal: repository not found"

    def test_non_zero_exit_without_check(self):
        """Happy: check=False returns the failed result."""
        with patch("bot_setup.commands.subprocess.run", return_value=completed(returncode=3)):
            result = CommandRunner(use_sudo=False).run(["systemctl", "is-active", "bot"], check=False)
        assert not result.ok

    def test_timeout(self):
        """Failure: a hung command becomes CommandTimeout."""
        error = subprocess.TimeoutExpired(cmd=["yarn", "install"], timeout=5)
        with patch("bot_setup.commands.subprocess.run", side_effect=error):
            with pytest.raises(CommandTimeout, match="timed out after 5s"):
                CommandRunner(use_sudo=False).run(["yarn", "install"], timeout=5)

    def test_missing_executable(self):
        """Failure: unknown executable is reported as exit 127."""
        with patch("bot_setup.commands.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(CommandError) as exc_info:
                CommandRunner(use_sudo=False).run(["nonexistent-tool"])
        assert exc_info.value.returncode == 127
