"""
Bot Setup - Install and run the SnailyCAD Discord bot as a resumable pipeline.

Each stage records its completion so an interrupted run picks up where it
stopped; failing stages are retried and then handed to a healer.
"""

from .commands import CommandResult, CommandRunner
from .config import SetupConfig, load_config
from .errors import SetupError, TerminalError, TransientError, UnhealableError
from .pipeline import PipelineExecutor, PipelineResult, StageId, StateStore


__all__ = [
    "main",
    "CommandResult",
    "CommandRunner",
    "PipelineExecutor",
    "PipelineResult",
    "SetupConfig",
    "SetupError",
    "StageId",
    "StateStore",
    "TerminalError",
    "TransientError",
    "UnhealableError",
    "load_config",
]


def main() -> None:
    """Main entry point for the bot-setup CLI."""
    from .cli import main as cli_main
    try:
        cli_main()
    except KeyboardInterrupt:
        print()
        raise SystemExit(130)
