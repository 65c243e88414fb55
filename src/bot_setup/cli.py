"""
CLI argument parsing and interactive prompts for bot-setup.

This module handles command-line interface concerns separate from
the pipeline logic: logging setup, the resume prompt, collecting secrets
that have no safe default, and reporting the outcome.
"""

import argparse
import getpass
import logging
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .actions import SetupActions, restore_saved_credentials
from .commands import CommandRunner
from .config import SetupConfig, generate_password, load_config
from .errors import ConfigurationError
from .pipeline import PipelineExecutor, RetryExecutor, StageId, StateStore
from .pipeline.loader import create_setup_pipeline
from .repair import Repairer

logger = logging.getLogger(__name__)


def configure_logging(log_file: Path | None, verbose: bool = False) -> None:
    """Send log records to stderr and to a rotating, timestamped log file."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    root.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)-8s] %(name)s: %(message)s")
        )
        root.addHandler(file_handler)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="bot-setup",
        description="Install, configure and run the Discord bot as a resumable, self-healing pipeline.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Interactive setup (prompts for credentials and whether to resume)
  bot-setup

  # Continue after the last completed stage without asking
  bot-setup --resume

  # Start over from the first stage
  bot-setup --fresh

  # Show progress / forget progress
  bot-setup status
  bot-setup reset

  # Repair an existing installation (.env, database, unit file, service)
  bot-setup repair
""",
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=["run", "status", "reset", "repair"],
        help="What to do (default: run)",
    )

    parser.add_argument(
        "--config",
        type=str,
        help="Path to a YAML configuration file (default: ~/.bot-setup/config.yaml if present)",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--resume",
        action="store_true",
        help="Resume after the last completed stage without prompting",
    )
    mode.add_argument(
        "--fresh",
        action="store_true",
        help="Discard recorded progress and start from the first stage",
    )

    parser.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Skip confirmation prompts",
    )

    parser.add_argument(
        "--no-input",
        action="store_true",
        help="Never prompt; fail if a required secret is missing",
    )

    parser.add_argument(
        "--state-file",
        type=str,
        help="Override the pipeline state file location",
    )

    parser.add_argument(
        "--log-file",
        type=str,
        help="Override the log file location (default: ~/.bot-setup/setup.log)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show debug logging on the console",
    )

    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Interactive prompts
# ---------------------------------------------------------------------------


def prompt_with_default(label: str, default: str) -> str:
    """Prompt for a value, returning the default on empty input."""
    response = input(f"{label} [{default}]: ").strip()
    return response or default


def prompt_secret(label: str, default: str | None = None, required: bool = True) -> str | None:
    """Prompt for hidden input. Loops until non-empty when required without a default."""
    suffix = " [press Enter to keep generated value]" if default else ""
    while True:
        value = getpass.getpass(f"{label}{suffix}: ").strip()
        if value:
            return value
        if default:
            return default
        if not required:
            return None
        print(f"{label} is required.")


def prompt_for_port(default: int) -> int:
    response = input(f"Database port [{default}]: ").strip()
    if not response:
        return default
    try:
        value = int(response)
        if 0 < value < 65536:
            return value
        print(f"Must be between 1 and 65535. Using default: {default}")
    except ValueError:
        print(f"Invalid number. Using default: {default}")
    return default


def collect_inputs(config: SetupConfig, pending: list[str], interactive: bool) -> None:
    """Fill in values the pending stages need.

    Reuses credentials recorded by an earlier run, offers generated
    defaults for database settings, and asks for the bot token, which has
    no safe default.

    Raises:
        ConfigurationError: A required value is missing and prompting is off
    """
    restore_saved_credentials(config)
    db = config.database

    if StageId.DATABASE_CONFIGURED.value in pending:
        default_password = db.password or generate_password()
        if interactive:
            print("\nDatabase configuration (press Enter for defaults):")
            db.name = prompt_with_default("Database name", db.name)
            db.user = prompt_with_default("Database user", db.user)
            db.password = prompt_secret("Database password", default=default_password)
            db.host = prompt_with_default("Database host", db.host)
            db.port = prompt_for_port(db.port)
            db.superuser = prompt_with_default("PostgreSQL superuser", db.superuser)
            if not db.superuser_password and not db.admin_via_sudo:
                db.superuser_password = prompt_secret(
                    "PostgreSQL superuser password (Enter to use .pgpass/peer auth)",
                    required=False,
                )
        else:
            db.password = default_password

    if StageId.ENV_CONFIGURED.value in pending:
        if not db.password:
            if not interactive:
                raise ConfigurationError(
                    "Database password unknown; set BOT_SETUP_DB_PASSWORD or run with --fresh"
                )
            db.password = prompt_secret("Database password")

        if not config.bot_token:
            if not interactive:
                raise ConfigurationError("Discord bot token is required; set BOT_TOKEN")
            print("\nTo get a bot token, visit: https://discord.com/developers/applications")
            config.bot_token = prompt_secret("Discord Bot Token")


def prompt_yes_no(question: str, default: bool = True) -> bool:
    """Ask a yes/no question; Enter takes the default."""
    hint = "[Y/n]" if default else "[y/N]"
    response = input(f"{question} {hint} ").strip().lower()
    if not response:
        return default
    return response in ("y", "yes")


def confirm_service_options(config: SetupConfig) -> None:
    """Ask whether to create, enable and start the service and add aliases.

    The configured values are offered as defaults.
    """
    svc = config.service
    print("\nService setup:")
    svc.enabled = prompt_yes_no("Create a systemd service to auto-start the bot?", svc.enabled)
    if not svc.enabled:
        return
    svc.enable_on_boot = prompt_yes_no("Enable the service to start on boot?", svc.enable_on_boot)
    svc.start_now = prompt_yes_no("Start the bot service now?", svc.start_now)
    svc.aliases = prompt_yes_no(
        "Add botstart/botstop/botstatus/botlogs aliases to your shell?", svc.aliases,
    )


def confirm_resume(executor: PipelineExecutor, args: argparse.Namespace) -> bool:
    """Decide between resuming and starting fresh."""
    if args.fresh:
        return False
    if args.resume:
        return True

    last = executor.last_completed()
    if last is None or args.yes or args.no_input:
        return True

    print("\n--- Previous Setup Found ---")
    print(f"  Last completed: {last}")
    pending = [s.name for s in executor.pending_stages(resume=True)]
    print(f"  Remaining:      {', '.join(pending) if pending else '(none)'}")
    print("----------------------------\n")

    response = input(f"Resume after '{last}'? [Y/n] ").strip().lower()
    return not response or response in ("y", "yes")


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 60:
        return f"{int(seconds)}s"
    elif seconds < 3600:
        mins = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{mins}m {secs}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m"


def display_final_instructions(config: SetupConfig) -> None:
    """Print post-setup guidance."""
    project = config.repository.path
    service = config.service.name

    print(f"\n{'='*60}")
    print("✅ Setup Complete!")
    print(f"{'='*60}\n")

    if config.service.enabled and sys.platform.startswith("linux"):
        print("Bot is running as a systemd service. Quick commands:")
        print(f"  - Start:   botstart    (sudo systemctl start {service})")
        print(f"  - Stop:    botstop     (sudo systemctl stop {service})")
        print(f"  - Status:  botstatus   (sudo systemctl status {service})")
        print(f"  - Logs:    botlogs     (sudo journalctl -u {service} -f)")
    else:
        print("To start the bot manually, run:")
        print(f"  cd {project}")
        print(f"  {' '.join(config.service.start_command)}")

    print("\nImportant files:")
    print(f"  - Environment: {project / '.env'}")
    print(f"  - Credentials: {config.credentials_file}")
    print(f"  - Log:         {config.log_file}")
    print("\nSecurity reminders:")
    print("  - Keep the credentials file secure")
    print("  - Never commit .env to version control")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def build_executor(config: SetupConfig, runner: CommandRunner) -> PipelineExecutor:
    stages = create_setup_pipeline(config, runner, actions=SetupActions(config, runner))
    return PipelineExecutor(
        stages=stages,
        store=StateStore(config.state_file),
        retry=RetryExecutor(config.retry.to_policy()),
    )


def run_setup(config: SetupConfig, args: argparse.Namespace) -> int:
    """Handle the 'run' command. Returns the process exit code."""
    runner = CommandRunner()
    executor = build_executor(config, runner)

    resume = confirm_resume(executor, args)
    pending = [s.name for s in executor.pending_stages(resume)]
    interactive = not args.no_input and sys.stdin.isatty()

    try:
        collect_inputs(config, pending, interactive)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if (
        interactive
        and not args.yes
        and StageId.SERVICE_CREATED.value in pending
        and config.service.enabled
        and sys.platform.startswith("linux")
    ):
        confirm_service_options(config)

    # Stage actions close over this config, so rebuild after collecting inputs
    executor = build_executor(config, runner)

    start_time = time.time()
    result = executor.run(resume=resume)
    duration = format_duration(time.time() - start_time)

    if result.ok:
        display_final_instructions(config)
        print(f"Finished in {duration}")
        return 0

    kind = "terminal" if result.terminal else "transient"
    print(f"\n{'='*60}", file=sys.stderr)
    print(f"❌ SETUP FAILED at stage '{result.failed_stage}' ({kind})", file=sys.stderr)
    print(f"   Cause: {result.cause}", file=sys.stderr)
    if result.completed or result.skipped:
        print("   Progress saved; re-run with --resume to continue", file=sys.stderr)
    print(f"   Log: {config.log_file}", file=sys.stderr)
    print(f"{'='*60}", file=sys.stderr)
    return 1


def run_status(config: SetupConfig) -> int:
    executor = build_executor(config, CommandRunner())
    last = executor.last_completed()
    print(f"State file:     {config.state_file}")
    print(f"Last completed: {last or '(none)'}")
    pending = [s.name for s in executor.pending_stages(resume=True)]
    print(f"Remaining:      {', '.join(pending)}")
    return 0


def run_reset(config: SetupConfig, args: argparse.Namespace) -> int:
    store = StateStore(config.state_file)
    if not store.exists():
        print("No recorded progress.")
        return 0
    if not args.yes and not args.no_input:
        response = input("Forget recorded setup progress? [y/N] ").strip().lower()
        if response not in ("y", "yes"):
            print("Cancelled.")
            return 0
    store.clear()
    print("Setup progress cleared.")
    return 0


def run_repair(config: SetupConfig) -> int:
    restore_saved_credentials(config)
    steps = Repairer(config, CommandRunner()).run()

    print(f"\n{'='*60}")
    print("🔧 Repair summary")
    print(f"{'='*60}")
    for step in steps:
        mark = "✅" if step.ok else "❌"
        print(f"  {mark} {step.name:<10} {step.detail}")
    return 0 if all(step.ok for step in steps) else 1


def main(argv: list[str] | None = None) -> None:
    """Parse arguments and dispatch to the selected command."""
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(2)

    if args.state_file:
        config.state_path = Path(args.state_file).expanduser()
    log_file = Path(args.log_file).expanduser() if args.log_file else config.log_file
    configure_logging(log_file, verbose=args.verbose)
    logger.info("bot-setup %s started", args.command)

    if args.command == "status":
        sys.exit(run_status(config))
    if args.command == "reset":
        sys.exit(run_reset(config, args))
    if args.command == "repair":
        sys.exit(run_repair(config))

    sys.exit(run_setup(config, args))
