"""
Setup configuration.

A single SetupConfig object carries every value the stages need. It is
loaded from an optional YAML file, validated with Pydantic, and passed
explicitly into each stage action and healer.
"""

import logging
import os
import secrets
import string
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from .healers import Tool
from .pipeline.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path.home() / ".bot-setup"
DEFAULT_CONFIG_PATH = DEFAULT_STATE_DIR / "config.yaml"


def generate_password(length: int = 16) -> str:
    """Random alphanumeric password."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_db_name(prefix: str = "snailycad") -> str:
    """Random database name such as ``snailycad_1a2b3c4d``."""
    return f"{prefix}_{secrets.token_hex(4)}"


# ---------------------------------------------------------------------------
# Pydantic Schema Models
# ---------------------------------------------------------------------------


class RepositorySettings(BaseModel):
    """Where the bot's source comes from and where it goes."""

    url: str = "https://github.com/SnailyCAD/snailycad-bot.git"
    directory: str = "snailycad-bot"
    branch: str | None = None
    install_root: Path = Field(default_factory=Path.home)

    @property
    def path(self) -> Path:
        return Path(self.install_root).expanduser() / self.directory


class DatabaseSettings(BaseModel):
    """PostgreSQL database, application role and admin access."""

    name: str = Field(default_factory=generate_db_name)
    user: str = "snailycad_user"
    password: str | None = None
    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    superuser: str = "postgres"
    superuser_password: str | None = None
    admin_via_sudo: bool = False
    local_service: str | None = "postgresql"

    @field_validator("name", "user")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        """Identifiers must be plain names; they're quoted by psql, not escaped here."""
        if not v or not (v[0].isalpha() or v[0] == "_") or not all(c.isalnum() or c == "_" for c in v):
            raise ValueError(f"Invalid identifier: {v!r}")
        return v


class ServiceSettings(BaseModel):
    """systemd unit for the running bot."""

    name: str = "snailycad-bot"
    description: str = "SnailyCAD Discord Bot"
    enabled: bool = True
    enable_on_boot: bool = True
    start_now: bool = True
    aliases: bool = True
    restart_ceiling: int = Field(default=3, ge=0)
    start_command: list[str] = Field(default_factory=lambda: ["yarn", "start"])


class RetrySettings(BaseModel):
    """Default retry policy for stage actions."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=2.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            multiplier=self.multiplier,
        )


class NetworkSettings(BaseModel):
    """Address probed by the network healer."""

    probe_host: str = "github.com"
    probe_port: int = Field(default=443, ge=1, le=65535)
    probe_timeout: float = Field(default=5.0, gt=0)


class ToolSettings(BaseModel):
    """A required executable, its package names or its own install command."""

    executable: str
    package: str | None = None
    packages: dict[str, str] = Field(default_factory=dict)
    install: list[str] | None = None

    def to_tool(self) -> Tool:
        return Tool(
            executable=self.executable,
            package=self.package,
            packages=dict(self.packages),
            install=list(self.install) if self.install is not None else None,
        )


def _default_tools() -> list[ToolSettings]:
    return [
        ToolSettings(executable="git", package="git"),
        ToolSettings(executable="node", package="nodejs"),
        ToolSettings(executable="npm", package="npm", packages={"brew": "node"}),
        # Distribution yarn packages install under other names (Debian: yarnpkg)
        ToolSettings(executable="yarn", install=["npm", "install", "-g", "yarn"]),
        ToolSettings(
            executable="psql",
            package="postgresql",
            packages={"apt-get": "postgresql-client", "apk": "postgresql-client", "brew": "libpq"},
        ),
    ]


class SetupConfig(BaseModel):
    """Complete configuration for one setup run."""

    repository: RepositorySettings = Field(default_factory=RepositorySettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    network: NetworkSettings = Field(default_factory=NetworkSettings)
    tools: list[ToolSettings] = Field(default_factory=_default_tools)
    bot_token: str | None = None
    node_min_major: int = 18
    state_dir: Path = DEFAULT_STATE_DIR
    state_path: Path | None = None

    @property
    def state_file(self) -> Path:
        if self.state_path is not None:
            return Path(self.state_path).expanduser()
        return Path(self.state_dir).expanduser() / "state.json"

    @property
    def credentials_file(self) -> Path:
        return Path(self.state_dir).expanduser() / "credentials.env"

    @property
    def log_file(self) -> Path:
        return Path(self.state_dir).expanduser() / "setup.log"


# ---------------------------------------------------------------------------
# Loader Functions
# ---------------------------------------------------------------------------


def load_config(path: str | Path | None = None) -> SetupConfig:
    """Load a SetupConfig from YAML.

    With no path, ~/.bot-setup/config.yaml is used if it exists; otherwise
    defaults apply. Environment variables BOT_TOKEN,
    BOT_SETUP_DB_PASSWORD and BOT_SETUP_PG_SUPERUSER_PASSWORD fill secrets
    the file leaves out.

    Raises:
        FileNotFoundError: If an explicit path doesn't exist
        ValueError: If the YAML is invalid or fails validation
    """
    data: dict = {}

    if path is not None:
        path = Path(path).expanduser()
        if not path.is_file():
            raise FileNotFoundError(f"Config file not found: {path}")
    elif DEFAULT_CONFIG_PATH.is_file():
        path = DEFAULT_CONFIG_PATH

    if path is not None:
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must contain a YAML mapping: {path}")
        data = loaded
        logger.info("Loaded configuration from %s", path)

    try:
        config = SetupConfig(**data)
    except Exception as e:
        raise ValueError(f"Config validation failed: {e}") from e

    apply_env_overrides(config)
    return config


def apply_env_overrides(config: SetupConfig, environ: dict[str, str] | None = None) -> None:
    """Fill unset secrets from the environment."""
    environ = os.environ if environ is None else environ

    if not config.bot_token and environ.get("BOT_TOKEN"):
        config.bot_token = environ["BOT_TOKEN"]
    if not config.database.password and environ.get("BOT_SETUP_DB_PASSWORD"):
        config.database.password = environ["BOT_SETUP_DB_PASSWORD"]
    if not config.database.superuser_password and environ.get("BOT_SETUP_PG_SUPERUSER_PASSWORD"):
        config.database.superuser_password = environ["BOT_SETUP_PG_SUPERUSER_PASSWORD"]
