"""
Key-value secrets files.

Reads a dotenv-style file into typed entries, applies updates as data, and
writes the result back in one atomic step with owner-only permissions.
Comments, blank lines and key order are preserved.
"""

import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

logger = logging.getLogger(__name__)

SECRET_FILE_MODE = 0o600

_ENTRY_PATTERN = re.compile(r"^(?P<commented>#\s*)?(?P<key>[A-Za-z_][A-Za-z0-9_]*)=(?P<value>.*)$")


@dataclass
class _Line:
    raw: str
    key: str | None = None
    value: str | None = None
    commented: bool = False


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        inner = value[1:-1]
        if value[0] == '"':
            inner = inner.replace('\\"', '"').replace("\\\\", "\\")
        return inner
    return value


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class EnvFile:
    """A parsed dotenv file.

    Args:
        path: File location (need not exist yet)
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lines: list[_Line] = []

    @classmethod
    def load(cls, path: str | Path) -> "EnvFile":
        """Parse ``path``; a missing file loads as empty."""
        env = cls(path)
        if env.path.is_file():
            for raw in env.path.read_text(encoding="utf-8").splitlines():
                env._lines.append(_parse_line(raw))
        return env

    def get(self, key: str, default: str | None = None) -> str | None:
        for line in self._lines:
            if line.key == key and not line.commented:
                return line.value
        return default

    def as_dict(self) -> dict[str, str]:
        return {
            line.key: line.value
            for line in self._lines
            if line.key is not None and not line.commented
        }

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def update(self, values: dict[str, str]) -> None:
        """Set keys in place.

        Existing keys keep their position, a commented-out ``#KEY=`` line
        is uncommented, and anything else is appended.
        """
        pending = dict(values)

        for line in self._lines:
            if line.key in pending and not line.commented:
                _assign(line, pending.pop(line.key))

        for line in self._lines:
            if line.key in pending and line.commented:
                _assign(line, pending.pop(line.key))

        for key, value in pending.items():
            line = _Line(raw="", key=key)
            _assign(line, value)
            self._lines.append(line)

    def render(self) -> str:
        return "\n".join(line.raw for line in self._lines) + "\n"

    def save(self, mode: int = SECRET_FILE_MODE) -> None:
        """Atomically write the file with restrictive permissions."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".env-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(self.render())
            os.chmod(temp_path, mode)
            os.replace(temp_path, self.path)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.debug("Wrote %d entries to %s", len(self.as_dict()), self.path)


def _parse_line(raw: str) -> _Line:
    match = _ENTRY_PATTERN.match(raw.strip())
    if not match:
        return _Line(raw=raw)
    return _Line(
        raw=raw,
        key=match.group("key"),
        value=_unquote(match.group("value")),
        commented=bool(match.group("commented")),
    )


def _assign(line: _Line, value: str) -> None:
    line.value = value
    line.commented = False
    line.raw = f"{line.key}={_quote(value)}"


# ---------------------------------------------------------------------------
# Database URL helpers
# ---------------------------------------------------------------------------

DEFAULT_DB_PORT = 5432


def normalize_port(value: str | int | None) -> int:
    """Return a valid TCP port, falling back to 5432 for anything else."""
    try:
        port = int(str(value).strip().strip("\"'"))
    except (TypeError, ValueError):
        return DEFAULT_DB_PORT
    if not 0 < port < 65536:
        return DEFAULT_DB_PORT
    return port


def database_url(user: str, password: str, host: str, port: int | str, name: str) -> str:
    """Build a postgresql:// URL with credentials percent-encoded."""
    return (
        f"postgresql://{quote(user, safe='')}:{quote(password, safe='')}"
        f"@{host}:{normalize_port(port)}/{quote(name, safe='')}"
    )


def mask_url(url: str) -> str:
    """Hide the password portion of a database URL for logging."""
    return re.sub(r"(postgresql://[^:/@]+:)[^@]*(@)", r"\1***\2", url)
