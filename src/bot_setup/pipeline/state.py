"""
Durable pipeline progress.

Holds a single record naming the last fully completed stage. Writes go to a
temporary file that is renamed over the target, so an interrupted write
never leaves a half-written record behind.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StateStore:
    """Single-value store for the last completed stage.

    Args:
        path: Location of the JSON state file
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self, valid: list[str] | None = None) -> str | None:
        """Read the last completed stage.

        Missing, unreadable or corrupt files, and values not in ``valid``
        (when given), all read as None so the pipeline starts over.

        Args:
            valid: Stage identifiers the caller recognises

        Returns:
            The stored stage identifier, or None.
        """
        if not self.path.is_file():
            return None

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, e)
            return None

        if not isinstance(data, dict):
            logger.warning("Ignoring malformed state file %s", self.path)
            return None

        value = data.get("last_completed")
        if not isinstance(value, str) or not value:
            logger.warning("State file %s has no usable stage, starting fresh", self.path)
            return None

        if valid is not None and value not in valid:
            logger.warning("Unrecognized stage '%s' in %s, starting fresh", value, self.path)
            return None

        return value

    def save(self, stage: str) -> None:
        """Atomically record ``stage`` as the last completed stage."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        record = {
            "version": STATE_VERSION,
            "last_completed": stage,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

        fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=".state-",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

        logger.debug("Recorded last completed stage: %s", stage)

    def clear(self) -> None:
        """Remove the record (full completion or explicit reset)."""
        try:
            self.path.unlink()
            logger.debug("Cleared state file %s", self.path)
        except FileNotFoundError:
            pass
