"""Iteration history store - one JSON file per character under output/history/."""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

from pydantic import TypeAdapter

from character_tools.domain.entities.character import Character
from character_tools.domain.entities.pipeline_state import IterationSnapshot

logger = logging.getLogger(__name__)

KEY_PREFIX = "character_tools_history_"
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
_SNAPSHOTS = TypeAdapter(list[IterationSnapshot])


def _djb2(text: str) -> int:
    """djb2 (xor variant) over UTF-16 code units, unsigned 32-bit."""
    h = 5381
    units = text.encode("utf-16-le")
    for i in range(0, len(units), 2):
        code = units[i] | (units[i + 1] << 8)
        h = (((h << 5) + h) & 0xFFFFFFFF) ^ code
    return h


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def character_key(character: Character) -> str:
    """Storage key from avatar and name, so same-named cards do not collide."""
    return KEY_PREFIX + _base36(_djb2(f"{character.avatar}::{character.name}"))


class IterationHistoryStore:
    """Best-effort history persistence. Implements HistoryPort.

    Thread-safe: file operations are protected by a reentrant lock. Read
    problems degrade to None; write problems return False.
    """

    def __init__(self, output_dir: str = "output") -> None:
        """Initialize with output directory; files go to ``<output_dir>/history``."""
        self._base = Path(output_dir) / "history"
        self._lock = threading.RLock()

    def _path(self, character: Character) -> Path:
        return self._base / f"{character_key(character)}.json"

    def save(self, character: Character, history: list[IterationSnapshot]) -> bool:
        """Save history (thread-safe). Written to a temp file, then renamed."""
        path = self._path(character)
        data = {
            "characterName": character.name,
            "characterAvatar": character.avatar,
            "history": _SNAPSHOTS.dump_python(history, mode="json"),
            "savedAt": datetime.now(timezone.utc).isoformat(),
        }
        tmp = path.with_suffix(".tmp")
        try:
            with self._lock:
                self._base.mkdir(parents=True, exist_ok=True)
                tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
                tmp.replace(path)
        except OSError:
            logger.warning("Failed to save iteration history for %s", character.name, exc_info=True)
            tmp.unlink(missing_ok=True)
            return False
        logger.info("Saved %d iteration snapshots for %s", len(history), character.name)
        return True

    def load(self, character: Character) -> list[IterationSnapshot] | None:
        """Load history (thread-safe). None if missing, corrupt or stored for another card."""
        path = self._path(character)
        if not path.exists():
            return None
        try:
            with self._lock:
                data = json.loads(path.read_text(encoding="utf-8"))
            if data.get("characterName") != character.name or data.get("characterAvatar") != character.avatar:
                logger.info("Iteration history at %s belongs to another card, ignoring", path)
                return None
            return _SNAPSHOTS.validate_python(data.get("history") or [])
        except (ValueError, AttributeError, RecursionError):
            # ValueError covers JSONDecodeError, UnicodeDecodeError and ValidationError
            logger.warning("Malformed iteration history file: %s", path, exc_info=True)
            return None
        except OSError:
            logger.warning("Failed to load iteration history for %s", character.name, exc_info=True)
            return None

    def clear(self, character: Character) -> bool:
        """Delete stored history (thread-safe). True when nothing is left behind."""
        path = self._path(character)
        try:
            with self._lock:
                path.unlink(missing_ok=True)
            return True
        except OSError:
            logger.warning("Failed to clear iteration history for %s", character.name, exc_info=True)
            return False

    def has_history(self, character: Character) -> bool:
        return bool(self.load(character))

    def list_keys(self) -> list[str]:
        if not self._base.exists():
            return []
        return sorted(p.stem for p in self._base.glob(f"{KEY_PREFIX}*.json"))
