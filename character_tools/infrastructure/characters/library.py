"""Character library - character cards loaded from a directory of JSON files."""

import json
import logging
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from character_tools.domain.entities.character import Character

logger = logging.getLogger(__name__)

_TOP_LEVEL = ("name", "description", "personality", "first_mes", "scenario", "mes_example", "tags")


def card_from_json(raw: dict[str, Any], avatar: str) -> Character:
    """Build a Character from a V1 (flat) or V2/V3 (``spec`` + ``data``) card."""
    data = raw.get("data") if isinstance(raw.get("data"), dict) else None
    if data is None:
        return Character.model_validate({**raw, "avatar": raw.get("avatar") or avatar})
    flat = {k: data[k] for k in _TOP_LEVEL if k in data}
    for key in _TOP_LEVEL:
        if key not in flat and key in raw:
            flat[key] = raw[key]
    if "creatorcomment" in raw:
        flat["creatorcomment"] = raw["creatorcomment"]
    return Character.model_validate({**flat, "avatar": raw.get("avatar") or avatar, "data": data})


class CharacterLibrary:
    """Addressable list of character cards read from ``*.json`` files (sorted by file name).

    The list only changes on :meth:`reload`; callers re-sync cached indices afterwards.
    """

    def __init__(self, characters_dir: str = "characters") -> None:
        self._dir = Path(characters_dir)
        self._characters: list[Character] = []
        self._lock = threading.Lock()
        self.reload()

    @property
    def directory(self) -> Path:
        return self._dir

    def reload(self) -> list[Character]:
        """Re-read the directory. Unreadable or invalid files are skipped with a warning."""
        loaded: list[Character] = []
        if self._dir.is_dir():
            for path in sorted(self._dir.glob("*.json")):
                try:
                    raw = json.loads(path.read_text(encoding="utf-8"))
                    if not isinstance(raw, dict):
                        raise ValueError("card must be a JSON object")
                    loaded.append(card_from_json(raw, path.name))
                except (json.JSONDecodeError, ValidationError, ValueError) as e:
                    logger.warning("Skipping invalid character card %s: %s", path, e)
                except OSError as e:
                    logger.warning("Cannot read character card %s: %s", path, e)
        else:
            logger.info("Characters directory %s does not exist", self._dir)
        with self._lock:
            self._characters = loaded
        logger.info("Loaded %d character cards from %s", len(loaded), self._dir)
        return list(loaded)

    def list(self) -> list[Character]:
        with self._lock:
            return list(self._characters)

    def get(self, index: int) -> Character | None:
        with self._lock:
            if 0 <= index < len(self._characters):
                return self._characters[index]
        return None

    def index_of(self, avatar: str) -> int | None:
        with self._lock:
            for i, character in enumerate(self._characters):
                if character.avatar == avatar:
                    return i
        return None

    def __len__(self) -> int:
        return len(self._characters)
