"""History Port - per-character iteration history storage."""

from typing import Protocol

from character_tools.domain.entities.character import Character
from character_tools.domain.entities.pipeline_state import IterationSnapshot


class HistoryPort(Protocol):
    """Best-effort storage of iteration snapshots keyed by character."""

    def save(self, character: Character, history: list[IterationSnapshot]) -> bool:
        """Persist history. Returns False on failure instead of raising."""
        ...

    def load(self, character: Character) -> list[IterationSnapshot] | None:
        """Load history, or None when nothing usable is stored."""
        ...

    def clear(self, character: Character) -> bool:
        """Remove stored history."""
        ...

    def has_history(self, character: Character) -> bool:
        """True when a non-empty history is stored."""
        ...
