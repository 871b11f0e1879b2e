"""Field extraction, default selection and prompt summaries for character cards."""

import json
from typing import Any

from character_tools.domain.entities.character import (
    CHARACTER_FIELDS,
    Character,
    CharacterField,
    FieldSelection,
    FieldType,
    PopulatedField,
)


def _value_by_path(data: dict[str, Any], path: str) -> Any:
    """Resolve a dot path like ``data.extensions.depth_prompt``."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _is_populated(value: Any, field_type: FieldType) -> bool:
    if value is None:
        return False
    if field_type == "array":
        return isinstance(value, list) and len(value) > 0
    if field_type == "object":
        if not isinstance(value, dict):
            return False
        if isinstance(value.get("prompt"), str):
            return bool(value["prompt"].strip())
        if isinstance(value.get("entries"), list):
            return len(value["entries"]) > 0
        return len(value) > 0
    return isinstance(value, str) and bool(value.strip())


def _format_character_book(book: dict[str, Any]) -> str:
    entries = book.get("entries") or []
    lines: list[str] = []
    if book.get("name"):
        lines.append(f"Lorebook: {book['name']}")
    lines.append(f"Entries: {len(entries)}")
    lines.append("")
    for entry in entries:
        status = "✓" if entry.get("enabled", True) else "✗"
        keys = list(entry.get("keys") or [])
        suffix = f" (+{len(keys) - 5} more)" if len(keys) > 5 else ""
        comment = entry.get("comment") or f"Entry {entry.get('id', '?')}"
        lines.append(f"{status} {comment}: [{', '.join(keys[:5])}{suffix}]")
        content = (entry.get("content") or "").strip()
        if content:
            more = "..." if len(content) > 100 else ""
            lines.append(f"   {content[:100]}{more}")
    return "\n".join(lines)


def _format_value(value: Any, field: CharacterField) -> str:
    if field.type == "array":
        if not isinstance(value, list):
            return ""
        return "\n".join(f"{i + 1}. {str(item).strip()}" for i, item in enumerate(value))
    if field.type == "object":
        if field.key == "depth_prompt":
            prompt = (value.get("prompt") or "").strip()
            if not prompt:
                return ""
            return f"[Depth: {value.get('depth')}, Role: {value.get('role')}]\n{prompt}"
        if field.key == "character_book":
            return _format_character_book(value)
        return json.dumps(value, indent=2, ensure_ascii=False)
    return value.strip() if isinstance(value, str) else str(value)


def get_populated_fields(character: Character) -> list[PopulatedField]:
    """All registry fields that carry content on this card, in registry order."""
    raw = character.model_dump()
    populated: list[PopulatedField] = []
    for field in CHARACTER_FIELDS:
        value = _value_by_path(raw, field.path)
        if not _is_populated(value, field.type):
            # V2 cards keep most fields under ``data``; V1 cards keep them at top level
            leaf = field.path.rsplit(".", 1)[-1]
            value = raw.get(leaf) if "." in field.path else _value_by_path(raw, f"data.{leaf}")
        if field.key == "creator_notes" and not _is_populated(value, field.type):
            value = raw.get("creatorcomment") or raw.get("creator_notes")
        if not _is_populated(value, field.type):
            continue
        formatted = _format_value(value, field)
        if not formatted:
            continue
        populated.append(
            PopulatedField(
                key=field.key,
                label=field.label,
                value=formatted,
                raw_value=value,
                char_count=len(formatted),
                type=field.type,
            )
        )
    return populated


def initialize_field_selection(character: Character) -> FieldSelection:
    """Default selection: every populated field, every entry of list fields."""
    selection: FieldSelection = {}
    for field in get_populated_fields(character):
        if field.type == "array" and isinstance(field.raw_value, list):
            selection[field.key] = list(range(len(field.raw_value)))
        else:
            selection[field.key] = True
    return selection


def has_selected_fields(character: Character, selection: FieldSelection) -> bool:
    """True when the selection covers at least one populated field (or one existing list entry)."""
    for field in get_populated_fields(character):
        selected = selection.get(field.key)
        if not selected:
            continue
        if isinstance(selected, list) and field.type == "array":
            if any(0 <= i < len(field.raw_value) for i in selected):
                return True
        else:
            return True
    return False


def build_character_summary(character: Character) -> str:
    """Summary of every populated field."""
    sections = [f"### {f.label}\n{f.value}" for f in get_populated_fields(character)]
    return f"# CHARACTER: {character.name}\n\n" + "\n\n".join(sections)


def build_character_summary_from_selection(character: Character, selection: FieldSelection) -> str:
    """Summary restricted to the selected fields and list entries."""
    sections: list[str] = []
    for field in get_populated_fields(character):
        selected = selection.get(field.key)
        if not selected:
            continue
        if isinstance(selected, list) and field.type == "array":
            items = field.raw_value
            prefix = "Greeting" if field.key == "alternate_greetings" else "Entry"
            chosen = [
                f"**{prefix} {i + 1}:**\n{str(items[i]).strip()}"
                for i in sorted(set(selected))
                if 0 <= i < len(items)
            ]
            if chosen:
                sections.append(f"### {field.label}\n\n" + "\n\n".join(chosen))
        else:
            sections.append(f"### {field.label}\n\n{field.value}")

    if not sections:
        return f"# CHARACTER: {character.name}\n\n(No fields selected)"
    return f"# CHARACTER: {character.name}\n\n" + "\n\n".join(sections)


def describe_selection(character: Character, selection: FieldSelection) -> list[str]:
    """Human-readable list of what the selection includes, for exports."""
    lines: list[str] = []
    for field in get_populated_fields(character):
        selected = selection.get(field.key)
        if not selected:
            continue
        if isinstance(selected, list):
            indices = ", ".join(str(i + 1) for i in sorted(set(selected)))
            lines.append(f"{field.label} (entries: {indices})")
        else:
            lines.append(field.label)
    return lines


def validate_character(character: Character) -> list[str]:
    """Problems that make a card unusable as pipeline input."""
    issues: list[str] = []
    if not character.name.strip():
        issues.append("Character has no name")
    if not get_populated_fields(character):
        issues.append("Character has no populated fields")
    return issues
