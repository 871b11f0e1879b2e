"""Turn rewrite output back into card fields.

Models answer in many shapes; parsing tries, in order, a JSON object, markdown
section headers, ``Label:`` style markers, and finally keeps the whole text as
a single ``content`` field.
"""

import copy
import json
import re
from dataclasses import dataclass, field
from typing import Literal

import structlog

from character_tools.domain.entities.character import CHARACTER_FIELDS, FIELDS_BY_KEY, Character, CharacterField

log = structlog.get_logger()

ParseMethod = Literal["json", "markdown", "heuristic", "raw"]

HEADER_RE = re.compile(r"^#{2,3}\s+(.+?)$", re.MULTILINE)
FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
SKIP_HEADERS = ("summary", "notes", "changes", "revised", "original")


@dataclass
class ParsedField:
    key: str
    label: str
    value: str


@dataclass
class ParsedRewrite:
    fields: list[ParsedField]
    raw: str
    parse_method: ParseMethod


@dataclass
class AppliedRewrite:
    """Updated card plus the labels of the fields that changed."""

    character: Character
    updated_fields: list[str] = field(default_factory=list)


def format_field_label(key: str) -> str:
    """``first_mes`` / ``firstMes`` -> ``First Mes``."""
    spaced = re.sub(r"([a-z])([A-Z])", r"\1 \2", key.replace("_", " "))
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), spaced)


def _match_field(name: str) -> CharacterField | None:
    lowered = name.lower()
    normalized = re.sub(r"\s+", "_", lowered)
    for f in CHARACTER_FIELDS:
        if f.key in (name, normalized) or f.label.lower() == lowered:
            return f
    return None


def _try_json(text: str) -> ParsedRewrite | None:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        fenced = FENCE_RE.search(text)
        if not fenced:
            return None
        try:
            parsed = json.loads(fenced.group(1).strip())
        except json.JSONDecodeError:
            return None
    if not isinstance(parsed, dict):
        return None

    fields: list[ParsedField] = []
    for key, value in parsed.items():
        if not isinstance(value, str) or not value.strip():
            continue
        known = _match_field(key)
        fields.append(
            ParsedField(
                key=known.key if known else key,
                label=known.label if known else format_field_label(key),
                value=value.strip(),
            )
        )
    return ParsedRewrite(fields, text, "json") if fields else None


def _try_markdown(text: str) -> ParsedRewrite | None:
    headers = list(HEADER_RE.finditer(text))
    fields: list[ParsedField] = []
    for i, match in enumerate(headers):
        title = match.group(1).strip()
        end = headers[i + 1].start() if i + 1 < len(headers) else len(text)
        content = text[match.end():end].strip()
        if not content:
            continue
        known = _match_field(title)
        if known is None and any(s in title.lower() for s in SKIP_HEADERS):
            continue
        fields.append(
            ParsedField(
                key=known.key if known else re.sub(r"\s+", "_", title.lower()),
                label=known.label if known else title,
                value=content,
            )
        )
    return ParsedRewrite(fields, text, "markdown") if fields else None


def _label_patterns(label: str) -> list[re.Pattern[str]]:
    lbl = re.escape(label)
    return [
        re.compile(rf"\*\*{lbl}:\*\*\s*([\s\S]*?)(?=\*\*[A-Z]|$)", re.IGNORECASE),
        re.compile(rf"{lbl}:\s*([\s\S]*?)(?=\n[A-Z][a-z]+:|$)", re.IGNORECASE),
        re.compile(rf"\[{lbl}\]\s*([\s\S]*?)(?=\[[A-Z]|$)", re.IGNORECASE),
    ]


def _try_heuristics(text: str) -> ParsedRewrite | None:
    fields: list[ParsedField] = []
    for f in CHARACTER_FIELDS:
        for pattern in _label_patterns(f.label):
            match = pattern.search(text)
            if match and match.group(1).strip():
                fields.append(ParsedField(f.key, f.label, match.group(1).strip()))
                break
    return ParsedRewrite(fields, text, "heuristic") if fields else None


def parse_rewrite_response(text: str) -> ParsedRewrite:
    for attempt in (_try_json, _try_markdown, _try_heuristics):
        parsed = attempt(text)
        if parsed is not None:
            log.debug("rewrite_parsed", method=parsed.parse_method, fields=len(parsed.fields))
            return parsed
    return ParsedRewrite([ParsedField("content", "Content", text.strip())], text, "raw")


def apply_parsed_rewrite(character: Character, fields: list[ParsedField]) -> AppliedRewrite:
    """Copy of ``character`` with known string fields replaced.

    Unknown keys and list/object fields are left alone. ``data.*`` fields are
    written into the V2 ``data`` block.
    """
    top_level: dict[str, str] = {}
    data = copy.deepcopy(character.data)
    updated: list[str] = []
    for parsed in fields:
        known = FIELDS_BY_KEY.get(parsed.key)
        value = parsed.value.strip()
        if known is None or known.type != "string" or not value:
            continue
        if known.path.startswith("data."):
            data[known.path.split(".", 1)[1]] = value
        else:
            top_level[known.key] = value
            if known.key in data:
                data[known.key] = value
        updated.append(known.label)
    if not updated:
        return AppliedRewrite(character)
    log.info("rewrite_applied", name=character.name, fields=updated)
    return AppliedRewrite(character.model_copy(update={**top_level, "data": data}), updated)
