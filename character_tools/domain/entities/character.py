"""Character card model and the registry of fields the pipeline can work on."""

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

FieldType = Literal["string", "array", "object"]

# Scalar fields select with a bool, list-valued fields with the selected entry indices.
FieldSelection = dict[str, bool | list[int]]


class Character(BaseModel):
    """A character card (V1 flat fields, optionally with a V2/V3 ``data`` block)."""

    name: str = ""
    avatar: str = ""
    description: str = ""
    personality: str = ""
    first_mes: str = ""
    scenario: str = ""
    mes_example: str = ""
    creatorcomment: str = ""  # legacy creator notes
    tags: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")


@dataclass(frozen=True)
class CharacterField:
    """Registry entry: where a field lives on the card and how to render it."""

    key: str
    label: str
    path: str
    type: FieldType = "string"
    scoreable: bool = True


CHARACTER_FIELDS: tuple[CharacterField, ...] = (
    CharacterField("description", "Description", "description"),
    CharacterField("personality", "Personality", "personality"),
    CharacterField("first_mes", "First Message", "first_mes"),
    CharacterField("scenario", "Scenario", "scenario"),
    CharacterField("mes_example", "Example Messages", "mes_example"),
    CharacterField("system_prompt", "System Prompt", "data.system_prompt"),
    CharacterField(
        "post_history_instructions",
        "Post-History Instructions",
        "data.post_history_instructions",
        scoreable=False,
    ),
    CharacterField("creator_notes", "Creator Notes", "data.creator_notes", scoreable=False),
    CharacterField("alternate_greetings", "Alternate Greetings", "data.alternate_greetings", "array"),
    CharacterField("depth_prompt", "Depth Prompt", "data.extensions.depth_prompt", "object"),
    CharacterField("character_book", "Character Book", "data.character_book", "object", scoreable=False),
)

FIELDS_BY_KEY: dict[str, CharacterField] = {f.key: f for f in CHARACTER_FIELDS}


@dataclass(frozen=True)
class PopulatedField:
    """A field that has content on a given card."""

    key: str
    label: str
    value: str  # formatted for prompts
    raw_value: Any
    char_count: int
    type: FieldType = "string"
