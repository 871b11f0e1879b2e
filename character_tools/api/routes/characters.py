"""Characters API - browse the card library."""

from fastapi import APIRouter, Depends, HTTPException

from character_tools.domain.services.character_fields import (
    build_character_summary,
    get_populated_fields,
    validate_character,
)
from character_tools.infrastructure.characters.library import CharacterLibrary
from character_tools.api.dependencies import get_library

router = APIRouter(prefix="/characters", tags=["characters"])


@router.get("")
async def list_characters(library: CharacterLibrary = Depends(get_library)) -> list[dict]:
    return [
        {
            "index": i,
            "name": c.name,
            "avatar": c.avatar,
            "field_count": len(get_populated_fields(c)),
        }
        for i, c in enumerate(library.list())
    ]


@router.post("/reload")
async def reload_characters(library: CharacterLibrary = Depends(get_library)) -> dict:
    """Re-read the characters directory. Sessions re-sync their index on their own."""
    characters = library.reload()
    return {"count": len(characters), "directory": str(library.directory)}


@router.get("/{index}")
async def get_character(index: int, library: CharacterLibrary = Depends(get_library)) -> dict:
    character = library.get(index)
    if character is None:
        raise HTTPException(status_code=404, detail="Character not found")
    return {
        "index": index,
        "name": character.name,
        "avatar": character.avatar,
        "issues": validate_character(character),
        "fields": [
            {"key": f.key, "label": f.label, "type": f.type, "value": f.value, "char_count": f.char_count}
            for f in get_populated_fields(character)
        ],
        "summary": build_character_summary(character),
    }
