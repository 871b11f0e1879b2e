"""Schema API - check structured-output schemas against the strict contract."""

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from character_tools.domain.entities.schema import StructuredOutputSchema
from character_tools.domain.services.schema_validator import (
    auto_fix_schema,
    estimate_schema_complexity,
    format_schema,
    validate_schema,
)

router = APIRouter(prefix="/schema", tags=["schema"])


class SchemaText(BaseModel):
    """Raw schema text as the user typed it."""

    text: str


def _parse_valid(text: str) -> StructuredOutputSchema:
    result = validate_schema(text)
    if not result.valid or result.schema is None:
        raise HTTPException(status_code=422, detail=result.error or "Schema is empty")
    return result.schema


@router.post("/validate")
async def validate(body: SchemaText) -> dict[str, Any]:
    result = validate_schema(body.text)
    payload = asdict(result)
    payload["schema"] = result.schema.model_dump(exclude_none=True) if result.schema else None
    return payload


@router.post("/autofix")
async def autofix(body: SchemaText) -> dict[str, Any]:
    """Close every object and fold ignored constraints into descriptions."""
    fixed = auto_fix_schema(_parse_valid(body.text))
    return {"schema": fixed.model_dump(exclude_none=True), "text": format_schema(fixed)}


@router.post("/complexity")
async def complexity(body: SchemaText) -> dict[str, Any]:
    return asdict(estimate_schema_complexity(_parse_valid(body.text)))
