"""Presets API - prompt and schema presets plus stage defaults."""

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from character_tools.api.dependencies import get_presets
from character_tools.domain.entities.pipeline_state import Stage
from character_tools.domain.entities.schema import StructuredOutputSchema
from character_tools.domain.services.preset_catalog import PresetCatalog

router = APIRouter(prefix="/presets", tags=["presets"])


class PromptPresetCreate(BaseModel):
    name: str
    prompt: str
    stages: list[Stage] = []


class SchemaPresetCreate(BaseModel):
    name: str
    schema_def: StructuredOutputSchema = Field(alias="schema")
    stages: list[Stage] = []

    model_config = ConfigDict(populate_by_name=True)


class PresetImport(BaseModel):
    """Document produced by ``GET /presets/export``."""

    text: str


class StageDefaultsUpdate(BaseModel):
    prompt_preset_id: str | None = None
    custom_prompt: str | None = None
    schema_preset_id: str | None = None
    custom_schema: str | None = None
    use_structured_output: bool | None = None


@router.get("")
async def list_presets(stage: Stage | None = None, presets: PresetCatalog = Depends(get_presets)) -> dict:
    return {
        "prompts": [p.model_dump(mode="json") for p in presets.list_prompt_presets(stage)],
        "schemas": [p.model_dump(mode="json", by_alias=True) for p in presets.list_schema_presets(stage)],
    }


@router.post("/prompts")
async def save_prompt_preset(body: PromptPresetCreate, presets: PresetCatalog = Depends(get_presets)) -> dict:
    if not presets.is_name_unique("prompt", body.name.strip()):
        raise HTTPException(status_code=409, detail="A prompt preset with this name already exists")
    try:
        preset = presets.save_prompt_preset(body.name, body.prompt, body.stages)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return preset.model_dump(mode="json")


@router.delete("/prompts/{preset_id}")
async def delete_prompt_preset(preset_id: str, presets: PresetCatalog = Depends(get_presets)) -> dict:
    if presets.delete_prompt_preset(preset_id) is None:
        raise HTTPException(status_code=404, detail="Preset not found or built-in")
    return {"deleted": preset_id}


@router.post("/schemas")
async def save_schema_preset(body: SchemaPresetCreate, presets: PresetCatalog = Depends(get_presets)) -> dict:
    """Save a schema preset. The schema is auto-fixed before validation."""
    if not presets.is_name_unique("schema", body.name.strip()):
        raise HTTPException(status_code=409, detail="A schema preset with this name already exists")
    try:
        preset = presets.save_schema_preset(body.name, body.schema_def, body.stages)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return preset.model_dump(mode="json", by_alias=True)


@router.delete("/schemas/{preset_id}")
async def delete_schema_preset(preset_id: str, presets: PresetCatalog = Depends(get_presets)) -> dict:
    if presets.delete_schema_preset(preset_id) is None:
        raise HTTPException(status_code=404, detail="Preset not found or built-in")
    return {"deleted": preset_id}


@router.get("/export", response_class=PlainTextResponse)
async def export_presets(presets: PresetCatalog = Depends(get_presets)) -> str:
    return presets.export_custom_presets()


@router.post("/import")
async def import_presets(body: PresetImport, presets: PresetCatalog = Depends(get_presets)) -> dict:
    return asdict(presets.import_presets(body.text))


@router.get("/defaults")
async def stage_defaults(presets: PresetCatalog = Depends(get_presets)) -> dict:
    return {stage.value: config.model_dump(mode="json") for stage, config in presets.stage_defaults().items()}


@router.put("/defaults/{stage}")
async def update_stage_defaults(
    stage: Stage,
    body: StageDefaultsUpdate,
    presets: PresetCatalog = Depends(get_presets),
) -> dict:
    """Change the config new sessions start with. Existing sessions keep theirs."""
    return presets.update_stage_defaults(stage, **body.model_dump(exclude_none=True)).model_dump(mode="json")


@router.delete("/defaults/{stage}")
async def reset_stage_defaults(stage: Stage, presets: PresetCatalog = Depends(get_presets)) -> dict:
    return presets.reset_stage_defaults(stage).model_dump(mode="json")
