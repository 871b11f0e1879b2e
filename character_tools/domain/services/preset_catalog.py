"""Preset store: built-in and custom prompt/schema presets, stage defaults, import/export."""

import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Protocol

import structlog
from pydantic import ValidationError

from character_tools.domain.entities.pipeline_state import STAGES, Stage, StageConfig
from character_tools.domain.entities.presets import (
    BUILTIN_PROMPT_PRESETS,
    BUILTIN_SCHEMA_PRESETS,
    DEFAULT_STAGE_CONFIGS,
    Placeholder,
    PromptPreset,
    SchemaPreset,
)
from character_tools.domain.entities.schema import StructuredOutputSchema
from character_tools.domain.services.schema_validator import (
    auto_fix_schema,
    validate_schema,
    validate_schema_object,
)

log = structlog.get_logger()

PRESET_EXPORT_VERSION = 3
MAX_PRESET_NAME = 100
MAX_PROMPT_LENGTH = 50_000

PresetKind = Literal["prompt", "schema"]


class PresetLookup(Protocol):
    """Read side of the preset store, all the prompt composer needs."""

    def get_prompt_preset(self, preset_id: str) -> PromptPreset | None:
        ...

    def get_schema_preset(self, preset_id: str) -> SchemaPreset | None:
        ...


@dataclass
class PresetValidation:
    """Result of checking a preset before it is saved."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class PresetImportResult:
    """Counts of imported presets and per-item failures."""

    prompts: int = 0
    schemas: int = 0
    errors: list[str] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_name(name: str | None, errors: list[str]) -> None:
    if not name or not name.strip():
        errors.append("Name is required")
    elif len(name) > MAX_PRESET_NAME:
        errors.append(f"Name must be {MAX_PRESET_NAME} characters or less")


def validate_prompt_preset(name: str | None, prompt: str | None) -> PresetValidation:
    errors: list[str] = []
    warnings: list[str] = []
    _check_name(name, errors)
    if not prompt or not prompt.strip():
        errors.append("Prompt is required")
    elif len(prompt) > MAX_PROMPT_LENGTH:
        errors.append("Prompt is too long (max 50,000 characters)")
    if prompt and "{{" in prompt:
        lowered = prompt.lower()
        if not any(p.value in lowered for p in Placeholder) and "{{char}}" not in lowered and "{{user}}" not in lowered:
            warnings.append("Prompt contains {{ but no recognized placeholders")
    return PresetValidation(valid=not errors, errors=errors, warnings=warnings)


def validate_schema_preset(name: str | None, schema: StructuredOutputSchema | dict | str | None) -> PresetValidation:
    errors: list[str] = []
    warnings: list[str] = []
    _check_name(name, errors)
    if not schema:
        errors.append("Schema is required")
    else:
        if isinstance(schema, str):
            result = validate_schema(schema)
        elif isinstance(schema, StructuredOutputSchema):
            result = validate_schema_object(schema.model_dump(exclude_none=True))
        else:
            result = validate_schema_object(schema)
        if not result.valid:
            errors.append(result.error or "Invalid schema")
        warnings.extend(result.warnings)
    return PresetValidation(valid=not errors, errors=errors, warnings=warnings)


def resolve_prompt(config: StageConfig, presets: PresetLookup) -> str:
    """Instruction text for a stage config: the preset when it exists, else the custom draft."""
    if config.prompt_preset_id:
        preset = presets.get_prompt_preset(config.prompt_preset_id)
        if preset is not None:
            return preset.prompt
        log.warning("prompt_preset_missing", preset_id=config.prompt_preset_id)
    return config.custom_prompt


def resolve_schema(config: StageConfig, presets: PresetLookup) -> StructuredOutputSchema | None:
    """Schema for a stage config, or None when structured output is off or nothing valid is set."""
    if not config.use_structured_output:
        return None
    if config.schema_preset_id:
        preset = presets.get_schema_preset(config.schema_preset_id)
        if preset is not None:
            return preset.schema_def
        log.warning("schema_preset_missing", preset_id=config.schema_preset_id)
    if config.custom_schema.strip():
        result = validate_schema(config.custom_schema)
        if result.valid and result.schema is not None:
            return result.schema
        log.warning("custom_schema_invalid", error=result.error)
    return None


class PresetCatalog:
    """In-memory preset store seeded with the built-ins.

    Built-in presets are immutable. Custom presets get ``custom_prompt_<uuid>`` /
    ``custom_schema_<uuid>`` ids. Thread-safe.
    """

    def __init__(self) -> None:
        self._prompts: list[PromptPreset] = list(BUILTIN_PROMPT_PRESETS)
        self._schemas: list[SchemaPreset] = list(BUILTIN_SCHEMA_PRESETS)
        self._stage_defaults: dict[Stage, StageConfig] = dict(DEFAULT_STAGE_CONFIGS)
        self._lock = threading.Lock()

    # Lookup

    def list_prompt_presets(self, stage: Stage | None = None) -> list[PromptPreset]:
        if stage is None:
            return list(self._prompts)
        return [p for p in self._prompts if not p.stages or stage in p.stages]

    def list_schema_presets(self, stage: Stage | None = None) -> list[SchemaPreset]:
        if stage is None:
            return list(self._schemas)
        return [p for p in self._schemas if not p.stages or stage in p.stages]

    def get_prompt_preset(self, preset_id: str) -> PromptPreset | None:
        return next((p for p in self._prompts if p.id == preset_id), None)

    def get_schema_preset(self, preset_id: str) -> SchemaPreset | None:
        return next((p for p in self._schemas if p.id == preset_id), None)

    def resolve_prompt(self, config: StageConfig) -> str:
        return resolve_prompt(config, self)

    def resolve_schema(self, config: StageConfig) -> StructuredOutputSchema | None:
        return resolve_schema(config, self)

    # Stage defaults

    def stage_defaults(self) -> dict[Stage, StageConfig]:
        return dict(self._stage_defaults)

    def update_stage_defaults(self, stage: Stage, **updates: object) -> StageConfig:
        with self._lock:
            updated = self._stage_defaults[stage].model_copy(update=updates)
            self._stage_defaults[stage] = updated
        return updated

    def reset_stage_defaults(self, stage: Stage) -> StageConfig:
        with self._lock:
            self._stage_defaults[stage] = DEFAULT_STAGE_CONFIGS[stage]
        return self._stage_defaults[stage]

    # Prompt presets

    def save_prompt_preset(self, name: str, prompt: str, stages: list[Stage] | None = None) -> PromptPreset:
        """Create a custom prompt preset. Raises ValueError when validation fails."""
        check = validate_prompt_preset(name, prompt)
        if not check.valid:
            raise ValueError("; ".join(check.errors))
        now = _now()
        preset = PromptPreset(
            id=f"custom_prompt_{uuid.uuid4()}",
            name=name.strip(),
            prompt=prompt,
            stages=stages or [],
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._prompts.append(preset)
        log.info("prompt_preset_saved", preset_id=preset.id, name=preset.name)
        return preset

    def update_prompt_preset(self, preset_id: str, **updates: object) -> bool:
        with self._lock:
            for i, preset in enumerate(self._prompts):
                if preset.id != preset_id:
                    continue
                if preset.is_builtin:
                    log.warning("builtin_preset_update_refused", preset_id=preset_id)
                    return False
                self._prompts[i] = preset.model_copy(update={**updates, "updated_at": _now()})
                return True
        return False

    def delete_prompt_preset(self, preset_id: str) -> str | None:
        """Delete a custom preset; stage defaults pointing at it fall back to custom text."""
        with self._lock:
            preset = next((p for p in self._prompts if p.id == preset_id), None)
            if preset is None:
                return None
            if preset.is_builtin:
                log.warning("builtin_preset_delete_refused", preset_id=preset_id)
                return None
            self._prompts.remove(preset)
            for stage in STAGES:
                if self._stage_defaults[stage].prompt_preset_id == preset_id:
                    self._stage_defaults[stage] = self._stage_defaults[stage].model_copy(
                        update={"prompt_preset_id": None}
                    )
        log.info("prompt_preset_deleted", preset_id=preset_id)
        return preset_id

    # Schema presets

    def save_schema_preset(
        self,
        name: str,
        schema: StructuredOutputSchema,
        stages: list[Stage] | None = None,
    ) -> SchemaPreset:
        """Create a custom schema preset; the schema is auto-fixed first."""
        fixed = auto_fix_schema(schema)
        check = validate_schema_preset(name, fixed)
        if not check.valid:
            raise ValueError("; ".join(check.errors))
        now = _now()
        preset = SchemaPreset(
            id=f"custom_schema_{uuid.uuid4()}",
            name=name.strip(),
            schema=fixed,
            stages=stages or [],
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._schemas.append(preset)
        log.info("schema_preset_saved", preset_id=preset.id, name=preset.name)
        return preset

    def update_schema_preset(self, preset_id: str, **updates: object) -> bool:
        schema = updates.pop("schema", None)
        if isinstance(schema, StructuredOutputSchema):
            updates["schema_def"] = auto_fix_schema(schema)
        with self._lock:
            for i, preset in enumerate(self._schemas):
                if preset.id != preset_id:
                    continue
                if preset.is_builtin:
                    log.warning("builtin_preset_update_refused", preset_id=preset_id)
                    return False
                self._schemas[i] = preset.model_copy(update={**updates, "updated_at": _now()})
                return True
        return False

    def delete_schema_preset(self, preset_id: str) -> str | None:
        with self._lock:
            preset = next((p for p in self._schemas if p.id == preset_id), None)
            if preset is None:
                return None
            if preset.is_builtin:
                log.warning("builtin_preset_delete_refused", preset_id=preset_id)
                return None
            self._schemas.remove(preset)
            for stage in STAGES:
                if self._stage_defaults[stage].schema_preset_id == preset_id:
                    self._stage_defaults[stage] = self._stage_defaults[stage].model_copy(
                        update={"schema_preset_id": None}
                    )
        log.info("schema_preset_deleted", preset_id=preset_id)
        return preset_id

    # Names

    def is_name_unique(self, kind: PresetKind, name: str, exclude_id: str | None = None) -> bool:
        presets = self._prompts if kind == "prompt" else self._schemas
        lowered = name.lower()
        return not any(p.name.lower() == lowered and p.id != exclude_id for p in presets)

    def unique_name(self, kind: PresetKind, base_name: str) -> str:
        name = base_name
        counter = 1
        while not self.is_name_unique(kind, name):
            name = f"{base_name} ({counter})"
            counter += 1
        return name

    # Import / export

    def export_custom_presets(self) -> str:
        return json.dumps(
            {
                "version": PRESET_EXPORT_VERSION,
                "exportedAt": _now().isoformat(),
                "promptPresets": [
                    p.model_dump(mode="json") for p in self._prompts if not p.is_builtin
                ],
                "schemaPresets": [
                    p.model_dump(mode="json", by_alias=True) for p in self._schemas if not p.is_builtin
                ],
            },
            indent=2,
            ensure_ascii=False,
        )

    def import_presets(self, text: str) -> PresetImportResult:
        """Import presets from an export document; bad entries are reported, not fatal."""
        result = PresetImportResult()
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            result.errors.append(f"Failed to parse JSON: {e}")
            return result
        if not isinstance(data, dict):
            result.errors.append("Failed to parse JSON: expected an object")
            return result

        for raw in data.get("promptPresets") or []:
            if not isinstance(raw, dict) or not raw.get("name") or not raw.get("prompt"):
                continue
            try:
                self.save_prompt_preset(raw["name"], raw["prompt"], [Stage(s) for s in raw.get("stages") or []])
                result.prompts += 1
            except ValueError as e:
                result.errors.append(f'Failed to import prompt "{raw["name"]}": {e}')

        for raw in data.get("schemaPresets") or []:
            if not isinstance(raw, dict) or not raw.get("name") or not raw.get("schema"):
                continue
            try:
                schema = StructuredOutputSchema.model_validate(raw["schema"])
                self.save_schema_preset(raw["name"], schema, [Stage(s) for s in raw.get("stages") or []])
                result.schemas += 1
            except (ValidationError, ValueError) as e:
                result.errors.append(f'Failed to import schema "{raw["name"]}": {e}')

        log.info("presets_imported", prompts=result.prompts, schemas=result.schemas, errors=len(result.errors))
        return result
