"""Pipeline definition loading and trigger-parameter validation.

Loading fails closed: any YAML, schema, or graph error raises
:class:`DefinitionInvalid` before a single stage is scheduled.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from conveyor.pipeline.errors import DefinitionInvalid, ParameterInvalid
from conveyor.pipeline.models import (
    ParameterType,
    PipelineDefinition,
    RunParameters,
)

logger = logging.getLogger("conveyor.pipeline.loader")

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off", ""}


def parse_definition(raw: Any, *, source: str = "<definition>") -> PipelineDefinition:
    """Validate an already-parsed mapping into a PipelineDefinition."""
    if not isinstance(raw, dict):
        raise DefinitionInvalid(f"{source}: pipeline definition must be a mapping")
    try:
        return PipelineDefinition.model_validate(raw)
    except ValidationError as exc:
        errors = [_format_error(err) for err in exc.errors()]
        raise DefinitionInvalid(
            f"{source}: invalid pipeline definition ({len(errors)} error(s))",
            errors=errors,
        ) from exc


def loads_definition(text: str, *, source: str = "<string>") -> PipelineDefinition:
    """Parse a YAML document into a PipelineDefinition."""
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise DefinitionInvalid(f"{source}: malformed YAML: {exc}") from exc
    return parse_definition(raw, source=source)


def load_definition(path: Path) -> PipelineDefinition:
    """Load a pipeline definition file.

    Raises:
        DefinitionInvalid: If the file is missing, unreadable, or invalid.
    """
    try:
        text = path.read_text()
    except OSError as exc:
        raise DefinitionInvalid(f"Cannot read pipeline definition {path}: {exc}") from exc
    definition = loads_definition(text, source=str(path))
    logger.info("Loaded pipeline definition '%s' from %s", definition.name, path)
    return definition


def load_definitions(directory: Path) -> dict[str, PipelineDefinition]:
    """Load every ``*.yaml``/``*.yml`` file in a directory, keyed by pipeline name."""
    definitions: dict[str, PipelineDefinition] = {}
    if not directory.exists():
        logger.warning("No pipelines directory found at %s", directory)
        return definitions

    for path in sorted([*directory.glob("*.yaml"), *directory.glob("*.yml")]):
        definition = load_definition(path)
        if definition.name in definitions:
            raise DefinitionInvalid(f"{path}: duplicate pipeline name '{definition.name}'")
        definitions[definition.name] = definition
    return definitions


def resolve_parameters(
    definition: PipelineDefinition,
    supplied: Mapping[str, Any] | None = None,
) -> RunParameters:
    """Check trigger input against the parameter schema and fill in defaults.

    Raises:
        ParameterInvalid: On unknown names, bad booleans, or invalid choices.
    """
    supplied = dict(supplied or {})
    errors: list[str] = []

    unknown = sorted(set(supplied) - {p.name for p in definition.parameters})
    for name in unknown:
        errors.append(f"Unknown parameter '{name}'")

    values: dict[str, str | bool | None] = {}
    for param in definition.parameters:
        if param.name not in supplied:
            values[param.name] = param.effective_default()
            continue

        raw = supplied[param.name]
        match param.type:
            case ParameterType.BOOLEAN:
                if isinstance(raw, bool):
                    values[param.name] = raw
                elif str(raw).strip().lower() in _TRUE_STRINGS:
                    values[param.name] = True
                elif str(raw).strip().lower() in _FALSE_STRINGS:
                    values[param.name] = False
                else:
                    errors.append(f"Parameter '{param.name}' expects a boolean, got {raw!r}")
            case ParameterType.CHOICE:
                if str(raw) not in param.choices:
                    errors.append(
                        f"Parameter '{param.name}' must be one of {param.choices}, got {raw!r}"
                    )
                else:
                    values[param.name] = str(raw)
            case _:
                values[param.name] = None if raw is None else str(raw)

    if errors:
        raise ParameterInvalid(
            f"Invalid parameters for pipeline '{definition.name}'", errors=errors
        )
    return RunParameters(values=values)


def _format_error(err: Mapping[str, Any]) -> str:
    location = ".".join(str(part) for part in err.get("loc", ()))
    message = err.get("msg", "invalid value")
    return f"{location}: {message}" if location else message
