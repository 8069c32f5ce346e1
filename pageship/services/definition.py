"""Load pipeline definitions from YAML files."""

from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Any, Mapping

import yaml

from pageship.models.environment import EnvironmentSpec
from pageship.models.pipeline import DeployConfig, PipelineDefinition, Stage, TriggerPolicy


class DefinitionError(ValueError):
    """The pipeline definition is malformed."""


def load_definition(path: Path) -> PipelineDefinition:
    """Read and validate the YAML pipeline definition stored at ``path``."""

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DefinitionError(f"Could not read pipeline definition '{path}': {exc}") from exc
    try:
        payload = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise DefinitionError(f"Pipeline definition '{path}' is not valid YAML: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise DefinitionError(f"Pipeline definition '{path}' must be a mapping")
    return parse_definition(payload, default_name=path.parent.resolve().name)


def parse_definition(payload: Mapping[str, Any], *, default_name: str = "pipeline") -> PipelineDefinition:
    """Build a :class:`PipelineDefinition` from an already parsed mapping."""

    environment = _parse_environment(_section(payload, "environment", required=True))
    stages = _parse_stages(payload.get("stages"))
    artifacts = _parse_artifacts(payload.get("artifacts"))
    trigger = _parse_trigger(_section(payload, "trigger"))
    deploy = _parse_deploy(_section(payload, "deploy"), artifacts)

    return PipelineDefinition(
        name=str(payload.get("name") or default_name).strip() or default_name,
        environment=environment,
        stages=stages,
        artifacts=artifacts,
        trigger=trigger,
        deploy=deploy,
    )


# ----------------------------------------------------------------------
# Section parsers
# ----------------------------------------------------------------------
def _section(payload: Mapping[str, Any], key: str, *, required: bool = False) -> Mapping[str, Any]:
    value = payload.get(key)
    if value is None:
        if required:
            raise DefinitionError(f"Missing required section '{key}'")
        return {}
    if not isinstance(value, Mapping):
        raise DefinitionError(f"Section '{key}' must be a mapping")
    return value


def _string_list(value: Any, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(item, str) and item.strip() for item in value):
        raise DefinitionError(f"'{key}' must be a list of non-empty strings")
    return tuple(item.strip() for item in value)


def _string_map(value: Any, key: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise DefinitionError(f"'{key}' must be a mapping")
    return {str(name): "" if item is None else str(item) for name, item in value.items()}


def _relative(value: str, key: str) -> str:
    candidate = PurePosixPath(value)
    if candidate.is_absolute() or ".." in candidate.parts:
        raise DefinitionError(f"'{key}' must be a path inside the workspace, got '{value}'")
    return value


def _optional_flag(value: Any, key: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise DefinitionError(f"'{key}' must be true or false")
    return value


def _optional_seconds(value: Any, key: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise DefinitionError(f"'{key}' must be a positive number of seconds")
    return float(value)


def _parse_environment(section: Mapping[str, Any]) -> EnvironmentSpec:
    base_image = section.get("base_image")
    if not isinstance(base_image, str) or not base_image.strip():
        raise DefinitionError("'environment.base_image' must be a non-empty string")
    return EnvironmentSpec(
        base_image=base_image.strip(),
        toolchains=_string_list(section.get("toolchains"), "environment.toolchains"),
        variables=_string_map(section.get("variables"), "environment.variables"),
    )


def _parse_stages(value: Any) -> tuple[Stage, ...]:
    if not isinstance(value, list) or not value:
        raise DefinitionError("'stages' must be a non-empty list")

    stages: list[Stage] = []
    seen: set[str] = set()
    for index, entry in enumerate(value):
        if not isinstance(entry, Mapping):
            raise DefinitionError(f"'stages[{index}]' must be a mapping")
        name = entry.get("name")
        command = entry.get("command")
        if not isinstance(name, str) or not name.strip():
            raise DefinitionError(f"'stages[{index}].name' must be a non-empty string")
        if not isinstance(command, str) or not command.strip():
            raise DefinitionError(f"'stages[{index}].command' must be a non-empty string")
        name = name.strip()
        if name in seen:
            raise DefinitionError(f"Duplicate stage name '{name}'")
        seen.add(name)
        stages.append(
            Stage(
                name=name,
                command=command.strip(),
                workdir=_relative(str(entry.get("workdir") or "."), f"stages[{index}].workdir"),
                env=_string_map(entry.get("env"), f"stages[{index}].env"),
            )
        )
    return tuple(stages)


def _parse_artifacts(value: Any) -> dict[str, str]:
    if not isinstance(value, Mapping) or not value:
        raise DefinitionError("'artifacts' must be a non-empty mapping of name to glob pattern")
    artifacts: dict[str, str] = {}
    for name, pattern in value.items():
        if not isinstance(pattern, str) or not pattern.strip():
            raise DefinitionError(f"'artifacts.{name}' must be a non-empty glob pattern")
        artifacts[str(name)] = _relative(pattern.strip(), f"artifacts.{name}")
    return artifacts


def _parse_trigger(section: Mapping[str, Any]) -> TriggerPolicy:
    branches = _string_list(section.get("branches"), "trigger.branches") or ("main",)
    events = _string_list(section.get("events"), "trigger.events") or ("push",)
    return TriggerPolicy(branches=branches, events=events)


def _parse_deploy(section: Mapping[str, Any], artifacts: Mapping[str, str]) -> DeployConfig:
    target = section.get("target", "pages")
    if not isinstance(target, str) or not target.strip():
        raise DefinitionError("'deploy.target' must be a non-empty string")

    published = _string_list(section.get("artifacts"), "deploy.artifacts")
    unknown = [name for name in published if name not in artifacts]
    if unknown:
        raise DefinitionError(f"'deploy.artifacts' references undeclared artifacts: {', '.join(unknown)}")

    return DeployConfig(
        target=target.strip(),
        artifacts=published,
        supersede_pending=_optional_flag(section.get("supersede_pending"), "deploy.supersede_pending"),
        gate_timeout=_optional_seconds(section.get("gate_timeout"), "deploy.gate_timeout"),
        stage_timeout=_optional_seconds(section.get("stage_timeout"), "deploy.stage_timeout"),
        serialize_builds=_optional_flag(section.get("serialize_builds"), "deploy.serialize_builds"),
    )
