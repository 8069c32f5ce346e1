"""Helpers for turning runs and their parts into JSON-friendly payloads."""

from __future__ import annotations

from dataclasses import asdict, is_dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import PurePath
from types import MappingProxyType
from typing import Any

from pageship.models.pipeline import PipelineRun


def json_default(o: Any) -> Any:
    """``json.dumps`` fallback for the types that appear in run records."""

    if isinstance(o, (datetime, date)):
        if isinstance(o, datetime) and o.tzinfo is None:
            o = o.replace(tzinfo=timezone.utc)
        return o.isoformat()
    if isinstance(o, Enum):
        return o.value
    if isinstance(o, PurePath):
        return o.as_posix()
    if isinstance(o, MappingProxyType):
        return dict(o)
    if is_dataclass(o) and not isinstance(o, type):
        return asdict(o)
    if isinstance(o, (set, frozenset, tuple)):
        return list(o)
    return str(o)


def describe_error(error: BaseException | None) -> dict[str, Any] | None:
    """Return a serialisable mapping describing ``error``."""

    if error is None:
        return None
    detail: dict[str, Any] = {
        "type": type(error).__name__,
        "message": str(error).strip() or "No exception message provided.",
    }
    for attribute in ("stage", "exit_code", "artifact_name", "pattern", "reason", "cause", "target"):
        value = getattr(error, attribute, None)
        if value is not None:
            detail[attribute] = value
    return detail


def run_payload(run: PipelineRun, *, include_output: bool = False) -> dict[str, Any]:
    """Return a JSON-ready summary of ``run``."""

    stages = []
    for result in run.stage_results:
        entry: dict[str, Any] = {
            "stage": result.stage,
            "exit_code": result.exit_code,
            "succeeded": result.succeeded,
            "duration": round(result.duration, 3),
            "timed_out": result.timed_out,
        }
        if include_output or not result.succeeded:
            entry["output"] = result.output
        stages.append(entry)

    artifacts = None
    if run.artifacts is not None:
        artifacts = {name: [path.as_posix() for path in run.artifacts.files[name]] for name in run.artifacts}

    deployment = None
    if run.deployment is not None:
        deployment = {
            "target": run.deployment.target,
            "url": run.deployment.url,
            "status": run.deployment.status.value,
            "ticket": run.deployment.ticket,
            "published_at": run.deployment.published_at.isoformat(),
            "file_count": run.deployment.file_count,
        }

    return {
        "run_id": run.run_id,
        "status": run.status.value,
        "succeeded": run.succeeded,
        "trigger": {
            "ref": run.trigger.ref,
            "branch": run.trigger.branch,
            "event": run.trigger.event,
            "sha": run.trigger.sha,
        },
        "stages": stages,
        "artifacts": artifacts,
        "deployment": deployment,
        "error": describe_error(run.error),
        "created_at": run.created_at.isoformat(),
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "history": [{"status": status.value, "at": at.isoformat()} for status, at in run.history],
    }
