"""FastAPI application receiving push webhooks and exposing pipeline run status."""

from __future__ import annotations

from functools import lru_cache
import logging
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from pageship.models.pipeline import TriggerEvent
from pageship.services.bootstrap import Settings, build_coordinator
from pageship.services.definition import load_definition
from pageship.services.pipeline import PipelineCoordinator
from pageship.utils.serialization import run_payload

app = FastAPI(title="pageship")

logger = logging.getLogger(__name__)


def _build_debug_detail(exc: Exception) -> dict[str, str]:
    """Return a serialisable mapping describing ``exc`` for debugging."""

    message = str(exc).strip()
    return {
        "type": type(exc).__name__,
        "message": message or "No exception message provided.",
    }


@lru_cache(maxsize=1)
def _cached_coordinator() -> PipelineCoordinator:
    """Create the process-wide coordinator (and with it the gate registry)."""

    settings = Settings.from_env()
    definition = load_definition(settings.definition_path)
    return build_coordinator(definition, settings)


def get_coordinator() -> PipelineCoordinator:
    """FastAPI dependency returning the shared coordinator."""

    try:
        return _cached_coordinator()
    except ValueError as exc:
        logger.exception("Pipeline configuration failed to load", extra={"event": "pipeline.config"})
        raise HTTPException(
            status_code=503,
            detail={
                "message": "Pipeline is not configured",
                "debug": _build_debug_detail(exc),
            },
        ) from exc


class TriggerRequest(BaseModel):
    """Webhook payload describing the event that may start a run."""

    ref: str = Field(..., description="Git ref that was pushed, e.g. refs/heads/main.")
    event: str = Field("push", description="Event type reported by the source host.")
    sha: str | None = Field(None, description="Commit SHA the run should build.")

    @field_validator("ref", "event")
    @classmethod
    def _ensure_not_empty(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Value must not be empty.")
        return cleaned

    def to_event(self) -> TriggerEvent:
        return TriggerEvent(ref=self.ref, event=self.event, sha=self.sha)


class TriggerResponse(BaseModel):
    """Acknowledgement returned for every trigger request."""

    accepted: bool
    run_id: str | None = None
    status: str | None = None


def _execute_in_background(coordinator: PipelineCoordinator, run_id: str) -> None:
    run = coordinator.get_run(run_id)
    if run is None:  # pragma: no cover - evicted before it started
        return
    try:
        coordinator.execute(run)
    except Exception:
        logger.exception("Background run crashed", extra={"event": "pipeline.crash", "run_id": run_id})


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.post("/api/triggers", response_model=TriggerResponse)
def receive_trigger(
    payload: TriggerRequest,
    background_tasks: BackgroundTasks,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Start a run for accepted events; rejected refs produce no run at all."""

    event = payload.to_event()
    run = coordinator.prepare(event)
    if run is None:
        logger.info(
            "Trigger ignored",
            extra={"event": "pipeline.trigger_ignored", "ref": event.ref},
        )
        return JSONResponse(TriggerResponse(accepted=False).model_dump(), status_code=200)

    logger.info(
        "Trigger accepted",
        extra={"event": "pipeline.trigger_accepted", "run_id": run.run_id, "ref": event.ref},
    )
    background_tasks.add_task(_execute_in_background, coordinator, run.run_id)
    response = TriggerResponse(accepted=True, run_id=run.run_id, status=run.status.value)
    return JSONResponse(response.model_dump(), status_code=202)


@app.get("/api/runs")
def list_runs(coordinator: PipelineCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
    """Return recent runs, newest first."""

    return {"runs": [run_payload(run) for run in coordinator.list_runs()]}


@app.get("/api/runs/{run_id}")
def run_detail(run_id: str, coordinator: PipelineCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
    """Return one run including the output of every stage."""

    run = coordinator.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run_payload(run, include_output=True)


@app.get("/api/gates")
def gate_status(coordinator: PipelineCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
    """Return which run holds each deployment gate and how many are queued."""

    return {
        "gates": [
            {
                "target": status.target,
                "holder": status.holder,
                "holder_ticket": status.holder_ticket,
                "pending": status.pending,
            }
            for status in coordinator.gates.snapshot()
        ]
    }
