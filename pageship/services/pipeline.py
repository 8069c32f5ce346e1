"""Orchestration layer that chains provisioning, stages, collection, the gate, and publishing."""

from __future__ import annotations

from collections import OrderedDict
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import threading
from typing import Mapping, Protocol, Sequence

from pageship.models.artifacts import ArtifactSet
from pageship.models.deployment import Deployment, DeploymentStatus
from pageship.models.environment import EnvironmentHandle
from pageship.models.pipeline import PipelineDefinition, PipelineRun, RunStatus, Stage, StageResult, TriggerEvent
from pageship.services.errors import PipelineError, PublishError, StageError
from pageship.services.gate import GateRegistry
from pageship.services.provisioner import SupportsProvisioning
from pageship.services.publisher import SupportsPublishing
from pageship.services.stage_executor import ResultCallback


logger = logging.getLogger(__name__)


class SupportsStageExecution(Protocol):
    """Protocol describing the stage executor interface."""

    def run(
        self,
        env: EnvironmentHandle,
        stages: Sequence[Stage],
        *,
        on_result: ResultCallback | None = None,
    ) -> list[StageResult]:
        """Run ``stages`` in order and return the results obtained."""


class SupportsCollection(Protocol):
    """Protocol describing the artifact collector interface."""

    def collect(self, env: EnvironmentHandle, patterns: Mapping[str, str]) -> ArtifactSet:
        """Resolve ``patterns`` into an artifact set or raise ``CollectionError``."""


class SupportsArchiving(Protocol):
    """Protocol describing the run archive interface."""

    def store(self, run: PipelineRun) -> object:
        """Record a finished run."""


@dataclass(slots=True)
class PipelineCoordinator:
    """Coordinate one linear build-and-publish flow per triggered run.

    Runs proceed independently until they reach the deployment gate, where
    they queue per target. When ``deploy.serialize_builds`` is set the build
    phases additionally serialise per target through ``build_locks``.
    """

    definition: PipelineDefinition
    provisioner: SupportsProvisioning
    stage_executor: SupportsStageExecution
    collector: SupportsCollection
    gates: GateRegistry
    publisher: SupportsPublishing
    archive: SupportsArchiving | None = None
    build_locks: GateRegistry = field(default_factory=GateRegistry)
    max_history: int = 50
    _runs: "OrderedDict[str, PipelineRun]" = field(default_factory=OrderedDict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def run(self, event: TriggerEvent) -> PipelineRun | None:
        """Filter ``event`` and, when accepted, execute a run to completion."""

        run = self.prepare(event)
        if run is None:
            return None
        return self.execute(run)

    def prepare(self, event: TriggerEvent) -> PipelineRun | None:
        """Return a pending run for ``event``, or ``None`` when the trigger filter rejects it."""

        if not self.definition.trigger.accepts(event):
            logger.info("PIPELINE_SKIPPED ref=%s event=%s", event.ref, event.event)
            return None
        run = PipelineRun(trigger=event)
        self._remember(run)
        logger.info("PIPELINE_ACCEPTED run_id=%s ref=%s sha=%s", run.run_id, event.ref, event.sha)
        return run

    def execute(self, run: PipelineRun) -> PipelineRun:
        """Drive ``run`` through every state until it succeeds or fails."""

        if run.status is not RunStatus.PENDING:
            raise RuntimeError(f"Run {run.run_id} has already started ({run.status.value})")

        definition = self.definition
        deploy = definition.deploy
        try:
            build_guard = (
                self.build_locks.hold(deploy.target, run_id=run.run_id)
                if deploy.serialize_builds
                else nullcontext()
            )
            with build_guard:
                artifacts = self._build(run)

            run.transition(RunStatus.AWAITING_GATE)
            logger.info("PIPELINE_AWAITING_GATE run_id=%s target=%s", run.run_id, deploy.target)
            with self.gates.hold(deploy.target, run_id=run.run_id, timeout=deploy.gate_timeout) as permit:
                run.transition(RunStatus.PUBLISHING)
                try:
                    run.deployment = self.publisher.publish(
                        artifacts.subset(definition.published_artifacts),
                        deploy.target,
                        permit=permit,
                    )
                except PublishError:
                    run.deployment = Deployment(
                        target=deploy.target,
                        url="",
                        status=DeploymentStatus.FAILED,
                        run_id=run.run_id,
                        ticket=permit.ticket,
                        published_at=datetime.now(timezone.utc),
                    )
                    raise
            run.transition(RunStatus.SUCCEEDED)
            logger.info("PIPELINE_SUCCEEDED run_id=%s url=%s", run.run_id, run.deployment.url)
        except PipelineError as exc:
            run.fail(exc)
            logger.error("PIPELINE_FAILED run_id=%s error=%s", run.run_id, exc)
        except Exception as exc:
            run.fail(exc)
            logger.exception("PIPELINE_FAILED run_id=%s unexpected error", run.run_id)
            raise
        finally:
            self._archive(run)
        return run

    def get_run(self, run_id: str) -> PipelineRun | None:
        with self._lock:
            return self._runs.get(run_id)

    def list_runs(self) -> list[PipelineRun]:
        """Return known runs, newest first."""

        with self._lock:
            return list(reversed(self._runs.values()))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _build(self, run: PipelineRun) -> ArtifactSet:
        definition = self.definition

        run.transition(RunStatus.PROVISIONING)
        env = self.provisioner.provision(definition.environment)

        run.transition(RunStatus.EXECUTING)
        self.stage_executor.run(env, definition.stages, on_result=run.stage_results.append)
        failed = run.failed_stage
        if failed is not None:
            raise StageError(failed)

        run.transition(RunStatus.COLLECTING)
        artifacts = self.collector.collect(env, definition.artifacts)
        run.artifacts = artifacts
        return artifacts

    def _archive(self, run: PipelineRun) -> None:
        if self.archive is None or not run.terminal:
            return
        try:
            self.archive.store(run)
        except OSError:
            logger.exception("Failed to archive run %s", run.run_id)

    def _remember(self, run: PipelineRun) -> None:
        with self._lock:
            self._runs[run.run_id] = run
            overflow = len(self._runs) - self.max_history
            if overflow <= 0:
                return
            for run_id in [key for key, item in self._runs.items() if item.terminal][:overflow]:
                del self._runs[run_id]
