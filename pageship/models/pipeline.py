"""Data structures describing pipeline definitions, triggers, and individual runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from fnmatch import fnmatchcase
from types import MappingProxyType
from typing import Mapping
from uuid import uuid4

from pageship.models.artifacts import ArtifactSet
from pageship.models.deployment import Deployment
from pageship.models.environment import EnvironmentSpec


_BRANCH_PREFIX = "refs/heads/"


@dataclass(slots=True, frozen=True)
class TriggerEvent:
    """External event (usually a branch push) that may start a pipeline run."""

    ref: str
    event: str = "push"
    sha: str | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def branch(self) -> str:
        """Return the branch name with any ``refs/heads/`` prefix removed."""

        ref = self.ref.strip()
        if ref.startswith(_BRANCH_PREFIX):
            return ref[len(_BRANCH_PREFIX):]
        return ref


@dataclass(slots=True, frozen=True)
class TriggerPolicy:
    """Filter deciding which events are allowed to start a run."""

    branches: tuple[str, ...] = ("main",)
    events: tuple[str, ...] = ("push",)

    def accepts(self, event: TriggerEvent) -> bool:
        if event.event not in self.events:
            return False
        branch = event.branch
        return any(fnmatchcase(branch, pattern) for pattern in self.branches)


@dataclass(slots=True, frozen=True)
class Stage:
    """A named command executed inside the provisioned environment."""

    name: str
    command: str
    workdir: str = "."
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))


@dataclass(slots=True, frozen=True)
class StageResult:
    """Outcome of running a single stage."""

    stage: str
    exit_code: int
    output: str
    duration: float
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass(slots=True, frozen=True)
class DeployConfig:
    """Deployment settings shared by every run of a definition."""

    target: str = "pages"
    artifacts: tuple[str, ...] = ()
    supersede_pending: bool = False
    gate_timeout: float | None = None
    stage_timeout: float | None = None
    serialize_builds: bool = False


@dataclass(slots=True, frozen=True)
class PipelineDefinition:
    """Complete description of the linear build-and-publish pipeline."""

    name: str
    environment: EnvironmentSpec
    stages: tuple[Stage, ...]
    artifacts: Mapping[str, str]
    trigger: TriggerPolicy = field(default_factory=TriggerPolicy)
    deploy: DeployConfig = field(default_factory=DeployConfig)

    def __post_init__(self) -> None:
        object.__setattr__(self, "stages", tuple(self.stages))
        object.__setattr__(self, "artifacts", MappingProxyType(dict(self.artifacts)))

    @property
    def published_artifacts(self) -> tuple[str, ...]:
        """Return the artifact names pushed to the target (all of them by default)."""

        return self.deploy.artifacts or tuple(self.artifacts)


class RunStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    EXECUTING = "executing"
    COLLECTING = "collecting"
    AWAITING_GATE = "awaiting_gate"
    PUBLISHING = "publishing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TERMINAL = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED})

_FORWARD: Mapping[RunStatus, RunStatus] = {
    RunStatus.PENDING: RunStatus.PROVISIONING,
    RunStatus.PROVISIONING: RunStatus.EXECUTING,
    RunStatus.EXECUTING: RunStatus.COLLECTING,
    RunStatus.COLLECTING: RunStatus.AWAITING_GATE,
    RunStatus.AWAITING_GATE: RunStatus.PUBLISHING,
    RunStatus.PUBLISHING: RunStatus.SUCCEEDED,
}


@dataclass(slots=True)
class PipelineRun:
    """A single execution of the pipeline, owned by the coordinator."""

    trigger: TriggerEvent
    run_id: str = field(default_factory=lambda: uuid4().hex)
    status: RunStatus = RunStatus.PENDING
    stage_results: list[StageResult] = field(default_factory=list)
    artifacts: ArtifactSet | None = None
    deployment: Deployment | None = None
    error: BaseException | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    history: list[tuple[RunStatus, datetime]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.status, self.created_at))

    @property
    def terminal(self) -> bool:
        return self.status in _TERMINAL

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    @property
    def failed_stage(self) -> StageResult | None:
        """Return the failing stage result, if the run stopped on one."""

        if self.stage_results and not self.stage_results[-1].succeeded:
            return self.stage_results[-1]
        return None

    def transition(self, status: RunStatus) -> None:
        """Advance the run along the happy path, rejecting any other edge."""

        if status is RunStatus.FAILED:
            raise RuntimeError("Use fail() to move a run into the failed state")
        if _FORWARD.get(self.status) is not status:
            raise RuntimeError(f"Illegal run transition {self.status.value} -> {status.value}")
        self._enter(status)

    def fail(self, error: BaseException) -> None:
        """Move the run to ``failed`` from any non-terminal state, keeping ``error``."""

        if self.terminal:
            raise RuntimeError(f"Run {self.run_id} is already {self.status.value}")
        self.error = error
        self._enter(RunStatus.FAILED)

    def _enter(self, status: RunStatus) -> None:
        now = datetime.now(timezone.utc)
        self.status = status
        self.history.append((status, now))
        if status in _TERMINAL:
            self.finished_at = now
