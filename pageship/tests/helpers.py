"""Stub collaborators and sample data shared by the tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import threading
from typing import Mapping

from pageship.models.artifacts import ArtifactSet
from pageship.models.deployment import Deployment, DeploymentPermit, DeploymentStatus
from pageship.models.environment import EnvironmentHandle, EnvironmentSpec, ExecutionResult
from pageship.models.pipeline import DeployConfig, PipelineDefinition, Stage, TriggerPolicy
from pageship.services.archive import RunArchive
from pageship.services.collector import ArtifactCollector
from pageship.services.gate import GateRegistry
from pageship.services.pipeline import PipelineCoordinator
from pageship.services.stage_executor import StageExecutor


@dataclass(slots=True)
class ScriptedExecutor:
    """In-memory command executor returning scripted exit codes per command."""

    exit_codes: dict[str, int] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)
    calls: list[dict[str, object]] = field(default_factory=list, init=False)

    def execute(
        self,
        command: str,
        workdir: str,
        env: Mapping[str, str],
        *,
        timeout: float | None = None,
    ) -> ExecutionResult:
        self.calls.append({"command": command, "workdir": workdir, "env": dict(env), "timeout": timeout})
        return ExecutionResult(
            exit_code=self.exit_codes.get(command, 0),
            output=self.outputs.get(command, f"ran {command}\n"),
        )

    @property
    def commands(self) -> list[str]:
        return [str(call["command"]) for call in self.calls]


def make_env(workspace: Path, executor: ScriptedExecutor | None = None, **variables: str) -> EnvironmentHandle:
    return EnvironmentHandle(
        fingerprint="f" * 64,
        workspace=workspace,
        executor=executor or ScriptedExecutor(),
        variables=variables,
    )


def sample_definition(**deploy_overrides: object) -> PipelineDefinition:
    """Return the wasm + web bundle pipeline used across the tests."""

    return PipelineDefinition(
        name="gear-designer",
        environment=EnvironmentSpec(
            base_image="node:latest",
            toolchains=(
                "apt-get update && apt-get install -y build-essential",
                "curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh -s -- -y",
            ),
            variables={"PATH": "/root/.cargo/bin:$PATH"},
        ),
        stages=(
            Stage(name="install", command="npm install"),
            Stage(name="build:prod", command="npm run build:prod", env={"NODE_ENV": "production"}),
        ),
        artifacts={"dist": "dist/*", "pkg": "pkg/*"},
        trigger=TriggerPolicy(branches=("main",)),
        deploy=DeployConfig(**{"target": "pages", "artifacts": ("dist",), **deploy_overrides}),
    )


def write_build_outputs(workspace: Path) -> None:
    """Create the files a successful wasm bundle build leaves behind."""

    (workspace / "dist").mkdir(parents=True, exist_ok=True)
    (workspace / "dist" / "index.html").write_text("<html></html>", encoding="utf-8")
    (workspace / "dist" / "index.js").write_text("console.log('gears')", encoding="utf-8")
    (workspace / "pkg").mkdir(parents=True, exist_ok=True)
    (workspace / "pkg" / "gears_bg.wasm").write_bytes(b"\0asm")


@dataclass(slots=True)
class StaticProvisioner:
    """Provisioner handing out a prepared environment, optionally blocking or failing."""

    env: EnvironmentHandle
    error: Exception | None = None
    block: threading.Event | None = None
    entered: threading.Event = field(default_factory=threading.Event)
    calls: list[EnvironmentSpec] = field(default_factory=list, init=False)

    def provision(self, spec: EnvironmentSpec) -> EnvironmentHandle:
        self.calls.append(spec)
        self.entered.set()
        if self.block is not None:
            block, self.block = self.block, None
            block.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.env


@dataclass(slots=True)
class RecordingPublisher:
    """Publisher that records each push and returns a successful deployment."""

    error: Exception | None = None
    block: threading.Event | None = None
    entered: threading.Event = field(default_factory=threading.Event)
    published: list[tuple[str | None, tuple[str, ...]]] = field(default_factory=list, init=False)

    def publish(self, artifacts: ArtifactSet, target: str, *, permit: DeploymentPermit) -> Deployment:
        self.entered.set()
        if self.block is not None:
            block, self.block = self.block, None
            block.wait(timeout=5)
        if self.error is not None:
            raise self.error
        self.published.append((permit.run_id, artifacts.names))
        return Deployment(
            target=target,
            url=f"https://gears.example.com/{target}/",
            status=DeploymentStatus.SUCCEEDED,
            run_id=permit.run_id,
            ticket=permit.ticket,
            published_at=permit.acquired_at,
            file_count=artifacts.file_count,
        )


def make_coordinator(
    workspace: Path,
    *,
    executor: ScriptedExecutor | None = None,
    provisioner: StaticProvisioner | None = None,
    publisher: RecordingPublisher | None = None,
    gates: GateRegistry | None = None,
    archive: RunArchive | None = None,
    max_history: int = 50,
    **deploy_overrides: object,
) -> PipelineCoordinator:
    return PipelineCoordinator(
        definition=sample_definition(**deploy_overrides),
        provisioner=provisioner or StaticProvisioner(make_env(workspace, executor)),
        stage_executor=StageExecutor(),
        collector=ArtifactCollector(),
        gates=gates or GateRegistry(),
        publisher=publisher or RecordingPublisher(),
        archive=archive,
        max_history=max_history,
    )
