from __future__ import annotations

import json
from pathlib import Path
import tarfile
import threading
import time

import pytest

from pageship.models.deployment import DeploymentStatus
from pageship.models.pipeline import PipelineRun, RunStatus, TriggerEvent
from pageship.services.archive import ARCHIVE_NAME, RunArchive
from pageship.services.errors import (
    CollectionError,
    GateTimeoutError,
    ProvisionError,
    PublishError,
    StageError,
)
from pageship.services.gate import GateRegistry
from pageship.tests.helpers import (
    RecordingPublisher,
    ScriptedExecutor,
    StaticProvisioner,
    make_coordinator,
    make_env,
    write_build_outputs,
)


MAIN_PUSH = TriggerEvent(ref="refs/heads/main", sha="4f2a9c1")


def _wait_for(predicate, *, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.005)


def test_run_on_main_publishes_dist_to_pages(workspace: Path) -> None:
    write_build_outputs(workspace)
    executor = ScriptedExecutor()
    publisher = RecordingPublisher()
    coordinator = make_coordinator(workspace, executor=executor, publisher=publisher)

    run = coordinator.run(MAIN_PUSH)

    assert run is not None
    assert run.succeeded
    assert run.deployment is not None
    assert run.deployment.target == "pages"
    assert run.deployment.url
    assert executor.commands == ["npm install", "npm run build:prod"]
    assert executor.calls[1]["env"]["NODE_ENV"] == "production"
    assert run.artifacts is not None and run.artifacts.names == ("dist", "pkg")
    assert publisher.published == [(run.run_id, ("dist",))]
    assert [status for status, _ in run.history] == [
        RunStatus.PENDING,
        RunStatus.PROVISIONING,
        RunStatus.EXECUTING,
        RunStatus.COLLECTING,
        RunStatus.AWAITING_GATE,
        RunStatus.PUBLISHING,
        RunStatus.SUCCEEDED,
    ]
    assert run.finished_at is not None


def test_failed_build_stops_before_collection(workspace: Path) -> None:
    executor = ScriptedExecutor(exit_codes={"npm run build:prod": 2}, outputs={"npm run build:prod": "ERR! webpack"})
    publisher = RecordingPublisher()
    coordinator = make_coordinator(workspace, executor=executor, publisher=publisher)

    run = coordinator.run(MAIN_PUSH)

    assert run is not None
    assert run.status is RunStatus.FAILED
    assert len(run.stage_results) == 2
    assert isinstance(run.error, StageError)
    assert run.error.stage == "build:prod"
    assert run.error.exit_code == 2
    assert run.error.output == "ERR! webpack"
    assert run.artifacts is None
    assert run.deployment is None
    assert publisher.published == []
    assert RunStatus.COLLECTING not in [status for status, _ in run.history]


def test_pushes_to_other_branches_create_no_run(workspace: Path) -> None:
    provisioner = StaticProvisioner(make_env(workspace))
    coordinator = make_coordinator(workspace, provisioner=provisioner)

    assert coordinator.prepare(TriggerEvent(ref="refs/heads/feature/x")) is None
    assert coordinator.run(TriggerEvent(ref="main", event="pull_request")) is None
    assert provisioner.calls == []
    assert coordinator.list_runs() == []


def test_provisioning_failure_fails_the_run(workspace: Path) -> None:
    provisioner = StaticProvisioner(make_env(workspace), error=ProvisionError("image not found"))
    coordinator = make_coordinator(workspace, provisioner=provisioner)

    run = coordinator.run(MAIN_PUSH)

    assert run is not None
    assert run.status is RunStatus.FAILED
    assert isinstance(run.error, ProvisionError)
    assert run.stage_results == []


def test_missing_artifacts_fail_collection(workspace: Path) -> None:
    (workspace / "dist").mkdir()
    publisher = RecordingPublisher()
    coordinator = make_coordinator(workspace, publisher=publisher)

    run = coordinator.run(MAIN_PUSH)

    assert run is not None
    assert run.status is RunStatus.FAILED
    assert isinstance(run.error, CollectionError)
    assert run.error.artifact_name == "dist"
    assert publisher.published == []


def test_publish_failure_records_deployment_and_frees_the_gate(workspace: Path) -> None:
    write_build_outputs(workspace)
    gates = GateRegistry()
    publisher = RecordingPublisher(error=PublishError("host answered 500: boom"))
    coordinator = make_coordinator(workspace, publisher=publisher, gates=gates)

    run = coordinator.run(MAIN_PUSH)

    assert run is not None
    assert run.status is RunStatus.FAILED
    assert isinstance(run.error, PublishError)
    assert run.deployment is not None
    assert run.deployment.status is DeploymentStatus.FAILED
    assert gates.gate("pages").status().holder is None
    assert gates.acquire("pages", run_id="next", timeout=0.5).run_id == "next"


def test_unexpected_publisher_errors_propagate_after_failing_the_run(workspace: Path) -> None:
    write_build_outputs(workspace)
    gates = GateRegistry()
    coordinator = make_coordinator(workspace, publisher=RecordingPublisher(error=KeyError("page_url")), gates=gates)
    run = coordinator.prepare(MAIN_PUSH)
    assert run is not None

    with pytest.raises(KeyError):
        coordinator.execute(run)

    assert run.status is RunStatus.FAILED
    assert gates.gate("pages").status().holder is None


def test_bounded_gate_wait_fails_the_run(workspace: Path) -> None:
    write_build_outputs(workspace)
    gates = GateRegistry()
    blocker = gates.acquire("pages", run_id="in-flight")
    coordinator = make_coordinator(workspace, gates=gates, gate_timeout=0.05)

    run = coordinator.run(MAIN_PUSH)

    assert run is not None
    assert run.status is RunStatus.FAILED
    assert isinstance(run.error, GateTimeoutError)
    assert run.history[-2][0] is RunStatus.AWAITING_GATE
    gates.release(blocker)


def test_later_run_waits_for_in_flight_deployment(workspace: Path) -> None:
    write_build_outputs(workspace)
    release = threading.Event()
    publisher = RecordingPublisher(block=release)
    coordinator = make_coordinator(workspace, publisher=publisher)
    first = coordinator.prepare(MAIN_PUSH)
    second = coordinator.prepare(TriggerEvent(ref="refs/heads/main", sha="9b8e7d6"))
    assert first is not None and second is not None

    first_thread = threading.Thread(target=coordinator.execute, args=(first,))
    first_thread.start()
    assert publisher.entered.wait(5)
    second_thread = threading.Thread(target=coordinator.execute, args=(second,))
    second_thread.start()
    _wait_for(lambda: coordinator.gates.gate("pages").status().pending == 1)

    assert first.status is RunStatus.PUBLISHING
    assert second.status is RunStatus.AWAITING_GATE

    release.set()
    first_thread.join(timeout=5)
    second_thread.join(timeout=5)

    assert first.succeeded and second.succeeded
    assert [run_id for run_id, _ in publisher.published] == [first.run_id, second.run_id]
    assert first.deployment.ticket < second.deployment.ticket


def test_serialized_builds_queue_before_provisioning(workspace: Path) -> None:
    write_build_outputs(workspace)
    release = threading.Event()
    provisioner = StaticProvisioner(make_env(workspace), block=release)
    coordinator = make_coordinator(workspace, provisioner=provisioner, serialize_builds=True)
    first = coordinator.prepare(MAIN_PUSH)
    second = coordinator.prepare(MAIN_PUSH)
    assert first is not None and second is not None

    threads = [threading.Thread(target=coordinator.execute, args=(run,)) for run in (first, second)]
    threads[0].start()
    assert provisioner.entered.wait(5)
    threads[1].start()
    _wait_for(lambda: coordinator.build_locks.gate("pages").status().pending == 1)

    assert first.status is RunStatus.PROVISIONING
    assert second.status is RunStatus.PENDING
    assert len(provisioner.calls) == 1

    release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert first.succeeded and second.succeeded
    assert len(provisioner.calls) == 2


def test_finished_runs_are_archived_with_artifacts(tmp_path: Path, workspace: Path) -> None:
    write_build_outputs(workspace)
    coordinator = make_coordinator(workspace, archive=RunArchive(tmp_path / "runs"))

    run = coordinator.run(MAIN_PUSH)

    assert run is not None
    destination = tmp_path / "runs" / run.run_id
    record = json.loads((destination / "run.json").read_text(encoding="utf-8"))
    assert record["status"] == "succeeded"
    assert record["trigger"]["branch"] == "main"
    assert [stage["stage"] for stage in record["stages"]] == ["install", "build:prod"]
    assert record["stages"][0]["output"] == "ran npm install\n"
    with tarfile.open(destination / ARCHIVE_NAME, mode="r:gz") as archive:
        assert sorted(archive.getnames()) == ["dist/index.html", "dist/index.js", "pkg/gears_bg.wasm"]


def test_failed_runs_are_archived_without_artifacts(tmp_path: Path, workspace: Path) -> None:
    executor = ScriptedExecutor(exit_codes={"npm install": 1})
    coordinator = make_coordinator(workspace, executor=executor, archive=RunArchive(tmp_path / "runs"))

    run = coordinator.run(MAIN_PUSH)

    assert run is not None
    destination = tmp_path / "runs" / run.run_id
    record = json.loads((destination / "run.json").read_text(encoding="utf-8"))
    assert record["error"]["type"] == "StageError"
    assert record["error"]["stage"] == "install"
    assert not (destination / ARCHIVE_NAME).exists()


def test_run_history_keeps_newest_runs(workspace: Path) -> None:
    write_build_outputs(workspace)
    coordinator = make_coordinator(workspace, max_history=2)

    runs = [coordinator.run(MAIN_PUSH) for _ in range(3)]

    assert [run.run_id for run in coordinator.list_runs()] == [runs[2].run_id, runs[1].run_id]
    assert coordinator.get_run(runs[0].run_id) is None
    assert coordinator.get_run(runs[2].run_id) is runs[2]


def test_runs_cannot_be_executed_twice(workspace: Path) -> None:
    write_build_outputs(workspace)
    coordinator = make_coordinator(workspace)
    run = coordinator.run(MAIN_PUSH)
    assert run is not None

    with pytest.raises(RuntimeError):
        coordinator.execute(run)


def test_run_state_machine_rejects_illegal_edges() -> None:
    run = PipelineRun(trigger=MAIN_PUSH)

    with pytest.raises(RuntimeError):
        run.transition(RunStatus.PUBLISHING)
    with pytest.raises(RuntimeError):
        run.transition(RunStatus.FAILED)

    run.transition(RunStatus.PROVISIONING)
    run.fail(ProvisionError("docker daemon not running"))

    assert run.terminal
    with pytest.raises(RuntimeError):
        run.fail(ProvisionError("again"))
    with pytest.raises(RuntimeError):
        run.transition(RunStatus.EXECUTING)
