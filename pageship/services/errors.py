"""Exception hierarchy for pipeline failures.

Every :class:`PipelineError` is terminal for the run that raised it; the
coordinator stores it on the run so callers can report which step failed.
"""

from __future__ import annotations

from pageship.models.pipeline import StageResult


class PipelineError(RuntimeError):
    """Base class for failures that end a pipeline run."""


class ProvisionError(PipelineError):
    """The build environment could not be built or reused."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Provisioning failed: {reason}")
        self.reason = reason


class StageError(PipelineError):
    """A stage command exited non-zero or ran out of time."""

    def __init__(self, result: StageResult) -> None:
        if result.timed_out:
            detail = "timed out"
        else:
            detail = f"exited with status {result.exit_code}"
        super().__init__(f"Stage '{result.stage}' {detail}")
        self.result = result

    @property
    def stage(self) -> str:
        return self.result.stage

    @property
    def exit_code(self) -> int:
        return self.result.exit_code

    @property
    def output(self) -> str:
        return self.result.output


class CollectionError(PipelineError):
    """An artifact pattern matched no files."""

    def __init__(self, artifact_name: str, pattern: str) -> None:
        super().__init__(f"Artifact '{artifact_name}' matched no files for pattern '{pattern}'")
        self.artifact_name = artifact_name
        self.pattern = pattern


class PublishError(PipelineError):
    """The hosting target rejected the push or could not be reached."""

    def __init__(self, cause: str) -> None:
        super().__init__(f"Publish failed: {cause}")
        self.cause = cause


class GateTimeoutError(PipelineError):
    """A bounded wait for a deployment permit expired."""

    def __init__(self, target: str, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:g}s waiting for deployment gate '{target}'")
        self.target = target
        self.timeout = timeout


class GateSupersededError(PipelineError):
    """A queued deployment was dropped because a newer one arrived."""

    def __init__(self, target: str, run_id: str | None) -> None:
        super().__init__(f"Queued deployment to '{target}' superseded by a newer run")
        self.target = target
        self.run_id = run_id
