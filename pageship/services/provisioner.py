"""Provisioners that build (or reuse) the environment the stages run in."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import shlex
import tempfile
from typing import Protocol

from pageship.models.environment import EnvironmentHandle, EnvironmentSpec
from pageship.services.errors import ProvisionError
from pageship.services.executor import CommandExecutor, ContainerExecutor, LocalExecutor


LOGGER = logging.getLogger(__name__)

_OUTPUT_TAIL = 2000


class SupportsProvisioning(Protocol):
    """Interface relied on by the pipeline coordinator."""

    def provision(self, spec: EnvironmentSpec) -> EnvironmentHandle:
        """Return a handle to an environment matching ``spec``."""


def _tail(output: str) -> str:
    stripped = output.strip()
    return stripped[-_OUTPUT_TAIL:] if stripped else "no output"


def render_dockerfile(spec: EnvironmentSpec, *, mount_point: str = "/workspace") -> str:
    """Return a Dockerfile that layers the toolchain steps on the base image."""

    lines = [f"FROM {spec.base_image}"]
    lines.extend(f"RUN {command}" for command in spec.toolchains)
    lines.extend(f"ENV {key}={value}" for key, value in spec.variables.items())
    lines.append(f"WORKDIR {mount_point}")
    return "\n".join(lines) + "\n"


class ContainerProvisioner:
    """Build a container image for the environment, reusing a cached one when present."""

    IMAGE_REPOSITORY = "pageship-env"

    def __init__(
        self,
        workspace: Path,
        *,
        host: CommandExecutor | None = None,
        docker: str = "docker",
        reuse: bool = True,
        build_timeout: float | None = None,
    ) -> None:
        self._workspace = workspace
        self._docker = docker
        self._reuse = reuse
        self._build_timeout = build_timeout
        self._host = host or LocalExecutor(workspace)

    def image_tag(self, spec: EnvironmentSpec) -> str:
        return f"{self.IMAGE_REPOSITORY}:{spec.fingerprint[:12]}"

    def provision(self, spec: EnvironmentSpec) -> EnvironmentHandle:
        if not spec.base_image.strip():
            raise ProvisionError("no base image configured")

        tag = self.image_tag(spec)
        reused = self._reuse and self._image_exists(tag)
        if reused:
            LOGGER.info("Reusing cached environment image %s", tag)
        else:
            self._build(spec, tag)

        return EnvironmentHandle(
            fingerprint=spec.fingerprint,
            workspace=self._workspace,
            executor=ContainerExecutor(image=tag, workspace=self._workspace, runner=self._host, docker=self._docker),
            image=tag,
            reused=reused,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _image_exists(self, tag: str) -> bool:
        command = shlex.join([self._docker, "image", "inspect", tag])
        return self._host.execute(command, ".", {}).exit_code == 0

    def _build(self, spec: EnvironmentSpec, tag: str) -> None:
        LOGGER.info("Building environment image %s from %s", tag, spec.base_image)
        with tempfile.TemporaryDirectory(prefix="pageship-env-") as context_dir:
            context = Path(context_dir)
            (context / "Dockerfile").write_text(render_dockerfile(spec), encoding="utf-8")
            command = shlex.join([self._docker, "build", "-t", tag, str(context)])
            result = self._host.execute(command, ".", {}, timeout=self._build_timeout)

        if result.timed_out:
            raise ProvisionError(f"image build for {tag} timed out")
        if result.exit_code != 0:
            raise ProvisionError(
                f"image build for {tag} exited with status {result.exit_code}: {_tail(result.output)}"
            )


@dataclass(slots=True)
class HostProvisioner:
    """Install toolchains directly on the host, remembering completed recipes."""

    workspace: Path
    state_dir: Path
    runner: CommandExecutor | None = None
    install_timeout: float | None = None

    def provision(self, spec: EnvironmentSpec) -> EnvironmentHandle:
        fingerprint = spec.fingerprint
        marker = self.state_dir / f"{fingerprint}.ok"
        runner = self.runner or LocalExecutor(self.workspace)

        reused = marker.exists()
        if reused:
            LOGGER.info("Toolchains for %s already installed", fingerprint[:12])
        else:
            for index, command in enumerate(spec.toolchains, start=1):
                LOGGER.info("Installing toolchain step %s/%s", index, len(spec.toolchains))
                result = runner.execute(command, ".", {}, timeout=self.install_timeout)
                if result.exit_code != 0 or result.timed_out:
                    raise ProvisionError(
                        f"toolchain step {index} ({command!r}) exited with status "
                        f"{result.exit_code}: {_tail(result.output)}"
                    )
            self.state_dir.mkdir(parents=True, exist_ok=True)
            marker.write_text(spec.base_image + "\n", encoding="utf-8")

        return EnvironmentHandle(
            fingerprint=fingerprint,
            workspace=self.workspace,
            executor=runner,
            variables=dict(spec.variables),
            reused=reused,
        )
