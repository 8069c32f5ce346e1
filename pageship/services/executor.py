"""Command execution backends used for provisioning and stage execution."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path, PurePosixPath
import re
import shlex
import subprocess
from typing import Mapping, Protocol

from pageship.models.environment import ExecutionResult


LOGGER = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
LAUNCH_FAILURE_EXIT_CODE = 127

_VARIABLE = re.compile(r"\$\$|\$\{(\w+)\}|\$(\w+)")


class CommandExecutor(Protocol):
    """Capability to run an opaque shell command inside some environment."""

    def execute(
        self,
        command: str,
        workdir: str,
        env: Mapping[str, str],
        *,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Run ``command`` in ``workdir`` (relative to the environment root)."""


def _relative_workdir(workdir: str) -> PurePosixPath:
    """Return ``workdir`` as a relative POSIX path, rejecting escapes from the root."""

    candidate = PurePosixPath(workdir or ".")
    if candidate.is_absolute() or ".." in candidate.parts:
        raise ValueError(f"Working directory '{workdir}' must stay inside the workspace")
    return candidate


def _decode(output: str | bytes | None) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


@dataclass(slots=True)
class LocalExecutor:
    """Run commands through the host shell, rooted at ``root``."""

    root: Path
    base_env: Mapping[str, str] = field(default_factory=dict)
    shell: str | None = None

    def execute(
        self,
        command: str,
        workdir: str,
        env: Mapping[str, str],
        *,
        timeout: float | None = None,
    ) -> ExecutionResult:
        cwd = self.root / _relative_workdir(workdir)
        ambient = dict(os.environ)
        environment = dict(ambient)
        for key, value in {**self.base_env, **env}.items():
            environment[key] = _expand(value, ambient)

        LOGGER.debug("Executing %r in %s", command, cwd)
        try:
            completed = subprocess.run(
                command,
                shell=True,
                cwd=cwd,
                env=environment,
                executable=self.shell,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            return ExecutionResult(exit_code=TIMEOUT_EXIT_CODE, output=_decode(exc.output), timed_out=True)
        except OSError as exc:
            LOGGER.error("Could not start %r in %s: %s", command, cwd, exc)
            return ExecutionResult(exit_code=LAUNCH_FAILURE_EXIT_CODE, output=f"could not start command: {exc}")
        return ExecutionResult(exit_code=completed.returncode, output=completed.stdout or "")


def _expand(value: str, environment: Mapping[str, str]) -> str:
    """Expand ``$NAME`` and ``${NAME}`` references against ``environment``.

    Unknown names and ``$$`` are left untouched.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        if name is None or name not in environment:
            return match.group(0)
        return environment[name]

    return _VARIABLE.sub(_replace, value)


def _shell_word(value: str) -> str:
    """Quote ``value`` for bash so that only ``$NAME``/``${NAME}`` references expand.

    An unset name expands to its own reference, matching :func:`_expand`.
    """

    parts: list[str] = []
    position = 0
    for match in _VARIABLE.finditer(value):
        literal = value[position:match.start()]
        if literal:
            parts.append(shlex.quote(literal))
        name = match.group(1) or match.group(2)
        if name is None:
            parts.append(shlex.quote(match.group(0)))
        else:
            parts.append(f'"${{{name}-\\${name}}}"')
        position = match.end()
    tail = value[position:]
    if tail or not parts:
        parts.append(shlex.quote(tail))
    return "".join(parts)


@dataclass(slots=True)
class ContainerExecutor:
    """Run commands inside a container image with the workspace bind-mounted.

    Override values that reference other variables are exported inside the
    container so that ``$PATH`` and friends resolve against the image.
    """

    image: str
    workspace: Path
    runner: CommandExecutor | None = None
    docker: str = "docker"
    mount_point: str = "/workspace"

    def command_for(self, command: str, workdir: str, env: Mapping[str, str]) -> list[str]:
        """Return the ``docker run`` argument vector for ``command``."""

        inner = PurePosixPath(self.mount_point) / _relative_workdir(workdir)
        args = [
            self.docker,
            "run",
            "--rm",
            "-v",
            f"{self.workspace.resolve()}:{self.mount_point}",
            "-w",
            str(inner),
        ]
        exports: list[str] = []
        for key, value in env.items():
            if _VARIABLE.search(value):
                exports.append(f"export {key}={_shell_word(value)}; ")
            else:
                args.extend(["-e", f"{key}={value}"])
        args.extend([self.image, "bash", "-c", "".join(exports) + command])
        return args

    def execute(
        self,
        command: str,
        workdir: str,
        env: Mapping[str, str],
        *,
        timeout: float | None = None,
    ) -> ExecutionResult:
        runner = self.runner or LocalExecutor(self.workspace)
        argv = self.command_for(command, workdir, env)
        return runner.execute(shlex.join(argv), ".", {}, timeout=timeout)
