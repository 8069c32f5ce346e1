"""Data structures describing build environments and command execution results."""

from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import json
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:  # pragma: no cover - for static type checking only
    from pageship.services.executor import CommandExecutor


@dataclass(slots=True, frozen=True)
class EnvironmentSpec:
    """Base image plus the toolchain install steps layered on top of it."""

    base_image: str
    toolchains: tuple[str, ...] = ()
    variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "toolchains", tuple(self.toolchains))
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    @property
    def fingerprint(self) -> str:
        """Return a stable digest identifying this environment recipe."""

        canonical = json.dumps(
            {
                "base_image": self.base_image,
                "toolchains": list(self.toolchains),
                "variables": dict(sorted(self.variables.items())),
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    """Exit status and combined output of one command."""

    exit_code: int
    output: str
    timed_out: bool = False


@dataclass(slots=True)
class EnvironmentHandle:
    """Opaque handle to a provisioned environment usable as an execution context."""

    fingerprint: str
    workspace: Path
    executor: "CommandExecutor"
    image: str | None = None
    variables: Mapping[str, str] = field(default_factory=dict)
    reused: bool = False
