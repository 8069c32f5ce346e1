"""Environment-driven settings and wiring of the concrete pipeline collaborators."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Mapping

from pageship.models.pipeline import PipelineDefinition
from pageship.services.archive import RunArchive
from pageship.services.collector import ArtifactCollector
from pageship.services.gate import GateRegistry
from pageship.services.pipeline import PipelineCoordinator
from pageship.services.provisioner import ContainerProvisioner, HostProvisioner, SupportsProvisioning
from pageship.services.publisher import DirectoryPublisher, PagesPublisher, SupportsPublishing
from pageship.services.stage_executor import StageExecutor


_ISOLATION_MODES = {"container", "host"}
_PUBLISHERS = {"directory", "pages"}


@dataclass(slots=True, frozen=True)
class Settings:
    """Runtime configuration sourced from ``PAGESHIP_*`` environment variables."""

    definition_path: Path = Path("pageship.yml")
    workspace: Path = Path(".")
    isolation: str = "container"
    publisher: str = "directory"
    site_root: Path = Path(".pageship/site")
    site_url: str = "http://localhost:8000"
    pages_endpoint: str | None = None
    pages_token: str | None = None
    archive_dir: Path | None = None
    state_dir: Path = Path(".pageship/state")
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        def _get(name: str) -> str | None:
            value = (env.get(f"PAGESHIP_{name}") or "").strip()
            return value or None

        isolation = (_get("ISOLATION") or "container").lower()
        if isolation not in _ISOLATION_MODES:
            raise ValueError(f"PAGESHIP_ISOLATION must be one of {sorted(_ISOLATION_MODES)}, got '{isolation}'")
        publisher = (_get("PUBLISHER") or "directory").lower()
        if publisher not in _PUBLISHERS:
            raise ValueError(f"PAGESHIP_PUBLISHER must be one of {sorted(_PUBLISHERS)}, got '{publisher}'")
        if publisher == "pages" and not _get("PAGES_ENDPOINT"):
            raise ValueError("PAGESHIP_PAGES_ENDPOINT is required when PAGESHIP_PUBLISHER=pages")

        archive_dir = _get("ARCHIVE_DIR")
        return cls(
            definition_path=Path(_get("DEFINITION") or "pageship.yml"),
            workspace=Path(_get("WORKSPACE") or "."),
            isolation=isolation,
            publisher=publisher,
            site_root=Path(_get("SITE_ROOT") or ".pageship/site"),
            site_url=_get("SITE_URL") or "http://localhost:8000",
            pages_endpoint=_get("PAGES_ENDPOINT"),
            pages_token=_get("PAGES_TOKEN"),
            archive_dir=Path(archive_dir) if archive_dir else None,
            state_dir=Path(_get("STATE_DIR") or ".pageship/state"),
            log_level=(_get("LOG_LEVEL") or "INFO").upper(),
        )


def _build_provisioner(settings: Settings) -> SupportsProvisioning:
    workspace = settings.workspace.resolve()
    if settings.isolation == "host":
        return HostProvisioner(workspace=workspace, state_dir=settings.state_dir)
    return ContainerProvisioner(workspace)


def _build_publisher(settings: Settings) -> SupportsPublishing:
    if settings.publisher == "pages":
        assert settings.pages_endpoint is not None  # validated in Settings.from_env
        return PagesPublisher(endpoint=settings.pages_endpoint, token=settings.pages_token)
    return DirectoryPublisher(root=settings.site_root, base_url=settings.site_url)


def build_coordinator(
    definition: PipelineDefinition,
    settings: Settings,
    *,
    gates: GateRegistry | None = None,
) -> PipelineCoordinator:
    """Wire the production collaborators for ``definition``."""

    deploy = definition.deploy
    return PipelineCoordinator(
        definition=definition,
        provisioner=_build_provisioner(settings),
        stage_executor=StageExecutor(stage_timeout=deploy.stage_timeout),
        collector=ArtifactCollector(),
        gates=gates or GateRegistry(supersede_pending=deploy.supersede_pending),
        publisher=_build_publisher(settings),
        archive=RunArchive(settings.archive_dir) if settings.archive_dir else None,
    )
