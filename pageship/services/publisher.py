"""Publishers responsible for pushing collected artifacts to a hosting target."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import io
import logging
from pathlib import Path
import shutil
import tarfile
from typing import Protocol
from uuid import uuid4

import httpx

from pageship.models.artifacts import ArtifactSet
from pageship.models.deployment import Deployment, DeploymentPermit, DeploymentStatus
from pageship.services.errors import PublishError


LOGGER = logging.getLogger(__name__)


class SupportsPublishing(Protocol):
    """Interface relied on by the pipeline coordinator."""

    def publish(self, artifacts: ArtifactSet, target: str, *, permit: DeploymentPermit) -> Deployment:
        """Push ``artifacts`` to ``target`` while holding ``permit``."""


def _check_permit(target: str, permit: DeploymentPermit) -> None:
    if permit.target != target:
        raise ValueError(f"Permit for '{permit.target}' cannot publish to '{target}'")


def build_site_archive(artifacts: ArtifactSet) -> bytes:
    """Pack the artifact files, laid out relative to each artifact base, as a gzip tarball."""

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name in artifacts:
            for absolute, inner in artifacts.relative_to_base(name):
                archive.add(absolute, arcname=inner.as_posix(), recursive=False)
    return buffer.getvalue()


@dataclass(slots=True)
class DirectoryPublisher:
    """Publish artifacts into a directory served as a static site."""

    root: Path
    base_url: str = "http://localhost:8000"

    def publish(self, artifacts: ArtifactSet, target: str, *, permit: DeploymentPermit) -> Deployment:
        """Copy the files into a staging directory, then swap it in place of the live site."""

        _check_permit(target, permit)
        live = self.root / target
        staging = self.root / f".{target}.staging-{uuid4().hex[:8]}"
        retired = self.root / f".{target}.retired-{uuid4().hex[:8]}"

        try:
            self.root.mkdir(parents=True, exist_ok=True)
            count = self._stage(artifacts, staging)
            if live.exists():
                live.rename(retired)
            staging.rename(live)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            if retired.exists() and not live.exists():
                retired.rename(live)
            raise PublishError(f"could not write site for '{target}': {exc}") from exc
        shutil.rmtree(retired, ignore_errors=True)

        url = f"{self.base_url.rstrip('/')}/{target}/"
        LOGGER.info("PUBLISHED target=%s files=%s url=%s", target, count, url)
        return Deployment(
            target=target,
            url=url,
            status=DeploymentStatus.SUCCEEDED,
            run_id=permit.run_id,
            ticket=permit.ticket,
            published_at=datetime.now(timezone.utc),
            file_count=count,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _stage(artifacts: ArtifactSet, staging: Path) -> int:
        count = 0
        for name in artifacts:
            for absolute, inner in artifacts.relative_to_base(name):
                destination = staging / inner
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(absolute, destination)
                count += 1
        return count


@dataclass(slots=True)
class PagesPublisher:
    """Upload a site tarball to a static pages hosting endpoint over HTTP."""

    endpoint: str
    token: str | None = None
    timeout: float = 30.0
    client: httpx.Client | None = field(default=None, repr=False)

    def publish(self, artifacts: ArtifactSet, target: str, *, permit: DeploymentPermit) -> Deployment:
        """Upload ``artifacts`` and return the public URL reported by the host."""

        _check_permit(target, permit)
        payload = build_site_archive(artifacts)
        url = f"{self.endpoint.rstrip('/')}/targets/{target}/deployments"
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        client = self.client or httpx.Client(timeout=self.timeout)
        try:
            response = client.post(
                url,
                headers=headers,
                data={"run_id": permit.run_id or "", "ticket": str(permit.ticket)},
                files={"artifact": ("artifact.tar.gz", payload, "application/gzip")},
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text.strip()[:200] or exc.response.reason_phrase
            raise PublishError(f"host answered {exc.response.status_code}: {detail}") from exc
        except httpx.HTTPError as exc:
            raise PublishError(f"transport error talking to {url}: {exc}") from exc
        except ValueError as exc:
            raise PublishError(f"host returned invalid JSON: {exc}") from exc
        finally:
            if self.client is None:
                client.close()

        page_url = body.get("page_url") if isinstance(body, dict) else None
        if not isinstance(page_url, str) or not page_url.strip():
            raise PublishError("host response did not include a page_url")

        LOGGER.info("PUBLISHED target=%s files=%s url=%s", target, artifacts.file_count, page_url)
        return Deployment(
            target=target,
            url=page_url.strip(),
            status=DeploymentStatus.SUCCEEDED,
            run_id=permit.run_id,
            ticket=permit.ticket,
            published_at=datetime.now(timezone.utc),
            file_count=artifacts.file_count,
        )
