"""Data structures supporting the deployment gate and the publishers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


@dataclass(slots=True, frozen=True)
class DeploymentPermit:
    """Exclusive right to publish to ``target``, issued by a deployment gate."""

    target: str
    ticket: int
    run_id: str | None
    acquired_at: datetime


class DeploymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(slots=True)
class Deployment:
    """Outcome returned by a publisher after pushing an artifact set."""

    target: str
    url: str
    status: DeploymentStatus
    run_id: str | None
    ticket: int
    published_at: datetime
    file_count: int = 0


@dataclass(slots=True, frozen=True)
class GateStatus:
    """Point-in-time view of a deployment gate."""

    target: str
    holder: str | None
    holder_ticket: int | None
    pending: int
