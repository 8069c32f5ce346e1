"""Resolve artifact glob patterns against the environment's workspace."""

from __future__ import annotations

from collections.abc import Mapping
import logging
from pathlib import Path, PurePosixPath

from pageship.models.artifacts import ArtifactSet
from pageship.models.environment import EnvironmentHandle
from pageship.services.errors import CollectionError


LOGGER = logging.getLogger(__name__)

_GLOB_CHARS = frozenset("*?[")


def pattern_base(pattern: str) -> PurePosixPath:
    """Return the literal directory prefix of ``pattern`` (``dist`` for ``dist/*.js``)."""

    parts: list[str] = []
    for part in PurePosixPath(pattern).parts:
        if _GLOB_CHARS.intersection(part):
            break
        parts.append(part)
    return PurePosixPath(*parts) if parts else PurePosixPath(".")


def _validate(pattern: str) -> None:
    candidate = PurePosixPath(pattern)
    if not pattern.strip() or candidate.is_absolute() or ".." in candidate.parts:
        raise ValueError(f"Artifact pattern '{pattern}' must be relative to the workspace")


class ArtifactCollector:
    """Gather designated output files into an :class:`ArtifactSet`.

    Collection is all-or-nothing: the first pattern (in mapping order) that
    resolves to zero files raises :class:`CollectionError`.
    """

    def collect(self, env: EnvironmentHandle, patterns: Mapping[str, str]) -> ArtifactSet:
        root = env.workspace
        files: dict[str, tuple[PurePosixPath, ...]] = {}
        bases: dict[str, PurePosixPath] = {}

        for name, pattern in patterns.items():
            _validate(pattern)
            matched = self._resolve(root, pattern)
            if not matched:
                LOGGER.error("ARTIFACT_MISSING name=%s pattern=%s", name, pattern)
                raise CollectionError(name, pattern)
            files[name] = matched
            base = pattern_base(pattern)
            if (root / base).is_file():
                base = base.parent
            bases[name] = base
            LOGGER.info("ARTIFACT_COLLECTED name=%s files=%s", name, len(matched))

        return ArtifactSet(root=root, files=files, bases=bases)

    @staticmethod
    def _resolve(root: Path, pattern: str) -> tuple[PurePosixPath, ...]:
        found: set[PurePosixPath] = set()
        for match in root.glob(pattern):
            candidates = match.rglob("*") if match.is_dir() else (match,)
            for path in candidates:
                if path.is_file():
                    found.add(PurePosixPath(path.relative_to(root).as_posix()))
        return tuple(sorted(found))
