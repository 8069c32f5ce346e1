"""Persist finished runs together with the full set of build artifacts."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
import tarfile

from pageship.models.pipeline import PipelineRun
from pageship.utils.serialization import json_default, run_payload


LOGGER = logging.getLogger(__name__)

ARCHIVE_NAME = "build-artifacts.tar.gz"


@dataclass(slots=True)
class RunArchive:
    """Write ``run.json`` and a ``build-artifacts`` tarball per run under ``root``."""

    root: Path

    def store(self, run: PipelineRun) -> Path:
        """Record ``run`` and return the directory it was written to."""

        destination = self.root / run.run_id
        destination.mkdir(parents=True, exist_ok=True)

        record = run_payload(run, include_output=True)
        (destination / "run.json").write_text(
            json.dumps(record, default=json_default, ensure_ascii=False, indent=2) + "\n",
            encoding="utf-8",
        )

        if run.artifacts is not None:
            with tarfile.open(destination / ARCHIVE_NAME, mode="w:gz") as archive:
                for name in run.artifacts:
                    for relative in run.artifacts.files[name]:
                        archive.add(run.artifacts.root / relative, arcname=relative.as_posix(), recursive=False)

        LOGGER.info("RUN_ARCHIVED run_id=%s path=%s", run.run_id, destination)
        return destination
