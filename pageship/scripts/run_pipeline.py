"""Run the build-and-publish pipeline once for a single trigger event.

The definition file describes the environment, the ordered stages, the
artifact globs, and the deployment target. Runtime wiring (isolation mode,
publisher, archive directory) comes from ``PAGESHIP_*`` environment
variables; see :class:`pageship.services.bootstrap.Settings`.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Sequence

from pageship.models.pipeline import TriggerEvent
from pageship.services.bootstrap import Settings, build_coordinator
from pageship.services.definition import load_definition
from pageship.services.pipeline import PipelineCoordinator
from pageship.utils.serialization import json_default, run_payload

LOGGER = logging.getLogger("pageship.pipeline")

if not LOGGER.handlers:  # avoid duplicates on re-import
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.addHandler(handler)
    LOGGER.setLevel(logging.INFO)
    LOGGER.propagate = False


def _configure_logging() -> None:
    level_name = os.getenv("PAGESHIP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build the project and publish it to the hosting target.")
    parser.add_argument(
        "--definition",
        default=os.getenv("PAGESHIP_DEFINITION", "pageship.yml"),
        help="Path to the pipeline definition (default from PAGESHIP_DEFINITION or 'pageship.yml').",
    )
    parser.add_argument(
        "--ref",
        default=os.getenv("GITHUB_REF") or "refs/heads/main",
        help="Git ref that triggered the run (default from GITHUB_REF or 'refs/heads/main').",
    )
    parser.add_argument("--event", default="push", help="Trigger event name (default 'push').")
    parser.add_argument("--sha", default=os.getenv("GITHUB_SHA"), help="Commit SHA being built.")
    parser.add_argument(
        "--workspace",
        default=None,
        help="Directory holding the sources (default from PAGESHIP_WORKSPACE or the current directory).",
    )
    return parser.parse_args(argv)


def _build_coordinator(definition_path: Path, workspace: str | None) -> PipelineCoordinator:
    settings = Settings.from_env()
    if workspace:
        settings = replace(settings, workspace=Path(workspace))
    definition = load_definition(definition_path)
    return build_coordinator(definition, settings)


def main(argv: Sequence[str] | None = None) -> int:
    _configure_logging()
    args = _parse_args(argv)
    event = TriggerEvent(ref=args.ref, event=args.event, sha=args.sha)

    LOGGER.info("PIPELINE_START definition=%s ref=%s event=%s", args.definition, event.ref, event.event)
    try:
        coordinator = _build_coordinator(Path(args.definition), args.workspace)
    except ValueError:  # DefinitionError and invalid PAGESHIP_* settings
        LOGGER.exception("Failed to load pipeline configuration")
        return 1

    try:
        run = coordinator.run(event)
    except Exception:  # pragma: no cover - unexpected failure
        LOGGER.exception("Pipeline encountered an unexpected error")
        return 1

    if run is None:
        LOGGER.info("PIPELINE_SKIPPED ref=%s is not configured to deploy", event.ref)
        print(json.dumps({"accepted": False, "ref": event.ref}))
        return 0

    for result in run.stage_results:
        LOGGER.info(
            "PIPELINE_STAGE name=%s exit_code=%s duration=%.2fs", result.stage, result.exit_code, result.duration
        )

    payload = run_payload(run)
    print(json.dumps(payload, default=json_default, ensure_ascii=False))

    if not run.succeeded:
        LOGGER.error("PIPELINE_FAILED run_id=%s %s", run.run_id, run.error)
        failed = run.failed_stage
        if failed is not None and failed.output.strip():
            LOGGER.error("Output of failing stage '%s':\n%s", failed.stage, failed.output.rstrip())
        return 1

    assert run.deployment is not None  # for mypy
    LOGGER.info("PIPELINE_COMPLETE run_id=%s url=%s", run.run_id, run.deployment.url)
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
