"""Sequential execution of pipeline stages inside a provisioned environment."""

from __future__ import annotations

from collections.abc import Callable, Sequence
import logging
import time

from pageship.models.environment import EnvironmentHandle
from pageship.models.pipeline import Stage, StageResult


LOGGER = logging.getLogger(__name__)

ResultCallback = Callable[[StageResult], None]


class StageExecutor:
    """Run stages strictly in order, stopping at the first failure.

    Stage commands are opaque: only their exit status is interpreted. The
    returned list always ends with the failing stage when one failed, so its
    length tells how far the sequence got.
    """

    def __init__(self, *, stage_timeout: float | None = None) -> None:
        self._stage_timeout = stage_timeout

    def run(
        self,
        env: EnvironmentHandle,
        stages: Sequence[Stage],
        *,
        on_result: ResultCallback | None = None,
    ) -> list[StageResult]:
        results: list[StageResult] = []
        for position, stage in enumerate(stages, start=1):
            overrides = {**env.variables, **stage.env}
            LOGGER.info("STAGE_START %s/%s name=%s workdir=%s", position, len(stages), stage.name, stage.workdir)

            started = time.perf_counter()
            execution = env.executor.execute(
                stage.command,
                stage.workdir,
                overrides,
                timeout=self._stage_timeout,
            )
            result = StageResult(
                stage=stage.name,
                exit_code=execution.exit_code,
                output=execution.output,
                duration=time.perf_counter() - started,
                timed_out=execution.timed_out,
            )
            results.append(result)
            if on_result is not None:
                on_result(result)

            if not result.succeeded:
                LOGGER.error(
                    "STAGE_FAILED name=%s exit_code=%s timed_out=%s",
                    stage.name,
                    result.exit_code,
                    result.timed_out,
                )
                break
            LOGGER.info("STAGE_COMPLETE name=%s duration=%.2fs", stage.name, result.duration)
        return results
