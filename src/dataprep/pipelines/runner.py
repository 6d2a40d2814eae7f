"""Stage-by-stage pipeline driver with weighted progress and cooperative cancellation."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from dataprep.core.errors import StageError
from dataprep.pipelines.interfaces import PipelineContext, RunTracker, Stage
from dataprep.pipelines.stages import default_stages
from dataprep.schemas import RunStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PipelineOutcome:
    status: RunStatus  # completed, cancelled or failed
    error: StageError | None = None
    stage: str | None = None


class ProcessingPipeline:
    """Runs stages in order against a context.

    The pipeline never writes run status itself; it reports progress and log
    events through the tracker and returns an outcome for the caller to
    persist with a conditional transition.
    """

    def __init__(self, tracker: RunTracker, stages: Sequence[Stage] | None = None) -> None:
        self.tracker = tracker
        self.stages = list(stages) if stages is not None else default_stages()
        self.total_weight = sum(stage.weight for stage in self.stages) or 1

    def _percent(self, weight_done: float) -> int:
        return int(weight_done * 100 / self.total_weight)

    async def run(self, ctx: PipelineContext) -> PipelineOutcome:
        current: str | None = None
        try:
            weight_done = 0
            for stage in self.stages:
                current = stage.name
                if await self.tracker.is_cancelled():
                    await self.tracker.log(
                        "warn", f"Cancellation observed before {stage.name}", stage.name
                    )
                    return PipelineOutcome(RunStatus.CANCELLED, stage=stage.name)

                await self.tracker.log("info", f"Stage {stage.name} started", stage.name)
                base = weight_done

                async def report(
                    fraction: float, base: int = base, weight: int = stage.weight
                ) -> None:
                    fraction = min(max(fraction, 0.0), 1.0)
                    await self.tracker.progress(self._percent(base + weight * fraction))

                try:
                    result = await stage.run(ctx, report)
                except Exception as exc:
                    error = StageError.from_exception(exc, stage.name)
                    error.log_error(logger)
                    await self.tracker.log(
                        "error", f"Stage {stage.name} failed: {error.message}", stage.name
                    )
                    return PipelineOutcome(RunStatus.FAILED, error=error, stage=stage.name)

                weight_done += stage.weight
                await self.tracker.progress(self._percent(weight_done))
                await self.tracker.log(
                    "info",
                    f"Stage {stage.name} finished: {result.message} "
                    f"({result.records_in} in, {result.records_out} out)",
                    stage.name,
                )
                logger.info(f"Run {ctx.run_id}: {stage.name} finished ({result.records_out} records)")

            current = None
            if await self.tracker.is_cancelled():
                await self.tracker.log("warn", "Cancellation observed after the last stage")
                return PipelineOutcome(RunStatus.CANCELLED)
            return PipelineOutcome(RunStatus.COMPLETED)
        except Exception as exc:
            # Tracker writes failed; the caller still records the failure on the run
            error = StageError.from_exception(exc, current)
            error.log_error(logger)
            return PipelineOutcome(RunStatus.FAILED, error=error, stage=current)
