"""Bounded-concurrency executor for independent remote operations.

Units run in consecutive batches of at most ``limit``. A batch must fully
settle before the next one starts, so a systemic failure (expired auth,
target host down) shows up after one batch instead of after every unit.
Each unit is attempted exactly once; a failure never aborts its siblings.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Sequence

logger = logging.getLogger(__name__)


UnitStatus = Literal["pending", "succeeded", "failed"]

Unit = Callable[[], Awaitable[Any]]
ProgressCallback = Callable[[int, "UnitResult"], Awaitable[None] | None]


@dataclass
class UnitResult:
    """Outcome of one unit of work."""

    index: int
    status: UnitStatus = "pending"
    value: Any = None
    error: str | None = None


@dataclass
class BatchReport:
    """Per-unit results plus running counts, updated as units settle."""

    results: list[UnitResult] = field(default_factory=list)

    @classmethod
    def for_units(cls, count: int) -> "BatchReport":
        return cls(results=[UnitResult(index=i) for i in range(count)])

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.status == "succeeded")

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == "failed")

    @property
    def pending(self) -> int:
        return sum(1 for r in self.results if r.status == "pending")

    @property
    def done(self) -> bool:
        return self.pending == 0


class UploadBatcher:
    """Runs units of work at most ``limit`` at a time, batch by batch."""

    def __init__(self, limit: int = 3):
        if limit < 1:
            raise ValueError(f"Concurrency limit must be at least 1, got {limit}")
        self.limit = limit
        self.report: BatchReport | None = None

    async def run(
        self,
        units: Sequence[Unit],
        on_progress: ProgressCallback | None = None,
    ) -> BatchReport:
        """Execute all units and return their results in input order.

        Args:
            units: Zero-argument callables returning an awaitable
            on_progress: Called after each unit settles with (index, result)

        Returns:
            The report, also reachable as ``self.report`` while running
        """
        report = BatchReport.for_units(len(units))
        self.report = report

        for start in range(0, len(units), self.limit):
            batch = range(start, min(start + self.limit, len(units)))
            logger.debug(f"Starting batch of {len(batch)} unit(s) at index {start}")
            await asyncio.gather(
                *(self._run_unit(i, units[i], report, on_progress) for i in batch)
            )

        logger.debug(
            f"Batch run finished: {report.succeeded} succeeded, {report.failed} failed"
        )
        return report

    async def _run_unit(
        self,
        index: int,
        unit: Unit,
        report: BatchReport,
        on_progress: ProgressCallback | None,
    ) -> None:
        result = report.results[index]
        try:
            result.value = await unit()
            result.status = "succeeded"
        except Exception as e:
            result.error = str(e) or type(e).__name__
            result.status = "failed"
            logger.debug(f"Unit {index} failed: {result.error}")

        await self._emit_progress(on_progress, index, result)

    async def _emit_progress(
        self,
        on_progress: ProgressCallback | None,
        index: int,
        result: UnitResult,
    ) -> None:
        if on_progress is None:
            return
        try:
            outcome = on_progress(index, result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            # Progress reporting must not change unit outcomes.
            logger.error(f"Progress callback error: {e}")
