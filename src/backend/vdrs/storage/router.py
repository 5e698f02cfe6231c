"""Chooses between rollups and raw chunks for aggregate reads."""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from vdrs.storage.aggregates import ContinuousAggregateEngine, RollupBucket
from vdrs.storage.errors import InvalidRangeError

logger = structlog.get_logger()

Window = tuple[datetime, datetime]


@dataclass(frozen=True)
class RoutePlan:
    """Which ranges of a summary read come from rollups and which from raw rows."""

    aggregate: str
    start: datetime
    end: datetime
    source: str  # "raw", "rollup" or "split"
    rollup_window: Window | None = None
    raw_window: Window | None = None

    def to_dict(self) -> dict[str, Any]:
        def window(w: Window | None) -> dict[str, str] | None:
            return {"start": w[0].isoformat(), "end": w[1].isoformat()} if w else None

        return {
            "aggregate": self.aggregate,
            "source": self.source,
            "rollup_window": window(self.rollup_window),
            "raw_window": window(self.raw_window),
        }


class QueryRouter:
    """Routes [start, end) summary reads.

    Windows narrower than one bucket go to raw chunks. Windows below the
    aggregate's watermark go to rollups. Windows straddling the watermark are
    split so the in-flight tail is folded from raw rows instead of dropped.
    Callers pass bucket-aligned windows for exact bucket boundaries.
    """

    def __init__(self, aggregates: ContinuousAggregateEngine):
        self.aggregates = aggregates

    def plan(self, name: str, start: datetime, end: datetime) -> RoutePlan:
        if start > end:
            raise InvalidRangeError(f"start {start.isoformat()} is after end {end.isoformat()}")

        aggregate = self.aggregates.get(name)
        watermark = aggregate.watermark

        if end - start < aggregate.granularity.interval:
            return RoutePlan(name, start, end, "raw", raw_window=(start, end))
        if watermark is None or watermark <= start:
            return RoutePlan(name, start, end, "raw", raw_window=(start, end))
        if end <= watermark:
            return RoutePlan(name, start, end, "rollup", rollup_window=(start, end))
        return RoutePlan(
            name, start, end, "split",
            rollup_window=(start, watermark),
            raw_window=(watermark, end),
        )

    async def summarize(self, name: str, start: datetime, end: datetime,
                        key: str | None = None) -> tuple[RoutePlan, list[RollupBucket]]:
        """Execute a plan, newest bucket first."""
        plan = self.plan(name, start, end)

        buckets: list[RollupBucket] = []
        if plan.rollup_window is not None:
            buckets.extend(self.aggregates.buckets(name, *plan.rollup_window, key=key))
            await asyncio.sleep(0)
        if plan.raw_window is not None:
            buckets.extend(self.aggregates.fold_raw(name, *plan.raw_window, key=key))

        buckets.sort(key=lambda b: b.entity_id)
        buckets.sort(key=lambda b: b.bucket_start, reverse=True)

        logger.debug("Summary routed", aggregate=name, source=plan.source, buckets=len(buckets))
        return plan, buckets
