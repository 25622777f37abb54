"""
External Estimate Gatherer
Queries every applicable estimate source concurrently and records one outcome
per source. A slow or failing source never blocks or aborts the others.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence

from ecotrace.core.clock import utcnow
from ecotrace.core.config import settings
from ecotrace.core.metrics import record_source_call
from ecotrace.schemas.activity import ActivityRecord
from ecotrace.schemas.calculation import CONFIDENCE_SCORES, CalculationResult
from ecotrace.schemas.validation import (
    CrossReference,
    CrossReferenceStatus,
    SourceComparison,
)
from ecotrace.services.estimate_sources import EstimateSource, SourceEstimate

logger = logging.getLogger(__name__)

PRIMARY_SOURCE_NAME = "primary_calculation"
PRIMARY_SOURCE_WEIGHT = 0.3
DEFAULT_PRIMARY_CONFIDENCE = 0.5


class OutcomeStatus(str, Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


@dataclass(frozen=True)
class SourceOutcome:
    source: str
    status: OutcomeStatus
    weight: float
    estimate: Optional[SourceEstimate] = None
    error: Optional[str] = None
    duration_ms: float = 0.0


class EstimateGatherer:
    """Fan-out of one activity to all estimate sources"""

    def __init__(
        self,
        sources: Sequence[EstimateSource],
        gather_timeout: float = None,
    ):
        self.sources = list(sources)
        self.gather_timeout = gather_timeout or settings.GATHER_TIMEOUT_SECONDS

    async def gather(self, activity: ActivityRecord) -> List[SourceOutcome]:
        eligible = [source for source in self.sources if source.supports(activity)]
        if not eligible:
            return []

        tasks = [asyncio.create_task(self._call(source, activity)) for source in eligible]
        try:
            done, pending = await asyncio.wait(tasks, timeout=self.gather_timeout)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                f"{len(pending)} estimate source(s) did not answer within {self.gather_timeout}s"
            )

        outcomes = []
        for source, task in zip(eligible, tasks):
            if task in done:
                outcome = task.result()
            else:
                outcome = SourceOutcome(
                    source=source.name,
                    status=OutcomeStatus.FAILED,
                    weight=source.weight,
                    error=f"cancelled after overall timeout of {self.gather_timeout}s",
                )
            record_source_call(outcome.source, outcome.status.value)
            outcomes.append(outcome)

        return outcomes

    async def _call(self, source: EstimateSource, activity: ActivityRecord) -> SourceOutcome:
        start = time.monotonic()
        status = OutcomeStatus.OK
        estimate = None
        error = None

        try:
            estimate = await asyncio.wait_for(source.estimate(activity), timeout=source.timeout)
            if estimate is None:
                status = OutcomeStatus.UNAVAILABLE
        except asyncio.TimeoutError:
            status = OutcomeStatus.FAILED
            error = f"timed out after {source.timeout}s"
            logger.warning(f"Estimate source {source.name} {error}")
        except Exception as e:
            status = OutcomeStatus.FAILED
            error = str(e)
            logger.warning(f"Estimate source {source.name} failed: {error}")

        return SourceOutcome(
            source=source.name,
            status=status,
            weight=source.weight,
            estimate=estimate,
            error=error,
            duration_ms=(time.monotonic() - start) * 1000,
        )


def classify_variance(variance_percent: float) -> CrossReferenceStatus:
    if variance_percent < 5:
        return CrossReferenceStatus.MATCH
    if variance_percent < 15:
        return CrossReferenceStatus.CLOSE
    if variance_percent < 30:
        return CrossReferenceStatus.DIVERGENT
    return CrossReferenceStatus.FAILED


def build_cross_references(
    outcomes: Sequence[SourceOutcome], primary_value: float
) -> List[CrossReference]:
    """Compare the primary value with each source that answered or failed"""
    references = []
    for outcome in outcomes:
        if outcome.status == OutcomeStatus.FAILED:
            references.append(
                CrossReference(
                    source=outcome.source,
                    actual_value=primary_value,
                    status=CrossReferenceStatus.FAILED,
                )
            )
            continue
        if outcome.status != OutcomeStatus.OK:
            continue

        expected = outcome.estimate.value
        if primary_value > 0:
            variance = abs(primary_value - expected) / primary_value * 100
        else:
            variance = 0.0 if expected == primary_value else 100.0

        references.append(
            CrossReference(
                source=outcome.source,
                expected_value=expected,
                actual_value=primary_value,
                variance=round(variance, 4),
                status=classify_variance(variance),
            )
        )
    return references


def build_comparisons(outcomes: Sequence[SourceOutcome]) -> List[SourceComparison]:
    return [
        SourceComparison(
            source=outcome.source,
            value=outcome.estimate.value,
            weight=outcome.weight,
            confidence=outcome.estimate.confidence,
            last_updated=outcome.estimate.last_updated,
        )
        for outcome in outcomes
        if outcome.status == OutcomeStatus.OK
    ]


def primary_comparison(
    result: CalculationResult, clock: Callable[[], datetime] = utcnow
) -> SourceComparison:
    """The calculation under validation, as one member of the comparison set"""
    calculated_at = result.calculated_at or clock()
    if calculated_at.tzinfo is None:
        calculated_at = calculated_at.replace(tzinfo=timezone.utc)

    return SourceComparison(
        source=PRIMARY_SOURCE_NAME,
        value=result.carbon_kg,
        weight=PRIMARY_SOURCE_WEIGHT,
        confidence=CONFIDENCE_SCORES.get(result.confidence, DEFAULT_PRIMARY_CONFIDENCE),
        last_updated=calculated_at,
    )
