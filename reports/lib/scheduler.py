"""Eligibility scheduler: which entities need which periods pulled next.

Seven scenarios are evaluated in priority order. The first one that
matches at least one entity wins the pass, so an entity is never
scheduled twice in one pass.

| # | Already succeeded | Due (unset/failed/stale) | Periods pulled |
|---|-------------------|--------------------------|----------------|
| 1 | -                 | week, month, quarter     | all three      |
| 2 | quarter           | week, month              | week, month    |
| 3 | week              | month, quarter           | month, quarter |
| 4 | month             | week, quarter            | week, quarter  |
| 5 | quarter, month    | week                     | week           |
| 6 | quarter, week     | month                    | month          |
| 7 | week, month       | quarter                  | quarter        |
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, FrozenSet, Iterable, List, Optional, Tuple

from reports.lib.collaborators import Persistence
from reports.lib.constants import (
    DEFAULT_MAX_ENTITIES_PER_BATCH,
    DEFAULT_MAX_STALENESS_DAYS_AGO,
)
from reports.lib.models import PeriodKind, TrackedEntity

logger = logging.getLogger(__name__)

__all__ = [
    "EligibilityScheduler",
    "SCENARIOS",
    "Scenario",
    "ScheduledBatch",
    "filter_entities",
]

_PERIOD_ORDER = (PeriodKind.WEEK, PeriodKind.MONTH, PeriodKind.QUARTER)


@dataclass(frozen=True)
class Scenario:
    number: int
    succeeded: FrozenSet[PeriodKind]
    due: FrozenSet[PeriodKind]

    @property
    def periods(self) -> Tuple[PeriodKind, ...]:
        """Periods to pull, in week/month/quarter order."""
        return tuple(p for p in _PERIOD_ORDER if p in self.due)

    def matches(self, entity: TrackedEntity, cutoff: datetime) -> bool:
        return all(entity.status_for(p).succeeded for p in self.succeeded) and all(
            entity.status_for(p).is_stale(cutoff) for p in self.due
        )

    def __str__(self) -> str:
        return f"scenario {self.number} ({'/'.join(p.value for p in self.periods)})"


def _scenario(number: int, succeeded: Iterable[PeriodKind], due: Iterable[PeriodKind]) -> Scenario:
    return Scenario(number=number, succeeded=frozenset(succeeded), due=frozenset(due))


W, M, Q = PeriodKind.WEEK, PeriodKind.MONTH, PeriodKind.QUARTER

SCENARIOS: Tuple[Scenario, ...] = (
    _scenario(1, (), (W, M, Q)),
    _scenario(2, (Q,), (W, M)),
    _scenario(3, (W,), (M, Q)),
    _scenario(4, (M,), (W, Q)),
    _scenario(5, (Q, M), (W,)),
    _scenario(6, (Q, W), (M,)),
    _scenario(7, (W, M), (Q,)),
)


def filter_entities(
    entities: Iterable[TrackedEntity],
    scenario: Scenario,
    cutoff: datetime,
    limit: int,
) -> List[TrackedEntity]:
    """Active entities matching ``scenario``, oldest-created first, capped at ``limit``."""
    matching = [e for e in entities if e.active and scenario.matches(e, cutoff)]
    matching.sort(key=lambda e: (e.created_at, e.entity_id))
    return matching[: max(0, limit)]


@dataclass(frozen=True)
class ScheduledBatch:
    """Entities selected in one scheduling pass and the periods each needs."""

    account_id: str
    scenario: Scenario
    entity_ids: Tuple[str, ...]

    @property
    def periods(self) -> Tuple[PeriodKind, ...]:
        return self.scenario.periods


class EligibilityScheduler:
    """Picks the next bounded batch of entities for an account.

    Each call is a single snapshot decision: the store is queried once per
    scenario in priority order and the first non-empty result is returned.
    """

    def __init__(
        self,
        store: Persistence,
        *,
        max_entities: int = DEFAULT_MAX_ENTITIES_PER_BATCH,
        max_days_ago: int = DEFAULT_MAX_STALENESS_DAYS_AGO,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.max_entities = max_entities
        self.max_days_ago = max_days_ago
        self._now = now

    def staleness_cutoff(self) -> datetime:
        return self._now() - timedelta(days=self.max_days_ago)

    async def next_batch(self, account_id: str) -> Optional[ScheduledBatch]:
        cutoff = self.staleness_cutoff()
        for scenario in SCENARIOS:
            entities = await self.store.query_entities(
                account_id, scenario, cutoff, self.max_entities
            )
            if entities:
                logger.info(
                    "Account %s matched %s with %d entities",
                    account_id,
                    scenario,
                    len(entities),
                )
                return ScheduledBatch(
                    account_id=account_id,
                    scenario=scenario,
                    entity_ids=tuple(e.entity_id for e in entities),
                )

        logger.info(
            "No eligible entities for account %s (nothing unset, failed or older than %d days)",
            account_id,
            self.max_days_ago,
        )
        return None
