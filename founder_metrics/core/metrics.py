"""
Metrics composition.

Combines active subscriptions and windowed provider costs into the
business metrics shown to the operator (MRR, ARR, gross margin), and
builds the full per-request report from the Ledger Reader.

Formulas
--------
MRR           = sum of monthly price over active subscriptions
ARR           = MRR * 12
Gross margin  = (MRR - provider cost) / MRR * 100, or 0 when MRR is 0

MRR is a point-in-time stock and provider cost a flow over the cost
window; the ratio is reported as is.
"""

import logging
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from founder_metrics.storage.models import CostRecord, SubscriptionRecord
from founder_metrics.storage.repository import LedgerReader
from .aggregation import (
    AggregatedGroup,
    aggregate_costs_by_category,
    aggregate_costs_by_provider,
    aggregate_revenue_by_tier,
)
from .errors import DataUnavailable

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
MONTHS_PER_YEAR = 12
DEFAULT_READ_TIMEOUT = 10.0


@dataclass(frozen=True)
class MetricsSnapshot:
    """Derived business metrics. Recomputed per request, never stored."""
    mrr: Decimal
    arr: Decimal
    active_account_count: int
    total_provider_cost: Decimal
    gross_margin_pct: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mrr": _money(self.mrr),
            "arr": _money(self.arr),
            "activeAccounts": self.active_account_count,
            "totalProviderCost": _money(self.total_provider_cost),
            "grossMargin": _money(self.gross_margin_pct),
        }


@dataclass(frozen=True)
class MetricsReport:
    """Everything one metrics request produces."""
    snapshot: MetricsSnapshot
    cost_by_provider: List[AggregatedGroup]
    cost_by_category: List[AggregatedGroup]
    revenue_by_tier: List[AggregatedGroup]
    skipped_records: int = 0
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metrics": self.snapshot.to_dict(),
            "costBreakdown": [_group_dict(g, "totalCost") for g in self.cost_by_provider],
            "costByCategory": [_group_dict(g, "totalCost") for g in self.cost_by_category],
            "revenueBreakdown": [_group_dict(g, "revenue") for g in self.revenue_by_tier],
            "skippedRecords": self.skipped_records,
            "window": {
                "start": self.window_start.isoformat() if self.window_start else None,
                "end": self.window_end.isoformat() if self.window_end else None,
            },
            "generatedAt": self.generated_at.isoformat(),
        }


def _money(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01")))


def _group_dict(group: AggregatedGroup, amount_name: str) -> Dict[str, Any]:
    return {
        "key": group.key,
        amount_name: _money(group.total_amount),
        "percentage": _money(group.percentage_of_total),
        "count": group.count,
    }


def compose_metrics(
    subscriptions: Iterable[SubscriptionRecord],
    costs: Iterable[CostRecord],
) -> MetricsSnapshot:
    """Compute the metrics snapshot.

    All active subscriptions are summed into MRR, including several active
    subscriptions held by the same account.

    Args:
        subscriptions: Active subscriptions
        costs: Provider costs for the cost window

    Returns:
        MetricsSnapshot; all zeros for empty input
    """
    mrr = ZERO
    accounts = set()
    for subscription in subscriptions:
        mrr += subscription.monthly_price
        accounts.add(subscription.account_id)

    total_cost = sum((record.cost_amount for record in costs), ZERO)
    gross_margin = (mrr - total_cost) / mrr * 100 if mrr > ZERO else ZERO

    return MetricsSnapshot(
        mrr=mrr,
        arr=mrr * MONTHS_PER_YEAR,
        active_account_count=len(accounts),
        total_provider_cost=total_cost,
        gross_margin_pct=gross_margin,
    )


class MetricsService:
    """Request-scoped metrics over a Ledger Reader.

    The cost and subscription reads are independent, so they run
    concurrently; both must finish before anything is composed. A failed or
    timed-out read raises DataUnavailable rather than yielding zeros.
    """

    def __init__(self, reader: LedgerReader, timeout: float = DEFAULT_READ_TIMEOUT):
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self.reader = reader
        self.timeout = timeout

    def _read(self, start: Optional[datetime], end: Optional[datetime]):
        pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="ledger-reader")
        try:
            subscriptions_future = pool.submit(self.reader.active_subscriptions)
            costs_future = pool.submit(self.reader.cost_records, start, end)
            done, pending = wait(
                [subscriptions_future, costs_future],
                timeout=self.timeout,
                return_when=FIRST_EXCEPTION,
            )
            for future in done:
                error = future.exception()
                if error is not None:
                    raise error
            if pending:
                logger.error("Ledger read timed out after %.1fs", self.timeout)
                raise DataUnavailable("Ledger read timed out", context={"timeout": self.timeout})
            return subscriptions_future.result(), costs_future.result()
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def snapshot(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> MetricsSnapshot:
        """Compose the metrics snapshot for the given cost window.

        Raises:
            DataUnavailable: If either read fails or times out
        """
        subscriptions, costs = self._read(start, end)
        return compose_metrics(subscriptions.records, costs.records)

    def report(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> MetricsReport:
        """Compose the snapshot plus the cost and revenue breakdowns.

        Raises:
            DataUnavailable: If either read fails or times out
        """
        subscriptions, costs = self._read(start, end)
        skipped = subscriptions.skipped + costs.skipped
        if skipped:
            logger.warning("Report built with %d malformed record(s) skipped", skipped)
        return MetricsReport(
            snapshot=compose_metrics(subscriptions.records, costs.records),
            cost_by_provider=aggregate_costs_by_provider(costs.records),
            cost_by_category=aggregate_costs_by_category(costs.records),
            revenue_by_tier=aggregate_revenue_by_tier(subscriptions.records),
            skipped_records=skipped,
            window_start=costs.window_start,
            window_end=costs.window_end,
        )
