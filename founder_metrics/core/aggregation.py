"""
Cost and revenue aggregation.

Pure functions over typed ledger records. Each grouping sums an amount per
key, derives each group's share of the total, and emits groups in a
deterministic order: descending amount, ties broken by ascending key.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Set, Tuple

from founder_metrics.storage.models import (
    CostRecord,
    ProviderCategory,
    SubscriptionRecord,
    Tier,
)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

# Categories reported in the by-category breakdown; everything else is OTHER
REPORTED_CATEGORIES = {
    ProviderCategory.LLM: "LLM",
    ProviderCategory.WHATSAPP: "WHATSAPP",
    ProviderCategory.VOICE: "VOICE",
}
OTHER_CATEGORY = "OTHER"

TIER_KEYS = frozenset(tier.value for tier in Tier)
UNTIERED_SUFFIX = " (no tier)"


@dataclass(frozen=True)
class AggregatedGroup:
    """One group of an aggregation.

    ``count`` is the number of records in the group for costs and the
    number of distinct accounts for revenue.
    """
    key: str
    total_amount: Decimal
    percentage_of_total: Decimal
    count: int


@dataclass(frozen=True)
class PlanPerformance:
    """Active accounts and revenue for one plan."""
    plan: str
    accounts: int
    revenue: Decimal


def percentage_of(amount: Decimal, total: Decimal) -> Decimal:
    """Share of ``total`` as a percentage; 0 when the total is not positive."""
    if total <= ZERO:
        return ZERO
    return amount / total * HUNDRED


def _build_groups(sums: Dict[str, Decimal], counts: Dict[str, int]) -> List[AggregatedGroup]:
    total = sum(sums.values(), ZERO)
    groups = [
        AggregatedGroup(
            key=key,
            total_amount=amount,
            percentage_of_total=percentage_of(amount, total),
            count=counts[key],
        )
        for key, amount in sums.items()
    ]
    groups.sort(key=lambda g: g.key)
    groups.sort(key=lambda g: g.total_amount, reverse=True)
    return groups


def _group_costs(records: Iterable[CostRecord], key_of: Callable[[CostRecord], str]) -> List[AggregatedGroup]:
    sums: Dict[str, Decimal] = {}
    counts: Dict[str, int] = {}
    for record in records:
        key = key_of(record)
        sums[key] = sums.get(key, ZERO) + record.cost_amount
        counts[key] = counts.get(key, 0) + 1
    return _build_groups(sums, counts)


def category_key(category: ProviderCategory) -> str:
    """Reporting bucket for a provider category."""
    return REPORTED_CATEGORIES.get(category, OTHER_CATEGORY)


def aggregate_costs_by_provider(records: Iterable[CostRecord]) -> List[AggregatedGroup]:
    """Group provider costs by exact provider name.

    Args:
        records: Cost records for one window

    Returns:
        Groups ordered by descending total, then provider name. Empty when
        there are no records.
    """
    return _group_costs(records, lambda record: record.provider)


def aggregate_costs_by_category(records: Iterable[CostRecord]) -> List[AggregatedGroup]:
    """Group provider costs into LLM, WHATSAPP, VOICE and OTHER.

    Storage, embedding and unrecognized categories all land in OTHER.
    """
    return _group_costs(records, lambda record: category_key(record.provider_category))


def revenue_key(subscription: SubscriptionRecord) -> str:
    """Tier name, or the plan name when the plan has no tier.

    A tierless plan named like a tier (e.g. "PRO") is keyed "PRO (no tier)"
    so it never merges into that tier's group.
    """
    if subscription.tier is not None:
        return subscription.tier.value
    if subscription.plan_name in TIER_KEYS:
        return subscription.plan_name + UNTIERED_SUFFIX
    return subscription.plan_name


def aggregate_revenue_by_tier(subscriptions: Iterable[SubscriptionRecord]) -> List[AggregatedGroup]:
    """Group active subscriptions by tier.

    Expects only active subscriptions; status is filtered by the Ledger
    Reader. ``count`` is distinct accounts, not subscription rows.

    Returns:
        Groups ordered by descending revenue, then tier key
    """
    sums: Dict[str, Decimal] = {}
    accounts: Dict[str, Set[str]] = {}
    for subscription in subscriptions:
        key = revenue_key(subscription)
        sums[key] = sums.get(key, ZERO) + subscription.monthly_price
        accounts.setdefault(key, set()).add(subscription.account_id)
    return _build_groups(sums, {key: len(ids) for key, ids in accounts.items()})


def rank_plans(subscriptions: Iterable[SubscriptionRecord]) -> List[PlanPerformance]:
    """Rank plans by how many accounts are actively on them.

    Ordered by descending account count, then descending revenue, then
    plan name.
    """
    revenue: Dict[str, Decimal] = {}
    accounts: Dict[str, Set[str]] = {}
    for subscription in subscriptions:
        plan = subscription.plan_name
        revenue[plan] = revenue.get(plan, ZERO) + subscription.monthly_price
        accounts.setdefault(plan, set()).add(subscription.account_id)

    def _order(item: PlanPerformance) -> Tuple[int, Decimal, str]:
        return (-item.accounts, -item.revenue, item.plan)

    return sorted(
        (PlanPerformance(plan=plan, accounts=len(ids), revenue=revenue[plan]) for plan, ids in accounts.items()),
        key=_order,
    )
