"""
Row normalization at the Ledger Reader boundary.

Raw rows come out of the database loosely typed: nullable columns, free-form
enum text, decimals stored as strings. Every fallback is applied here, once,
so the aggregators only ever see fully-typed, defaulted records.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping, Optional, Type, TypeVar

from founder_metrics.core.errors import MalformedRecord
from .models import (
    CostRecord,
    ProviderCategory,
    SubscriptionRecord,
    SubscriptionStatus,
    Tier,
)

UNKNOWN_PROVIDER = "Unknown"
UNKNOWN_PLAN = "Unknown"

E = TypeVar("E", bound=Enum)


def parse_decimal(value: Any, field_name: str, default: Optional[Decimal] = None) -> Decimal:
    """Parse a stored decimal, using ``default`` for NULL.

    Raises:
        MalformedRecord: If the value is NULL with no default, or not a number
    """
    if value is None or value == "":
        if default is None:
            raise MalformedRecord(f"Missing required '{field_name}'")
        return default
    if isinstance(value, float):
        value = repr(value)
    try:
        parsed = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise MalformedRecord(f"Invalid decimal for '{field_name}'", context={"value": value})
    if not parsed.is_finite():
        raise MalformedRecord(f"Non-finite decimal for '{field_name}'", context={"value": value})
    return parsed


def parse_timestamp(value: Any, field_name: str) -> datetime:
    """Parse an ISO-8601 timestamp. Naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        if not value:
            raise MalformedRecord(f"Missing required '{field_name}'")
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            raise MalformedRecord(f"Invalid timestamp for '{field_name}'", context={"value": value})
    return ensure_utc(parsed)


def parse_optional_timestamp(value: Any, field_name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    return parse_timestamp(value, field_name)


def ensure_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Storage format for timestamps, comparable as text."""
    return ensure_utc(moment).isoformat()


def parse_category(value: Any) -> ProviderCategory:
    """Map a stored provider type onto a category; anything unknown is OTHER."""
    if not value:
        return ProviderCategory.OTHER
    try:
        return ProviderCategory(str(value).strip().lower())
    except ValueError:
        return ProviderCategory.OTHER


def parse_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    """Parse a stored enum value.

    Raises:
        MalformedRecord: If the value is missing or not a member of ``enum_cls``
    """
    try:
        return enum_cls(value)
    except ValueError:
        raise MalformedRecord(f"Unknown {enum_cls.__name__} for '{field_name}'", context={"value": value})


def parse_tier(value: Any) -> Optional[Tier]:
    if not value:
        return None
    try:
        return Tier(str(value).strip().upper())
    except ValueError:
        return None


def normalize_cost_row(row: Mapping[str, Any]) -> CostRecord:
    """Build a CostRecord from a ``credit_transactions`` row.

    A missing cost contributes 0 and a missing provider becomes "Unknown".
    """
    provider = row.get("provider_name")
    if provider is None or not str(provider).strip():
        provider = UNKNOWN_PROVIDER
    return CostRecord(
        provider=str(provider),
        provider_category=parse_category(row.get("provider_type")),
        cost_amount=parse_decimal(row.get("provider_cost"), "provider_cost", default=Decimal("0")),
        occurred_at=parse_timestamp(row.get("created_at"), "created_at"),
    )


def normalize_subscription_row(row: Mapping[str, Any]) -> SubscriptionRecord:
    """Build a SubscriptionRecord from a subscription joined to its plan.

    Raises:
        MalformedRecord: If ``account_id`` is missing or the price is unparseable
    """
    account_id = row.get("account_id")
    if account_id is None or not str(account_id).strip():
        raise MalformedRecord("Subscription missing 'account_id'", context={"id": row.get("id")})

    status_value = row.get("status") or SubscriptionStatus.ACTIVE.value
    status = parse_enum(SubscriptionStatus, str(status_value), "status")

    plan_name = row.get("plan_name")
    if plan_name is None or not str(plan_name).strip():
        plan_name = UNKNOWN_PLAN

    return SubscriptionRecord(
        account_id=str(account_id),
        tier=parse_tier(row.get("tier_type")),
        plan_name=str(plan_name),
        monthly_price=parse_decimal(row.get("price_monthly"), "price_monthly", default=Decimal("0")),
        status=status,
    )
