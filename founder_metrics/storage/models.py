"""
Data models for storage layer.

Typed, immutable records produced by the Ledger Reader and the CRUD
repositories. Raw database rows are normalized into these once, on
ingestion, so the aggregation code never deals with missing fields.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar


class ProviderCategory(Enum):
    """Category of the third-party service a cost was paid to."""
    LLM = "llm"
    WHATSAPP = "whatsapp"
    VOICE = "voice"
    STORAGE = "storage"
    EMBEDDING = "embedding"
    OTHER = "other"


class Tier(Enum):
    """Subscription plan tier."""
    FREE = "FREE"
    PERSONAL = "PERSONAL"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class SubscriptionStatus(Enum):
    """Billing status of a subscription."""
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


class ServiceType(Enum):
    """Billable service lines."""
    CHATBOT = "CHATBOT"
    WHATSAPP = "WHATSAPP"
    VOICE = "VOICE"


class BillingUsageType(Enum):
    """Unit a service rate is charged per."""
    TOKEN_PROMPT = "TOKEN_PROMPT"
    TOKEN_COMPLETION = "TOKEN_COMPLETION"
    WHATSAPP_CONVERSATION_START = "WHATSAPP_CONVERSATION_START"
    WHATSAPP_MESSAGE_OUTBOUND = "WHATSAPP_MESSAGE_OUTBOUND"
    VOICE_MINUTE = "VOICE_MINUTE"


class FlagStrategy(Enum):
    """Rollout strategy of a feature flag."""
    GLOBAL = "global"
    PERCENTAGE = "percentage"
    TARGETED = "targeted"
    AB_TEST = "ab_test"
    TIME_BASED = "time_based"


@dataclass(frozen=True)
class CostRecord:
    """Amount paid to a provider for usage.

    Append-only ledger entry. Once recorded it is never modified.
    """
    provider: str
    provider_category: ProviderCategory
    cost_amount: Decimal
    occurred_at: datetime


@dataclass(frozen=True)
class SubscriptionRecord:
    """A subscription joined to its plan's tier, name and monthly price."""
    account_id: str
    tier: Optional[Tier]
    plan_name: str
    monthly_price: Decimal
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE


R = TypeVar("R")


@dataclass(frozen=True)
class LedgerBatch(Generic[R]):
    """Records returned by one Ledger Reader call.

    ``skipped`` counts raw rows dropped because they could not be normalized.
    The window bounds are ``None`` for reads that have no time window.
    """
    records: Tuple[R, ...]
    skipped: int = 0
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)


@dataclass(frozen=True)
class ServiceRate:
    """Price charged to customers per unit of a billable usage type."""
    id: str
    service_type: ServiceType
    usage_type: BillingUsageType
    rate_per_unit: Decimal
    currency: str = "CREDITS"
    effective_from: Optional[datetime] = None
    is_active: bool = True


@dataclass(frozen=True)
class FeatureFlag:
    """Feature flag stored in the founder database."""
    id: str
    key: str
    name: str
    description: Optional[str] = None
    strategy: FlagStrategy = FlagStrategy.GLOBAL
    value: Dict[str, Any] = field(default_factory=dict)
    is_enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionPlan:
    """A purchasable plan."""
    plan_id: str
    plan_name: str
    tier: Optional[Tier]
    price_monthly: Decimal
    price_annually: Decimal
    is_active: bool = True
    sort_order: int = 0
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class AccountSummary:
    """Account row with its current plan and usage counts."""
    id: str
    name: str
    email: str
    plan: str
    status: str
    mrr: Decimal
    chatbots: int
    users: int
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ActivityEntry:
    """An audit-log event described for the operator's activity feed."""
    id: str
    action: str
    description: str
    account_name: str
    created_at: Optional[datetime] = None
