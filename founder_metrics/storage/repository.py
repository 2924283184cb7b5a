"""
Repository pattern for data access.

The Ledger Reader serves the metrics engine; the remaining repositories
back the operator's CRUD operations (plans, accounts, service rates and
feature flags) and the recent activity feed.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, TypeVar

from founder_metrics.core.errors import DataUnavailable, MalformedRecord, RecordNotFound
from .db import Datastore
from .models import (
    AccountSummary,
    ActivityEntry,
    BillingUsageType,
    CostRecord,
    FeatureFlag,
    FlagStrategy,
    LedgerBatch,
    ServiceRate,
    ServiceType,
    SubscriptionPlan,
    SubscriptionRecord,
    SubscriptionStatus,
)
from .normalize import (
    ensure_utc,
    format_timestamp,
    normalize_cost_row,
    normalize_subscription_row,
    parse_decimal,
    parse_enum,
    parse_optional_timestamp,
    parse_tier,
)

logger = logging.getLogger(__name__)

DEFAULT_COST_WINDOW_DAYS = 30
DEFAULT_ACTIVITY_LIMIT = 10
UNKNOWN_ACCOUNT = "Unknown"

# Wider than any UTC offset, so a text range on created_at never drops a row
TIMESTAMP_TEXT_MARGIN = timedelta(days=1)

T = TypeVar("T")

MAIN_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        billing_email TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscription_plans (
        plan_id TEXT PRIMARY KEY,
        plan_name TEXT NOT NULL,
        tier_type TEXT,
        description TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        price_monthly TEXT NOT NULL,
        price_annually TEXT NOT NULL,
        currency TEXT DEFAULT 'usd',
        sort_order INTEGER NOT NULL DEFAULT 0,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        plan_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'trialing',
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credit_transactions (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        service_type TEXT NOT NULL,
        amount TEXT NOT NULL,
        provider_cost TEXT,
        provider_name TEXT,
        provider_type TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS service_rates (
        id TEXT PRIMARY KEY,
        service_type TEXT NOT NULL,
        usage_type TEXT NOT NULL,
        rate_per_unit TEXT NOT NULL,
        currency TEXT NOT NULL DEFAULT 'CREDITS',
        effective_from TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_bots (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        name TEXT NOT NULL,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_members (
        account_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        role TEXT NOT NULL,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        action TEXT NOT NULL,
        resource_type TEXT,
        resource_id TEXT,
        details TEXT,
        created_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS credit_transactions_created_idx ON credit_transactions (created_at)",
    "CREATE INDEX IF NOT EXISTS subscriptions_status_idx ON subscriptions (status)",
    "CREATE INDEX IF NOT EXISTS audit_logs_created_idx ON audit_logs (created_at)",
)

FOUNDER_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS feature_flags (
        id TEXT PRIMARY KEY,
        key TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        description TEXT,
        strategy TEXT NOT NULL DEFAULT 'global',
        value TEXT NOT NULL DEFAULT '{}',
        is_enabled INTEGER NOT NULL DEFAULT 1,
        created_at TEXT,
        updated_at TEXT
    )
    """,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _normalize_rows(rows: Iterable[sqlite3.Row], normalizer: Callable[[Dict[str, Any]], T], what: str):
    """Convert rows, skipping and counting the ones that are malformed.

    Returns:
        Tuple of (records, skipped count)
    """
    records: List[T] = []
    skipped = 0
    for row in rows:
        raw = dict(row)
        try:
            records.append(normalizer(raw))
        except MalformedRecord as exc:
            skipped += 1
            logger.warning("Skipping malformed %s %s: %s", what, raw.get("id") or raw.get("key"), exc)
    return records, skipped


def initialize_schema(datastore: Datastore) -> None:
    """Create the tables used by this tool if they don't exist.

    This is not a migration tool: existing tables are left untouched.

    Args:
        datastore: Handle to the main and founder databases
    """
    with datastore.main() as conn:
        for statement in MAIN_SCHEMA:
            conn.execute(statement)
        conn.commit()
    with datastore.founder() as conn:
        for statement in FOUNDER_SCHEMA:
            conn.execute(statement)
        conn.commit()


class LedgerReader:
    """Reads raw cost and subscription records for the metrics engine.

    Every raw row is normalized once on the way out. Rows that cannot be
    normalized are skipped and counted; database failures surface as
    DataUnavailable.
    """

    def __init__(
        self,
        datastore: Datastore,
        cost_window_days: int = DEFAULT_COST_WINDOW_DAYS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the reader.

        Args:
            datastore: Handle to the main database
            cost_window_days: Length of the default trailing cost window
            clock: Source of "now", injectable for tests
        """
        if cost_window_days <= 0:
            raise ValueError("cost_window_days must be > 0")
        self.datastore = datastore
        self.cost_window_days = cost_window_days
        self._clock = clock

    def default_window(self, end: Optional[datetime] = None) -> Tuple[datetime, datetime]:
        """Trailing cost window ending at ``end`` (default now)."""
        end = ensure_utc(end if end is not None else self._clock())
        return end - timedelta(days=self.cost_window_days), end

    def cost_records(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> LedgerBatch[CostRecord]:
        """Get provider-cost records in the half-open window ``[start, end)``.

        Stored timestamps may carry any UTC offset, so the SQL range is only
        a prefilter widened by a day on each side; the exact bounds are
        applied to the normalized UTC timestamps.

        Args:
            start: Inclusive lower bound (defaults to ``end`` minus the window)
            end: Exclusive upper bound (defaults to now)

        Returns:
            LedgerBatch of cost records ordered by time (oldest first)

        Raises:
            DataUnavailable: If the database cannot be queried
        """
        default_start, end = self.default_window(end)
        start = ensure_utc(start) if start is not None else default_start
        if start > end:
            raise ValueError("window start must not be after window end")

        query = """
            SELECT id, provider_name, provider_type, provider_cost, created_at
            FROM credit_transactions
            WHERE created_at >= ? AND created_at < ?
            ORDER BY id
        """
        params = (
            format_timestamp(start - TIMESTAMP_TEXT_MARGIN),
            format_timestamp(end + TIMESTAMP_TEXT_MARGIN),
        )
        rows = self._fetch(query, params, "cost records")
        records, skipped = _normalize_rows(rows, normalize_cost_row, "cost record")
        # Stable sort keeps id order among equal timestamps
        in_window = sorted(
            (record for record in records if start <= record.occurred_at < end),
            key=lambda record: record.occurred_at,
        )
        return LedgerBatch(records=tuple(in_window), skipped=skipped, window_start=start, window_end=end)

    def active_subscriptions(self) -> LedgerBatch[SubscriptionRecord]:
        """Get every currently active subscription joined to its plan.

        The active-status filter is applied here and nowhere downstream.

        Raises:
            DataUnavailable: If the database cannot be queried
        """
        query = """
            SELECT s.id, s.account_id, s.status, p.plan_name, p.tier_type, p.price_monthly
            FROM subscriptions s
            LEFT JOIN subscription_plans p ON s.plan_id = p.plan_id
            WHERE s.status = ?
            ORDER BY s.account_id, s.id
        """
        rows = self._fetch(query, (SubscriptionStatus.ACTIVE.value,), "active subscriptions")
        records, skipped = _normalize_rows(rows, normalize_subscription_row, "subscription")
        return LedgerBatch(records=tuple(records), skipped=skipped)

    def _fetch(self, query: str, params: tuple, what: str) -> List[sqlite3.Row]:
        try:
            with self.datastore.main() as conn:
                return conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            logger.error("Failed to read %s", what, exc_info=exc)
            raise DataUnavailable(f"Could not read {what}", context={"cause": str(exc)}) from exc


class PlanRepository:
    """Read access to subscription plans."""

    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    def list_plans(self) -> List[SubscriptionPlan]:
        """Get all plans ordered by sort order, newest first within a position."""
        query = """
            SELECT plan_id, plan_name, tier_type, price_monthly, price_annually,
                   is_active, sort_order, created_at
            FROM subscription_plans
            ORDER BY sort_order, created_at DESC
        """
        try:
            with self.datastore.main() as conn:
                rows = conn.execute(query).fetchall()
        except sqlite3.Error as exc:
            raise DataUnavailable("Could not read subscription plans", context={"cause": str(exc)}) from exc

        plans, _ = _normalize_rows(rows, self._to_plan, "subscription plan")
        return plans

    @staticmethod
    def _to_plan(row: Dict[str, Any]) -> SubscriptionPlan:
        return SubscriptionPlan(
            plan_id=row["plan_id"],
            plan_name=row["plan_name"],
            tier=parse_tier(row["tier_type"]),
            price_monthly=parse_decimal(row["price_monthly"], "price_monthly", Decimal("0")),
            price_annually=parse_decimal(row["price_annually"], "price_annually", Decimal("0")),
            is_active=bool(row["is_active"]),
            sort_order=row["sort_order"] or 0,
            created_at=parse_optional_timestamp(row["created_at"], "created_at"),
        )


class AccountRepository:
    """Accounts merged with their subscription and usage counts."""

    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    def list_accounts(self) -> List[AccountSummary]:
        """Get all accounts, newest first."""
        return self._summaries(None)

    def get_account(self, account_id: str) -> Optional[AccountSummary]:
        """Get one account summary, or None if the id is unknown."""
        summaries = self._summaries(account_id)
        return summaries[0] if summaries else None

    def _summaries(self, account_id: Optional[str]) -> List[AccountSummary]:
        where = " WHERE id = ?" if account_id is not None else ""
        params: tuple = (account_id,) if account_id is not None else ()
        try:
            with self.datastore.main() as conn:
                accounts = conn.execute(
                    "SELECT id, name, billing_email, created_at FROM accounts"
                    + where
                    + " ORDER BY created_at DESC",
                    params,
                ).fetchall()
                if not accounts:
                    return []
                subscriptions = conn.execute("""
                    SELECT s.account_id, s.status, p.plan_name, p.price_monthly
                    FROM subscriptions s
                    LEFT JOIN subscription_plans p ON s.plan_id = p.plan_id
                    ORDER BY s.created_at, s.id
                """).fetchall()
                chatbots = conn.execute(
                    "SELECT account_id, COUNT(*) AS n FROM chat_bots GROUP BY account_id"
                ).fetchall()
                members = conn.execute(
                    "SELECT account_id, COUNT(*) AS n FROM account_members GROUP BY account_id"
                ).fetchall()
        except sqlite3.Error as exc:
            raise DataUnavailable("Could not read accounts", context={"cause": str(exc)}) from exc

        # Later subscriptions for the same account win
        subscription_map = {row["account_id"]: row for row in subscriptions}
        chatbot_map = {row["account_id"]: row["n"] for row in chatbots}
        member_map = {row["account_id"]: row["n"] for row in members}

        summaries = []
        for account in accounts:
            sub = subscription_map.get(account["id"])
            price = sub["price_monthly"] if sub is not None else None
            try:
                mrr = parse_decimal(price, "price_monthly", Decimal("0"))
            except MalformedRecord:
                logger.warning("Account %s has an unparseable plan price", account["id"])
                mrr = Decimal("0")
            try:
                created_at = parse_optional_timestamp(account["created_at"], "created_at")
            except MalformedRecord:
                logger.warning("Account %s has an unparseable creation time", account["id"])
                created_at = None
            summaries.append(AccountSummary(
                id=account["id"],
                name=account["name"],
                email=account["billing_email"] or "N/A",
                plan=(sub["plan_name"] if sub is not None and sub["plan_name"] else "Free"),
                status=(sub["status"] if sub is not None else "no_subscription"),
                mrr=mrr,
                chatbots=chatbot_map.get(account["id"], 0),
                users=member_map.get(account["id"], 0),
                created_at=created_at,
            ))
        return summaries


def describe_activity(action: str, details: Optional[Mapping[str, Any]] = None) -> str:
    """Turn an audit-log action into a sentence for the activity feed.

    Unrecognized actions are shown as-is.
    """
    details = details or {}
    if action == "ACCOUNT_CREATED":
        return "New account created"
    if action in ("SUBSCRIPTION_CREATED", "SUBSCRIPTION_UPDATED"):
        verb = "subscribed" if action == "SUBSCRIPTION_CREATED" else "upgraded"
        return f"Plan {verb} to {details.get('planName') or 'plan'}"
    if action == "SUBSCRIPTION_CANCELED":
        return "Subscription canceled"
    if action == "FEATURE_FLAG_UPDATED":
        return f"Feature flag {details.get('flagName') or 'feature'} updated"
    return action


class AuditLogRepository:
    """Read access to the audit log for the dashboard activity feed."""

    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    def recent(self, limit: int = DEFAULT_ACTIVITY_LIMIT) -> List[ActivityEntry]:
        """Get the latest audit-log events, newest first.

        Args:
            limit: Maximum number of events to return

        Raises:
            ValueError: If limit is not positive
            DataUnavailable: If the database cannot be queried
        """
        if limit <= 0:
            raise ValueError("limit must be > 0")
        # julianday orders instants correctly across UTC offsets
        query = """
            SELECT l.id, l.action, l.details, l.created_at, a.name AS account_name
            FROM audit_logs l
            LEFT JOIN accounts a ON l.account_id = a.id
            ORDER BY julianday(l.created_at) DESC, l.created_at DESC, l.id
            LIMIT ?
        """
        try:
            with self.datastore.main() as conn:
                rows = conn.execute(query, (limit,)).fetchall()
        except sqlite3.Error as exc:
            logger.error("Failed to read audit logs", exc_info=exc)
            raise DataUnavailable("Could not read audit logs", context={"cause": str(exc)}) from exc
        entries, _ = _normalize_rows(rows, self._to_entry, "audit log")
        return entries

    @staticmethod
    def _to_entry(row: Mapping[str, Any]) -> ActivityEntry:
        try:
            details = json.loads(row["details"]) if row["details"] else {}
        except ValueError:
            logger.warning("Audit log %s has unreadable details", row["id"])
            details = {}
        if not isinstance(details, dict):
            details = {}
        return ActivityEntry(
            id=row["id"],
            action=row["action"],
            description=describe_activity(row["action"], details),
            account_name=row["account_name"] or UNKNOWN_ACCOUNT,
            created_at=parse_optional_timestamp(row["created_at"], "created_at"),
        )


class ServiceRateRepository:
    """Pricing rates charged per unit of usage."""

    def __init__(self, datastore: Datastore, clock: Callable[[], datetime] = _utcnow):
        self.datastore = datastore
        self._clock = clock

    def list_active(self) -> List[ServiceRate]:
        """Get active rates ordered by service type, newest first within a type."""
        query = """
            SELECT id, service_type, usage_type, rate_per_unit, currency,
                   effective_from, is_active
            FROM service_rates
            WHERE is_active = 1
            ORDER BY service_type, effective_from DESC
        """
        try:
            with self.datastore.main() as conn:
                rows = conn.execute(query).fetchall()
        except sqlite3.Error as exc:
            raise DataUnavailable("Could not read service rates", context={"cause": str(exc)}) from exc
        rates, _ = _normalize_rows(rows, self._to_rate, "service rate")
        return rates

    def get(self, rate_id: str) -> ServiceRate:
        """Get one rate.

        Raises:
            RecordNotFound: If no rate has this id
            MalformedRecord: If the stored rate cannot be read
        """
        try:
            with self.datastore.main() as conn:
                row = conn.execute(
                    "SELECT id, service_type, usage_type, rate_per_unit, currency, effective_from, is_active "
                    "FROM service_rates WHERE id = ?",
                    (rate_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise DataUnavailable("Could not read service rate", context={"cause": str(exc)}) from exc
        if row is None:
            raise RecordNotFound("Service rate not found", context={"id": rate_id})
        return self._to_rate(row)

    def create(
        self,
        service_type: ServiceType,
        usage_type: BillingUsageType,
        rate_per_unit: Decimal,
        currency: str = "CREDITS",
    ) -> ServiceRate:
        """Create a new active rate, replacing any active rate for the same pair.

        Older rates for the same (service, usage) pair are deactivated in the
        same transaction as the insert.

        Raises:
            ValueError: If the rate is negative
            DataUnavailable: If the write fails
        """
        rate_per_unit = Decimal(rate_per_unit)
        if rate_per_unit < 0:
            raise ValueError("rate_per_unit must be >= 0")

        now = format_timestamp(self._clock())
        rate = ServiceRate(
            id=_new_id(),
            service_type=service_type,
            usage_type=usage_type,
            rate_per_unit=rate_per_unit,
            currency=currency or "CREDITS",
            effective_from=parse_optional_timestamp(now, "effective_from"),
            is_active=True,
        )
        try:
            with self.datastore.main() as conn:
                try:
                    conn.execute(
                        "UPDATE service_rates SET is_active = 0, updated_at = ? "
                        "WHERE service_type = ? AND usage_type = ?",
                        (now, service_type.value, usage_type.value),
                    )
                    conn.execute("""
                        INSERT INTO service_rates
                        (id, service_type, usage_type, rate_per_unit, currency,
                         effective_from, is_active, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                    """, (
                        rate.id,
                        service_type.value,
                        usage_type.value,
                        str(rate_per_unit),
                        rate.currency,
                        now,
                        now,
                        now,
                    ))
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except sqlite3.Error as exc:
            logger.error("Failed to create service rate", exc_info=exc)
            raise DataUnavailable("Could not create service rate", context={"cause": str(exc)}) from exc
        logger.info("Created %s/%s rate %s", service_type.value, usage_type.value, rate_per_unit)
        return rate

    def update(
        self,
        rate_id: str,
        rate_per_unit: Optional[Decimal] = None,
        is_active: Optional[bool] = None,
    ) -> ServiceRate:
        """Change the price or active state of an existing rate.

        Raises:
            RecordNotFound: If no rate has this id
        """
        assignments = []
        params: List[Any] = []
        if rate_per_unit is not None:
            rate_per_unit = Decimal(rate_per_unit)
            if rate_per_unit < 0:
                raise ValueError("rate_per_unit must be >= 0")
            assignments.append("rate_per_unit = ?")
            params.append(str(rate_per_unit))
        if is_active is not None:
            assignments.append("is_active = ?")
            params.append(1 if is_active else 0)
        assignments.append("updated_at = ?")
        params.append(format_timestamp(self._clock()))
        params.append(rate_id)

        try:
            with self.datastore.main() as conn:
                cursor = conn.execute(
                    f"UPDATE service_rates SET {', '.join(assignments)} WHERE id = ?", params
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise DataUnavailable("Could not update service rate", context={"cause": str(exc)}) from exc
        if cursor.rowcount == 0:
            raise RecordNotFound("Service rate not found", context={"id": rate_id})
        return self.get(rate_id)

    @staticmethod
    def _to_rate(row: Mapping[str, Any]) -> ServiceRate:
        return ServiceRate(
            id=row["id"],
            service_type=parse_enum(ServiceType, row["service_type"], "service_type"),
            usage_type=parse_enum(BillingUsageType, row["usage_type"], "usage_type"),
            rate_per_unit=parse_decimal(row["rate_per_unit"], "rate_per_unit"),
            currency=row["currency"] or "CREDITS",
            effective_from=parse_optional_timestamp(row["effective_from"], "effective_from"),
            is_active=bool(row["is_active"]),
        )


class FeatureFlagRepository:
    """Feature flags stored in the founder database."""

    def __init__(self, datastore: Datastore, clock: Callable[[], datetime] = _utcnow):
        self.datastore = datastore
        self._clock = clock

    def list_flags(self) -> List[FeatureFlag]:
        """Get all flags, newest first. Unreadable flags are skipped."""
        flags, _ = _normalize_rows(self._select("ORDER BY created_at DESC, key", ()), self._to_flag, "feature flag")
        return flags

    def get(self, key: str) -> FeatureFlag:
        """Get one flag.

        Raises:
            RecordNotFound: If no flag has this key
            MalformedRecord: If the stored flag cannot be read
        """
        rows = self._select("WHERE key = ?", (key,))
        if not rows:
            raise RecordNotFound("Feature flag not found", context={"key": key})
        return self._to_flag(rows[0])

    def create(
        self,
        key: str,
        name: str,
        description: Optional[str] = None,
        strategy: FlagStrategy = FlagStrategy.GLOBAL,
        value: Optional[Dict[str, Any]] = None,
        is_enabled: bool = True,
    ) -> FeatureFlag:
        if not key or not key.strip():
            raise ValueError("key is required and cannot be empty")
        if not name or not name.strip():
            raise ValueError("name is required and cannot be empty")
        now = format_timestamp(self._clock())
        try:
            with self.datastore.founder() as conn:
                conn.execute("""
                    INSERT INTO feature_flags
                    (id, key, name, description, strategy, value, is_enabled, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    _new_id(),
                    key,
                    name,
                    description,
                    strategy.value,
                    json.dumps(value or {}),
                    1 if is_enabled else 0,
                    now,
                    now,
                ))
                conn.commit()
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Feature flag '{key}' already exists") from exc
        except sqlite3.Error as exc:
            raise DataUnavailable("Could not create feature flag", context={"cause": str(exc)}) from exc
        return self.get(key)

    def set_enabled(self, key: str, enabled: bool) -> FeatureFlag:
        """Turn a flag on or off."""
        flag = self._write(key, {"is_enabled": 1 if enabled else 0})
        logger.info("Feature flag %s %s", key, "enabled" if enabled else "disabled")
        return flag

    def update(
        self,
        key: str,
        strategy: Optional[FlagStrategy] = None,
        value: Optional[Dict[str, Any]] = None,
    ) -> FeatureFlag:
        """Change a flag's rollout strategy and/or value."""
        changes: Dict[str, Any] = {}
        if strategy is not None:
            changes["strategy"] = strategy.value
        if value is not None:
            changes["value"] = json.dumps(value)
        return self._write(key, changes)

    def _write(self, key: str, changes: Dict[str, Any]) -> FeatureFlag:
        changes = dict(changes, updated_at=format_timestamp(self._clock()))
        assignments = ", ".join(f"{column} = ?" for column in changes)
        try:
            with self.datastore.founder() as conn:
                cursor = conn.execute(
                    f"UPDATE feature_flags SET {assignments} WHERE key = ?",
                    [*changes.values(), key],
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise DataUnavailable("Could not update feature flag", context={"cause": str(exc)}) from exc
        if cursor.rowcount == 0:
            raise RecordNotFound("Feature flag not found", context={"key": key})
        return self.get(key)

    def _select(self, clause: str, params: tuple) -> List[sqlite3.Row]:
        query = (
            "SELECT id, key, name, description, strategy, value, is_enabled, created_at, updated_at "
            "FROM feature_flags " + clause
        )
        try:
            with self.datastore.founder() as conn:
                return conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise DataUnavailable("Could not read feature flags", context={"cause": str(exc)}) from exc

    @staticmethod
    def _to_flag(row: Mapping[str, Any]) -> FeatureFlag:
        try:
            value = json.loads(row["value"]) if row["value"] else {}
        except ValueError:
            logger.warning("Feature flag %s has an unreadable value", row["key"])
            value = {}
        return FeatureFlag(
            id=row["id"],
            key=row["key"],
            name=row["name"],
            description=row["description"],
            strategy=parse_enum(FlagStrategy, row["strategy"], "strategy"),
            value=value,
            is_enabled=bool(row["is_enabled"]),
            created_at=parse_optional_timestamp(row["created_at"], "created_at"),
            updated_at=parse_optional_timestamp(row["updated_at"], "updated_at"),
        )
