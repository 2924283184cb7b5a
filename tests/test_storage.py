"""
Unit tests for storage layer.

Tests schema creation, ledger reads and the CRUD repositories.
"""

import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from founder_metrics.core.errors import DataUnavailable, MalformedRecord, RecordNotFound
from founder_metrics.storage.db import Datastore, get_connection
from founder_metrics.storage.models import (
    BillingUsageType,
    FlagStrategy,
    ProviderCategory,
    ServiceType,
    Tier,
)
from founder_metrics.storage.repository import (
    AccountRepository,
    AuditLogRepository,
    FeatureFlagRepository,
    LedgerReader,
    PlanRepository,
    ServiceRateRepository,
    describe_activity,
    initialize_schema,
)

NOW = datetime(2024, 6, 30, 12, 0, 0, tzinfo=timezone.utc)


def _insert_rate(datastore, service_type, usage_type, rate_id=None):
    with datastore.main() as conn:
        conn.execute(
            "INSERT INTO service_rates (id, service_type, usage_type, rate_per_unit, is_active, effective_from) "
            "VALUES (?, ?, ?, '0.01', 1, ?)",
            (rate_id or f"{service_type}-{usage_type}", service_type, usage_type, NOW.isoformat()),
        )
        conn.commit()


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self, datastore):
        """Verify tables are created in the right database."""
        conn = get_connection(datastore.main_path)
        try:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in cursor.fetchall()}
            assert {"accounts", "subscriptions", "subscription_plans",
                    "credit_transactions", "service_rates", "audit_logs"} <= tables
            assert "feature_flags" not in tables

            cursor = conn.execute("PRAGMA table_info(credit_transactions)")
            column_names = [col[1] for col in cursor.fetchall()]
            assert column_names == [
                'id', 'account_id', 'service_type', 'amount',
                'provider_cost', 'provider_name', 'provider_type', 'created_at'
            ]
        finally:
            conn.close()

        conn = get_connection(datastore.founder_path)
        try:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            assert [row[0] for row in cursor.fetchall()] == ["feature_flags"]
        finally:
            conn.close()

    def test_schema_creation_is_repeatable(self, datastore):
        initialize_schema(datastore)
        initialize_schema(datastore)

    def test_connection_rows_by_name(self, datastore):
        with datastore.main() as conn:
            row = conn.execute("SELECT 1 AS one").fetchone()
        assert row["one"] == 1


class TestLedgerReaderCosts:
    """Test cost record reads."""

    def test_default_window_is_trailing_30_days(self, datastore, rows):
        rows.cost("OpenAI", "llm", "1.25", NOW - timedelta(days=29))
        rows.cost("OpenAI", "llm", "5", NOW - timedelta(days=31))

        batch = LedgerReader(datastore, clock=lambda: NOW).cost_records()

        assert len(batch) == 1
        assert batch.records[0].cost_amount == Decimal("1.25")
        assert batch.window_end == NOW
        assert batch.window_start == NOW - timedelta(days=30)

    def test_window_is_half_open(self, datastore, rows):
        start = NOW - timedelta(days=7)
        rows.cost("OpenAI", "llm", "1", start)
        rows.cost("Twilio", "whatsapp", "2", NOW)
        rows.cost("Twilio", "whatsapp", "3", start - timedelta(microseconds=1))

        batch = LedgerReader(datastore).cost_records(start, NOW)

        assert [r.provider for r in batch] == ["OpenAI"]

    def test_naive_bounds_are_utc(self, datastore, rows):
        rows.cost("OpenAI", "llm", "1", NOW - timedelta(hours=1))

        batch = LedgerReader(datastore).cost_records(
            datetime(2024, 6, 30, 0, 0, 0), datetime(2024, 7, 1, 0, 0, 0)
        )

        assert len(batch) == 1

    def test_records_are_normalized(self, datastore, rows):
        rows.cost(None, None, None, NOW - timedelta(days=1))
        rows.cost("Pinecone", "embedding", "0.50", NOW - timedelta(days=1))
        rows.cost("Mystery", "carrier-pigeon", "2", NOW - timedelta(days=1))

        batch = LedgerReader(datastore, clock=lambda: NOW).cost_records()

        by_provider = {r.provider: r for r in batch}
        assert by_provider["Unknown"].cost_amount == Decimal("0")
        assert by_provider["Unknown"].provider_category == ProviderCategory.OTHER
        assert by_provider["Pinecone"].provider_category == ProviderCategory.EMBEDDING
        assert by_provider["Mystery"].provider_category == ProviderCategory.OTHER
        assert batch.skipped == 0

    def test_malformed_rows_are_skipped_and_counted(self, datastore, rows):
        rows.cost("OpenAI", "llm", "not-a-number", NOW - timedelta(days=1))
        rows.cost("OpenAI", "llm", "4", NOW - timedelta(days=1))

        batch = LedgerReader(datastore, clock=lambda: NOW).cost_records()

        assert len(batch) == 1
        assert batch.skipped == 1

    def test_no_rows_is_empty_not_error(self, datastore):
        batch = LedgerReader(datastore).cost_records()

        assert len(batch) == 0
        assert batch.skipped == 0

    def test_missing_table_raises_data_unavailable(self, empty_datastore):
        with pytest.raises(DataUnavailable) as excinfo:
            LedgerReader(empty_datastore).cost_records()
        assert isinstance(excinfo.value.__cause__, sqlite3.Error)

    def test_offset_timestamp_inside_window_is_kept(self, datastore, rows):
        """09:30Z stored with a +05:30 offset falls inside a window ending at 12:00Z."""
        rows.cost("OpenAI", "llm", "2", "2024-06-30T15:00:00+05:30")

        batch = LedgerReader(datastore, clock=lambda: NOW).cost_records()

        assert len(batch) == 1
        assert batch.records[0].occurred_at == datetime(2024, 6, 30, 9, 30, tzinfo=timezone.utc)

    def test_offset_timestamp_before_window_is_excluded(self, datastore, rows):
        """11:00Z stored with a +09:00 offset is an hour before the window opens."""
        rows.cost("OpenAI", "llm", "2", "2024-05-31T20:00:00+09:00")

        batch = LedgerReader(datastore, clock=lambda: NOW).cost_records()

        assert len(batch) == 0
        assert batch.window_start == datetime(2024, 5, 31, 12, 0, 0, tzinfo=timezone.utc)

    def test_records_stay_inside_window_in_time_order(self, datastore, rows):
        rows.cost("Late", "llm", "1", "2024-06-30T10:00:00+00:00")
        rows.cost("Early", "llm", "1", "2024-06-30T14:00:00+05:00")
        rows.cost("Future", "llm", "1", "2024-06-30T11:00:00-02:00")

        batch = LedgerReader(datastore, clock=lambda: NOW).cost_records()

        assert [r.provider for r in batch] == ["Early", "Late"]
        assert all(batch.window_start <= r.occurred_at < batch.window_end for r in batch)

    def test_default_window_ends_at_given_time(self, datastore):
        reader = LedgerReader(datastore, cost_window_days=7, clock=lambda: NOW)
        end = NOW - timedelta(days=1)

        assert reader.default_window(end) == (end - timedelta(days=7), end)
        assert reader.default_window() == (NOW - timedelta(days=7), NOW)

    def test_inverted_window_rejected(self, datastore):
        with pytest.raises(ValueError):
            LedgerReader(datastore).cost_records(NOW, NOW - timedelta(days=1))

    def test_invalid_window_days(self, datastore):
        with pytest.raises(ValueError):
            LedgerReader(datastore, cost_window_days=0)


class TestLedgerReaderSubscriptions:
    """Test active subscription reads."""

    def test_only_active_subscriptions(self, datastore, rows):
        rows.plan("plan_pro", "Pro", "PRO", "49.00")
        for status in ("active", "canceled", "trialing", "past_due"):
            rows.subscription(f"acc_{status}", "plan_pro", status=status)

        batch = LedgerReader(datastore).active_subscriptions()

        assert [s.account_id for s in batch] == ["acc_active"]
        assert batch.records[0].tier == Tier.PRO
        assert batch.records[0].monthly_price == Decimal("49.00")
        assert batch.window_start is None

    def test_plan_without_tier_keeps_plan_name(self, datastore, rows):
        rows.plan("plan_legacy", "Legacy", None, "9")
        rows.subscription("acc_1", "plan_legacy")

        record = LedgerReader(datastore).active_subscriptions().records[0]

        assert record.tier is None
        assert record.plan_name == "Legacy"

    def test_missing_plan_defaults(self, datastore, rows):
        rows.subscription("acc_1", "no_such_plan")

        record = LedgerReader(datastore).active_subscriptions().records[0]

        assert record.plan_name == "Unknown"
        assert record.monthly_price == Decimal("0")

    def test_blank_account_id_is_skipped(self, datastore, rows):
        rows.plan("plan_pro", "Pro", "PRO", "49")
        rows.subscription("", "plan_pro")
        rows.subscription("acc_1", "plan_pro")

        batch = LedgerReader(datastore).active_subscriptions()

        assert len(batch) == 1
        assert batch.skipped == 1

    def test_missing_table_raises_data_unavailable(self, empty_datastore):
        with pytest.raises(DataUnavailable):
            LedgerReader(empty_datastore).active_subscriptions()


class TestPlanRepository:
    """Test subscription plan listing."""

    def test_list_plans_ordering(self, datastore, rows):
        rows.plan("p_pro", "Pro", "PRO", "49", sort_order=2)
        rows.plan("p_free", "Free", "FREE", "0", sort_order=0)
        rows.plan("p_old", "Personal (old)", "PERSONAL", "9", sort_order=1, created_at=NOW - timedelta(days=100))
        rows.plan("p_new", "Personal", "PERSONAL", "12", sort_order=1, created_at=NOW)

        plans = PlanRepository(datastore).list_plans()

        assert [p.plan_id for p in plans] == ["p_free", "p_new", "p_old", "p_pro"]
        assert plans[0].tier == Tier.FREE
        assert plans[-1].price_annually == Decimal("490")

    def test_unparseable_price_is_skipped(self, datastore, rows):
        rows.plan("p_bad", "Broken", "PRO", "forty-nine", price_annually="0")
        rows.plan("p_ok", "Pro", "PRO", "49")

        plans = PlanRepository(datastore).list_plans()

        assert [p.plan_id for p in plans] == ["p_ok"]


class TestAccountRepository:
    """Test account summaries."""

    def test_list_accounts_merges_subscription_and_counts(self, datastore, rows):
        rows.plan("plan_pro", "Pro", "PRO", "49")
        rows.account("acc_1", "Acme", "billing@acme.test", created_at=NOW - timedelta(days=2))
        rows.account("acc_2", "Globex", created_at=NOW)
        rows.subscription("acc_1", "plan_pro")
        rows.chatbot("acc_1")
        rows.chatbot("acc_1")
        rows.member("acc_1", "u1")

        accounts = AccountRepository(datastore).list_accounts()

        assert [a.id for a in accounts] == ["acc_2", "acc_1"]
        globex, acme = accounts
        assert acme.plan == "Pro"
        assert acme.status == "active"
        assert acme.mrr == Decimal("49")
        assert acme.chatbots == 2
        assert acme.users == 1
        assert globex.email == "N/A"
        assert globex.plan == "Free"
        assert globex.status == "no_subscription"
        assert globex.mrr == Decimal("0")

    def test_get_account(self, datastore, rows):
        rows.account("acc_1", "Acme")

        repo = AccountRepository(datastore)

        assert repo.get_account("acc_1").name == "Acme"
        assert repo.get_account("missing") is None

    def test_no_accounts(self, datastore):
        assert AccountRepository(datastore).list_accounts() == []

    def test_unparseable_creation_time_is_blank(self, datastore):
        with datastore.main() as conn:
            conn.execute("INSERT INTO accounts (id, name, created_at) VALUES ('acc_x', 'Initech', 'last tuesday')")
            conn.commit()

        account = AccountRepository(datastore).get_account("acc_x")

        assert account.name == "Initech"
        assert account.created_at is None


class TestServiceRateRepository:
    """Test pricing rate operations."""

    def test_create_deactivates_previous_rate(self, datastore):
        repo = ServiceRateRepository(datastore, clock=lambda: NOW)
        first = repo.create(ServiceType.CHATBOT, BillingUsageType.TOKEN_PROMPT, Decimal("0.002"))
        second = repo.create(ServiceType.CHATBOT, BillingUsageType.TOKEN_PROMPT, Decimal("0.003"))
        other = repo.create(ServiceType.VOICE, BillingUsageType.VOICE_MINUTE, Decimal("1.5"))

        active = repo.list_active()

        assert {r.id for r in active} == {second.id, other.id}
        assert repo.get(first.id).is_active is False
        assert repo.get(second.id).rate_per_unit == Decimal("0.003")
        assert second.currency == "CREDITS"

    def test_list_active_ordering(self, datastore):
        repo = ServiceRateRepository(datastore, clock=lambda: NOW)
        repo.create(ServiceType.WHATSAPP, BillingUsageType.WHATSAPP_MESSAGE_OUTBOUND, Decimal("0.01"))
        repo.create(ServiceType.CHATBOT, BillingUsageType.TOKEN_PROMPT, Decimal("0.002"))

        services = [r.service_type for r in repo.list_active()]

        assert services == [ServiceType.CHATBOT, ServiceType.WHATSAPP]

    def test_update_rate(self, datastore):
        repo = ServiceRateRepository(datastore)
        rate = repo.create(ServiceType.WHATSAPP, BillingUsageType.WHATSAPP_MESSAGE_OUTBOUND, Decimal("0.01"))

        updated = repo.update(rate.id, rate_per_unit=Decimal("0.02"), is_active=False)

        assert updated.rate_per_unit == Decimal("0.02")
        assert updated.is_active is False
        assert repo.list_active() == []

    def test_update_unknown_rate(self, datastore):
        with pytest.raises(RecordNotFound):
            ServiceRateRepository(datastore).update("nope", is_active=False)

    def test_negative_rate_rejected(self, datastore):
        with pytest.raises(ValueError):
            ServiceRateRepository(datastore).create(
                ServiceType.VOICE, BillingUsageType.VOICE_MINUTE, Decimal("-1")
            )

    def test_write_failure_is_data_unavailable(self, empty_datastore):
        with pytest.raises(DataUnavailable):
            ServiceRateRepository(empty_datastore).create(
                ServiceType.VOICE, BillingUsageType.VOICE_MINUTE, Decimal("1")
            )

    @pytest.mark.parametrize("usage_type", [
        BillingUsageType.WHATSAPP_CONVERSATION_START,
        BillingUsageType.WHATSAPP_MESSAGE_OUTBOUND,
    ])
    def test_stored_whatsapp_usage_types_are_read(self, datastore, usage_type):
        _insert_rate(datastore, "WHATSAPP", usage_type.value, rate_id="wa")

        repo = ServiceRateRepository(datastore)

        assert repo.list_active()[0].usage_type == usage_type
        assert repo.get("wa").service_type == ServiceType.WHATSAPP

    def test_unknown_usage_type_is_skipped_in_listing(self, datastore):
        _insert_rate(datastore, "WHATSAPP", "MESSAGE_SENT", rate_id="bad")
        _insert_rate(datastore, "CHATBOT", "TOKEN_PROMPT", rate_id="good")

        repo = ServiceRateRepository(datastore)

        assert [r.id for r in repo.list_active()] == ["good"]
        with pytest.raises(MalformedRecord):
            repo.get("bad")


class TestFeatureFlagRepository:
    """Test feature flag operations."""

    def test_create_and_list(self, datastore):
        repo = FeatureFlagRepository(datastore)
        repo.create("whatsapp_v2", "WhatsApp V2", strategy=FlagStrategy.PERCENTAGE, value={"percentage": 25})

        flags = repo.list_flags()

        assert len(flags) == 1
        assert flags[0].key == "whatsapp_v2"
        assert flags[0].strategy == FlagStrategy.PERCENTAGE
        assert flags[0].value == {"percentage": 25}
        assert flags[0].is_enabled is True

    def test_toggle(self, datastore):
        repo = FeatureFlagRepository(datastore)
        repo.create("new_chat_ui", "New Chat UI")

        assert repo.set_enabled("new_chat_ui", False).is_enabled is False
        assert repo.set_enabled("new_chat_ui", True).is_enabled is True

    def test_update_strategy_and_value(self, datastore):
        repo = FeatureFlagRepository(datastore)
        repo.create("voice_v2", "Voice V2")

        flag = repo.update("voice_v2", strategy=FlagStrategy.AB_TEST,
                           value={"variants": [{"name": "control", "allocation": 50}]})

        assert flag.strategy == FlagStrategy.AB_TEST
        assert flag.value["variants"][0]["name"] == "control"

    def test_duplicate_key_rejected(self, datastore):
        repo = FeatureFlagRepository(datastore)
        repo.create("dup", "Dup")
        with pytest.raises(ValueError):
            repo.create("dup", "Dup again")

    def test_unknown_flag(self, datastore):
        with pytest.raises(RecordNotFound):
            FeatureFlagRepository(datastore).set_enabled("missing", True)

    def test_unknown_strategy_is_skipped_in_listing(self, datastore):
        FeatureFlagRepository(datastore).create("good", "Good")
        with datastore.founder() as conn:
            conn.execute(
                "INSERT INTO feature_flags (id, key, name, strategy) VALUES ('f_bad', 'bad', 'Bad', 'gradual')"
            )
            conn.commit()

        repo = FeatureFlagRepository(datastore)

        assert [f.key for f in repo.list_flags()] == ["good"]
        with pytest.raises(MalformedRecord):
            repo.get("bad")

    def test_flags_live_in_founder_database(self, datastore):
        FeatureFlagRepository(datastore).create("k", "K")
        separate = Datastore(main_path=datastore.founder_path, founder_path=datastore.main_path)

        with pytest.raises(DataUnavailable):
            FeatureFlagRepository(separate).list_flags()


class TestAuditLogRepository:
    """Test the recent activity feed."""

    def test_newest_first_with_default_limit(self, datastore, rows):
        rows.account("acc_1", "Acme")
        for minutes in range(12):
            rows.audit("ACCOUNT_CREATED", created_at=NOW - timedelta(minutes=minutes), log_id=f"log_{minutes:02d}")

        entries = AuditLogRepository(datastore).recent()

        assert len(entries) == 10
        assert entries[0].id == "log_00"
        assert entries[-1].id == "log_09"
        assert entries[0].account_name == "Acme"

    def test_limit(self, datastore, rows):
        for minutes in range(5):
            rows.audit("ACCOUNT_CREATED", created_at=NOW - timedelta(minutes=minutes))

        assert len(AuditLogRepository(datastore).recent(limit=3)) == 3

    def test_offset_timestamps_ordered_by_instant(self, datastore, rows):
        rows.audit("ACCOUNT_CREATED", created_at="2024-06-30T15:00:00+05:30", log_id="earlier")
        rows.audit("ACCOUNT_CREATED", created_at="2024-06-30T10:00:00+00:00", log_id="later")

        entries = AuditLogRepository(datastore).recent()

        assert [e.id for e in entries] == ["later", "earlier"]
        assert entries[1].created_at == datetime(2024, 6, 30, 9, 30, tzinfo=timezone.utc)

    def test_descriptions_and_unknown_account(self, datastore, rows):
        rows.account("acc_1", "Acme")
        rows.audit("SUBSCRIPTION_CREATED", details={"planName": "Pro"}, log_id="a")
        rows.audit("FEATURE_FLAG_UPDATED", account_id="acc_gone", details="{not json",
                   created_at=NOW - timedelta(hours=1), log_id="b")

        sub, flag = AuditLogRepository(datastore).recent()

        assert sub.description == "Plan subscribed to Pro"
        assert sub.account_name == "Acme"
        assert flag.description == "Feature flag feature updated"
        assert flag.account_name == "Unknown"

    def test_non_positive_limit_rejected(self, datastore):
        with pytest.raises(ValueError):
            AuditLogRepository(datastore).recent(limit=0)

    def test_missing_table_raises_data_unavailable(self, empty_datastore):
        with pytest.raises(DataUnavailable):
            AuditLogRepository(empty_datastore).recent()


@pytest.mark.parametrize("action,details,expected", [
    ("ACCOUNT_CREATED", None, "New account created"),
    ("SUBSCRIPTION_CREATED", {"planName": "Pro"}, "Plan subscribed to Pro"),
    ("SUBSCRIPTION_UPDATED", {"planName": "Enterprise"}, "Plan upgraded to Enterprise"),
    ("SUBSCRIPTION_UPDATED", {}, "Plan upgraded to plan"),
    ("SUBSCRIPTION_CANCELED", None, "Subscription canceled"),
    ("FEATURE_FLAG_UPDATED", {"flagName": "voice_v2"}, "Feature flag voice_v2 updated"),
    ("MEMBER_INVITED", {"email": "x@y.test"}, "MEMBER_INVITED"),
])
def test_describe_activity(action, details, expected):
    assert describe_activity(action, details) == expected
