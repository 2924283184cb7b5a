"""
Shared fixtures: a temporary pair of SQLite databases and row writers.
"""

import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from founder_metrics.storage.db import Datastore
from founder_metrics.storage.normalize import format_timestamp
from founder_metrics.storage.repository import initialize_schema

NOW = datetime(2024, 6, 30, 12, 0, 0, tzinfo=timezone.utc)


class Rows:
    """Writes raw rows straight into the main database."""

    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    def account(self, account_id, name, email=None, created_at=NOW):
        with self.datastore.main() as conn:
            conn.execute(
                "INSERT INTO accounts (id, name, billing_email, created_at) VALUES (?, ?, ?, ?)",
                (account_id, name, email, format_timestamp(created_at)),
            )
            conn.commit()

    def plan(self, plan_id, name, tier, price_monthly, price_annually=None, sort_order=0, created_at=NOW):
        if price_annually is None:
            price_annually = str(Decimal(price_monthly) * 10)
        with self.datastore.main() as conn:
            conn.execute(
                "INSERT INTO subscription_plans "
                "(plan_id, plan_name, tier_type, price_monthly, price_annually, sort_order, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (plan_id, name, tier, price_monthly, price_annually, sort_order, format_timestamp(created_at)),
            )
            conn.commit()

    def subscription(self, account_id, plan_id, status="active", created_at=NOW):
        with self.datastore.main() as conn:
            conn.execute(
                "INSERT INTO subscriptions (id, account_id, plan_id, status, created_at) VALUES (?, ?, ?, ?, ?)",
                (uuid.uuid4().hex, account_id, plan_id, status, format_timestamp(created_at)),
            )
            conn.commit()

    def cost(self, provider, provider_type, cost, created_at, account_id="acc_1"):
        created = format_timestamp(created_at) if isinstance(created_at, datetime) else created_at
        with self.datastore.main() as conn:
            conn.execute(
                "INSERT INTO credit_transactions "
                "(id, account_id, service_type, amount, provider_cost, provider_name, provider_type, created_at) "
                "VALUES (?, ?, 'CHATBOT', '1', ?, ?, ?, ?)",
                (uuid.uuid4().hex, account_id, cost, provider, provider_type, created),
            )
            conn.commit()

    def chatbot(self, account_id):
        with self.datastore.main() as conn:
            conn.execute(
                "INSERT INTO chat_bots (id, account_id, name) VALUES (?, ?, 'bot')",
                (uuid.uuid4().hex, account_id),
            )
            conn.commit()

    def member(self, account_id, user_id):
        with self.datastore.main() as conn:
            conn.execute(
                "INSERT INTO account_members (account_id, user_id, role) VALUES (?, ?, 'MEMBER')",
                (account_id, user_id),
            )
            conn.commit()

    def audit(self, action, account_id="acc_1", details=None, created_at=NOW, log_id=None):
        created = format_timestamp(created_at) if isinstance(created_at, datetime) else created_at
        with self.datastore.main() as conn:
            conn.execute(
                "INSERT INTO audit_logs (id, account_id, user_id, action, details, created_at) "
                "VALUES (?, ?, 'user_1', ?, ?, ?)",
                (log_id or uuid.uuid4().hex, account_id, action,
                 json.dumps(details) if isinstance(details, dict) else details, created),
            )
            conn.commit()


@pytest.fixture
def datastore(tmp_path):
    """Initialized main and founder databases in a temporary directory."""
    store = Datastore(
        main_path=str(tmp_path / "main.db"),
        founder_path=str(tmp_path / "founder.db"),
    )
    initialize_schema(store)
    return store


@pytest.fixture
def empty_datastore(tmp_path):
    """Databases with no tables at all."""
    return Datastore(
        main_path=str(tmp_path / "empty_main.db"),
        founder_path=str(tmp_path / "empty_founder.db"),
    )


@pytest.fixture
def rows(datastore):
    return Rows(datastore)
