"""
Unit tests for consumption execution.

Tests the viability gate, transactional debits, rollback on conflicts,
race safety between concurrent consumers and post-commit telemetry.
"""

import logging
import os
import sqlite3
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, Mock, patch

import pytest

from hybrid_billing.core.errors import ConcurrentBalanceConflict, ProfileNotFound, StorageFailure
from hybrid_billing.core.executor import ConsumptionExecutor
from hybrid_billing.core.planner import ConsumptionPlanner
from hybrid_billing.storage.db import SqliteTransactionHost, get_connection
from hybrid_billing.storage.models import FundingSource, PreferenceUpdate, TokenBalance
from hybrid_billing.storage.repository import (
    SqliteBalanceStore,
    SqliteLedgerStore,
    SqliteProfileStore,
    UsageRepository,
    initialize_schema,
)

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class BarrierBalanceStore(SqliteBalanceStore):
    """Holds every reader until both consumers have planned from the same snapshot."""

    def __init__(self, db_path, barrier):
        super().__init__(db_path)
        self.barrier = barrier

    def list_active_balances(self, user_id):
        balances = super().list_active_balances(user_id)
        self.barrier.wait(timeout=5)
        return balances


class StalePlanner:
    """Planner whose view goes stale: a callback runs after planning."""

    def __init__(self, planner, after_plan):
        self.planner = planner
        self.after_plan = after_plan

    def plan(self, user_id, tokens_needed, api_key_present=False):
        plan = self.planner.plan(user_id, tokens_needed, api_key_present)
        self.after_plan()
        return plan


class ExecutorTestCase:
    """Shared temporary database and stores."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.profiles = SqliteProfileStore(self.db_path)
        self.balances = SqliteBalanceStore(self.db_path)
        self.ledger = SqliteLedgerStore(self.db_path)
        self.usage = UsageRepository(self.db_path)
        self.transactions = SqliteTransactionHost(self.db_path)
        self.planner = ConsumptionPlanner(self.profiles, self.balances)
        self.executor = self._executor()
        self.profiles.ensure_profile("user-1")

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _executor(self, **overrides):
        collaborators = {
            "planner": self.planner,
            "balances": self.balances,
            "ledger": self.ledger,
            "transactions": self.transactions,
            "usage_recorder": self.usage,
        }
        collaborators.update(overrides)
        return ConsumptionExecutor(**collaborators)

    def _add_balance(self, balance_id, amount, balance_type=FundingSource.SUBSCRIPTION, offset=0):
        with self.transactions.transaction() as conn:
            self.balances.insert_balance(conn, TokenBalance(
                id=balance_id,
                user_id="user-1",
                balance_type=balance_type,
                virtual_token_balance=amount,
                total_tokens_purchased=amount,
                purchase_source="test",
                created_at=BASE_TIME + timedelta(minutes=offset)
            ))

    def _amount(self, balance_id):
        return self.balances.get_balance(balance_id).virtual_token_balance


class TestManagedExecution(ExecutorTestCase):
    """Test debits from managed balances."""

    def test_subscription_request(self):
        """Subscription of 500, request 300: balance becomes 200."""
        self.profiles.update_preferences("user-1", PreferenceUpdate(notify_token_low_threshold=100))
        self._add_balance("sub", 500)

        result = self.executor.execute("user-1", 300, "openai", model="gpt-4o", request_id="req-1")

        assert result.success is True
        assert result.tokens_consumed == 300
        assert result.fallback_used is False
        assert result.notifications == []
        assert len(result.actual_consumption) == 1
        applied = result.actual_consumption[0]
        assert applied.type == FundingSource.SUBSCRIPTION
        assert applied.balance_id == "sub"
        assert applied.tokens_consumed == 300
        assert applied.new_balance == 200
        assert self._amount("sub") == 200
        assert self.balances.get_balance("sub").total_tokens_used == 300

    def test_draining_balance_has_no_low_warning(self):
        self.profiles.update_preferences("user-1", PreferenceUpdate(notify_token_low_threshold=100))
        self._add_balance("sub", 50)

        result = self.executor.execute("user-1", 50, "openai")

        assert result.success is True
        assert result.notifications == []
        assert self._amount("sub") == 0
        assert self.balances.list_active_balances("user-1") == []

    def test_multi_step_consumption(self):
        self._add_balance("sub", 100)
        self._add_balance("once", 500, FundingSource.ONE_TIME)

        result = self.executor.execute("user-1", 300, "anthropic")

        assert result.success is True
        assert [(a.balance_id, a.tokens_consumed, a.new_balance) for a in result.actual_consumption] == [
            ("sub", 100, 0), ("once", 200, 300)
        ]
        assert "Using 200 tokens from one-time purchase (test)" in result.notifications

    def test_ledger_entry_written(self):
        self._add_balance("sub", 500)

        result = self.executor.execute("user-1", 300, "openai", request_id="req-42")

        history = self.ledger.list_consumption_history("user-1")
        assert len(history) == 1
        entry = history[0]
        assert entry.id == result.usage_log_id
        assert entry.request_id == "req-42"
        assert entry.total_tokens_needed == 300
        assert entry.plan[0]["balance_id"] == "sub"
        assert entry.plan[0]["tokens_to_consume"] == 300
        assert entry.actual_consumption == [
            {"type": "subscription", "tokens_consumed": 300, "balance_id": "sub", "new_balance": 200}
        ]
        assert entry.notifications_sent[0]["type"] == "token_low"

    def test_request_id_generated_when_missing(self):
        self._add_balance("sub", 500)

        self.executor.execute("user-1", 10, "openai")

        request_id = self.ledger.list_consumption_history("user-1")[0].request_id
        assert len(request_id) == 32
        int(request_id, 16)

    def test_usage_recorded_after_commit(self):
        self._add_balance("sub", 5000)

        self.executor.execute("user-1", 1000, "openai", model="gpt-4o", request_id="req-7")

        records = self.usage.get_recent_usage("user-1")
        assert len(records) == 1
        record = records[0]
        assert record.user_type == "subscription"
        assert record.provider == "openai"
        assert record.model == "gpt-4o"
        assert record.input_tokens == 400
        assert record.output_tokens == 600
        assert record.total_tokens == 1000
        assert record.request_id == "req-7"
        assert record.method == "execute_consumption"

    def test_missing_profile_raises(self):
        with pytest.raises(ProfileNotFound):
            self.executor.execute("ghost", 10, "openai")


class TestByokExecution(ExecutorTestCase):
    """Test BYOK fallback execution."""

    def test_byok_fallback_touches_no_balance(self):
        self.profiles.update_preferences("user-1", PreferenceUpdate(byok_enabled=True))
        self._add_balance("sub", 400)

        result = self.executor.execute("user-1", 1000, "openai", api_key_present=True)

        assert result.success is True
        assert result.fallback_used is True
        assert result.tokens_consumed == 1000
        assert len(result.actual_consumption) == 1
        assert result.actual_consumption[0].type == FundingSource.BYOK
        assert result.actual_consumption[0].tokens_consumed == 1000
        assert result.actual_consumption[0].balance_id is None
        assert self._amount("sub") == 400
        assert "You have 400 unused managed tokens that will be preserved." in result.notifications

        entry = self.ledger.list_consumption_history("user-1")[0]
        assert entry.actual_consumption == [{"type": "byok", "tokens_consumed": 1000}]
        assert self.usage.get_recent_usage("user-1")[0].user_type == "byok"


class TestViabilityGate(ExecutorTestCase):
    """Test that unfundable requests never open a transaction."""

    def test_exhausted_without_transaction(self):
        transactions = MagicMock()
        recorder = Mock()
        executor = self._executor(transactions=transactions, usage_recorder=recorder)

        result = executor.execute("user-1", 1000, "openai")

        assert result.success is False
        assert result.tokens_consumed == 0
        assert result.actual_consumption == []
        assert result.fallback_used is False
        assert len(result.notifications) == 1
        assert result.notifications[0].startswith("Cannot fulfill request")
        transactions.transaction.assert_not_called()
        recorder.record_usage.assert_not_called()

    def test_under_fulfilling_plan_is_rejected(self):
        """Funds excluded from the consumption order cannot pay."""
        self.profiles.update_preferences("user-1", PreferenceUpdate(consumption_order=("subscription",)))
        self._add_balance("sub", 100)
        self._add_balance("once", 900, FundingSource.ONE_TIME)

        result = self.executor.execute("user-1", 500, "openai")

        assert result.success is False
        assert self._amount("sub") == 100
        assert self._amount("once") == 900
        assert self.ledger.list_consumption_history("user-1") == []


class TestAtomicity(ExecutorTestCase):
    """Test that a failed step rolls back the whole consumption."""

    def _drain(self, balance_id, amount):
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE user_token_balances SET virtual_token_balance = ? WHERE id = ?",
                (amount, balance_id)
            )
            conn.commit()
        finally:
            conn.close()

    def test_conflict_on_second_step_rolls_back_first(self):
        self._add_balance("sub", 100)
        self._add_balance("once", 100, FundingSource.ONE_TIME)
        recorder = Mock()
        executor = self._executor(
            planner=StalePlanner(self.planner, lambda: self._drain("once", 10)),
            usage_recorder=recorder
        )

        with pytest.raises(ConcurrentBalanceConflict) as exc_info:
            executor.execute("user-1", 150, "openai")

        assert exc_info.value.balance_id == "once"
        assert exc_info.value.requested == 50
        assert exc_info.value.retryable is True
        assert self._amount("sub") == 100
        assert self._amount("once") == 10
        assert self.ledger.list_consumption_history("user-1") == []
        recorder.record_usage.assert_not_called()

    def test_storage_error_is_wrapped_and_rolled_back(self):
        self._add_balance("sub", 100)
        ledger = Mock()
        ledger.append_consumption_log.side_effect = sqlite3.OperationalError("disk I/O error")
        executor = self._executor(ledger=ledger)

        with pytest.raises(StorageFailure) as exc_info:
            executor.execute("user-1", 50, "openai")

        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        assert self._amount("sub") == 100

    def test_conflict_is_logged(self, caplog):
        self._add_balance("sub", 100)
        executor = self._executor(planner=StalePlanner(self.planner, lambda: self._drain("sub", 0)))

        with caplog.at_level(logging.WARNING, logger="hybrid_billing.core.executor"):
            with pytest.raises(ConcurrentBalanceConflict):
                executor.execute("user-1", 50, "openai", request_id="req-9")

        assert "Rolled back consumption for user user-1 (request req-9)" in caplog.text


class TestConcurrentConsumers(ExecutorTestCase):
    """Test that racing consumers never overdraw a balance."""

    def test_only_one_of_two_racing_requests_succeeds(self):
        self._add_balance("sub", 100)
        store = BarrierBalanceStore(self.db_path, threading.Barrier(2))
        executor = self._executor(
            planner=ConsumptionPlanner(self.profiles, store),
            balances=store
        )
        outcomes = []

        def consume():
            try:
                outcomes.append(executor.execute("user-1", 80, "openai").success)
            except ConcurrentBalanceConflict:
                outcomes.append("conflict")

        threads = [threading.Thread(target=consume) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert sorted(outcomes, key=str) == [True, "conflict"]
        assert self._amount("sub") == 20
        assert len(self.ledger.list_consumption_history("user-1")) == 1


class TestTelemetry(ExecutorTestCase):
    """Test that analytics failures never undo a committed consumption."""

    def test_recorder_failure_is_swallowed(self, caplog):
        self._add_balance("sub", 500)
        recorder = Mock()
        recorder.record_usage.side_effect = RuntimeError("analytics down")
        executor = self._executor(usage_recorder=recorder)

        with caplog.at_level(logging.WARNING, logger="hybrid_billing.core.executor"):
            result = executor.execute("user-1", 100, "openai", request_id="req-3")

        assert result.success is True
        assert self._amount("sub") == 400
        assert len(self.ledger.list_consumption_history("user-1")) == 1
        assert "Usage telemetry failed for user user-1 (request req-3)" in caplog.text

    def test_usage_split_failure_is_swallowed(self, caplog):
        """A failure while building the usage record must not surface after commit."""
        self._add_balance("sub", 800)
        recorder = Mock()
        executor = self._executor(usage_recorder=recorder)

        with patch('hybrid_billing.core.executor.estimate_usage_split',
                   side_effect=ValueError("input_ratio must be between 0 and 1")):
            with caplog.at_level(logging.WARNING, logger="hybrid_billing.core.executor"):
                result = executor.execute("user-1", 100, "openai", request_id="req-5")

        assert result.success is True
        assert self._amount("sub") == 700
        assert len(self.ledger.list_consumption_history("user-1")) == 1
        recorder.record_usage.assert_not_called()
        assert "Usage telemetry failed for user user-1 (request req-5)" in caplog.text

    def test_invalid_input_ratio_rejected_at_construction(self):
        with pytest.raises(ValueError, match="input_token_ratio must be between 0 and 1"):
            self._executor(input_token_ratio=1.5)

        assert self.ledger.list_consumption_history("user-1") == []

    def test_no_recorder_configured(self):
        self._add_balance("sub", 500)
        executor = self._executor(usage_recorder=None)

        result = executor.execute("user-1", 100, "openai")

        assert result.success is True
        assert self.usage.get_recent_usage("user-1") == []
