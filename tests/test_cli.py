"""
Tests for the CLI interface.
"""
import os
import tempfile
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from hybrid_billing.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from hybrid_billing.core.service import HybridBillingService
from hybrid_billing.config.loader import DatabaseConfig, EngineConfig

runner = CliRunner()


@pytest.fixture(autouse=True)
def mock_setup_logging():
    """Keep the CLI from reconfiguring root logging during tests."""
    with patch('hybrid_billing.cli.main.setup_logging') as mock:
        yield mock


@pytest.fixture
def db_path():
    """Temporary database path."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield os.path.join(temp_dir, "test.db")


def _invoke(db_path, *args):
    return runner.invoke(app, ["--db", db_path, *args])


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self, db_path):
        result = _invoke(db_path)

        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_init_creates_database(self, db_path):
        result = _invoke(db_path, "init")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(db_path)

    def test_log_level_option(self, db_path, mock_setup_logging):
        _invoke(db_path, "--log-level", "debug", "init")

        mock_setup_logging.assert_called_once_with("DEBUG")

    def test_invalid_log_level_fails(self, db_path):
        result = _invoke(db_path, "--log-level", "loud", "init")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid configuration" in result.output

    def test_config_file(self, db_path):
        config_path = os.path.join(os.path.dirname(db_path), "engine.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"billing": {"platform_fee_percent": 10}}, f)

        _invoke(db_path, "--config", config_path, "ensure-profile", "user-1")
        result = _invoke(db_path, "--config", config_path, "add-tokens", "user-1", "one_time", "1000", "--source", "promo")
        balances = _invoke(db_path, "balances", "user-1")

        assert result.exit_code == EXIT_CODE_PASS
        assert "900" in balances.output

    def test_ensure_profile(self, db_path):
        result = _invoke(db_path, "ensure-profile", "user-1", "--email", "user@example.com")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Profile ready for user-1" in result.output
        assert "subscription, one_time, byok" in result.output

    def test_add_tokens_and_balances(self, db_path):
        _invoke(db_path, "ensure-profile", "user-1")

        result = _invoke(db_path, "add-tokens", "user-1", "subscription", "1000", "--source", "monthly")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Added balance" in result.output

        result = _invoke(db_path, "balances", "user-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Subscription tokens: 800" in result.output
        assert "Total tokens: 800" in result.output

    def test_add_tokens_with_expiry_and_priority(self, db_path):
        _invoke(db_path, "ensure-profile", "user-1")

        result = _invoke(
            db_path, "add-tokens", "user-1", "one_time", "500", "--source", "stripe",
            "--priority", "10", "--expiry", "2030-01-01"
        )

        assert result.exit_code == EXIT_CODE_PASS
        service = HybridBillingService.from_config(EngineConfig(database=DatabaseConfig(path=db_path)))
        balance = service.get_balances("user-1")["balances"][0]
        assert balance.consumption_priority == 10
        assert balance.expiry_date.year == 2030

    def test_add_tokens_without_profile_fails(self, db_path):
        result = _invoke(db_path, "add-tokens", "ghost", "subscription", "1000", "--source", "monthly")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "User profile not found: ghost" in result.output

    def test_add_tokens_invalid_type_fails(self, db_path):
        _invoke(db_path, "ensure-profile", "user-1")

        result = _invoke(db_path, "add-tokens", "user-1", "byok", "1000", "--source", "monthly")

        assert result.exit_code == EXIT_CODE_FAIL

    def test_plan_preview(self, db_path):
        _invoke(db_path, "ensure-profile", "user-1")
        _invoke(db_path, "add-tokens", "user-1", "subscription", "1000", "--source", "monthly")

        result = _invoke(db_path, "plan", "user-1", "300")

        assert result.exit_code == EXIT_CODE_PASS
        assert "subscription: 300" in result.output
        assert "Viable: yes" in result.output

    def test_consume_success(self, db_path):
        _invoke(db_path, "ensure-profile", "user-1")
        _invoke(db_path, "add-tokens", "user-1", "subscription", "1000", "--source", "monthly")

        result = _invoke(db_path, "consume", "user-1", "300", "--provider", "openai", "--model", "gpt-4o")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Consumed 300 tokens via managed balances" in result.output
        assert "remaining 500" in result.output

    def test_consume_not_viable_exits_failure(self, db_path):
        _invoke(db_path, "ensure-profile", "user-1")

        result = _invoke(db_path, "consume", "user-1", "300", "--provider", "openai")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Cannot fulfill request" in result.output
        assert "could not be funded" in result.output

    def test_consume_with_byok(self, db_path):
        _invoke(db_path, "ensure-profile", "user-1")
        _invoke(db_path, "configure-byok", "user-1", "--providers", "openai")

        result = _invoke(db_path, "consume", "user-1", "300", "--provider", "openai", "--api-key-present")

        assert result.exit_code == EXIT_CODE_PASS
        assert "via your API key" in result.output

    def test_configure_byok_rejects_provider(self, db_path):
        _invoke(db_path, "ensure-profile", "user-1")

        result = _invoke(db_path, "configure-byok", "user-1", "--providers", "mistral")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "BYOK not supported" in result.output

    def test_history(self, db_path):
        _invoke(db_path, "ensure-profile", "user-1")
        _invoke(db_path, "add-tokens", "user-1", "subscription", "1000", "--source", "monthly")
        _invoke(db_path, "consume", "user-1", "300", "--provider", "openai")

        result = _invoke(db_path, "history", "user-1")

        assert result.exit_code == EXIT_CODE_PASS
        assert "subscription:300" in result.output

    def test_history_empty(self, db_path):
        result = _invoke(db_path, "history", "user-1")

        assert result.exit_code == EXIT_CODE_PASS
        assert "No consumption history found" in result.output

    def test_set_preferences(self, db_path):
        _invoke(db_path, "ensure-profile", "user-1")

        result = _invoke(
            db_path, "set-preferences", "user-1", "--order", "one_time,subscription",
            "--byok", "--threshold", "0"
        )

        assert result.exit_code == EXIT_CODE_PASS
        service = HybridBillingService.from_config(EngineConfig(database=DatabaseConfig(path=db_path)))
        profile = service.get_profile("user-1")
        assert [s.value for s in profile.consumption_order] == ["one_time", "subscription"]
        assert profile.byok_enabled is True
        assert profile.notify_token_low_threshold == 0

    def test_set_preferences_rejects_bad_order(self, db_path):
        _invoke(db_path, "ensure-profile", "user-1")

        result = _invoke(db_path, "set-preferences", "user-1", "--order", "subscription,subscription")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Duplicate funding source" in result.output

    def test_set_preferences_requires_an_option(self, db_path):
        result = _invoke(db_path, "set-preferences", "user-1")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "No preferences given" in result.output
