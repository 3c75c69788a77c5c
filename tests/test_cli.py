"""
Tests for the CLI interface.
"""
import os
import shutil
import tempfile
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from chat_cost_guard.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from chat_cost_guard.core.errors import BudgetExceeded, RemoteCallFailed
from chat_cost_guard.core.ledger import LedgerStore
from chat_cost_guard.core.session import ChatResponse
from chat_cost_guard.storage.repository import UsageRepository

runner = CliRunner()


@pytest.fixture
def workspace():
    """Temporary directory holding a config file and its database."""
    temp_dir = tempfile.mkdtemp()
    db_path = os.path.join(temp_dir, "usage.db")
    config_path = os.path.join(temp_dir, "config.yaml")
    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.dump({
            "openai": {"model": "gpt-3.5-turbo"},
            "budget": {
                "period": "monthly",
                "guest_budget": 1,
                "admin_user_ids": "9",
                "allowed_user_ids": "1,2",
                "user_budgets": "10,0",
            },
            "storage": {"db_path": db_path},
            "logging": {"level": "WARNING"},
        }, f)
    yield config_path, db_path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def mock_session():
    """Mock the chat session used by the chat command."""
    with patch('chat_cost_guard.cli.main.ChatSession') as mock_class:
        yield mock_class.from_config.return_value


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_init_command(self, workspace):
        config_path, db_path = workspace

        result = runner.invoke(app, ["init", "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(db_path)

    def test_missing_config_fails(self, workspace):
        config_path, _ = workspace

        result = runner.invoke(app, ["init", "-c", config_path + ".missing"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error loading configuration" in result.output

    def test_usage_command(self, workspace):
        config_path, db_path = workspace
        LedgerStore(UsageRepository(db_path), token_price=0.002).record_chat_tokens(
            "1", 1500, user_name="alice"
        )

        result = runner.invoke(app, ["usage", "1", "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage of alice (1)" in result.output
        assert "1,500" in result.output
        assert "$0.00" in result.output

    def test_usage_of_unknown_user_creates_nothing(self, workspace):
        config_path, db_path = workspace

        result = runner.invoke(app, ["usage", "5", "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "User 5" in result.output
        assert UsageRepository(db_path).list_user_ids() == []

    def test_budget_command(self, workspace):
        config_path, _ = workspace

        result = runner.invoke(app, ["budget", "1", "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Budget period: monthly" in result.output
        assert "Budget: $10.00" in result.output
        assert "Remaining: $10.00" in result.output

    def test_budget_command_for_guest(self, workspace):
        config_path, _ = workspace

        result = runner.invoke(app, ["budget", "77", "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "is a guest" in result.output
        assert "Budget: $1.00" in result.output

    def test_budget_command_for_admin(self, workspace):
        config_path, _ = workspace

        result = runner.invoke(app, ["budget", "9", "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Remaining: unlimited" in result.output

    def test_backfill_command(self, workspace):
        config_path, db_path = workspace
        LedgerStore(UsageRepository(db_path), token_price=0.002).record_chat_tokens("1", 1000)

        result = runner.invoke(app, ["backfill", "1", "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "All-time cost of user 1: $0.002000" in result.output

    def test_chat_without_streaming(self, workspace, mock_session):
        config_path, _ = workspace
        mock_session.get_chat_response.return_value = ChatResponse(answer="Hi there!", total_tokens=12)

        result = runner.invoke(
            app, ["chat", "c1", "1", "--no-stream", "--config", config_path], input="hello\n/exit\n"
        )

        assert result.exit_code == EXIT_CODE_PASS
        assert "Hi there!" in result.output
        mock_session.get_chat_response.assert_called_once_with("c1", "1", "hello")

    def test_chat_with_streaming(self, workspace, mock_session):
        config_path, _ = workspace
        mock_session.get_chat_response_stream.return_value = iter(["Hi", "Hi there!"])

        result = runner.invoke(app, ["chat", "c1", "1", "--config", config_path], input="hello\n")

        assert result.exit_code == EXIT_CODE_PASS
        mock_session.get_chat_response_stream.assert_called_once_with("c1", "1", "hello")

    def test_chat_without_api_key_fails_cleanly(self, workspace, monkeypatch):
        config_path, _ = workspace
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        result = runner.invoke(app, ["chat", "c1", "1", "--config", config_path], input="hello\n")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Cannot create OpenAI client" in result.output

    def test_chat_reset(self, workspace, mock_session):
        config_path, _ = workspace

        result = runner.invoke(app, ["chat", "c1", "1", "--config", config_path], input="/reset\n")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Conversation reset" in result.output
        mock_session.reset_chat.assert_called_once_with("c1")

    def test_chat_reports_budget_and_errors(self, workspace, mock_session):
        """Failed requests are reported and the loop keeps going."""
        config_path, _ = workspace
        mock_session.get_chat_response.side_effect = [
            BudgetExceeded("2", 0.0),
            RemoteCallFailed("service unavailable"),
        ]

        result = runner.invoke(
            app, ["chat", "c1", "2", "--no-stream", "--config", config_path], input="one\ntwo\n"
        )

        assert result.exit_code == EXIT_CODE_PASS
        assert "reached the usage limit" in result.output
        assert "service unavailable" in result.output
        assert mock_session.get_chat_response.call_count == 2
