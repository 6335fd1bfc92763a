"""Tests for the command-line interface."""

import pytest
from click.testing import CliRunner

from inboxkeeper.cli import cli
from inboxkeeper.config import load_config
from inboxkeeper.models import Email
from inboxkeeper.storage import CacheStorage
from inboxkeeper.store import ReconciliationStore


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        f"accounts:\n  - me@example.com\ndatabase_path: {tmp_path / 'cache.db'}\n"
        "logging:\n  audit_file: null\n"
    )
    return path


class TestClassify:
    def test_marketing_message(self, runner):
        result = runner.invoke(
            cli,
            ["classify", "--subject", "Flash sale", "--body", "Shop now", "--sender", "deals@shop.com"],
        )
        assert result.exit_code == 0
        assert "Low" in result.output
        assert "Delete" in result.output

    def test_meeting_request(self, runner):
        result = runner.invoke(
            cli, ["classify", "--subject", "Meeting request", "--body", "Can we discuss this?"]
        )
        assert result.exit_code == 0
        assert "Urgent" in result.output
        assert "Meeting or scheduling request" in result.output


class TestInitConfig:
    def test_sample_config_loads(self, runner, tmp_path):
        output = tmp_path / "sample.yml"
        result = runner.invoke(cli, ["init-config", str(output)])

        assert result.exit_code == 0
        config = load_config(output)
        assert config.account_emails == ["me@example.com"]
        assert config.sync.interval == 30


class TestCache:
    def test_show_empty(self, runner, config_file):
        result = runner.invoke(cli, ["cache", "show", "-c", str(config_file)])
        assert result.exit_code == 0
        assert "No cached collections" in result.output

    def test_show_and_clear_account(self, runner, config_file, tmp_path):
        store = ReconciliationStore(CacheStorage(tmp_path / "cache.db"))
        store.merge("me@example.com", [Email(message_id="m1", subject="Quarterly numbers")])
        store.persist("me@example.com")

        shown = runner.invoke(cli, ["cache", "show", "-c", str(config_file), "-a", "me@example.com"])
        assert "Quarterly numbers" in shown.output

        cleared = runner.invoke(cli, ["cache", "clear", "-c", str(config_file), "-a", "me@example.com"])
        assert cleared.exit_code == 0
        assert CacheStorage(tmp_path / "cache.db").list_collections() == []

    def test_clear_needs_target(self, runner, config_file):
        result = runner.invoke(cli, ["cache", "clear", "-c", str(config_file)])
        assert result.exit_code == 2
