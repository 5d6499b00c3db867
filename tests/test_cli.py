"""Tests for the inspection commands of the CLI."""

import pytest
import yaml
from click.testing import CliRunner

from brainy.cli import main
from brainy.models import Message, UserPreferences, utcnow
from brainy.sqlite_storage import SqliteContextStorage, SqlitePreferencesStorage, connect


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    monkeypatch.delenv("BRAINY_STORAGE_BACKEND", raising=False)
    monkeypatch.delenv("BRAINY_STORAGE_PATH", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({
        "storage": {"backend": "sqlite", "path": str(tmp_path / "brainy.db")},
        "data_dir": str(tmp_path / "data"),
    }))
    return path


def seed(tmp_path):
    db = connect(tmp_path / "brainy.db")
    contexts = SqliteContextStorage(db)
    prefs = SqlitePreferencesStorage(db)
    contexts.set_topic(42, "astronomy")
    contexts.append_message(42, Message(is_user=True, text="how far is the moon?"))
    prefs.save_user_preferences(UserPreferences(
        user_id=42, preferred_language="English", formality="neutral",
        favorite_topics=["space"], last_analysis_at=utcnow(),
    ))
    contexts.close()


def test_context_command(tmp_path, config_path):
    seed(tmp_path)
    result = CliRunner().invoke(main, ["context", "42", "-c", str(config_path)])
    assert result.exit_code == 0, result.output
    assert "astronomy" in result.output
    assert "how far is the moon?" in result.output


def test_context_command_missing_user(tmp_path, config_path):
    seed(tmp_path)
    result = CliRunner().invoke(main, ["context", "7", "-c", str(config_path)])
    assert result.exit_code == 0
    assert "No context stored for user 7" in result.output


def test_prefs_command(tmp_path, config_path):
    seed(tmp_path)
    result = CliRunner().invoke(main, ["prefs", "42", "-c", str(config_path)])
    assert result.exit_code == 0, result.output
    assert "English" in result.output
    assert "neutral" in result.output
    assert "space" in result.output


def test_start_rejects_invalid_config(config_path):
    result = CliRunner().invoke(main, ["start", "-c", str(config_path)])
    assert result.exit_code == 1
    assert "bot_token is required" in result.output
