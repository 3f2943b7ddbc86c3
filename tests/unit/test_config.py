"""Tests for configuration loading."""

from hubflow.config import load_config
from hubflow.persistence import SQLiteRepository, get_repository


def test_load_config_from_yaml(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
app_url: https://hub.example.com
http:
  timeout: 3
  max_retries: 4
reminders:
  window_1h_start: 30
  window_1h_end: 90
email:
  sender: Team <team@example.com>
  timezone: UTC
"""
    )
    monkeypatch.setenv("HUBFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.app_url == "https://hub.example.com"
    assert config.http.timeout == 3
    assert config.http.max_retries == 4
    assert config.reminders.window_1h_start == 30
    assert config.reminders.window_24h_start == 24 * 60
    assert config.email.timezone == "UTC"


def test_environment_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("slack:\n  webhook_url: https://file.example.com\n")
    monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://env.example.com")
    monkeypatch.setenv("KLAVIYO_LEAD_LIST_ID", "list_9")
    monkeypatch.setenv("GOOGLE_REFRESH_TOKEN", "refresh")
    monkeypatch.setenv("HUBFLOW_REMINDER_SENDER", "gmail")
    monkeypatch.setenv("DATABASE_URL", "sqlite://hub.db")

    config = load_config(str(config_path))
    assert config.slack.webhook_url == "https://env.example.com"
    assert config.klaviyo.lead_list_id == "list_9"
    assert config.gmail.refresh_token == "refresh"
    assert config.email.reminder_sender == "gmail"
    assert config.database_url == "sqlite://hub.db"


def test_defaults_without_file():
    config = load_config()
    assert config.database_url is None
    assert config.reminders.claim_lease_minutes == 15
    assert config.http.step_timeout == 45.0


def test_get_repository_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"database_url: sqlite://{tmp_path / 'wf.db'}\n")
    monkeypatch.setenv("HUBFLOW_CONFIG", str(config_path))

    repo = get_repository()
    assert isinstance(repo, SQLiteRepository)
    repo.close()
