import logging

import pytest

pytest.importorskip("pydantic_settings")

from rootstree.config import configure_logging, get_settings
from rootstree.services.builder import TreeBuilder
from rootstree.version import user_agent


def test_settings_read_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("API_BASE_URL", "https://roots.example/api")
    monkeypatch.setenv("AUTOSAVE_DELAY_MS", "250")
    monkeypatch.setenv("DEFAULT_LOCALE", "fr")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.api_base_url == "https://roots.example/api"
    assert settings.autosave_delay_ms == 250
    assert settings.max_gedcom_bytes == 50 * 1024 * 1024

    builder = TreeBuilder(client=None)
    assert builder.locale == "fr"
    assert builder._scheduler.delay == 0.25

    get_settings.cache_clear()


def test_settings_read_dotenv_file(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("API_TOKEN", raising=False)
    (tmp_path / ".env").write_text("API_TOKEN=from-file\nUNRELATED_KEY=1\n", encoding="utf-8")
    get_settings.cache_clear()

    assert get_settings().api_token == "from-file"

    get_settings.cache_clear()


def test_configure_logging_accepts_level_names(monkeypatch):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

    configure_logging("debug")

    assert calls[0]["level"] == logging.DEBUG
    assert "%(name)s" in calls[0]["format"]


def test_user_agent_names_distribution():
    assert user_agent().startswith("rootstree/")
