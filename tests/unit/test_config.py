"""Unit tests for settings loading."""

from __future__ import annotations

import pytest

from pitcrew.config import Settings, get_settings


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults():
    settings = Settings()

    assert settings.session.timeout_minutes == 240
    assert settings.session.idle_timeout_minutes == 30
    assert [s.name for s in settings.services] == ["api", "nt4", "halsim", "jdtls"]
    assert settings.get_profile("basic").java_heap_mb == 1536
    assert settings.get_profile("nope") is None
    assert settings.get_service("nt4").port == 30004


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("PITCREW_SESSION__IDLE_TIMEOUT_MINUTES", "15")
    monkeypatch.setenv("PITCREW_ROUTING__PUBLIC_BASE_URL", "https://labs.example.org")
    monkeypatch.setenv("PITCREW_SWEEPER__ENABLED", "false")

    settings = Settings()

    assert settings.session.idle_timeout_minutes == 15
    assert settings.routing.public_base_url == "https://labs.example.org"
    assert settings.sweeper.enabled is False


def test_config_file_wins_over_env(tmp_path, monkeypatch):
    config_file = tmp_path / "pitcrew.yaml"
    config_file.write_text(
        "session:\n"
        "  timeout_minutes: 90\n"
        "profiles:\n"
        "  - id: tiny\n"
        "    cpus: 0.25\n"
        "    memory_mb: 512\n"
        "    java_heap_mb: 256\n"
    )
    monkeypatch.setenv("PITCREW_CONFIG_FILE", str(config_file))
    monkeypatch.setenv("PITCREW_SESSION__TIMEOUT_MINUTES", "30")

    settings = get_settings()

    assert settings.session.timeout_minutes == 90
    assert [p.id for p in settings.profiles] == ["tiny"]


def test_missing_config_file_falls_back(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("PITCREW_CONFIG_FILE", str(tmp_path / "absent.yaml"))

    settings = get_settings()

    assert settings.session.default_profile == "basic"
