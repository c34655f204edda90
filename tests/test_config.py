"""Tests for settings loading."""
from __future__ import annotations

import pytest

from heist_crew.config import DEFAULT_SETTINGS_PATH, Settings, SettingsLoader, get_settings


def test_default_settings_load():
    """Bundled settings expose the documented defaults."""
    settings = get_settings()

    assert settings.voting_seconds == 60
    assert settings.cooldown_seconds == 300
    assert (settings.trust_min, settings.trust_default, settings.trust_max) == (0, 50, 100)
    assert settings.probability_floor == pytest.approx(0.05)
    assert settings.probability_ceiling == pytest.approx(0.95)
    assert settings.crimes_offered == 3
    assert "[server]" in settings.system_users
    assert settings.rng_seed is None


def test_from_dict_normalises_user_lists():
    settings = Settings.from_dict(
        {"admins": [" Boss ", "DAZZA"], "system_users": ["System"], "rooms": ["fatpizza"]}
    )

    assert settings.admins == ("boss", "dazza")
    assert settings.system_users == ("system",)
    assert settings.rooms == ("fatpizza",)


def test_from_dict_rejects_inverted_bounds():
    with pytest.raises(ValueError):
        Settings.from_dict({"trust": {"min": 10, "max": 5, "default": 7}})
    with pytest.raises(ValueError):
        Settings.from_dict({"timing": {"min_wait_hours": 5, "max_wait_hours": 1}})
    with pytest.raises(ValueError):
        Settings.from_dict({"resolver": {"probability_floor": 0.9, "probability_ceiling": 0.1}})


def test_loader_caches_until_forced(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("timing:\n  voting_seconds: 15\n", encoding="utf-8")
    loader = SettingsLoader(path)

    first = loader.load()
    path.write_text("timing:\n  voting_seconds: 45\n", encoding="utf-8")

    assert loader.load() is first
    assert loader.load(force=True).voting_seconds == 45
    assert loader.path == path


def test_default_path_points_at_package_data():
    assert DEFAULT_SETTINGS_PATH.name == "settings.yaml"
    assert DEFAULT_SETTINGS_PATH.exists()
