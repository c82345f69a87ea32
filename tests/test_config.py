"""Tests for DoubleDataEntryConfig."""

import pytest

from clinicaldata.double_data_entry.config import (
    DoubleDataEntryConfig,
    get_config,
    reset_config,
    set_config,
)


class TestDefaults:
    """Default values."""

    def test_defaults(self):
        config = DoubleDataEntryConfig()

        assert config.dashboard_limit == 50
        assert config.lock_timeout_seconds == 30.0
        assert config.strict_snapshot_parsing is False
        assert config.enable_provenance is True


class TestFromEnv:
    """CD_DDE_ environment overrides."""

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("CD_DDE_DATABASE_URL", "sqlite://")
        monkeypatch.setenv("CD_DDE_DASHBOARD_LIMIT", "10")
        monkeypatch.setenv("CD_DDE_LOCK_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("CD_DDE_STRICT_SNAPSHOT_PARSING", "yes")
        monkeypatch.setenv("CD_DDE_ENABLE_PROVENANCE", "false")

        config = DoubleDataEntryConfig.from_env()

        assert config.database_url == "sqlite://"
        assert config.dashboard_limit == 10
        assert config.lock_timeout_seconds == 2.5
        assert config.strict_snapshot_parsing is True
        assert config.enable_provenance is False

    def test_invalid_number_falls_back(self, monkeypatch):
        monkeypatch.setenv("CD_DDE_DASHBOARD_LIMIT", "many")

        assert DoubleDataEntryConfig.from_env().dashboard_limit == 50


class TestValidation:
    """__post_init__ constraint checks."""

    @pytest.mark.parametrize("kwargs", [
        {"database_url": ""},
        {"pool_size": 0},
        {"lock_timeout_seconds": 0},
        {"dashboard_limit": 0},
        {"log_level": "CHATTY"},
        {"genesis_hash": ""},
    ])
    def test_rejects_invalid(self, kwargs):
        with pytest.raises(ValueError):
            DoubleDataEntryConfig(**kwargs)


class TestSingleton:
    """get_config / set_config / reset_config."""

    def test_set_and_reset(self):
        custom = DoubleDataEntryConfig(database_url="sqlite://", dashboard_limit=5)
        set_config(custom)
        assert get_config() is custom

        reset_config()
        assert get_config() is not custom

    def test_get_config_is_cached(self):
        assert get_config() is get_config()
