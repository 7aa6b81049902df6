"""Test Settings loading and dispatch validation."""

import pytest

from mechanic_shop.core.config import DispatchConfig, Settings, load_settings
from mechanic_shop.core.enums import DispatchMode
from mechanic_shop.core.errors import ConfigError


class TestSettingsDefaults:
    def test_default_settings(self):
        settings = Settings()
        assert settings.dispatch.mode == DispatchMode.INLINE
        assert settings.database.url.startswith("sqlite+aiosqlite")
        assert settings.database.create_tables is False

    def test_observability_defaults(self):
        settings = Settings()
        assert settings.observability.log_level == "INFO"
        assert settings.observability.log_format == "json"


class TestEnvOverrides:
    def test_nested_env_override(self, monkeypatch):
        monkeypatch.setenv("MECHANIC_SHOP_DISPATCH__MODE", "outbox")
        monkeypatch.setenv("MECHANIC_SHOP_DATABASE__POOL_SIZE", "12")
        settings = Settings()
        assert settings.dispatch.mode == DispatchMode.OUTBOX
        assert settings.database.pool_size == 12


class TestLoadSettings:
    def test_missing_file_uses_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "absent.toml")
        assert settings.dispatch.outbox_batch_size == 100

    def test_toml_file(self, tmp_path):
        path = tmp_path / "shop.toml"
        path.write_text(
            '[database]\n'
            'url = "postgresql+asyncpg://shop:shop@db:5432/shop"\n'
            'echo = true\n'
            '\n'
            '[dispatch]\n'
            'mode = "outbox"\n'
            'outbox_max_attempts = 8\n'
        )
        settings = load_settings(path)
        assert settings.database.url.startswith("postgresql+asyncpg://")
        assert settings.database.echo is True
        assert settings.dispatch.mode == DispatchMode.OUTBOX
        assert settings.dispatch.outbox_max_attempts == 8

    def test_overrides_win(self):
        settings = load_settings(overrides={"dispatch": {"mode": "outbox"}})
        assert settings.dispatch.mode == DispatchMode.OUTBOX


class TestValidateDispatch:
    def test_valid(self):
        Settings().validate_dispatch()  # Should not raise

    def test_zero_batch_rejected(self):
        settings = Settings(dispatch=DispatchConfig(outbox_batch_size=0))
        with pytest.raises(ConfigError, match="batch_size"):
            settings.validate_dispatch()

    def test_zero_attempts_rejected_on_load(self):
        with pytest.raises(ConfigError, match="max_attempts"):
            load_settings(overrides={"dispatch": {"outbox_max_attempts": 0}})
