"""
Unit tests for configuration validation (Pydantic schema + ConfigManager)

Tests cover:
- Defaults and valid overrides
- Invalid field detection (type/range/format errors)
- Normalization (markers, market)
- Environment merge of config files
"""

import json

import pytest

from kaleidoplan.config import ConfigManager
from kaleidoplan.config_schema import PlayerConfig, validate_config_dict


class TestPydanticValidation:
    """Tests for Pydantic-based config validation"""

    def test_defaults(self):
        validated, warnings = validate_config_dict({})

        assert validated.grant == "authorization_code"
        assert validated.token_store == "encrypted"
        assert validated.benign_error_markers == ["CloudPlaybackClientError"]
        assert validated.device_connect_timeout == 15.0
        assert warnings == []

    def test_valid_overrides(self):
        validated, _ = validate_config_dict({
            "grant": "implicit",
            "token_store": "json",
            "playback_verify_attempts": 0,
            "enhance_concurrency": 8,
            "log_level": "DEBUG",
        })

        assert validated.grant == "implicit"
        assert validated.playback_verify_attempts == 0
        assert validated.enhance_concurrency == 8

    @pytest.mark.parametrize("config", [
        {"grant": "password"},
        {"token_store": "keychain"},
        {"device_connect_timeout": 0},
        {"enhance_concurrency": 0},
        {"log_level": "VERBOSE"},
        {"redirect_uri": "kaleidoplan://callback"},
        {"market": "SWE"},
    ])
    def test_invalid_values_rejected(self, config):
        with pytest.raises(ValueError, match="Configuration validation failed"):
            validate_config_dict(config)

    def test_unknown_keys_warn(self):
        _, warnings = validate_config_dict({"alarm_volume": 50, "_comment": "ignored"})

        assert len(warnings) == 1
        assert "alarm_volume" in warnings[0]

    def test_blank_markers_are_dropped(self):
        config = PlayerConfig(benign_error_markers=["  ", "CloudPlaybackClientError ", ""])

        assert config.benign_error_markers == ["CloudPlaybackClientError"]

    def test_markers_can_be_disabled(self):
        assert PlayerConfig(benign_error_markers=[]).benign_error_markers == []

    def test_market_is_upper_cased(self):
        assert PlayerConfig(market="se").market == "SE"

    def test_to_dict_is_json_serializable(self):
        json.dumps(PlayerConfig().to_dict())


class TestConfigManager:
    def write(self, tmp_path, name, data):
        config_dir = tmp_path / "config"
        config_dir.mkdir(exist_ok=True)
        (config_dir / f"{name}.json").write_text(json.dumps(data))

    def test_environment_overrides_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("KALEIDOPLAN_ENV", "production")
        monkeypatch.delenv("SPOTIFY_REDIRECT_URI", raising=False)
        self.write(tmp_path, "default_config", {"device_name": "Living Room", "log_level": "INFO"})
        self.write(tmp_path, "production", {"log_level": "WARNING"})

        config = ConfigManager(str(tmp_path)).load_config()

        assert config.device_name == "Living Room"
        assert config.log_level == "WARNING"
        assert config.environment == "production"

    def test_redirect_uri_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SPOTIFY_REDIRECT_URI", "http://localhost:9999/cb")
        self.write(tmp_path, "default_config", {})

        assert ConfigManager(str(tmp_path)).load_config().redirect_uri == "http://localhost:9999/cb"

    def test_broken_file_falls_back_to_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SPOTIFY_REDIRECT_URI", raising=False)
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        (config_dir / "default_config.json").write_text("{broken")

        config = ConfigManager(str(tmp_path)).load_config("development")

        assert config.grant == "authorization_code"

    def test_save_and_reload(self, tmp_path, monkeypatch):
        monkeypatch.setenv("KALEIDOPLAN_ENV", "testing")
        monkeypatch.delenv("SPOTIFY_REDIRECT_URI", raising=False)
        manager = ConfigManager(str(tmp_path))

        assert manager.save_config(PlayerConfig(device_name="Kitchen"))
        assert manager.load_config().device_name == "Kitchen"

    def test_shipped_default_config_is_valid(self, monkeypatch):
        monkeypatch.delenv("SPOTIFY_REDIRECT_URI", raising=False)
        monkeypatch.setenv("KALEIDOPLAN_ENV", "production")

        config = ConfigManager().load_config()

        assert config.environment == "production"
        assert config.log_level == "WARNING"
