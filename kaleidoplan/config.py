"""
Centralized configuration management for Kaleidoplan Player
Handles environment-specific configs, schema validation and credentials
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .config_schema import PlayerConfig, validate_config_dict

logger = logging.getLogger("kaleidoplan.config")


def _get_app_config_dir() -> Path:
    """Get application configuration directory path-agnostically"""
    app_name = os.getenv("KALEIDOPLAN_APP_NAME", "kaleidoplan")
    return Path.home() / f".{app_name}"


@dataclass(frozen=True)
class SpotifyCredentials:
    """App credentials registered with the Spotify developer dashboard."""
    client_id: str
    client_secret: str
    redirect_uri: Optional[str] = None

    @property
    def complete(self) -> bool:
        return bool(self.client_id and self.client_secret)


def load_credentials() -> SpotifyCredentials:
    """Read client id/secret from the environment (.env files included)."""
    env_path = _get_app_config_dir() / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path)
    # Project-root .env may supply overrides in dev setups
    load_dotenv()

    credentials = SpotifyCredentials(
        client_id=os.getenv("SPOTIFY_CLIENT_ID", ""),
        client_secret=os.getenv("SPOTIFY_CLIENT_SECRET", ""),
        redirect_uri=os.getenv("SPOTIFY_REDIRECT_URI") or None,
    )
    if not credentials.complete:
        logger.warning("SPOTIFY_CLIENT_ID / SPOTIFY_CLIENT_SECRET not set - catalog and login will fail")
    return credentials


class ConfigManager:
    """Manages configuration loading and validation"""

    def __init__(self, base_path: Optional[str] = None):
        self.base_path = Path(base_path) if base_path else Path(__file__).parent.parent
        self.config_dir = self.base_path / "config"
        self.environment = os.getenv("KALEIDOPLAN_ENV", "development")

    def _read_json(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not load config %s: %s", path.name, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Config %s is not a JSON object - ignored", path.name)
            return {}
        return data

    def load_config(self, config_name: Optional[str] = None) -> PlayerConfig:
        """
        Load configuration based on environment

        Args:
            config_name: Specific config file name (without .json)
                        If None, uses environment-based config

        Returns:
            Validated configuration
        """
        if config_name is None:
            config_name = self.environment

        default_config = self._read_json(self.config_dir / "default_config.json")
        env_config = self._read_json(self.config_dir / f"{config_name}.json")

        # environment overrides default
        config = {**default_config, **env_config}
        config.setdefault("environment", self.environment)

        redirect_override = os.getenv("SPOTIFY_REDIRECT_URI")
        if redirect_override:
            config["redirect_uri"] = redirect_override

        validated, warnings = validate_config_dict(config)
        for warning in warnings:
            logger.warning(f"Config validation warning: {warning}")
        logger.debug("✅ Configuration validated", extra={"environment": validated.environment})
        return validated

    def save_config(self, config: PlayerConfig, config_name: Optional[str] = None) -> bool:
        """Save configuration to ``config/<name>.json``."""
        if config_name is None:
            config_name = self.environment

        config_file = self.config_dir / f"{config_name}.json"
        try:
            config_file.parent.mkdir(parents=True, exist_ok=True)
            with open(config_file, 'w', encoding='utf-8') as f:
                json.dump(config.to_dict(), f, indent=2)
            return True
        except OSError as e:
            logger.error("Could not save config %s: %s", config_file, e)
            return False


config_manager = ConfigManager()


def load_config() -> PlayerConfig:
    """Load current environment configuration"""
    return config_manager.load_config()
