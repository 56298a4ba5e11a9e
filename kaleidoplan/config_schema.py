"""
Pydantic models for Kaleidoplan Player configuration validation

Config files are merged (default + environment) and validated here before
anything is constructed from them.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class PlayerConfig(BaseModel):
    """Complete player configuration schema.

    Example:
        >>> cfg = PlayerConfig(**{"grant": "implicit", "token_store": "json"})
        >>> cfg.device_connect_timeout
        15.0
    """

    # Authentication
    grant: Literal["authorization_code", "implicit"] = Field(
        default="authorization_code",
        description="User grant: authorization_code (native) or implicit (browser)",
    )
    redirect_uri: str = Field(default="http://127.0.0.1:8888/callback", description="Registered redirect URI")
    show_dialog: bool = Field(default=True, description="Force the consent dialog on every login")
    auth_dialog_timeout: Optional[float] = Field(default=None, gt=0, description="Seconds to wait for the login redirect (None = no limit)")

    # Token persistence
    token_store: Literal["memory", "json", "encrypted"] = Field(default="encrypted", description="Token storage backend")
    token_path: str = Field(default="~/.kaleidoplan/spotify_token.json", description="Token file for json/encrypted stores")

    # Device session
    device_name: str = Field(default="Kaleidoplan Web Player", description="Spotify Connect device to play on")
    device_connect_timeout: float = Field(default=15.0, gt=0, le=120, description="Hard timeout for the device handshake")
    device_poll_interval: float = Field(default=2.0, gt=0, le=30, description="Connect device lookup/state poll interval")

    # Resolver
    benign_error_markers: List[str] = Field(
        default_factory=lambda: ["CloudPlaybackClientError"],
        description="Error substrings treated as a successful play command (empty list disables)",
    )
    playback_verify_attempts: int = Field(default=3, ge=0, le=10, description="Player-state polls after a play command (0 = trust the command)")
    playback_verify_wait: float = Field(default=0.5, ge=0, le=5, description="Seconds between player-state polls")
    preview_proxy_prefix: Optional[str] = Field(default=None, description="Rewrite preview clips onto this proxy path")
    market: Optional[str] = Field(default=None, min_length=2, max_length=2, description="ISO market for track lookups")

    # Queue
    end_of_track_poll_interval: float = Field(default=3.0, gt=0, le=30, description="Device end-of-track poll interval")
    advance_delay: float = Field(default=0.75, ge=0, le=5, description="Debounce before skipping an unplayable track")

    # Playlist enhancement
    enhance_concurrency: int = Field(default=3, ge=1, le=16, description="Parallel track lookups")

    # Runtime
    environment: str = Field(default="development", description="Runtime environment")
    log_level: str = Field(default="INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$", description="Logging level")

    model_config = {
        "extra": "allow",
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator('benign_error_markers')
    @classmethod
    def validate_markers(cls, v: List[str]) -> List[str]:
        """Drop blank markers; a blank substring would match every error."""
        return [marker for marker in (m.strip() for m in v) if marker]

    @field_validator('market')
    @classmethod
    def validate_market(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else None

    @model_validator(mode='after')
    def validate_redirect(self) -> 'PlayerConfig':
        if not self.redirect_uri.startswith(("http://", "https://")):
            raise ValueError(f"redirect_uri must be an http(s) URL: {self.redirect_uri}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')


def validate_config_dict(config_dict: Dict[str, Any]) -> tuple[PlayerConfig, list[str]]:
    """Validate a config dictionary against the schema.

    Returns:
        Tuple of (validated_config, warnings_list)

    Raises:
        ValueError: If config is invalid with detailed error messages
    """
    warnings = []
    known = set(PlayerConfig.model_fields)
    for key in config_dict:
        if key not in known and not key.startswith("_"):
            warnings.append(f"Unknown config key '{key}' ignored")

    try:
        validated = PlayerConfig(**config_dict)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {str(e)}")

    return validated, warnings
