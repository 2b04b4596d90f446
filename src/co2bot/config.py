"""Process configuration.

Settings are read from constructor kwargs and `CO2BOT_*` environment
variables. The resulting `Config` is frozen and injected into
`RemoteTransport`; nothing else holds the credential.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    """Bot credential, sensor address and timing knobs.

    Invariant:
        `bot_token` and `sensor_uri` are required and non-empty after
        stripping. `bot_token` is hidden from `repr()` so it never reaches
        logs.
    """

    model_config = SettingsConfigDict(env_prefix="CO2BOT_", frozen=True)

    bot_token: str = Field(repr=False)
    sensor_uri: str
    api_base: str = "https://api.telegram.org"
    poll_timeout_seconds: int = 60
    poll_limit: int = 0
    request_timeout_seconds: float = 10.0
    default_delay_seconds: float = 60.0
    alert_cooldown_seconds: float = 300.0

    @field_validator("bot_token", "sensor_uri")
    @classmethod
    def _require_non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must be a non-empty string")
        return value

    @field_validator("api_base")
    @classmethod
    def _normalize_api_base(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @field_validator("poll_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"poll_timeout_seconds must be > 0; got {value}")
        return value

    @field_validator("poll_limit")
    @classmethod
    def _non_negative_limit(cls, value: int) -> int:
        if value < 0:
            raise ValueError(f"poll_limit must be >= 0; got {value}")
        return value

    @field_validator(
        "request_timeout_seconds", "default_delay_seconds", "alert_cooldown_seconds"
    )
    @classmethod
    def _positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError(f"must be > 0; got {value}")
        return value
