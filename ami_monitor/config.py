"""
Settings for the AMI connection and the extension synchronizer.

Both models read ``AMI_*`` / ``AMI_SYNC_*`` environment variables and accept
keyword arguments, which take precedence over the environment.
"""
import enum
from typing import Any, Dict, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PORT = 5038
DEFAULT_TLS_PORT = 5039

DEFAULT_ACTION_TIMEOUTS = {
    "ExtensionStateList": 20.0,
    "DeviceStateList": 20.0,
    "ExtensionState": 5.0,
    "Ping": 3.0,
}


class AMIConfig(BaseSettings):
    """
    Connection settings for the Asterisk Manager Interface.
    """

    model_config = SettingsConfigDict(
        env_prefix="AMI_",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
    )

    # Connection
    host: str = Field(default="localhost", description="Asterisk server host")
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535, description="AMI port")
    username: str = Field(..., description="Manager user from manager.conf")
    secret: str = Field(..., description="Manager secret")
    events: Optional[str] = Field(default="system,call",
                                  description="Login Events mask, live ExtensionStatus needs call")

    # TLS
    ssl_enabled: bool = Field(default=False, description="Wrap the connection in TLS")
    cert_ca: Optional[str] = Field(default=None, description="CA bundle used to verify the server")

    encoding: str = Field(default="utf-8", description="Wire encoding, undecodable bytes are replaced")

    # Timeouts, seconds
    connect_timeout: float = Field(default=10.0, gt=0)
    auth_timeout: float = Field(default=10.0, gt=0)
    query_timeout: float = Field(default=10.0, gt=0)
    action_timeouts: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_ACTION_TIMEOUTS))
    grace_period: float = Field(default=0.5, ge=0, description="Wait for trailing events after a terminal Response")
    keepalive_interval: float = Field(default=30.0, ge=0, description="Ping period, 0 disables keepalive")

    # Reconnection
    reconnect_delay: float = Field(default=5.0, ge=0)
    reconnect_backoff: float = Field(default=1.0, ge=1.0, description="Delay multiplier, 1.0 keeps it fixed")
    max_reconnect_delay: float = Field(default=60.0, gt=0)
    max_reconnect_attempts: int = Field(default=10, ge=0)

    @field_validator("host", "username")
    @classmethod
    def not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()

    @field_validator("action_timeouts")
    @classmethod
    def positive_timeouts(cls, v: Dict[str, float]) -> Dict[str, float]:
        for action, timeout in v.items():
            if timeout <= 0:
                raise ValueError(f"Timeout for {action} must be positive")
        return v

    @model_validator(mode="before")
    @classmethod
    def tls_port(cls, values: Any) -> Any:
        if isinstance(values, dict) and values.get("ssl_enabled") and "port" not in values:
            values = dict(values, port=DEFAULT_TLS_PORT)
        return values

    def timeout_for(self, action: str) -> float:
        return self.action_timeouts.get(action, self.query_timeout)

    def reconnect_delay_for(self, attempt: int) -> float:
        """Delay before reconnection attempt number ``attempt`` (1-based)."""
        delay = self.reconnect_delay * self.reconnect_backoff ** max(attempt - 1, 0)
        return min(delay, self.max_reconnect_delay)

    def mask_sensitive_data(self) -> Dict[str, Any]:
        d = self.model_dump()
        d["secret"] = "***"
        return d

    def __repr__(self) -> str:
        return f"AMIConfig({self.mask_sensitive_data()})"


class SyncMode(str, enum.Enum):
    BULK = "bulk"
    INDIVIDUAL = "individual"


class SyncConfig(BaseSettings):
    """
    Settings for the periodic extension status synchronization.
    """

    model_config = SettingsConfigDict(
        env_prefix="AMI_SYNC_",
        case_sensitive=False,
        extra="ignore",
    )

    context: str = Field(default="from-internal", description="Dialplan context queried for hints")
    mode: SyncMode = Field(default=SyncMode.BULK)
    poll_interval: float = Field(default=30.0, gt=0)
    initial_delay: float = Field(default=2.0, ge=0)
    query_timeout: Optional[float] = Field(default=None, gt=0, description="Overrides the per-action timeout")
    watch_events: bool = Field(default=True, description="Apply live ExtensionStatus events between cycles")
