"""
Configuration management for the Unreal bridge.

Handles environment variables for the Remote Control endpoints and the
timing knobs of the connection, queue, cache and health layers.
"""

from typing import Dict, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Bridge settings loaded from UE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="UE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Remote Control endpoints (UE 5.7 defaults: HTTP 30000, WebSocket 30020)
    host: str = "127.0.0.1"
    rc_ws_port: int = Field(
        default=30020,
        validation_alias=AliasChoices("rc_ws_port", "UE_RC_WS_PORT", "UE_REMOTE_CONTROL_WS_PORT"),
    )
    rc_http_port: int = Field(
        default=30000,
        validation_alias=AliasChoices("rc_http_port", "UE_RC_HTTP_PORT", "UE_REMOTE_CONTROL_HTTP_PORT"),
    )

    # Connection lifecycle
    connect_timeout: float = 5.0
    connect_max_attempts: int = 3
    connect_retry_delay: float = 2.0
    connect_backoff_multiplier: float = 1.5
    connect_max_delay: float = 10.0

    # Auto reconnect is opt-in to avoid looping retries while the editor is closed
    auto_reconnect: bool = False
    reconnect_max_attempts: int = 5
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0

    # HTTP request/response channel
    call_timeout: float = 10.0
    long_call_timeout: float = 600.0
    max_call_timeout: float = 1800.0
    http_max_attempts: int = 3
    http_retry_base_delay: float = 1.0
    http_retry_max_delay: float = 5.0

    # Command queue
    queue_interval: float = 1.0
    queue_max_concurrency: int = 1
    queue_min_command_delay: float = 0.1
    queue_max_command_delay: float = 0.5
    queue_stat_command_delay: float = 0.3

    # Caches
    plugin_cache_ttl: float = 300.0
    engine_version_cache_ttl: float = 300.0
    console_cache_ttl: float = 300.0
    assume_plugins_enabled_on_failure: bool = True

    # Script execution
    script_line_delay: float = 0.03

    # Health monitoring
    health_check_interval: float = 30.0
    health_pause_after: float = 300.0

    @property
    def ws_url(self) -> str:
        return f"ws://{self.host}:{self.rc_ws_port}"

    @property
    def http_base_url(self) -> str:
        return f"http://{self.host}:{self.rc_http_port}"

    def get_connection_config(self) -> Dict:
        """Get the connection summary reported by health snapshots."""
        return {
            "host": self.host,
            "ws_port": self.rc_ws_port,
            "http_port": self.rc_http_port,
            "auto_reconnect": self.auto_reconnect,
            "connect_timeout": self.connect_timeout,
            "call_timeout": self.call_timeout,
        }


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
