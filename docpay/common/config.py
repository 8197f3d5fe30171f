"""Central environment-driven settings for the reconciliation service.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "docpay"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    redis_url: str = "redis://redis:6379/0"
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    gateway_base_url: str = "https://sandbox.asaas.com/api/v3"
    gateway_api_key: str = ""
    gateway_timeout_seconds: float = 10.0

    webhook_secret: str = ""
    webhook_signature_header: str = "asaas-access-token"
    # "token": header carries the shared secret; "hmac": hex HMAC-SHA256 of the body.
    webhook_signature_mode: str = "token"
    webhook_queue_enabled: bool = False
    webhook_rate_limit_per_minute: int = 60

    poller_autostart: bool = False
    poller_interval_seconds: int = 300
    poller_window_days: int = 7
    poller_request_delay_seconds: float = 0.1

    reconcile_max_attempts: int = 3
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
