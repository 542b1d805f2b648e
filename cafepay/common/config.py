"""Central environment-driven settings for the checkout proxy and client.

The proxy process loads this once at startup. Behavior is controlled by
environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "checkout-proxy"
    log_level: str = "INFO"
    port: int = 3000
    backend_api_url: str = "http://localhost:8000/api"
    public_base_url: str = "http://localhost:3000"
    stripe_secret_key: str = ""
    stripe_publishable_key: str = ""
    stripe_webhook_secret: str = ""
    default_currency: str = "USD"
    qclub_currency: str = "IQD"
    http_timeout_seconds: float = 10.0
    stripe_timeout_seconds: float = 20.0
    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
