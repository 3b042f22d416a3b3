from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Risu Billing"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5

    # Supabase auth
    supabase_url: str | None = None
    supabase_anon_key: str | None = None

    # Gateways
    active_gateway: str = "stripe"
    gateway_timeout_seconds: float = 15.0
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_api_version: str = "2023-10-16"
    asaas_api_key: str | None = None
    asaas_url: str = "https://sandbox.asaas.com/api/v3"
    asaas_webhook_token: str | None = None

    # Security
    cors_origins: list[str] = []  # Empty by default for security
    allowed_hosts: list[str] = ["localhost", "127.0.0.1"]

    # Sentry
    sentry_dsn: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "billing"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125
    metrics_schema_version: str = "billing.v1"

    @property
    def resolved_gateway(self) -> str:
        """Return the configured gateway name, falling back to Stripe."""
        return (self.active_gateway or "stripe").strip().lower()

    @property
    def trusted_hosts(self) -> list[str]:
        """Hosts accepted by TrustedHostMiddleware; any host while debugging."""
        return ["*"] if self.debug else list(self.allowed_hosts)

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
