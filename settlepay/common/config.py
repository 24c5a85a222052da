"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Service-specific behavior is
controlled by environment variables (see `.env.example`).
"""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    postgres_dsn: str
    api_key: str
    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    gateway_base_url: str = "https://api.razorpay.com/v1"
    gateway_key_id: str = ""
    gateway_key_secret: str = ""
    gateway_account_number: str = ""
    gateway_webhook_secret: str = ""
    gateway_timeout_seconds: float = 10.0

    payout_currency: str = "INR"
    payout_mode: str = "IMPS"
    commission_rate: Decimal = Decimal("0.25")
    # Python weekday numbering: Monday=0 ... Sunday=6.
    week_start_weekday: int = 6
    fulfilled_order_statuses: list[str] = ["completed", "delivered"]
    lifecycle_topic: str = "payouts.lifecycle"
    reconcile_min_age_seconds: int = 300
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
