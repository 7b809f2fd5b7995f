"""Central environment-driven settings for the order pipeline.

The API process loads this once at startup. Behavior is controlled by
environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "lumira-orders"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    otel_exporter_otlp_endpoint: str = ""

    # Payment provider
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_signature_tolerance_seconds: int = 300
    default_currency: str = "eur"
    rate_limit_per_minute: int = 30

    # Inbound generation callback
    callback_webhook_secret: str = ""
    signature_tolerance_seconds: int = 300
    nonce_ttl_seconds: int = 3600
    nonce_sweep_interval_seconds: int = 3600

    # Outbound dispatch to the generation worker
    dispatch_url: str = ""
    dispatch_secret: str = ""
    dispatch_signature_header: str = "X-Lumira-Signature"
    dispatch_timeout_seconds: float = 10.0
    dispatch_max_attempts: int = 3
    dispatch_backoff_base_seconds: float = 2.0

    # Generation pipeline
    auto_generate_on_payment: bool = True
    auto_complete_generation: bool = False
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    oracle_timeout_seconds: float = 120.0
    render_timeout_seconds: float = 60.0
    upload_timeout_seconds: float = 30.0
    storage_base_url: str = ""
    storage_public_url: str = ""
    storage_token: str = ""

    # Notifications
    resend_api_key: str = ""
    email_from_address: str = "Oracle Lumira <noreply@oraclelumira.com>"
    expert_alert_emails: str = ""
    frontend_url: str = "http://localhost:3000"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def expert_alert_recipients(self) -> list[str]:
        return [email.strip() for email in self.expert_alert_emails.split(",") if email.strip()]


settings = CommonSettings()
