"""Central environment-driven settings for the mailer process.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "invoicemailer"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000
    data_dir: Path = Path("data")
    queue_file_name: str = "webhook_queue.json"
    state_file_name: str = "sent_to_contact_state.json"
    token_file_name: str = "xero_tokens.json"
    reminder_state_file_name: str = "invoice_reminder_state.json"

    xero_client_id: str = ""
    xero_client_secret: str = ""
    xero_webhook_key: str = ""
    xero_api_url: str = "https://api.xero.com/api.xro/2.0"
    xero_connections_url: str = "https://api.xero.com/connections"
    xero_identity_url: str = "https://identity.xero.com/connect/token"
    xero_authorize_url: str = "https://login.xero.com/identity/connect/authorize"
    xero_scopes: str = "openid profile email accounting.transactions offline_access accounting.settings"
    token_safety_margin_seconds: int = 60

    entra_tenant_id: str = ""
    entra_client_id: str = ""
    entra_client_secret: str = ""
    shared_mailbox: str = ""
    graph_url: str = "https://graph.microsoft.com/v1.0"
    entra_login_url: str = "https://login.microsoftonline.com"

    tracked_category: str = "INVOICE"
    watched_event_types: list[str] = ["CREATE", "UPDATE"]
    deliverable_statuses: list[str] = ["AUTHORISED", "PAID"]
    min_interval_seconds: float = 1.1
    idle_interval_seconds: float = 2.0
    rate_limit_cooldown_seconds: float = 10.0
    state_retention_days: int = 7
    pdf_max_attempts: int = 2
    pdf_retry_delay_seconds: float = 1.0
    http_timeout_seconds: float = 30.0

    reminders_enabled: bool = True
    remind_after_days: int = 7
    remind_repeat_every_days: int = 7
    # Empty means the first organisation from the connections endpoint.
    reminder_tenant_id: str = ""

    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def queue_path(self) -> Path:
        return self.data_dir / self.queue_file_name

    @property
    def state_path(self) -> Path:
        return self.data_dir / self.state_file_name

    @property
    def token_path(self) -> Path:
        return self.data_dir / self.token_file_name

    @property
    def reminder_state_path(self) -> Path:
        return self.data_dir / self.reminder_state_file_name


settings = CommonSettings()
