"""WorkGraph approvals configuration — loaded from environment / .env file."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="WORKGRAPH_", extra="ignore")

    env: str = "development"
    database_url: str = "sqlite+aiosqlite:///./workgraph.db"

    # Action tokens (email deep links)
    token_secret: str = "change-me"
    approve_token_ttl_hours: int = 72  # approve + reject links
    view_token_ttl_hours: int = 168

    # Base URL the deep links in emails point at
    public_url: str = "http://localhost:3000"

    # Outbound email
    email_backend: str = "log"  # log|resend
    email_from: str = "WorkGraph <onboarding@resend.dev>"
    resend_api_key: str = ""
    resend_api_url: str = "https://api.resend.com/emails"
    email_timeout_seconds: float = 10.0
    # Provider testing mode: deliver everything to one verified inbox
    email_redirect_to: str = ""

    notification_max_attempts: int = 3
    notification_backoff_seconds: float = 0.5

    # Optimistic-concurrency retries for item transitions
    store_max_retries: int = 5

    # Viewer roles that never see the monetary amount of an item
    hidden_amount_roles: list[str] = ["individual_contributor", "agency_contractor"]

    @property
    def deep_link_base(self) -> str:
        return self.public_url.rstrip("/")


settings = Settings()
