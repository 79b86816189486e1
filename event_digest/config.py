"""Service configuration. Override any field via environment variable or .env file."""
from typing import Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class EmailConfig(BaseModel):
    """Explicit email settings handed to the mailer and digest at construction."""
    from_address: str = "notifications"
    dev_from_address: str = "Busso Events Dev <onboarding@resend.dev>"
    dev_mode: bool = True
    site_url: str = "http://localhost:5173"
    max_events_per_email: int = 10

    @property
    def sender(self) -> str:
        return self.dev_from_address if self.dev_mode else self.from_address


class Settings(BaseSettings):
    # Content fetch proxy (renders arbitrary URLs to markdown)
    jina_api_key: Optional[str] = None
    fetch_base_url: str = "https://r.jina.ai/"
    fetch_timeout_seconds: float = 30.0
    max_content_bytes: int = 100_000

    # Gemini
    google_api_key: Optional[str] = None
    llm_model: str = "gemini-2.0-flash"
    llm_temperature: float = 0.1
    llm_max_output_tokens: int = 8192
    embedding_model: str = "models/text-embedding-004"
    embedding_dimensions: int = 768  # 0 disables the dimension check
    max_embedding_chars: int = 8000

    # Bulk embedding retry
    embedding_retry_attempts: int = 3
    embedding_retry_delay_seconds: float = 1.0
    embedding_batch_size: int = 10
    embedding_batch_pause_seconds: float = 0.5

    # Matching
    similarity_threshold: float = 0.2

    # Work pools
    scrape_pool_parallelism: int = 1
    embedding_pool_parallelism: int = 2
    matching_pool_parallelism: int = 1

    # Cadence
    source_scrape_interval_days: float = 3
    initial_scrape_delay_minutes: float = 5
    match_delay_hours: float = 8
    digest_interval_minutes: int = 30
    queue_retention_days: int = 30
    source_heal_at: str = "02:00"
    queue_cleanup_at: str = "03:00"

    # Email
    resend_api_key: Optional[str] = None
    resend_api_url: str = "https://api.resend.com/emails"
    email_from_address: Optional[str] = None
    email_dev_from_address: str = "Busso Events Dev <onboarding@resend.dev>"
    email_dev_mode: Optional[bool] = None
    site_url: str = "http://localhost:5173"
    max_events_per_email: int = 10

    # Admin surface
    admin_api_key: Optional[str] = None
    allowed_origins: str = "*"
    enable_docs: bool = False
    port: int = 8080

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    def email_config(self) -> EmailConfig:
        dev_mode = self.email_dev_mode
        if dev_mode is None:
            dev_mode = not self.email_from_address
        return EmailConfig(
            from_address=self.email_from_address or "notifications",
            dev_from_address=self.email_dev_from_address,
            dev_mode=dev_mode,
            site_url=self.site_url,
            max_events_per_email=self.max_events_per_email,
        )
