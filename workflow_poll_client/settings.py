from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from workflow_poll_client.models import BackoffMode, PollingConfig


class ClientSettings(BaseSettings):
    """Process-level client settings, read from ``WORKFLOW_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="WORKFLOW_", extra="ignore")

    base_url: str = "http://localhost:5678"
    api_key: Optional[str] = None
    webhook_token: Optional[str] = None
    request_timeout: float = 30.0

    poll_interval: float = 2.0
    poll_timeout: float = 60.0
    poll_max_attempts: Optional[int] = 30
    poll_backoff_mode: BackoffMode = BackoffMode.fixed
    poll_max_interval: float = 30.0
    status_endpoint: Optional[str] = None

    def polling_config(self) -> PollingConfig:
        return PollingConfig(
            base_interval=self.poll_interval,
            timeout=self.poll_timeout,
            max_attempts=self.poll_max_attempts,
            backoff_mode=self.poll_backoff_mode,
            max_interval=self.poll_max_interval,
            status_endpoint=self.status_endpoint,
        )
