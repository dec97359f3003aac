# chatcore/core/settings.py
from __future__ import annotations

from functools import lru_cache
from typing import Optional, Union

from pydantic import AnyUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")

    app_env: str = "dev"
    app_name: str = "Chat Core"
    app_host: str = "127.0.0.1"
    app_port: int = 8000

    log_level: str = "INFO"
    db_url: str = "sqlite:///data/chat.db"

    # Provider endpoint (any OpenAI-compatible server)
    provider_name: str = Field(default="openai", validation_alias="PROVIDER_NAME")
    provider_base_url: Optional[Union[AnyUrl, str]] = Field(
        default="https://api.openai.com", validation_alias="PROVIDER_BASE_URL"
    )
    provider_api_key: Optional[str] = Field(default=None, validation_alias="PROVIDER_API_KEY")
    default_model: str = Field(default="gpt-4o-mini", validation_alias="DEFAULT_MODEL")

    # Timeouts (seconds)
    request_timeout_sec: float = Field(default=60.0, validation_alias="REQUEST_TIMEOUT_SEC")
    completion_timeout_sec: Optional[float] = Field(default=None, validation_alias="COMPLETION_TIMEOUT_SEC")

    # Context budget
    ctx_default_budget_tokens: int = Field(default=4000, validation_alias="CTX_DEFAULT_BUDGET_TOKENS")
    ctx_tokens_per_message: int = Field(default=512, validation_alias="CTX_TOKENS_PER_MESSAGE")
    ctx_default_count: int = Field(default=5, validation_alias="CTX_DEFAULT_COUNT")
    ctx_reserve_ratio: float = Field(default=0.8, validation_alias="CTX_RESERVE_RATIO")

    # SSE heartbeat for the local API
    sse_heartbeat_sec: float = Field(default=10.0, validation_alias="SSE_HEARTBEAT_SEC")

    @property
    def db_dialect(self) -> str:
        return self.db_url.split(":", 1)[0] if ":" in self.db_url else self.db_url


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings()
