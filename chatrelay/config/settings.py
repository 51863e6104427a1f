import json as json_mod
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RELAY_", case_sensitive=False)

    env: str = "dev"
    log_level: str = "INFO"

    # Generation backend
    provider_name: str = "stub"
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-1.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    openai_base_url: str | None = None
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    generation_timeout_s: float = Field(default=30.0, gt=0)
    classifier_timeout_s: float = Field(default=15.0, gt=0)

    # Persistence
    storage_backend: str = "memory"
    database_url: str | None = None
    db_pool_min_size: int = Field(default=1, ge=0)
    db_pool_max_size: int = Field(default=10, ge=1)
    message_encryption_key: str | None = None
    ensure_schema_on_startup: bool = False
    tenant_seed: str = Field(default="", description="JSON list of tenant records")

    # Chat rate limit per client address; 0 disables it
    chat_rate_limit_window_s: float = Field(default=60.0, gt=0)
    chat_rate_limit_max: int = Field(default=30, ge=0)

    background_drain_timeout_s: float = 10.0
    metrics_enabled: bool = True

    @property
    def provider_name_normalized(self) -> str:
        return self.provider_name.strip().lower()

    @property
    def storage_backend_normalized(self) -> str:
        return self.storage_backend.strip().lower()

    @property
    def tenant_seed_records(self) -> list[dict[str, object]]:
        """Parse ``tenant_seed`` into a list of tenant dicts, skipping malformed entries."""
        raw = self.tenant_seed.strip()
        if not raw:
            return []
        try:
            parsed = json_mod.loads(raw)
        except json_mod.JSONDecodeError:
            return []
        if not isinstance(parsed, list):
            return []
        records: list[dict[str, object]] = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            try:
                account_number = int(item.get("account_number", 0))
            except (TypeError, ValueError):
                continue
            if account_number <= 0:
                continue
            records.append({**item, "account_number": account_number})
        return records


@lru_cache
def get_settings() -> Settings:
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()
