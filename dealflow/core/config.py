from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Dealflow"
    app_env: str = "local"
    database_url: str = "sqlite+pysqlite:///:memory:"
    deals_dataset: str = "deals"
    temp_id_prefix: str = "temp-"
    won_lifecycle_marker: str = "CUSTOMER"
    lost_lifecycle_marker: str = "OTHER"
    forwarding_lifecycle_markers: list[str] = Field(default_factory=lambda: ["MQL", "SALES_QUALIFIED"])
    forwarding_dedupe_enabled: bool = True
    history_actor_name: str = "System"
    metrics_enabled: bool = False
    otel_enabled: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
