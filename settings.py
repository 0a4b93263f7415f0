from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_title: str = "OPD Token Allocation Engine"
    log_level: str = "INFO"
    seed_on_startup: bool = True

    model_config = SettingsConfigDict(
        env_prefix="OPD_",
        env_file=".env",
        env_file_encoding="utf-8",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
