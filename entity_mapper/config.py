import typing
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings read from ``ENTITY_MAPPER_*`` environment variables or a ``.env`` file."""

    model_config = SettingsConfigDict(
        env_prefix="ENTITY_MAPPER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = "sqlite:///entity_mapper.db"
    migrations_path: str = "migrations"
    migrations_table: str = "migrations"
    log_level: typing.Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    echo_sql: bool = False


@lru_cache()
def get_settings() -> Settings:
    return Settings()
