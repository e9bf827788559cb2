from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"

    database_url: str = "sqlite:///./travel_flow.db"
    redis_url: str = "redis://localhost:6379/0"

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "trip-pdfs"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"

    extraction_timeout_seconds: float = 60.0
    # Documents per batched extraction call. Kept small so one response fits the token budget.
    extraction_batch_size: int = 2
    extraction_max_tokens_single: int = 4096
    extraction_max_tokens_batch: int = 8192
    extraction_max_text_chars: int = 20000

    attachment_link_workers: int = 4
    max_upload_files: int = 10


settings = Settings()
