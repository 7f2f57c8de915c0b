"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    data_sources_table: str = "data_sources"
    projects_table: str = "projects"

    # Record store backend
    record_store_mode: str = "supabase"  # "supabase" or "memory"

    # Remote analysis service
    analysis_api_base_url: str = "http://0.0.0.0:8000/api/v1"
    analysis_request_timeout_seconds: float = 30.0
    submission_mode: str = "pipeline"  # "pipeline" or "chained"

    # Pipeline tracking
    poll_interval_seconds: float = 5.0
    poll_timeout_seconds: float = 600.0
    poll_max_attempts: Optional[int] = None

    # Service
    api_port: int = 8002
    log_level: str = "INFO"
    log_json: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
