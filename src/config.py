from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings validated via Pydantic.

    Values are loaded from environment variables and/or a .env file.
    """

    # API Keys
    gemini_api_key: str = ""  # Required for analysis; the API returns 501 if absent

    # Gemini
    gemini_model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    http_timeout_seconds: float = 120.0

    # Windowing
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    chunk_length_seconds: float = 300.0
    max_artifact_bytes: int = 200 * 1024 * 1024
    max_source_bytes: int = 2 * 1024 * 1024 * 1024

    # Remote processing and inference
    poll_interval_seconds: float = 2.0
    max_analysis_attempts: int = 3
    retry_base_delay_seconds: float = 2.0
    analysis_max_output_tokens: int = 8192
    synthesis_max_output_tokens: int = 200
    delete_remote_files: bool = True

    # Scheduling
    max_workers: int = 1
    upload_interval_seconds: float = 0.5
    analysis_interval_seconds: float = 1.0

    # App config
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Gracefully handles missing .env files (e.g. in CI/testing) by falling
    back to environment variables and defaults.
    """
    try:
        return Settings()
    except Exception:
        # If .env is missing or unreadable, build settings from env vars only.
        return Settings(_env_file=None)  # type: ignore[call-arg]


settings = get_settings()
