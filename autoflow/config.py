"""
Configuration settings for autoflow.

Values come from environment variables prefixed ``AUTOFLOW_`` or a ``.env``
file in the working directory.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Application settings"""

    # API Settings
    api_title: str = "autoflow Execution API"
    api_version: str = "0.1.0"
    api_prefix: str = ""
    host: str = "0.0.0.0"
    port: int = 3003

    # Browser Settings
    headless: bool = True
    browser: str = "chromium"  # chromium, firefox, webkit
    default_timeout_ms: int = 30000
    video_dir: str = "recordings"

    # Engine Settings
    event_buffer_size: int = 1000
    max_loop_iterations: int = 1000

    # Monitoring
    poll_interval_ms: int = 1000
    max_execution_duration_ms: int = 300000
    breakpoint_poll_interval_ms: int = 500
    breakpoint_wait_ms: int = 60000

    # Recovery Settings
    min_selector_timeout_ms: int = 30000
    use_dom_capture: bool = True

    # LLM Settings
    openai_api_key: Optional[str] = None
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.3

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="AUTOFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def llm_configured(self) -> bool:
        return bool(self.openai_api_key)


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | None = None) -> None:
    """Install the root handler used by the API server and CLI."""
    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)
