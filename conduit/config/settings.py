"""
Process-level engine settings.

Document configuration describes the application; these settings describe
how this engine process runs it (timeouts, retries, where image steps
execute). Read from CONDUIT_* environment variables.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EngineSettings(BaseModel):
    """Engine settings model."""

    # Step execution
    step_timeout_seconds: float = Field(default=30.0, gt=0, description="Default per-step timeout")
    retry_attempts: int = Field(default=3, ge=1, description="Attempts for transient failures")
    retry_backoff_base: float = Field(default=0.5, ge=0)
    retry_backoff_max: float = Field(default=10.0, ge=0)

    # Image steps
    backend_url: str | None = Field(default=None, description="HTTP execution backend base URL")
    temp_dir: str | None = Field(default=None, description="Directory for raw payload handoff")

    # Process
    log_level: str = "INFO"
    worker_id: int = Field(default=0, ge=0, le=1023, description="Snowflake worker id")


@lru_cache()
def get_settings() -> EngineSettings:
    """
    Get engine settings from environment.

    Uses lru_cache for singleton pattern; call get_settings.cache_clear()
    after changing the environment in tests.
    """
    return EngineSettings(
        step_timeout_seconds=float(os.getenv("CONDUIT_STEP_TIMEOUT_SECONDS", "30")),
        retry_attempts=int(os.getenv("CONDUIT_RETRY_ATTEMPTS", "3")),
        retry_backoff_base=float(os.getenv("CONDUIT_RETRY_BACKOFF_BASE", "0.5")),
        retry_backoff_max=float(os.getenv("CONDUIT_RETRY_BACKOFF_MAX", "10")),
        backend_url=os.getenv("CONDUIT_BACKEND_URL") or None,
        temp_dir=os.getenv("CONDUIT_TEMP_DIR") or None,
        log_level=os.getenv("CONDUIT_LOG_LEVEL", "INFO").upper(),
        worker_id=int(os.getenv("CONDUIT_WORKER_ID", "0")),
    )


def configure_logging(settings: EngineSettings | None = None) -> None:
    """Apply the configured log level to the conduit logger hierarchy."""
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level)
    if not isinstance(level, int):
        logger.warning(f"Unknown log level '{settings.log_level}', using INFO")
        level = logging.INFO
    logging.getLogger("conduit").setLevel(level)
