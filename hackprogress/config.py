"""
Engine configuration.

Settings come from HACKPROGRESS_* environment variables, optionally seeded
from a .env file in the working directory.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "HACKPROGRESS_"
DEFAULT_LOCAL_STORE_DIR = Path.home() / ".hackprogress"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


class EngineSettings(BaseModel):
    # Remote writes: one try plus one bounded retry after a fixed delay
    retry_max_attempts: int = Field(default=2, ge=1)
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    retry_backoff: float = Field(default=1.0, ge=1.0)  # 1.0 = fixed delay

    # Playback
    countdown_seconds: int = Field(default=5, ge=1)

    # Repeat completions count again only after this long
    completion_cooldown_minutes: int = Field(default=30, ge=0)

    # Local (anonymous) storage
    max_anonymous_routines: int = Field(default=3, ge=1)
    storage_key_prefix: str = Field(default="hackprogress", min_length=1)
    local_store_dir: Path = DEFAULT_LOCAL_STORE_DIR

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "EngineSettings":
        """
        Build settings from the environment.

        Args:
            env_file: Optional .env path (default: search from the working directory)

        Returns:
            EngineSettings with any HACKPROGRESS_* overrides applied
        """
        load_dotenv(env_file)

        overrides = {}
        for name in cls.model_fields:
            value = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
            if value is not None and value != "":
                overrides[name] = value
        return cls(**overrides)


def configure_logging(level: str | int | None = None, settings: Optional[EngineSettings] = None):
    """Basic logging setup for host applications and scripts (default level: settings.log_level)."""
    if level is None:
        level = (settings or EngineSettings()).log_level
    logging.basicConfig(level=level, format=LOG_FORMAT)
