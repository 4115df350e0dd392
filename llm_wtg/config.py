"""
Configuration settings using pydantic-settings.

Supports configuration via WTG_* environment variables and an optional
.env file in the working directory.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Environment variable the recorder exports to the nested shell and the
# context resolver reads back as its fallback log path.
LOG_ENV_VAR = "WTG_LOG"
TOKEN_ENV_VAR = "WTG_SESSION_TOKEN"

DEFAULT_QUERY = (
    "Here is the program output. If there was an error, concisely explain how it can be fixed. \n"
    "If there was no error, concisely summarize the output."
)


class WtgSettings(BaseSettings):
    """wtg configuration settings.

    Configuration is loaded from (in order of priority):
    1. Environment variables (WTG_*)
    2. .env file
    3. Default values

    The recorder only uses ``shell``, ``read_size`` and ``debug_log``; model
    and prompt settings belong to query/chat.
    """

    model_config = SettingsConfigDict(
        env_prefix="WTG_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
    )

    log: Optional[Path] = Field(
        default=None,
        description="Log file used by query/chat when --logfile is not given",
    )
    llm: Optional[str] = Field(
        default=None,
        description="Model id for queries and chats (default: llm's default model)",
    )
    prompt: str = Field(
        default=DEFAULT_QUERY,
        description="Default prompt for 'wtg query' when none is provided",
    )
    openai_key: Optional[str] = Field(
        default=None,
        description="API key passed to the model (default: keys stored by llm)",
    )
    shell: Optional[str] = Field(
        default=None,
        description="Shell to nest in a session (default: $SHELL, then /bin/sh)",
    )
    read_size: int = Field(
        default=1024,
        ge=1,
        description="Bytes per read in the relay loops",
    )
    debug_log: Optional[Path] = Field(
        default=None,
        description="Write debug logging to this file",
    )


def get_temp_dir(app_name: str = "wtg") -> Path:
    """Get application temp directory with user isolation.

    Returns:
        Path to TMPDIR/app_name/{uid} or /tmp/app_name/{uid}
    """
    tmpdir = os.environ.get("TMPDIR") or os.environ.get("TMP") or os.environ.get("TEMP")
    base = Path(tmpdir) if tmpdir else Path("/tmp")
    return base / app_name / str(os.getuid())


@lru_cache
def get_settings() -> WtgSettings:
    """Get cached settings instance.

    Returns:
        WtgSettings singleton
    """
    return WtgSettings()
