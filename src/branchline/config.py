"""Settings loaded from BRANCHLINE_* environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine tunables."""

    first_chunk_timeout: float = Field(default=20.0, gt=0)
    timeout_message: str = "Request timed out: no response within {seconds:g}s. Please try again."
    stopped_marker: str = "[Generation stopped]"
    error_template: str = "Sorry, an error occurred: {error}"
    empty_reply_message: str = "The model returned an empty response."
    default_title: str = "New Chat"
    title_max_length: int = Field(default=30, ge=1)
    data_dir: Path = Field(default=Path("~/.local/share/branchline/conversations"))

    model_config = SettingsConfigDict(env_prefix="BRANCHLINE_")

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_path(cls, v: Any) -> Path:
        if isinstance(v, str):
            return Path(v).expanduser()
        if isinstance(v, Path):
            return v.expanduser()
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
