from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from project root .env if present
current_file_path = Path(__file__).resolve()
project_root_depth = 2  # turnstream/core/settings.py -> project root

if len(current_file_path.parents) <= project_root_depth:
    project_root = Path.cwd()
else:
    project_root = current_file_path.parents[project_root_depth]

ENV_PATH = project_root / ".env"
load_dotenv(ENV_PATH)


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=ENV_PATH,
        extra="ignore",
        populate_by_name=True,
    )

    log_level: Optional[str] = Field(default=None, alias="TURNSTREAM_LOG_LEVEL")

    # Context pruning
    reply_primer_tokens: int = Field(default=3, alias="TURNSTREAM_REPLY_PRIMER_TOKENS")
    usage_ratio_min: float = Field(default=1 / 3, alias="TURNSTREAM_USAGE_RATIO_MIN")
    usage_ratio_max: float = Field(default=2.5, alias="TURNSTREAM_USAGE_RATIO_MAX")

    # Approximate token counting
    chars_per_token: float = Field(default=4.0, alias="TURNSTREAM_CHARS_PER_TOKEN")
    tokens_per_message: int = Field(default=3, alias="TURNSTREAM_TOKENS_PER_MESSAGE")

    # Stream reconciliation
    think_open_tag: str = Field(default="<think>", alias="TURNSTREAM_THINK_OPEN_TAG")
    think_close_tag: str = Field(default="</think>", alias="TURNSTREAM_THINK_CLOSE_TAG")
    default_reasoning_key: str = Field(default="reasoning_content", alias="TURNSTREAM_REASONING_KEY")
    strict_aggregation: bool = Field(default=False, alias="TURNSTREAM_STRICT_AGGREGATION")

    @model_validator(mode="after")
    def _validate_ratio_band(self) -> "Settings":
        if self.usage_ratio_min <= 0:
            raise ValueError("TURNSTREAM_USAGE_RATIO_MIN must be positive")
        if self.usage_ratio_min > self.usage_ratio_max:
            raise ValueError(
                "TURNSTREAM_USAGE_RATIO_MIN must not exceed TURNSTREAM_USAGE_RATIO_MAX"
            )
        return self


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
