# config.py
"""Configuration settings for the Scenecraft scene generation engine.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

import os

import structlog
from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = structlog.get_logger()

# Directory holding the installed top-level modules and bundled data.
INSTALL_ROOT = os.path.dirname(os.path.abspath(__file__))


class ScenecraftSettings(BaseSettings):
    """Process-wide configuration for the Scenecraft engine."""

    # Backend Configuration
    OLLAMA_BASE_URL: str = "http://127.0.0.1:11434"
    DEFAULT_MODEL: str = "llama3.1:8b-instruct"
    HTTPX_TIMEOUT: float = 600.0

    # Default sampling (used when no user settings were saved yet)
    TEMPERATURE_DEFAULT: float = 0.8
    TOP_P_DEFAULT: float = 0.9
    NUM_CTX_DEFAULT: int = 8192
    NUM_PREDICT_DEFAULT: int = 512

    # Repair and auxiliary call budgets
    JSON_REPAIR_TEMPERATURE_CAP: float = 0.4
    SUMMARY_TEMPERATURE_CAP: float = 0.5
    SUMMARY_NUM_PREDICT: int = 220
    CONTINUATION_TEMPERATURE_CAP: float = 0.7
    CONTINUATION_NUM_PREDICT: int = 220
    MAX_CONTINUATION_ATTEMPTS: int = 2
    CONTINUATION_TAIL_CHARS: int = 1400
    REPAIR_BEATS_COUNT_DEFAULT: int = 2

    # Context window
    CONTEXT_RECENT_BEATS: int = 20
    SUMMARY_REFRESH_INTERVAL: int = 10
    SUMMARY_TRANSCRIPT_BEATS: int = 30
    PERSONA_SNIPPET_CHARS: int = 420

    # Passive-scene validator thresholds
    LEXICAL_OVERLAP_MIN_HITS: int = 2
    LEXICAL_OVERLAP_MIN_WORD_LENGTH: int = 3
    LEXICAL_OVERLAP_MAX_CANDIDATES: int = 8
    CHOICE_KEYWORD_MIN_LENGTH: int = 5

    # Raw model output log
    RAW_OUTPUT_LOG_CAPACITY: int = 100

    # Output and File Paths
    BASE_OUTPUT_DIR: str = "scenecraft_output"
    PROJECTS_DIR: str = "projects"
    SETTINGS_FILE: str = "settings.json"
    CHARACTERS_DIR: str = os.path.join(INSTALL_ROOT, "assets", "characters")
    RAW_OUTPUT_LOG_FILE: str | None = None

    # Logging & UI
    LOG_LEVEL_STR: str = Field("INFO", alias="SCENECRAFT_LOG_LEVEL")
    LOG_FORMAT: str = (
        "%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] - %(message)s"
    )
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: str | None = "scenecraft_run.log"
    ENABLE_RICH_PROGRESS: bool = True

    @model_validator(mode="after")
    def check_thresholds(self) -> ScenecraftSettings:
        if self.LEXICAL_OVERLAP_MIN_HITS < 1:
            logger.warning(
                "LEXICAL_OVERLAP_MIN_HITS below 1 makes every overlap check pass. Using 1.",
                configured=self.LEXICAL_OVERLAP_MIN_HITS,
            )
            self.LEXICAL_OVERLAP_MIN_HITS = 1
        if self.SUMMARY_REFRESH_INTERVAL < 1:
            logger.warning(
                "SUMMARY_REFRESH_INTERVAL must be positive. Using 10.",
                configured=self.SUMMARY_REFRESH_INTERVAL,
            )
            self.SUMMARY_REFRESH_INTERVAL = 10
        return self

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", populate_by_name=True, extra="ignore"
    )


settings = ScenecraftSettings()
