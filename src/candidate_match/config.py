"""Configuration loading from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_MATCHING_MODEL = "gemini-2.5-pro"
DEFAULT_FLASH_MODEL = "gemini-2.5-flash"


@dataclass
class Config:
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    matching_model: str = ""
    flash_model: str = ""

    upload_timeout_seconds: float = 60.0
    ranking_timeout_seconds: float = 300.0
    fallback_backoff_seconds: float = 1.0

    batch_size: int = 10
    skill_pool_limit: int = 50
    default_pool_size: int = 30
    top_n: int = 10
    max_workers: int = 4
    artifact_ttl_hours: float = 47.0

    db_path: Path = field(default_factory=lambda: Path("candidate_match.db"))
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.matching_model:
            self.matching_model = DEFAULT_MATCHING_MODEL
        if not self.flash_model:
            self.flash_model = DEFAULT_FLASH_MODEL
        self.db_path = Path(self.db_path)
        self.gemini_base_url = self.gemini_base_url.rstrip("/")


def load_config(env_file: str | None = None) -> Config:
    """Load configuration from .env file and environment variables."""
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    return Config(
        gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", ""),
        gemini_base_url=os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
        matching_model=os.getenv("GEMINI_MATCHING_MODEL", ""),
        flash_model=os.getenv("GEMINI_FLASH_MODEL", ""),
        upload_timeout_seconds=float(os.getenv("UPLOAD_TIMEOUT_SECONDS", "60")),
        ranking_timeout_seconds=float(os.getenv("RANKING_TIMEOUT_SECONDS", "300")),
        fallback_backoff_seconds=float(os.getenv("FALLBACK_BACKOFF_SECONDS", "1.0")),
        batch_size=int(os.getenv("MATCHING_BATCH_SIZE", "10")),
        skill_pool_limit=int(os.getenv("MATCHING_SKILL_POOL_LIMIT", "50")),
        default_pool_size=int(os.getenv("MATCHING_DEFAULT_POOL_SIZE", "30")),
        top_n=int(os.getenv("MATCHING_TOP_N", "10")),
        max_workers=int(os.getenv("MATCHING_MAX_WORKERS", "4")),
        artifact_ttl_hours=float(os.getenv("ARTIFACT_TTL_HOURS", "47")),
        db_path=Path(os.getenv("DB_PATH", "candidate_match.db")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
