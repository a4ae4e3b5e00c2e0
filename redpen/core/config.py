# /redpen/core/config.py

"""
Central configuration for the RedPen backend.

Values are read once from the environment (a local `.env` file is honoured via
python-dotenv) and exposed as an immutable `Settings` object. The review
policy numbers (confidence threshold, auto-clear dwell time) and the batch
pacing delay live here so they can be tuned per deployment.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    database_url: str
    google_api_key: Optional[str]
    gemini_grading_model: str
    supabase_url: Optional[str]
    supabase_service_key: Optional[str]
    supabase_image_bucket: str
    review_confidence_threshold: float
    review_auto_clear_seconds: float
    grading_inter_item_delay_seconds: float
    log_level: str


@lru_cache()
def get_settings() -> Settings:
    """Builds the settings object from the current environment (cached)."""
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./redpen.db"),
        google_api_key=os.getenv("GOOGLE_API_KEY"),
        gemini_grading_model=os.getenv("GEMINI_GRADING_MODEL", "gemini-2.5-flash"),
        supabase_url=os.getenv("SUPABASE_URL"),
        supabase_service_key=os.getenv("SUPABASE_SERVICE_KEY"),
        supabase_image_bucket=os.getenv("SUPABASE_IMAGE_BUCKET", "homework-images"),
        review_confidence_threshold=_float_env("REVIEW_CONFIDENCE_THRESHOLD", 80.0),
        review_auto_clear_seconds=_float_env("REVIEW_AUTO_CLEAR_SECONDS", 5.0),
        grading_inter_item_delay_seconds=_float_env("GRADING_INTER_ITEM_DELAY_SECONDS", 2.0),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
