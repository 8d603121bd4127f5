from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for provider models, polling limits, and storage."""
    gemini_api_key: str
    gemini_model_image: str
    gemini_model_pro: str
    gemini_model_flash: str
    gemini_model_tts: str
    veo_model: str
    tts_voice: str
    video_resolution: str
    video_poll_interval_sec: float
    video_max_poll_attempts: int
    provider_timeout_sec: float
    download_timeout_sec: float
    history_db_path: Path


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables.
    Dependencies: Uses os.getenv, normalize_model_name and BASE_DIR for default paths.
    Failure Modes: Invalid numeric env values raise ValueError.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve the history database path, then build Settings.
    history_db = os.getenv("HISTORY_DB_PATH")
    if history_db:
        history_db_path = Path(history_db)
    else:
        history_db_path = (BASE_DIR / "data" / "history.db").resolve()

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY", ""),
        gemini_model_image=normalize_model_name(os.getenv("GEMINI_MODEL_IMAGE", "gemini-2.5-flash-image")),
        gemini_model_pro=normalize_model_name(os.getenv("GEMINI_MODEL_PRO", "gemini-3.1-pro-preview")),
        gemini_model_flash=normalize_model_name(os.getenv("GEMINI_MODEL_FLASH", "gemini-3-flash-preview")),
        gemini_model_tts=normalize_model_name(os.getenv("GEMINI_MODEL_TTS", "gemini-2.5-flash-preview-tts")),
        veo_model=normalize_model_name(os.getenv("VEO_MODEL", "veo-3.1-fast-generate-preview")),
        tts_voice=os.getenv("TTS_VOICE", "Kore"),
        video_resolution=os.getenv("VIDEO_RESOLUTION", "720p"),
        video_poll_interval_sec=float(os.getenv("VIDEO_POLL_INTERVAL_SEC", "10")),
        video_max_poll_attempts=int(os.getenv("VIDEO_MAX_POLL_ATTEMPTS", "60")),
        provider_timeout_sec=float(os.getenv("PROVIDER_TIMEOUT_SEC", "120")),
        download_timeout_sec=float(os.getenv("DOWNLOAD_TIMEOUT_SEC", "300")),
        history_db_path=history_db_path,
    )


def normalize_model_name(name: Optional[str]) -> str:
    """Strip a ``models/`` prefix and surrounding whitespace from a model name."""
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
