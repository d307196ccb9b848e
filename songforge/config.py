"""
Runtime configuration for the SongForge backend.

Values come from the process environment (optionally seeded from a .env file).
"""

import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parent.parent
load_dotenv(ROOT_DIR / ".env")

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"
SUNO_BASE_URL = "https://api.sunoapi.org"
KITS_BASE_URL = "https://arpeggi.io/api/kits/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"

# Vendor-supported music length, in milliseconds
MIN_MUSIC_LENGTH_MS = 10000
MAX_MUSIC_LENGTH_MS = 300000


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    raw = os.environ.get(name, "")
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    elevenlabs_api_key: str = ""
    suno_api_key: str = ""
    kits_api_key: str = ""
    openai_api_key: str = ""

    elevenlabs_base_url: str = ELEVENLABS_BASE_URL
    suno_base_url: str = SUNO_BASE_URL
    kits_base_url: str = KITS_BASE_URL
    openai_base_url: str = OPENAI_BASE_URL
    suno_callback_url: str = "https://songforge.vercel.app/api/callbacks/suno"

    # Auth
    secret_key: str = field(default_factory=lambda: "songforge-dev-secret-" + str(uuid.uuid4()))
    algorithm: str = "HS256"
    access_token_expire_days: int = 30
    admin_emails: List[str] = field(default_factory=list)

    # Storage
    database_path: Path = ROOT_DIR / "songforge.db"
    db_timeout_seconds: float = 5.0
    output_dir: Path = ROOT_DIR / "outputs"
    upload_dir: Path = ROOT_DIR / "uploads"
    artifact_store: str = "local"

    # Generation
    target_duration_ms: int = 50000
    default_credits: int = 3
    generation_workers: int = 2
    poll_max_attempts: int = 60
    poll_interval_seconds: float = 5.0
    separate_stems: bool = True
    mix_vocals_volume: float = 1.0
    mix_instrumental_volume: float = 1.0
    stalled_after_minutes: int = 30
    max_voice_sample_bytes: int = 10 * 1024 * 1024

    # Media tools
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    output_bitrate: str = "192k"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables"""
        defaults = cls()
        return cls(
            elevenlabs_api_key=os.environ.get("ELEVENLABS_API_KEY", ""),
            suno_api_key=os.environ.get("SUNO_API_KEY", ""),
            kits_api_key=os.environ.get("KITS_API_KEY", os.environ.get("KITSAI_API_KEY", "")),
            openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
            elevenlabs_base_url=os.environ.get("ELEVENLABS_BASE_URL", ELEVENLABS_BASE_URL),
            suno_base_url=os.environ.get("SUNO_BASE_URL", SUNO_BASE_URL),
            kits_base_url=os.environ.get("KITS_BASE_URL", KITS_BASE_URL),
            openai_base_url=os.environ.get("OPENAI_BASE_URL", OPENAI_BASE_URL),
            suno_callback_url=os.environ.get("SUNO_CALLBACK_URL", defaults.suno_callback_url),
            secret_key=os.environ.get("SECRET_KEY", defaults.secret_key),
            access_token_expire_days=int(os.environ.get("ACCESS_TOKEN_EXPIRE_DAYS", "30")),
            admin_emails=_env_list("ADMIN_EMAILS"),
            database_path=Path(os.environ.get("DATABASE_PATH", str(defaults.database_path))),
            db_timeout_seconds=float(os.environ.get("DB_TIMEOUT_SECONDS", "5")),
            output_dir=Path(os.environ.get("OUTPUT_DIR", str(defaults.output_dir))),
            upload_dir=Path(os.environ.get("UPLOAD_DIR", str(defaults.upload_dir))),
            artifact_store=os.environ.get("ARTIFACT_STORE", "local").lower(),
            target_duration_ms=int(os.environ.get("TARGET_DURATION_MS", "50000")),
            default_credits=int(os.environ.get("DEFAULT_CREDITS", "3")),
            generation_workers=int(os.environ.get("GENERATION_WORKERS", "2")),
            poll_max_attempts=int(os.environ.get("POLL_MAX_ATTEMPTS", "60")),
            poll_interval_seconds=float(os.environ.get("POLL_INTERVAL_SECONDS", "5")),
            separate_stems=_env_bool("SEPARATE_STEMS", True),
            mix_vocals_volume=float(os.environ.get("MIX_VOCALS_VOLUME", "1.0")),
            mix_instrumental_volume=float(os.environ.get("MIX_INSTRUMENTAL_VOLUME", "1.0")),
            stalled_after_minutes=int(os.environ.get("STALLED_AFTER_MINUTES", "30")),
            ffmpeg_path=os.environ.get("FFMPEG_PATH", "ffmpeg"),
            ffprobe_path=os.environ.get("FFPROBE_PATH", "ffprobe"),
            output_bitrate=os.environ.get("OUTPUT_BITRATE", "192k"),
        )

    def is_admin(self, email: Optional[str]) -> bool:
        return bool(email) and email.lower() in self.admin_emails
