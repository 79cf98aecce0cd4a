"""Runtime settings, read from the environment (and a ``.env`` file)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_API_URL = "http://localhost:3003"


def _env_float(name, default):
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name, default):
    return int(_env_float(name, default))


def _default_output_dir() -> Path:
    return Path.home() / "Downloads"


@dataclass
class Settings:
    api_url: str = DEFAULT_API_URL
    host: str = "0.0.0.0"
    port: int = 3003
    data_dir: Path = Path("data")
    job_ttl: float = 3600.0
    sweep_interval: float = 3600.0
    max_upload_bytes: int = 100 * 1024 * 1024
    ffmpeg: str = "ffmpeg"
    workers: int = 4
    poll_interval: float = 2.0
    native_poll_interval: float = 0.5
    output_dir: Path = field(default_factory=_default_output_dir)
    log_level: str = "INFO"
    log_file: str = ""

    @property
    def upload_dir(self) -> Path:
        return self.data_dir / "uploads"

    @property
    def artifact_dir(self) -> Path:
        return self.data_dir / "output"

    @classmethod
    def from_env(cls, dotenv=True) -> "Settings":
        if dotenv:
            load_dotenv()
        output_dir = os.getenv("GIFCAST_OUTPUT_DIR")
        return cls(
            api_url=os.getenv("GIFCAST_API_URL", DEFAULT_API_URL).rstrip("/"),
            host=os.getenv("GIFCAST_HOST", "0.0.0.0"),
            port=_env_int("PORT", 3003),
            data_dir=Path(os.getenv("GIFCAST_DATA_DIR", "data")),
            job_ttl=_env_float("GIFCAST_JOB_TTL", 3600.0),
            sweep_interval=_env_float("GIFCAST_SWEEP_INTERVAL", 3600.0),
            max_upload_bytes=_env_int("GIFCAST_MAX_UPLOAD_MB", 100) * 1024 * 1024,
            ffmpeg=os.getenv("GIFCAST_FFMPEG", "ffmpeg"),
            workers=max(1, _env_int("GIFCAST_WORKERS", 4)),
            poll_interval=_env_float("GIFCAST_POLL_INTERVAL", 2.0),
            native_poll_interval=_env_float("GIFCAST_NATIVE_POLL_INTERVAL", 0.5),
            output_dir=Path(output_dir).expanduser() if output_dir else _default_output_dir(),
            log_level=os.getenv("GIFCAST_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("GIFCAST_LOG_FILE", ""),
        )
