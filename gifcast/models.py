"""Data model: sessions, surfaces, cursor samples, clips and jobs."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

# ════════════════════════════════════════════════════════════════
#  SURFACES
# ════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Bounds:
    left: int
    top: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    def as_monitor(self) -> dict:
        """Region dict in the shape ``mss.grab`` expects."""
        return {"left": self.left, "top": self.top,
                "width": self.width, "height": self.height}


@dataclass(frozen=True)
class Surface:
    """A window (or whole screen) the user can see.

    ``identity`` is whatever best names the content: a page URL when one is
    known, otherwise the owning executable / bundle id.
    """
    handle: Any
    identity: str
    title: str = ""
    bounds: Optional[Bounds] = None


@dataclass(frozen=True)
class CaptureTarget:
    surface: Surface
    recordable: bool
    reason: str = ""


# ════════════════════════════════════════════════════════════════
#  CURSOR
# ════════════════════════════════════════════════════════════════

class CursorSample:
    __slots__ = ("x", "y", "button_down", "received_at")

    def __init__(self, x, y, button_down=False, received_at=None):
        self.x = x; self.y = y
        self.button_down = bool(button_down)
        self.received_at = time.monotonic() if received_at is None else received_at

    def __repr__(self):
        return (f"CursorSample(x={self.x}, y={self.y}, "
                f"button_down={self.button_down})")


# ════════════════════════════════════════════════════════════════
#  SESSION
# ════════════════════════════════════════════════════════════════

class SessionState(enum.Enum):
    IDLE            = "idle"
    AWAITING_TARGET = "awaiting_target"
    RECORDING       = "recording"
    STOPPING        = "stopping"
    UPLOADING       = "uploading"
    CONVERTING      = "converting"
    DONE            = "done"
    ERROR           = "error"


@dataclass(frozen=True)
class Viewport:
    inner_width: int
    inner_height: int
    screen_x: int
    screen_y: int
    outer_width: int
    outer_height: int
    device_pixel_ratio: float = 1.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Viewport":
        return cls(
            inner_width=int(data["innerWidth"]),
            inner_height=int(data["innerHeight"]),
            screen_x=int(data.get("screenX", 0)),
            screen_y=int(data.get("screenY", 0)),
            outer_width=int(data.get("outerWidth", data["innerWidth"])),
            outer_height=int(data.get("outerHeight", data["innerHeight"])),
            device_pixel_ratio=float(data.get("devicePixelRatio", 1.0) or 1.0),
        )


def _int_or(value, default):
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed or default


@dataclass(frozen=True)
class RecordingOptions:
    fps: int = 10
    width: int = 720
    quality: str = "medium"
    viewport: Optional[Viewport] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]], fps=10, width=720):
        """Parse stored preferences verbatim, falling back per field."""
        data = data or {}
        viewport = data.get("viewport")
        return cls(
            fps=_int_or(data.get("fps"), fps),
            width=_int_or(data.get("width"), width),
            quality=str(data.get("quality") or "medium"),
            viewport=Viewport.from_mapping(viewport) if viewport else None,
        )


@dataclass
class Session:
    target: CaptureTarget
    monitor: Optional[Surface]
    options: RecordingOptions
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.AWAITING_TARGET
    started_at: float = field(default_factory=time.time)
    clip_path: Optional[str] = None
    job_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class Clip:
    path: str
    width: int
    height: int
    frames: int
    codec: str


# ════════════════════════════════════════════════════════════════
#  JOBS
# ════════════════════════════════════════════════════════════════

class JobState(enum.Enum):
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"

    @property
    def terminal(self) -> bool:
        return self is not JobState.PROCESSING


@dataclass(frozen=True)
class QualitySettings:
    colors: int
    dither: str           # none | ordered | error-diffusion
    ffmpeg_dither: str    # value handed to ffmpeg's paletteuse


QUALITY_TIERS = {
    "low":    QualitySettings(128, "none", "none"),
    "medium": QualitySettings(256, "ordered", "bayer:bayer_scale=3"),
    "high":   QualitySettings(256, "error-diffusion", "sierra2_4a"),
}


def quality_settings(tier) -> QualitySettings:
    return QUALITY_TIERS.get(str(tier or "").lower(), QUALITY_TIERS["medium"])


@dataclass
class Job:
    id: str
    input_path: str
    output_path: str
    fps: int
    width: int
    quality: QualitySettings
    created_at: float = field(default_factory=time.time)
    state: JobState = JobState.PROCESSING
    progress: int = 0
    error: Optional[str] = None
    claimed: bool = False

    def advance(self, progress: int) -> bool:
        """Raise progress; ignored once terminal or if it would go backwards."""
        if self.state.terminal or progress < self.progress:
            return False
        self.progress = min(100, progress)
        return True

    def finish(self, state: JobState, error: Optional[str] = None) -> bool:
        """Enter a terminal state exactly once."""
        if self.state.terminal or not state.terminal:
            return False
        if state is JobState.COMPLETED:
            self.progress = 100
        self.state = state
        self.error = error
        return True

    def to_status(self) -> dict:
        return {
            "jobId": self.id,
            "status": self.state.value,
            "progress": self.progress,
            "error": self.error,
        }
