"""
Cursor relay and glyph.

The relay runs pynput's listener thread and forwards every pointer move and
button edge outward. The compositor keeps only the freshest sample it has
received and never waits for one.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
import time
from typing import Callable, Optional

from PIL import ImageDraw

from .models import CursorSample

log = logging.getLogger(__name__)

# Arrow outline in glyph units (tip at the origin), scaled at draw time.
ARROW = [(0, 0), (0, 16), (4, 12), (7, 19), (10, 18), (7, 11), (12, 11)]
GLYPH_SIZE = 20
GLYPH_SIZE_DOWN = 24
RING_RADIUS = 15


class CursorState:
    """Latest received sample. Last write wins; reads never block on writers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sample: Optional[CursorSample] = None
        self.received = 0

    def offer(self, sample: CursorSample):
        with self._lock:
            self._sample = sample
            self.received += 1

    def update(self, x, y, button_down):
        self.offer(CursorSample(x, y, button_down))

    def latest(self) -> Optional[CursorSample]:
        with self._lock:
            return self._sample

    def clear(self):
        with self._lock:
            self._sample = None


# ════════════════════════════════════════════════════════════════
#  RELAY
# ════════════════════════════════════════════════════════════════

class CursorRelay:
    """Forwards ``(x, y, button_down)`` in target-local coordinates.

    ``sink`` is called from the listener thread, once per event.
    """

    def __init__(self, sink: Callable[[float, float, bool], None], origin=(0, 0),
                 listener_factory=None):
        self.sink = sink
        self.origin = origin
        self._listener_factory = listener_factory
        self._listener = None
        self._down = False
        self._last = (0, 0)

    def _emit(self, x, y):
        self._last = (x, y)
        try:
            self.sink(x - self.origin[0], y - self.origin[1], self._down)
        except Exception:
            log.exception("cursor sink failed")

    def _on_move(self, x, y):
        self._emit(x, y)

    def _on_click(self, x, y, button, pressed):
        self._down = bool(pressed)
        self._emit(x, y)

    @property
    def running(self):
        return self._listener is not None

    def start(self):
        if self._listener is not None:
            return
        factory = self._listener_factory
        if factory is None:
            from pynput import mouse as pmouse
            factory = pmouse.Listener
        self._listener = factory(on_move=self._on_move, on_click=self._on_click)
        self._listener.start()
        log.debug("cursor relay started at origin %s", self.origin)

    def stop(self):
        if self._listener is None:
            return
        self._listener.stop()
        self._listener = None
        self._down = False
        log.debug("cursor relay stopped")


def pointer_position():
    """Current system pointer position, or None when unavailable."""
    try:
        from pynput import mouse as pmouse
        return pmouse.Controller().position
    except Exception:
        return None


# ════════════════════════════════════════════════════════════════
#  GLYPH
# ════════════════════════════════════════════════════════════════

def draw_cursor(pil_img, sample: Optional[CursorSample], scale=(1.0, 1.0)):
    """Draw the arrow at ``sample`` on ``pil_img`` in place.

    ``scale`` maps sample space into raster space; pass (1, 1) when they
    coincide. While the button is held the arrow grows and a ring is drawn.
    """
    if sample is None:
        return pil_img
    x = sample.x * scale[0]
    y = sample.y * scale[1]
    w, h = pil_img.size
    if x < 0 or y < 0 or x >= w or y >= h:
        return pil_img
    size = GLYPH_SIZE_DOWN if sample.button_down else GLYPH_SIZE
    k = size / 19.0
    points = [(x + px * k, y + py * k) for px, py in ARROW]
    draw = ImageDraw.Draw(pil_img)
    if sample.button_down:
        cx, cy = x + 3, y + 3
        draw.ellipse([cx - RING_RADIUS, cy - RING_RADIUS, cx + RING_RADIUS, cy + RING_RADIUS],
                     outline=(255, 100, 100), width=3)
    draw.polygon(points, fill=(255, 255, 255), outline=(0, 0, 0))
    return pil_img


# ════════════════════════════════════════════════════════════════
#  STANDALONE RELAY (JSON lines on stdout)
# ════════════════════════════════════════════════════════════════

def relay_to_stream(stdin=None, stdout=None, listener_factory=None, origin=(0, 0)):
    """Print one JSON sample per pointer event until ``STOP`` on stdin."""
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    lock = threading.Lock()

    def sink(x, y, down):
        event = {"x": x, "y": y, "buttonDown": down, "time": time.time()}
        with lock:
            stdout.write(json.dumps(event) + "\n")
            stdout.flush()

    relay = CursorRelay(sink, origin, listener_factory)
    relay.start()
    try:
        for line in stdin:
            if line.strip() == "STOP":
                break
    except KeyboardInterrupt:
        pass
    finally:
        relay.stop()
