"""
Capture + compositor: grabs the target region, draws the cursor on every
frame and streams the result into a video container.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from typing import Callable, Optional

import cv2
import mss
import numpy as np
from PIL import Image

from .cursor import CursorState, draw_cursor
from .errors import CaptureAcquisitionFailure, EncodeFailure, GifcastError
from .models import Bounds, Clip

log = logging.getLogger(__name__)

CODECS = ("avc1", "mp4v")   # preferred first, baseline last


def open_writer(path, fps, size, codecs=CODECS):
    """Open a ``cv2.VideoWriter`` with the best codec that works here."""
    for codec in codecs:
        writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*codec), fps, size)
        if writer.isOpened():
            return writer, codec
        writer.release()
        log.info("codec %s unavailable, trying next", codec)
    raise EncodeFailure(f"No usable video codec among {', '.join(codecs)}")


# ════════════════════════════════════════════════════════════════
#  FRAME SOURCES
# ════════════════════════════════════════════════════════════════

class WindowFrameSource:
    """Grabs a surface's current bounds with mss.

    mss handles are bound to the thread that created them, so ``open``,
    ``read`` and ``close`` must all run on the compositor thread.
    """

    def __init__(self, provider, handle, region: Optional[Callable[[Bounds], Bounds]] = None):
        self.provider = provider
        self.handle = handle
        self.region = region
        self._sct = None

    def open(self):
        self._sct = mss.mss()

    def read(self):
        """``(bgra ndarray, bounds)`` or None once the surface is gone."""
        bounds = self.provider.bounds(self.handle)
        if bounds is None:
            return None
        if self.region is not None:
            bounds = self.region(bounds)
        if bounds.area == 0:
            return np.zeros((0, 0, 4), dtype=np.uint8), bounds
        try:
            raw = self._sct.grab(bounds.as_monitor())
        except mss.exception.ScreenShotError:
            log.warning("grab failed for %s, treating target as lost", self.handle)
            return None
        frame = np.frombuffer(raw.bgra, dtype=np.uint8)
        return frame.reshape((raw.height, raw.width, 4)), bounds

    def close(self):
        if self._sct is not None:
            self._sct.close()
            self._sct = None


# ════════════════════════════════════════════════════════════════
#  COMPOSITOR
# ════════════════════════════════════════════════════════════════

class Compositor:
    READY_TIMEOUT = 5.0

    def __init__(self, source, cursor: Optional[CursorState] = None, fps=30,
                 running: Optional[Callable[[], bool]] = None,
                 on_lost: Optional[Callable[[], None]] = None,
                 writer_factory=open_writer, clock=time.monotonic):
        self.source = source
        self.cursor = cursor or CursorState()
        self.fps = max(1, int(fps))
        self._running = running or (lambda: True)
        self._on_lost = on_lost
        self._writer_factory = writer_factory
        self._clock = clock

        self.path = None
        self.size = (0, 0)
        self.codec = None
        self.frames = 0
        self.lost = False
        self._writer = None
        self._thread = None
        self._stop = threading.Event()
        self._ready: Optional[Future] = None
        self._failure: Optional[BaseException] = None

    # ── Public ────────────────────────────────────────────────────
    def begin(self, out_path):
        """Start capturing into ``out_path``; returns the raster size."""
        self.path = str(out_path)
        self._ready = Future()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="compositor", daemon=True)
        self._thread.start()
        try:
            self.size = self._ready.result(timeout=self.READY_TIMEOUT)
        except FutureTimeout:
            self._stop.set()
            raise CaptureAcquisitionFailure("Timed out waiting for the first frame")
        except GifcastError:
            self._thread.join()
            raise
        except Exception as exc:
            self._thread.join()
            raise CaptureAcquisitionFailure(str(exc)) from exc
        log.info("compositing %dx%d at %d fps with %s", *self.size, self.fps, self.codec)
        return self.size

    def finalize(self) -> Clip:
        """Stop the loop, release every resource, and hand back the clip."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None
        if self._failure is not None:
            exc, self._failure = self._failure, None
            self._discard()
            if isinstance(exc, GifcastError):
                raise exc
            raise EncodeFailure(str(exc)) from exc
        if self.frames == 0 or not self._has_data():
            self._discard()
            raise EncodeFailure("No frames were captured")
        return Clip(self.path, self.size[0], self.size[1], self.frames, self.codec)

    def cancel(self):
        """Stop and throw away whatever was written."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None
        self._failure = None
        self._discard()

    def compose(self, frame, bounds: Optional[Bounds] = None):
        """One BGRA frame plus the freshest cursor sample, as an RGB image."""
        h, w = frame.shape[:2]
        rgb = np.ascontiguousarray(frame[:, :, :3][:, :, ::-1])
        pil = Image.fromarray(rgb)
        if bounds is not None and bounds.width and bounds.height:
            scale = (w / bounds.width, h / bounds.height)
        else:
            scale = (1.0, 1.0)
        draw_cursor(pil, self.cursor.latest(), scale)
        return pil

    # ── Internals ─────────────────────────────────────────────────
    def _has_data(self):
        try:
            return os.path.getsize(self.path) > 0
        except OSError:
            return False

    def _discard(self):
        if self.path and os.path.exists(self.path):
            try:
                os.remove(self.path)
            except OSError:
                log.warning("could not remove %s", self.path)

    def _write(self, frame, bounds):
        pil = self.compose(frame, bounds)
        if pil.size != self.size:
            pil = pil.resize(self.size, Image.LANCZOS)
        self._writer.write(cv2.cvtColor(np.array(pil), cv2.COLOR_RGB2BGR))
        self.frames += 1

    def _acquire(self):
        self.source.open()
        first = self.source.read()
        if first is None:
            raise CaptureAcquisitionFailure("Target closed before the first frame")
        frame, bounds = first
        h, w = frame.shape[:2]
        if w == 0 or h == 0:
            raise EncodeFailure("Captured surface has zero area")
        self._writer, self.codec = self._writer_factory(self.path, self.fps, (w, h))
        return first, (w, h)

    def _run(self):
        try:
            pending, size = self._acquire()
        except Exception as exc:
            self._release()
            self._ready.set_exception(exc)
            return
        self.size = size
        self._ready.set_result(size)

        interval = 1.0 / self.fps
        next_tick = self._clock()
        try:
            while True:
                # the only stop condition: session left recording (or finalize)
                if self._stop.is_set() or not self._running():
                    break
                got, pending = pending or self.source.read(), None
                if got is None:
                    self.lost = True
                    break
                self._write(*got)
                next_tick += interval
                delay = next_tick - self._clock()
                if delay > 0:
                    self._stop.wait(delay)
                else:
                    next_tick = self._clock()
        except Exception as exc:
            log.exception("compositor loop failed")
            self._failure = exc
        finally:
            self._release()
        if self.lost and not self._stop.is_set() and self._on_lost is not None:
            self._on_lost()

    def _release(self):
        if self._writer is not None:
            self._writer.release()
            self._writer = None
        try:
            self.source.close()
        except Exception:
            log.warning("frame source did not close cleanly", exc_info=True)
