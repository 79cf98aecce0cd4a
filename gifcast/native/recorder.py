"""
Native recorder: grabs a screen region with mss and pipes raw frames into
an ffmpeg H.264 encoder. The pointer is stamped onto each frame from the
system cursor position, since mss frames do not include it.
"""

from __future__ import annotations

import logging
import os
import queue
import subprocess
import threading
import time

import mss
import numpy as np
from PIL import Image

from ..cursor import draw_cursor, pointer_position
from ..errors import CaptureAcquisitionFailure, EncodeFailure
from ..models import Bounds, CursorSample

log = logging.getLogger(__name__)


def encoder_command(ffmpeg, size, fps, out_path):
    w, h = size
    return [
        ffmpeg, "-y", "-loglevel", "error",
        "-f", "rawvideo",
        "-pix_fmt", "bgra",
        "-s", f"{w}x{h}",
        "-r", str(fps),
        "-i", "-",
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-crf", "18",
        "-pix_fmt", "yuv420p",
        out_path,
    ]


class NativeRecorder:
    def __init__(self, region: Bounds, fps, out_path, ffmpeg="ffmpeg",
                 pointer=pointer_position, popen=subprocess.Popen):
        if region.width <= 0 or region.height <= 0:
            raise EncodeFailure("Capture region has zero area")
        self.region = region
        self.fps = max(1, int(fps))
        self.out_path = str(out_path)
        self.ffmpeg = ffmpeg
        self._pointer = pointer
        self._popen = popen
        self._process = None
        self._frames = queue.Queue(maxsize=300)
        self._running = threading.Event()
        self._threads = []
        self.frames_sent = 0
        self.dropped = 0
        self.error = None

    # ── Loops ─────────────────────────────────────────────────────
    def _stamp_pointer(self, bgra):
        pos = self._pointer()
        if pos is None:
            return bgra
        sample = CursorSample(pos[0] - self.region.left, pos[1] - self.region.top)
        rgb = Image.fromarray(np.ascontiguousarray(bgra[:, :, 2::-1]))
        draw_cursor(rgb, sample)
        out = np.empty_like(bgra)
        out[:, :, 2::-1] = np.asarray(rgb)
        out[:, :, 3] = 255
        return out

    def _grab_loop(self):
        try:
            self._grab_frames()
        except Exception as e:
            log.exception("grab loop failed")
            self.error = e
            self._running.clear()

    def _grab_frames(self):
        interval = 1.0 / self.fps
        with mss.mss() as sct:
            while self._running.is_set():
                t0 = time.monotonic()
                raw = sct.grab(self.region.as_monitor())
                frame = np.frombuffer(raw.bgra, dtype=np.uint8).reshape((raw.height, raw.width, 4))
                frame = self._stamp_pointer(frame)
                try:
                    self._frames.put_nowait(frame)
                except queue.Full:
                    # encoder fell behind; drop rather than grow without bound
                    self.dropped += 1
                sleep = interval - (time.monotonic() - t0)
                if sleep > 0:
                    time.sleep(sleep)

    def _encode_loop(self):
        while self._running.is_set() or not self._frames.empty():
            try:
                f = self._frames.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._process.stdin.write(f.tobytes())
                self.frames_sent += 1
            except (BrokenPipeError, OSError):
                log.error("encoder pipe closed early")
                break

    # ── Public ────────────────────────────────────────────────────
    def start(self):
        cmd = encoder_command(self.ffmpeg, (self.region.width, self.region.height),
                              self.fps, self.out_path)
        try:
            self._process = self._popen(cmd, stdin=subprocess.PIPE,
                                        stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except OSError as e:
            raise CaptureAcquisitionFailure(f"Cannot start encoder: {e}") from e
        self._running.set()
        self._threads = [
            threading.Thread(target=self._grab_loop, name="native-grab", daemon=True),
            threading.Thread(target=self._encode_loop, name="native-encode", daemon=True),
        ]
        for t in self._threads:
            t.start()
        log.info("recording %s at %d fps into %s", self.region, self.fps, self.out_path)

    def stop(self) -> str:
        """Finish the container; returns its path."""
        self._running.clear()
        for t in self._threads:
            t.join()
        self._threads = []
        process, self._process = self._process, None
        if process is None:
            raise EncodeFailure("Recorder was never started")
        if process.stdin:
            process.stdin.close()
        stderr = process.stderr.read() if process.stderr else b""
        code = process.wait()
        if code != 0:
            tail = (stderr or b"").decode("utf-8", "replace").strip().splitlines()[-3:]
            raise EncodeFailure("Encoder failed: " + (" ".join(tail) or f"exit {code}"))
        if self.error is not None and self.frames_sent == 0:
            raise CaptureAcquisitionFailure(f"Capture failed: {self.error}")
        if self.frames_sent == 0 or not os.path.exists(self.out_path) \
                or os.path.getsize(self.out_path) == 0:
            raise EncodeFailure("No frames were captured")
        log.info("finalized %s (%d frames, %d dropped)", self.out_path,
                 self.frames_sent, self.dropped)
        return self.out_path

    def abort(self):
        try:
            self.stop()
        except Exception:
            log.debug("abort: stop raised", exc_info=True)
        if os.path.exists(self.out_path):
            os.remove(self.out_path)
