"""
Native capture controller.

Speaks the framed command protocol with its host (``start``, ``stop``,
``ping``) and runs a whole session itself: pick the browser window, record
it, upload the clip, poll the job, and save the GIF.
"""

from __future__ import annotations

import logging
import os
import tempfile
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Optional

from ..config import Settings
from ..errors import GifcastError, NoActiveRecording
from ..models import RecordingOptions
from ..naming import save_artifact
from ..targets import content_region, default_provider, even, pick_browser_window
from . import protocol
from .recorder import NativeRecorder

log = logging.getLogger(__name__)


def _remove(path):
    if path and os.path.exists(path):
        os.remove(path)


class NativeController:
    def __init__(self, send: Callable[[dict], None], client, provider=None,
                 settings: Optional[Settings] = None, recorder_factory=NativeRecorder,
                 now=datetime.now, temp_dir=None):
        self.send = send
        self.client = client
        self.provider = provider
        self.settings = settings or Settings()
        self.recorder_factory = recorder_factory
        self.now = now
        self.temp_dir = temp_dir or tempfile.gettempdir()
        # one worker: start and stop run strictly in arrival order
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="native")
        self._recorder = None
        self._options: Optional[RecordingOptions] = None

    @property
    def recording(self) -> bool:
        return self._recorder is not None

    def close(self):
        self._worker.shutdown(wait=True)

    # ── Dispatch ──────────────────────────────────────────────────
    def handle(self, message: dict) -> Future:
        """Dispatch one command. The returned future resolves once handled."""
        command = message.get("command") if isinstance(message, dict) else None
        options = message.get("options") if isinstance(message, dict) else None
        if command == "ping":
            self.send(protocol.pong())
            done = Future()
            done.set_result(None)
            return done
        if command == "start":
            return self._worker.submit(self._guard, self._start, options)
        if command == "stop":
            return self._worker.submit(self._guard, self._stop, options)
        self.send(protocol.error(f"Unknown command: {command}"))
        done = Future()
        done.set_result(None)
        return done

    def _guard(self, fn, options):
        try:
            fn(options)
        except Exception as e:
            log.exception("%s failed", fn.__name__.strip("_"))
            self._discard()
            self.send(protocol.error(str(e)))

    # ── Commands ──────────────────────────────────────────────────
    def _start(self, raw_options):
        if self._recorder is not None:
            log.info("start while recording, treating as stop")
            self._stop(None)
            return
        options = RecordingOptions.from_mapping(raw_options, fps=30)
        provider = self.provider or default_provider()
        window = pick_browser_window(provider.windows())
        log.info("selected window %s (%s) %s", window.identity, window.title, window.bounds)
        region = even(content_region(window.bounds, options.viewport))
        fd, path = tempfile.mkstemp(prefix="gifcast-", suffix=".mp4", dir=self.temp_dir)
        os.close(fd)
        try:
            recorder = self.recorder_factory(region, options.fps, path,
                                             ffmpeg=self.settings.ffmpeg)
            recorder.start()
        except Exception:
            _remove(path)
            raise
        self._recorder = recorder
        self._options = options
        self.send(protocol.recording_started())

    def _stop(self, raw_options):
        recorder, self._recorder = self._recorder, None
        if recorder is None:
            raise NoActiveRecording()
        options = RecordingOptions.from_mapping(raw_options) if raw_options else self._options
        options = options or RecordingOptions()
        try:
            clip = recorder.stop()
        except Exception:
            # abort deletes the partial container
            recorder.abort()
            raise
        job_id = None
        try:
            self.send(protocol.uploading())
            job_id = self.client.submit(clip, options)
            data = self.client.fetch(
                job_id, interval=self.settings.native_poll_interval,
                on_progress=lambda p: self.send(protocol.processing(p)))
            path = save_artifact(data, self.settings.output_dir, now=self.now())
        except GifcastError as e:
            if job_id is not None:
                self.client.delete(job_id)
            raise GifcastError(f"Processing failed: {e}") from e
        finally:
            _remove(clip)
        log.info("saved %s", path)
        self.send(protocol.complete(path))

    def _discard(self):
        recorder, self._recorder = self._recorder, None
        self._options = None
        if recorder is not None:
            recorder.abort()
