"""
Session coordinator.

One dispatch thread owns the session and drains an inbox of typed messages.
Everything else (relay listener, compositor loop, upload and poll workers)
talks to it only by posting messages. Each message carries a Future that
the dispatcher resolves with the resulting state, or fails with the error
that rejected it.

    idle ─start─▶ awaiting_target ─acquired─▶ recording ─stop/start/lost─▶ stopping
    stopping ─clip─▶ uploading ─accepted─▶ converting ─finished─▶ done ─▶ idle
    any busy state ─failure─▶ error ─▶ idle
"""

from __future__ import annotations

import logging
import os
import queue
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .compositor import Compositor, WindowFrameSource
from .config import Settings
from .cursor import CursorRelay, CursorState
from .errors import (CaptureAcquisitionFailure, GifcastError, InvalidTransition,
                     JobNotFound, NoActiveRecording, SessionBusy, TargetUnavailable)
from .models import Clip, RecordingOptions, Session, SessionState
from .naming import save_artifact, site_label
from .targets import evaluate

log = logging.getLogger(__name__)

S = SessionState


# ════════════════════════════════════════════════════════════════
#  MESSAGES
# ════════════════════════════════════════════════════════════════

@dataclass
class Message:
    reply: Future = field(default_factory=Future, init=False, repr=False, compare=False)


@dataclass
class StartRequested(Message):
    options: RecordingOptions = field(default_factory=RecordingOptions)


@dataclass
class StopRequested(Message):
    pass


@dataclass
class FocusChanged(Message):
    pass


@dataclass
class Shutdown(Message):
    pass


@dataclass
class SessionMessage(Message):
    """Posted by a worker on behalf of one session; stale ones are dropped."""
    session_id: str = ""


@dataclass
class TargetLost(SessionMessage):
    pass


@dataclass
class ClipFinalized(SessionMessage):
    clip: Optional[Clip] = None


@dataclass
class UploadAccepted(SessionMessage):
    job_id: str = ""


@dataclass
class JobProgressed(SessionMessage):
    progress: int = 0


@dataclass
class JobFinished(SessionMessage):
    filepath: str = ""


@dataclass
class StageFailed(SessionMessage):
    error: str = ""


@dataclass
class StatusEvent:
    state: SessionState
    status: str
    message: str = ""
    progress: Optional[int] = None
    filepath: Optional[str] = None
    session_id: Optional[str] = None


BUSY = (S.STOPPING, S.UPLOADING, S.CONVERTING)

TRANSITIONS = {
    (S.IDLE, StartRequested):      "_on_start",
    (S.IDLE, StopRequested):       "_on_stop_idle",
    (S.IDLE, FocusChanged):        "_on_focus",
    (S.RECORDING, StartRequested): "_on_stop",
    (S.RECORDING, StopRequested):  "_on_stop",
    (S.RECORDING, TargetLost):     "_on_target_lost",
    (S.RECORDING, FocusChanged):   "_on_focus_ignored",
    (S.RECORDING, StageFailed):    "_on_failed",
    (S.STOPPING, ClipFinalized):   "_on_clip",
    (S.UPLOADING, UploadAccepted): "_on_upload_accepted",
    (S.CONVERTING, JobProgressed): "_on_progress",
    (S.CONVERTING, JobFinished):   "_on_finished",
}
for _state in BUSY:
    TRANSITIONS[(_state, StartRequested)] = "_on_busy"
    TRANSITIONS[(_state, StopRequested)] = "_on_busy"
    TRANSITIONS[(_state, FocusChanged)] = "_on_focus_ignored"
    TRANSITIONS[(_state, StageFailed)] = "_on_failed"
    TRANSITIONS[(_state, TargetLost)] = "_on_focus_ignored"


def default_compositor(coordinator, session, cursor, running, on_lost):
    source = WindowFrameSource(coordinator.surfaces, session.target.surface.handle)
    return Compositor(source, cursor, fps=session.options.fps,
                      running=running, on_lost=on_lost)


# ════════════════════════════════════════════════════════════════
#  COORDINATOR
# ════════════════════════════════════════════════════════════════

class Coordinator:
    def __init__(self, surfaces, client, monitor: Callable[[StatusEvent], None] = None,
                 settings: Optional[Settings] = None, indicator: Callable[[bool], None] = None,
                 compositor_factory=default_compositor, relay_factory=CursorRelay,
                 now=datetime.now, workers=2):
        self.surfaces = surfaces
        self.client = client
        self.settings = settings or Settings()
        self._monitor = monitor or (lambda event: None)
        self._indicator = indicator or (lambda on: None)
        self._compositor_factory = compositor_factory
        self._relay_factory = relay_factory
        self._now = now

        self.state = S.IDLE
        self.target = None
        self._session: Optional[Session] = None
        self._compositor = None
        self._relay = None
        self._cursor = CursorState()
        self._inbox = queue.Queue()
        self._workers = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="session")
        self._thread = None

    # ── Public ────────────────────────────────────────────────────
    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def cursor(self) -> CursorState:
        return self._cursor

    def start(self):
        if self._thread is None:
            self._thread = threading.Thread(target=self._loop, name="coordinator", daemon=True)
            self._thread.start()
        return self

    def post(self, message: Message) -> Future:
        self._inbox.put(message)
        return message.reply

    def request_start(self, options: Optional[RecordingOptions] = None) -> Future:
        return self.post(StartRequested(options or RecordingOptions()))

    def request_stop(self) -> Future:
        return self.post(StopRequested())

    def focus_changed(self) -> Future:
        return self.post(FocusChanged())

    def target_closed(self, handle) -> Optional[Future]:
        session = self._session
        if session is not None and session.target.surface.handle == handle:
            return self.post(TargetLost(session_id=session.id))
        return None

    def close(self, timeout=None):
        if self._thread is not None:
            self.post(Shutdown()).result(timeout)
            self._thread.join(timeout)
            self._thread = None
        self._workers.shutdown(wait=False)

    # ── Dispatch ──────────────────────────────────────────────────
    def _loop(self):
        while True:
            message = self._inbox.get()
            if isinstance(message, Shutdown):
                self._release(discard=True)
                message.reply.set_result(self.state)
                return
            self._dispatch(message)

    def _dispatch(self, message: Message):
        if isinstance(message, SessionMessage):
            if self._session is None or self._session.id != message.session_id:
                log.debug("dropping stale %s", type(message).__name__)
                message.reply.set_result(self.state)
                return
        handler = TRANSITIONS.get((self.state, type(message)))
        if handler is None:
            err = InvalidTransition(self.state, message)
            log.warning("rejected: %s", err)
            message.reply.set_exception(err)
            return
        try:
            getattr(self, handler)(message)
        except GifcastError as e:
            message.reply.set_exception(e)
        except Exception as e:
            log.exception("%s crashed", handler)
            self._fail(str(e))
            message.reply.set_exception(e)
        else:
            message.reply.set_result(self.state)

    def _enter(self, state: SessionState, status=None, **info):
        previous, self.state = self.state, state
        if self._session is not None:
            self._session.state = state
        if state is S.RECORDING and previous is not S.RECORDING:
            self._indicator(True)
        elif previous is S.RECORDING and state is not S.RECORDING:
            self._indicator(False)
        log.info("session %s -> %s", previous.value, state.value)
        self._notify(status or state.value, **info)

    def _notify(self, status, **info):
        event = StatusEvent(self.state, status,
                            session_id=self._session.id if self._session else None, **info)
        try:
            self._monitor(event)
        except Exception:
            log.exception("monitor rejected %s", status)

    def _work(self, fn, *args):
        self._workers.submit(fn, *args)

    # ── Idle ──────────────────────────────────────────────────────
    def _evaluate(self):
        self.target = evaluate(self.surfaces.active(), self.surfaces.monitor())
        return self.target

    def _on_focus(self, message):
        target = self._evaluate()
        if target.recordable:
            self._notify("ready", message=target.surface.title or target.surface.identity)
        else:
            self._notify("not_recordable", message=target.reason)

    def _on_focus_ignored(self, message):
        pass

    def _on_stop_idle(self, message):
        self._notify("error", message="No active recording")
        raise NoActiveRecording()

    def _on_busy(self, message):
        raise SessionBusy(f"Session is {self.state.value}")

    def _on_start(self, message: StartRequested):
        target = self._evaluate()
        if not target.recordable:
            self._notify("not_recordable", message=target.reason)
            raise TargetUnavailable(target.reason)
        session = Session(target, self.surfaces.monitor(), message.options)
        self._session = session
        self._enter(S.AWAITING_TARGET)
        try:
            self._acquire(session)
        except GifcastError as e:
            self._reset("error", message=str(e))
            raise
        except Exception as e:
            self._reset("error", message=str(e))
            raise CaptureAcquisitionFailure(str(e)) from e
        self._enter(S.RECORDING, message=target.surface.title or target.surface.identity)

    def _acquire(self, session: Session):
        fd, path = tempfile.mkstemp(prefix="gifcast-", suffix=".mp4")
        os.close(fd)
        session.clip_path = path
        self._cursor.clear()

        def running():
            return self._session is session and session.state in (S.AWAITING_TARGET, S.RECORDING)

        def on_lost():
            self.post(TargetLost(session_id=session.id))

        self._compositor = self._compositor_factory(self, session, self._cursor, running, on_lost)
        self._compositor.begin(path)
        bounds = session.target.surface.bounds
        origin = (bounds.left, bounds.top) if bounds else (0, 0)
        self._relay = self._relay_factory(self._cursor.update, origin)
        self._relay.start()

    # ── Recording ─────────────────────────────────────────────────
    def _on_stop(self, message):
        self._begin_stop("stopping")
        self.surfaces.activate(self._session.monitor)

    def _on_target_lost(self, message):
        log.warning("capture target closed, forcing stop")
        self._begin_stop("stopping", message="Capture target closed")

    def _begin_stop(self, status, **info):
        self._enter(S.STOPPING, status, **info)
        self._stop_relay()
        self._work(self._finalize, self._session, self._compositor)

    def _finalize(self, session, compositor):
        try:
            clip = compositor.finalize()
        except Exception as e:
            log.error("finalize failed: %s", e)
            self.post(StageFailed(session_id=session.id, error=str(e)))
        else:
            self.post(ClipFinalized(session_id=session.id, clip=clip))

    # ── Upload / convert ──────────────────────────────────────────
    def _on_clip(self, message: ClipFinalized):
        self._compositor = None
        self._enter(S.UPLOADING, "uploading")
        self._work(self._upload, self._session, message.clip)

    def _upload(self, session, clip):
        try:
            job_id = self.client.submit(clip.path, session.options)
        except Exception as e:
            self.post(StageFailed(session_id=session.id, error=str(e)))
        else:
            self.post(UploadAccepted(session_id=session.id, job_id=job_id))

    def _on_upload_accepted(self, message: UploadAccepted):
        session = self._session
        session.job_id = message.job_id
        # the job service owns the clip now
        self._remove_clip(session)
        self._enter(S.CONVERTING, "processing", progress=0)
        self._work(self._convert, session, message.job_id)

    def _convert(self, session, job_id):
        def progressed(p):
            self.post(JobProgressed(session_id=session.id, progress=p))

        try:
            data = self.client.fetch(job_id, interval=self.settings.poll_interval,
                                     on_progress=progressed)
            label = site_label(session.target.surface.identity)
            path = save_artifact(data, self.settings.output_dir, label, self._now())
        except JobNotFound:
            self.post(StageFailed(session_id=session.id, error="Conversion job expired"))
        except Exception as e:
            self.post(StageFailed(session_id=session.id, error=str(e)))
        else:
            self.post(JobFinished(session_id=session.id, filepath=str(path)))

    def _on_progress(self, message: JobProgressed):
        self._notify("processing", progress=message.progress)

    def _on_finished(self, message: JobFinished):
        self._enter(S.DONE, "complete", filepath=message.filepath, progress=100)
        self._reset("ready")

    # ── Failure / teardown ────────────────────────────────────────
    def _on_failed(self, message: StageFailed):
        self._fail(message.error)

    def _fail(self, reason):
        session = self._session
        if session is not None:
            session.error = reason
            if session.job_id:
                self._work(self.client.delete, session.job_id)
        self._enter(S.ERROR, "error", message=reason)
        self._reset("ready")

    def _reset(self, status, **info):
        self._release(discard=True)
        self._session = None
        self._enter(S.IDLE, status, **info)

    def _stop_relay(self):
        relay, self._relay = self._relay, None
        if relay is not None:
            relay.stop()

    def _release(self, discard=False):
        self._stop_relay()
        compositor, self._compositor = self._compositor, None
        if compositor is not None:
            compositor.cancel()
        if discard and self._session is not None:
            self._remove_clip(self._session)

    @staticmethod
    def _remove_clip(session):
        path, session.clip_path = session.clip_path, None
        if path and os.path.exists(path):
            os.remove(path)
