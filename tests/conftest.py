import threading
import time
from concurrent.futures import Future

import numpy as np
import pytest

from gifcast.errors import ConversionFailure
from gifcast.jobs import TranscodeService
from gifcast.models import Bounds, Clip

GIF_BYTES = b"GIF89a\x01\x00\x01\x00fake"


class ImmediateExecutor:
    def submit(self, fn, *args, **kwargs):
        f = Future()
        try:
            f.set_result(fn(*args, **kwargs))
        except Exception as e:
            f.set_exception(e)
        return f

    def shutdown(self, wait=True):
        pass


class DeferredExecutor:
    """Holds tasks until ``run_all`` is called."""

    def __init__(self):
        self.tasks = []

    def submit(self, fn, *args, **kwargs):
        self.tasks.append((fn, args, kwargs))
        return Future()

    def run_all(self):
        tasks, self.tasks = self.tasks, []
        for fn, args, kwargs in tasks:
            fn(*args, **kwargs)

    def shutdown(self, wait=True):
        pass


class FakeFfmpeg:
    """Stands in for the two ffmpeg stages by writing their output files."""

    def __init__(self, fail_stage=None, gate=None):
        self.calls = []
        self.fail_stage = fail_stage
        self.gate = gate

    def __call__(self, cmd):
        self.calls.append(cmd)
        stage = 2 if "-lavfi" in cmd else 1
        if stage == 2 and self.gate is not None:
            assert self.gate.wait(5)
        if stage == self.fail_stage:
            raise ConversionFailure(f"stage {stage} exploded")
        with open(cmd[-1], "wb") as fh:
            fh.write(b"PALETTE" if stage == 1 else GIF_BYTES)


@pytest.fixture
def ffmpeg():
    return FakeFfmpeg()


@pytest.fixture
def make_service(tmp_path):
    made = []

    def make(runner=None, executor=None, **kwargs):
        svc = TranscodeService(tmp_path / "uploads", tmp_path / "output",
                               runner=runner or FakeFfmpeg(),
                               executor=executor or ImmediateExecutor(),
                               palette_dir=tmp_path, **kwargs)
        made.append(svc)
        return svc

    yield make
    for svc in made:
        svc.close(wait=False)


# ── capture fakes ─────────────────────────────────────────────────

class FakeSource:
    def __init__(self, size=(64, 48), bounds=None, limit=None):
        self.size = size
        self.bounds = bounds or Bounds(0, 0, size[0], size[1])
        self.limit = limit
        self.reads = 0
        self.opened = False
        self.closed = False

    def open(self):
        self.opened = True

    def read(self):
        if self.limit is not None and self.reads >= self.limit:
            return None
        self.reads += 1
        w, h = self.size
        return np.zeros((h, w, 4), dtype=np.uint8), self.bounds

    def close(self):
        self.closed = True


class FakeWriter:
    def __init__(self, path, size):
        self.path = path
        self.size = size
        self.frames = []
        self.released = False
        open(path, "wb").close()

    def write(self, frame):
        self.frames.append(frame)
        with open(self.path, "ab") as fh:
            fh.write(b"f")

    def release(self):
        self.released = True


@pytest.fixture
def writers():
    made = []

    def factory(path, fps, size):
        w = FakeWriter(path, size)
        made.append(w)
        return w, "mp4v"

    factory.made = made
    return factory


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakeCompositor:
    def __init__(self, fail=None, finalize_error=None):
        self.fail = fail
        self.finalize_error = finalize_error
        self.path = None
        self.cancelled = False
        self.finalized = False

    def begin(self, path):
        if self.fail is not None:
            raise self.fail
        self.path = path
        return (640, 480)

    def finalize(self):
        self.finalized = True
        if self.finalize_error is not None:
            raise self.finalize_error
        with open(self.path, "wb") as fh:
            fh.write(b"clip")
        return Clip(self.path, 640, 480, 12, "mp4v")

    def cancel(self):
        self.cancelled = True


class FakeRelay:
    instances = []

    def __init__(self, sink, origin=(0, 0)):
        self.sink = sink
        self.origin = origin
        self.running = False
        FakeRelay.instances.append(self)

    def start(self):
        self.running = True

    def stop(self):
        self.running = False


class FakeJobClient:
    def __init__(self, submit_error=None, fetch_error=None):
        self.submit_error = submit_error
        self.fetch_error = fetch_error
        self.submitted = []
        self.deleted = []
        self.gate = threading.Event()
        self.gate.set()

    def submit(self, path, options):
        if self.submit_error is not None:
            raise self.submit_error
        with open(path, "rb") as fh:
            self.submitted.append((fh.read(), options))
        return "job-1"

    def fetch(self, job_id, interval=2.0, on_progress=None):
        assert self.gate.wait(5)
        if on_progress:
            on_progress(50)
        if self.fetch_error is not None:
            raise self.fetch_error
        if on_progress:
            on_progress(100)
        return GIF_BYTES

    def delete(self, job_id):
        self.deleted.append(job_id)
