"""
Transcode job service: stores uploaded clips, turns them into GIFs with a
two-pass ffmpeg palette transform, and reclaims everything after download
or after the TTL.
"""

from __future__ import annotations

import logging
import os
import secrets
import subprocess
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .errors import ConversionFailure, ConversionNotReady, JobNotFound
from .models import Job, JobState, quality_settings

log = logging.getLogger(__name__)

PALETTE_PROGRESS = 50


def run_ffmpeg(cmd: List[str]):
    """Run one ffmpeg stage; a nonzero exit raises with the tool's stderr."""
    proc = subprocess.run(cmd, capture_output=True, text=True)
    if proc.returncode != 0:
        tail = "\n".join((proc.stderr or "").strip().splitlines()[-5:])
        raise ConversionFailure(tail or f"ffmpeg exited with status {proc.returncode}")


def palette_command(ffmpeg, job: Job, palette: str) -> List[str]:
    vf = (f"fps={job.fps},scale={job.width}:-1:flags=lanczos,"
          f"palettegen=max_colors={job.quality.colors}")
    return [ffmpeg, "-i", job.input_path, "-vf", vf, "-y", palette]


def gif_command(ffmpeg, job: Job, palette: str) -> List[str]:
    lavfi = (f"fps={job.fps},scale={job.width}:-1:flags=lanczos [x]; "
             f"[x][1:v] paletteuse=dither={job.quality.ffmpeg_dither}")
    return [ffmpeg, "-i", job.input_path, "-i", palette, "-lavfi", lavfi, "-y", job.output_path]


def _unlink(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError:
        log.warning("could not remove %s", path, exc_info=True)


class TranscodeService:
    def __init__(self, upload_dir, output_dir, ffmpeg="ffmpeg", ttl=3600.0,
                 runner: Callable[[List[str]], None] = run_ffmpeg,
                 executor=None, workers=4, palette_dir=None, clock=time.time):
        self.upload_dir = Path(upload_dir)
        self.output_dir = Path(output_dir)
        self.palette_dir = Path(palette_dir or tempfile.gettempdir())
        self.ffmpeg = ffmpeg
        self.ttl = ttl
        self._run = runner
        self._clock = clock
        self._own_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=workers,
                                                        thread_name_prefix="transcode")
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._sweeper = None
        self._sweeper_stop = threading.Event()
        self.started_at = time.monotonic()
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    # ── Table access ──────────────────────────────────────────────
    def _get(self, job_id) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _alive(self, job: Job) -> bool:
        with self._lock:
            return self._jobs.get(job.id) is job

    @property
    def active_jobs(self) -> int:
        with self._lock:
            return len(self._jobs)

    # ── Operations ────────────────────────────────────────────────
    def submit(self, data: bytes, fps=10, width=720, quality="medium", suffix=".webm") -> str:
        """Persist the clip and start converting it; returns immediately."""
        job_id = secrets.token_hex(16)
        input_path = self.upload_dir / f"{job_id}{suffix or '.webm'}"
        input_path.write_bytes(data)
        job = Job(id=job_id, input_path=str(input_path),
                  output_path=str(self.output_dir / f"{job_id}.gif"),
                  fps=fps, width=width, quality=quality_settings(quality),
                  created_at=self._clock())
        with self._lock:
            self._jobs[job_id] = job
        log.info("job %s accepted (%d bytes, fps=%s width=%s quality=%s)",
                 job_id, len(data), fps, width, quality)
        self._executor.submit(self._convert, job)
        return job_id

    def status(self, job_id) -> dict:
        return self._get(job_id).to_status()

    def claim_download(self, job_id) -> str:
        """Path of a completed artifact. Each job can be claimed once."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.claimed:
                raise JobNotFound(job_id)
            if job.state is not JobState.COMPLETED:
                raise ConversionNotReady(job_id)
            if not os.path.exists(job.output_path):
                raise JobNotFound(job_id)
            job.claimed = True
        return job.output_path

    def download(self, job_id) -> bytes:
        """Read the artifact and reclaim the job."""
        path = self.claim_download(job_id)
        try:
            return Path(path).read_bytes()
        finally:
            self.delete(job_id)

    def delete(self, job_id):
        with self._lock:
            job = self._jobs.pop(job_id, None)
        if job is None:
            return False
        _unlink(job.input_path)
        _unlink(job.output_path)
        log.info("cleaned up job %s", job_id)
        return True

    def sweep(self, now=None) -> List[str]:
        """Reclaim every job older than the TTL, whatever its state."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [j.id for j in self._jobs.values() if now - j.created_at > self.ttl]
        for job_id in expired:
            log.info("auto-cleanup of expired job %s", job_id)
            self.delete(job_id)
        return expired

    # ── Conversion ────────────────────────────────────────────────
    def _convert(self, job: Job):
        palette = str(self.palette_dir / f"{job.id}_palette.png")
        try:
            self._run(palette_command(self.ffmpeg, job, palette))
            if not self._alive(job):
                return
            job.advance(PALETTE_PROGRESS)
            self._run(gif_command(self.ffmpeg, job, palette))
            if not self._alive(job):
                return
            job.finish(JobState.COMPLETED)
            log.info("conversion complete: %s", job.id)
        except ConversionFailure as e:
            job.finish(JobState.FAILED, str(e))
            log.error("conversion failed: %s: %s", job.id, e)
        except Exception as e:
            job.finish(JobState.FAILED, str(e))
            log.exception("conversion crashed: %s", job.id)
        finally:
            _unlink(palette)
            if not self._alive(job):
                # swept while converting
                _unlink(job.output_path)
                _unlink(job.input_path)

    # ── Lifecycle ─────────────────────────────────────────────────
    def start_sweeper(self, interval=3600.0):
        if self._sweeper is not None:
            return

        def loop():
            while not self._sweeper_stop.wait(interval):
                try:
                    self.sweep()
                except Exception:
                    log.exception("sweep failed")

        self._sweeper_stop.clear()
        self._sweeper = threading.Thread(target=loop, name="job-sweeper", daemon=True)
        self._sweeper.start()

    def close(self, wait=True):
        self._sweeper_stop.set()
        if self._sweeper is not None:
            self._sweeper.join()
            self._sweeper = None
        if self._own_executor:
            self._executor.shutdown(wait=wait)

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at
