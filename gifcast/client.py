"""HTTP client for the transcode job service."""

from __future__ import annotations

import logging
import os
import time
from typing import Callable, Optional

import httpx

from .errors import ConversionFailure, ConversionNotReady, JobNotFound, UploadFailure
from .models import RecordingOptions

log = logging.getLogger(__name__)

CONTENT_TYPES = {".mp4": "video/mp4", ".webm": "video/webm", ".mov": "video/quicktime"}


class JobClient:
    def __init__(self, base_url, timeout=120.0, transport=None, sleep=time.sleep,
                 http: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.Client(base_url=self.base_url, timeout=timeout,
                                          transport=transport)
        self._sleep = sleep

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _get(self, path):
        try:
            return self._http.get(path)
        except httpx.HTTPError as e:
            raise UploadFailure(f"Job service unreachable: {e}") from e

    # ── Operations ────────────────────────────────────────────────
    def submit(self, clip_path, options: RecordingOptions) -> str:
        """Upload a clip; returns the job id."""
        name = os.path.basename(clip_path)
        ctype = CONTENT_TYPES.get(os.path.splitext(name)[1].lower(), "application/octet-stream")
        data = {"fps": str(options.fps), "width": str(options.width), "quality": options.quality}
        try:
            with open(clip_path, "rb") as fh:
                resp = self._http.post("/convert", files={"video": (name, fh, ctype)}, data=data)
        except OSError as e:
            raise UploadFailure(f"Cannot read clip: {e}") from e
        except httpx.HTTPError as e:
            raise UploadFailure(f"Upload failed: {e}") from e
        if resp.status_code != 200:
            raise UploadFailure(f"Upload failed: HTTP {resp.status_code}")
        job_id = resp.json().get("jobId")
        if not job_id:
            raise UploadFailure("Upload failed: no job id in response")
        log.info("uploaded %s as job %s", name, job_id)
        return job_id

    def status(self, job_id) -> dict:
        resp = self._get(f"/status/{job_id}")
        if resp.status_code == 404:
            raise JobNotFound(job_id)
        resp.raise_for_status()
        return resp.json()

    def download(self, job_id) -> bytes:
        resp = self._get(f"/download/{job_id}")
        if resp.status_code == 404:
            raise JobNotFound(job_id)
        if resp.status_code == 400:
            raise ConversionNotReady(job_id)
        resp.raise_for_status()
        if not resp.content:
            raise ConversionFailure("Downloaded artifact is empty")
        return resp.content

    def delete(self, job_id):
        try:
            self._http.delete(f"/cleanup/{job_id}")
        except httpx.HTTPError:
            log.warning("cleanup of %s failed", job_id, exc_info=True)

    def wait(self, job_id, interval=2.0,
             on_progress: Optional[Callable[[int], None]] = None) -> dict:
        """Poll until the job is terminal.

        Returns the final status of a completed job; raises ConversionFailure
        for a failed one and JobNotFound if the job vanished (e.g. swept).
        """
        while True:
            status = self.status(job_id)
            if on_progress is not None:
                on_progress(int(status.get("progress") or 0))
            state = status.get("status")
            if state == "completed":
                return status
            if state == "failed":
                raise ConversionFailure(status.get("error") or "Conversion failed")
            self._sleep(interval)

    def fetch(self, job_id, interval=2.0, on_progress=None) -> bytes:
        """Poll to completion, then download the artifact."""
        self.wait(job_id, interval, on_progress)
        return self.download(job_id)
