"""FastAPI front end for the transcode job service."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from starlette.background import BackgroundTask

from .config import Settings
from .errors import ConversionNotReady, JobNotFound
from .jobs import TranscodeService

log = logging.getLogger(__name__)


def _int_field(value: Optional[str], default: int) -> int:
    try:
        return int(value) or default
    except (TypeError, ValueError):
        return default


def create_app(settings: Optional[Settings] = None,
               service: Optional[TranscodeService] = None,
               sweep=True) -> FastAPI:
    settings = settings or Settings.from_env()
    if service is None:
        service = TranscodeService(settings.upload_dir, settings.artifact_dir,
                                   ffmpeg=settings.ffmpeg, ttl=settings.job_ttl,
                                   workers=settings.workers)

    @asynccontextmanager
    async def lifespan(app):
        if sweep:
            service.start_sweeper(settings.sweep_interval)
        log.info("GIF converter API ready (ttl=%ss)", settings.job_ttl)
        yield
        service.close(wait=False)

    app = FastAPI(title="gifcast", lifespan=lifespan)
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(JobNotFound)
    async def job_not_found(request: Request, exc: JobNotFound):
        return JSONResponse(status_code=404, content={"error": "Job not found"})

    @app.exception_handler(ConversionNotReady)
    async def not_ready(request: Request, exc: ConversionNotReady):
        return JSONResponse(status_code=400, content={"error": "Conversion not complete"})

    @app.post("/convert")
    def convert(video: Optional[UploadFile] = File(None),
                fps: Optional[str] = Form(None),
                width: Optional[str] = Form(None),
                quality: Optional[str] = Form(None)):
        """Accept a clip and start converting it in the background."""
        if video is None:
            return JSONResponse(status_code=400, content={"error": "No video file uploaded"})
        data = video.file.read(settings.max_upload_bytes + 1)
        if len(data) > settings.max_upload_bytes:
            return JSONResponse(status_code=413, content={"error": "File too large"})
        if not data:
            return JSONResponse(status_code=400, content={"error": "Uploaded video is empty"})
        suffix = os.path.splitext(video.filename or "")[1].lower() or ".webm"
        job_id = service.submit(data, fps=_int_field(fps, 10), width=_int_field(width, 720),
                                quality=quality or "medium", suffix=suffix)
        return {"jobId": job_id, "status": "processing", "message": "Conversion started"}

    @app.get("/status/{job_id}")
    def status(job_id: str):
        return service.status(job_id)

    @app.get("/download/{job_id}")
    def download(job_id: str):
        """Stream the GIF, then reclaim the job."""
        path = service.claim_download(job_id)
        return FileResponse(path, media_type="image/gif",
                            filename=f"recording-{job_id}.gif",
                            background=BackgroundTask(service.delete, job_id))

    @app.delete("/cleanup/{job_id}")
    def cleanup(job_id: str):
        service.delete(job_id)
        return {"message": "Cleaned up successfully"}

    @app.get("/health")
    def health():
        return {"status": "ok", "activeJobs": service.active_jobs, "uptime": service.uptime}

    return app


def serve(settings: Optional[Settings] = None):
    import uvicorn

    settings = settings or Settings.from_env()
    app = create_app(settings)
    log.info("GIF converter API on port %d", settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
