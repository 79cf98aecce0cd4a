import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from conftest import GIF_BYTES, DeferredExecutor, FakeFfmpeg, wait_until
from gifcast.config import Settings
from gifcast.server import create_app


@pytest.fixture
def app_for(make_service, tmp_path):
    def make(settings=None, **kwargs):
        service = make_service(**kwargs)
        settings = settings or Settings(data_dir=tmp_path)
        return TestClient(create_app(settings, service, sweep=False))
    return make


def upload(client, data=b"webm-bytes", **fields):
    fields = {"fps": "10", "width": "480", "quality": "low", **fields}
    return client.post("/convert", files={"video": ("clip.webm", data, "video/webm")},
                       data=fields)


def test_full_conversion_over_http(app_for):
    gate = threading.Event()
    executor = ThreadPoolExecutor(max_workers=2)
    try:
        client = app_for(runner=FakeFfmpeg(gate=gate), executor=executor)
        resp = upload(client)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "processing"
        assert body["message"] == "Conversion started"
        job_id = body["jobId"]
        assert len(job_id) == 32

        assert wait_until(lambda: client.get(f"/status/{job_id}").json()["progress"] == 50)
        gate.set()
        assert wait_until(lambda: client.get(f"/status/{job_id}").json()["status"] == "completed")

        got = client.get(f"/download/{job_id}")
        assert got.status_code == 200
        assert got.headers["content-type"] == "image/gif"
        assert got.content == GIF_BYTES

        gone = client.get(f"/status/{job_id}")
        assert gone.status_code == 404
        assert gone.json() == {"error": "Job not found"}
        assert client.get(f"/download/{job_id}").status_code == 404
    finally:
        gate.set()
        executor.shutdown(wait=True)


def test_upload_without_a_file(app_for):
    client = app_for()
    resp = client.post("/convert", data={"fps": "10"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "No video file uploaded"}


def test_upload_over_the_limit(app_for, tmp_path):
    client = app_for(Settings(data_dir=tmp_path, max_upload_bytes=4))
    assert upload(client, data=b"0123456789").status_code == 413


def test_download_before_completion(app_for):
    client = app_for(executor=DeferredExecutor())
    job_id = upload(client).json()["jobId"]
    resp = client.get(f"/download/{job_id}")
    assert resp.status_code == 400
    assert resp.json() == {"error": "Conversion not complete"}


def test_cleanup_and_health(app_for):
    client = app_for(executor=DeferredExecutor())
    job_id = upload(client).json()["jobId"]
    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["activeJobs"] == 1
    assert health["uptime"] >= 0

    for _ in range(2):
        resp = client.delete(f"/cleanup/{job_id}")
        assert resp.status_code == 200
        assert resp.json() == {"message": "Cleaned up successfully"}
    assert client.get("/health").json()["activeJobs"] == 0


def test_bad_form_fields_fall_back_to_defaults(app_for):
    ffmpeg = FakeFfmpeg()
    client = app_for(runner=ffmpeg)
    upload(client, fps="fast", width="", quality="")
    assert ffmpeg.calls[0][4].startswith("fps=10,scale=720:-1")
