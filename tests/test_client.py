import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import GIF_BYTES, DeferredExecutor, FakeFfmpeg
from gifcast.client import JobClient
from gifcast.config import Settings
from gifcast.errors import ConversionFailure, ConversionNotReady, JobNotFound, UploadFailure
from gifcast.models import RecordingOptions
from gifcast.server import create_app


@pytest.fixture
def clip(tmp_path):
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"mp4-bytes")
    return path


@pytest.fixture
def client_for(make_service, tmp_path):
    def make(**kwargs):
        app = create_app(Settings(data_dir=tmp_path / "srv"), make_service(**kwargs), sweep=False)
        return JobClient("http://testserver", http=TestClient(app), sleep=lambda s: None)
    return make


def test_submit_and_fetch(client_for, clip):
    ffmpeg = FakeFfmpeg()
    client = client_for(runner=ffmpeg)
    job_id = client.submit(clip, RecordingOptions(fps=15, width=400, quality="low"))
    seen = []
    assert client.fetch(job_id, interval=0, on_progress=seen.append) == GIF_BYTES
    assert seen == [100]
    assert "fps=15,scale=400:-1" in ffmpeg.calls[0][4]
    # the server reclaimed the job after the download
    with pytest.raises(JobNotFound):
        client.status(job_id)


def test_failed_conversion_raises(client_for, clip):
    client = client_for(runner=FakeFfmpeg(fail_stage=1))
    job_id = client.submit(clip, RecordingOptions())
    with pytest.raises(ConversionFailure, match="stage 1 exploded"):
        client.fetch(job_id, interval=0)


def test_download_before_completion(client_for, clip):
    client = client_for(executor=DeferredExecutor())
    job_id = client.submit(clip, RecordingOptions())
    with pytest.raises(ConversionNotReady):
        client.download(job_id)


def test_wait_polls_until_terminal():
    replies = iter([
        {"status": "processing", "progress": 0},
        {"status": "processing", "progress": 50},
        {"status": "completed", "progress": 100},
    ])
    sleeps = []

    def handler(request):
        return httpx.Response(200, json=next(replies))

    client = JobClient("http://svc", transport=httpx.MockTransport(handler), sleep=sleeps.append)
    seen = []
    assert client.wait("abc", interval=0.5, on_progress=seen.append)["status"] == "completed"
    assert seen == [0, 50, 100]
    assert sleeps == [0.5, 0.5]


def test_rejected_upload(clip):
    client = JobClient("http://svc",
                       transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(UploadFailure, match="HTTP 500"):
        client.submit(clip, RecordingOptions())


def test_unreachable_service(clip):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = JobClient("http://svc", transport=httpx.MockTransport(handler))
    with pytest.raises(UploadFailure):
        client.submit(clip, RecordingOptions())
    with pytest.raises(UploadFailure):
        client.status("abc")
    client.delete("abc")
