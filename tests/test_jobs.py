import sys

import pytest

from conftest import GIF_BYTES, DeferredExecutor, FakeFfmpeg
from gifcast.errors import ConversionFailure, ConversionNotReady, JobNotFound
from gifcast.jobs import run_ffmpeg


def test_conversion_runs_both_passes(make_service, tmp_path):
    ffmpeg = FakeFfmpeg()
    svc = make_service(runner=ffmpeg)
    job_id = svc.submit(b"clip", fps=12, width=480, quality="low")
    assert svc.status(job_id) == {"jobId": job_id, "status": "completed",
                                  "progress": 100, "error": None}
    palette_vf = ffmpeg.calls[0][4]
    assert "fps=12" in palette_vf and "scale=480:-1:flags=lanczos" in palette_vf
    assert "palettegen=max_colors=128" in palette_vf
    assert "paletteuse=dither=none" in ffmpeg.calls[1][6]
    # intermediate palette never outlives the job
    assert not (tmp_path / f"{job_id}_palette.png").exists()


@pytest.mark.parametrize("tier, colors, dither", [
    ("medium", 256, "bayer:bayer_scale=3"),
    ("HIGH", 256, "sierra2_4a"),
    ("bogus", 256, "bayer:bayer_scale=3"),
])
def test_quality_tiers_reach_ffmpeg(make_service, tier, colors, dither):
    ffmpeg = FakeFfmpeg()
    svc = make_service(runner=ffmpeg)
    svc.submit(b"clip", quality=tier)
    assert f"max_colors={colors}" in ffmpeg.calls[0][4]
    assert ffmpeg.calls[1][6].endswith(f"paletteuse=dither={dither}")


def test_failure_keeps_progress_and_reports_error(make_service, tmp_path):
    svc = make_service(runner=FakeFfmpeg(fail_stage=2))
    job_id = svc.submit(b"clip")
    status = svc.status(job_id)
    assert status["status"] == "failed"
    assert status["progress"] == 50
    assert status["error"] == "stage 2 exploded"
    assert not (tmp_path / f"{job_id}_palette.png").exists()


def test_download_is_single_use(make_service):
    svc = make_service()
    job_id = svc.submit(b"clip", suffix=".mp4")
    job = svc._get(job_id)
    assert svc.download(job_id) == GIF_BYTES
    with pytest.raises(JobNotFound):
        svc.download(job_id)
    with pytest.raises(JobNotFound):
        svc.status(job_id)
    assert svc.active_jobs == 0
    assert job.input_path.endswith(".mp4")


def test_download_before_completion(make_service):
    svc = make_service(executor=DeferredExecutor())
    job_id = svc.submit(b"clip")
    assert svc.status(job_id)["status"] == "processing"
    with pytest.raises(ConversionNotReady):
        svc.claim_download(job_id)


def test_delete_is_idempotent(make_service, tmp_path):
    svc = make_service()
    job_id = svc.submit(b"clip")
    assert svc.delete(job_id) is True
    assert svc.delete(job_id) is False
    assert list((tmp_path / "uploads").iterdir()) == []
    assert list((tmp_path / "output").iterdir()) == []


def test_sweep_reclaims_expired_jobs_in_any_state(make_service, tmp_path):
    now = [1000.0]
    executor = DeferredExecutor()
    svc = make_service(executor=executor, ttl=10, clock=lambda: now[0])
    old = svc.submit(b"old")
    now[0] += 5
    young = svc.submit(b"young")
    now[0] += 6
    assert svc.sweep() == [old]
    with pytest.raises(JobNotFound):
        svc.status(old)
    assert svc.status(young)["status"] == "processing"

    # the conversion of the swept job still runs, but leaves nothing behind
    executor.run_all()
    assert sorted(p.name for p in (tmp_path / "output").iterdir()) == [f"{young}.gif"]
    assert not (tmp_path / "uploads" / f"{old}.webm").exists()
    assert svc.status(young)["status"] == "completed"


def test_run_ffmpeg_surfaces_stderr():
    script = "import sys; sys.stderr.write('first\\nInvalid data found\\n'); sys.exit(1)"
    with pytest.raises(ConversionFailure, match="Invalid data found"):
        run_ffmpeg([sys.executable, "-c", script])
