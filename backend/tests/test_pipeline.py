import os
import threading
import time
from pathlib import Path

import ffmpeg
import pytest
from fastapi.testclient import TestClient
from reelfix.main import app
from reelfix.models import (
    Video, VideoStatus, ProcessingJob, JobStatus, Draft,
    DefectReport, DefectAnalysis, CaptionResult, CaptionSegment, AUTO_BACKUP_SUFFIX
)
from reelfix.services.defect_analysis import DefectAnalyzer, UnreadableMediaError
from reelfix.services.job_store import JobStore
from reelfix.services.media_transforms import (
    MediaTransformEngine, TransformCancelledError, TransformProcessError, TransformTimeoutError
)
from reelfix.services.pipeline import PipelineOrchestrator, CANCELLED_MESSAGE
from reelfix.services.storage import StorageService


class FakeEngine:
    """Appends the operation name to the input bytes so the output records its lineage"""

    def __init__(self, failures=None, on_call=None):
        self.failures = failures or {}
        self.on_call = on_call
        self.calls = []

    def _run(self, operation, src, dst):
        self.calls.append(operation)
        if self.on_call:
            self.on_call(operation)
        error = self.failures.get(operation)
        if error:
            Path(dst).write_bytes(b"partial")
            raise error
        Path(dst).write_bytes(Path(src).read_bytes() + f"|{operation}".encode())
        return dst

    def smooth_cuts(self, src, dst, cut_count=0, timeout=None, cancel_check=None):
        return self._run("cut_smoothing", src, dst)

    def resync_audio(self, src, dst, timeout=None, cancel_check=None):
        return self._run("audio_resync", src, dst)

    def filter_wind_noise(self, src, dst, timeout=None, cancel_check=None):
        return self._run("wind_noise_filter", src, dst)

    def normalize_frame_rate(self, src, dst, dropped_frames=0, timeout=None, cancel_check=None):
        return self._run("frame_recovery", src, dst)

    def export_for_platforms(self, src, dst, timeout=None, cancel_check=None):
        return self._run("platform_export", src, dst)


class FakeAnalyzer:
    def __init__(self, report=None, error=None, delay=0):
        self.report = report or DefectReport()
        self.error = error
        self.delay = delay

    def analyze(self, video_path, work_dir=None, cancel_check=None):
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return DefectAnalysis.from_report(self.report)


class FakeTranscription:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    def generate_captions(self, video_path, work_dir, cancel_check=None):
        if self.error:
            raise self.error
        return self.result


class RecordingStore(JobStore):
    def __init__(self, fail_drafts=False):
        super().__init__()
        self.progress = []
        self.fail_drafts = fail_drafts

    def checkpoint(self, job_id, stage, progress, estimated_time_remaining=None):
        super().checkpoint(job_id, stage, progress, estimated_time_remaining)
        self.progress.append(progress)

    def create_backup_draft(self, video_id, file_path):
        if self.fail_drafts:
            raise RuntimeError("drafts table unavailable")
        return super().create_backup_draft(video_id, file_path)


@pytest.fixture
def store():
    return RecordingStore()


def build(store, settings, report=None, failures=None, analyzer=None, transcription=None, on_call=None, **overrides):
    engine = FakeEngine(failures=failures, on_call=on_call)
    orchestrator = PipelineOrchestrator(
        store=store,
        engine=engine,
        analyzer=analyzer or FakeAnalyzer(report),
        transcription_service=transcription or FakeTranscription(),
        settings=settings.model_copy(update=overrides) if overrides else settings
    )
    return orchestrator, engine


def load(db, video_id):
    db.expire_all()
    video = db.get(Video, video_id)
    job = db.query(ProcessingJob).filter(
        ProcessingJob.video_id == video_id
    ).order_by(ProcessingJob.created_at.desc()).first()
    return video, job


def test_mixed_defects_run_only_the_needed_stages(store, settings, db, make_video):
    video = make_video(content=b"src")
    report = DefectReport(stuttered_cuts=3, audio_sync_issues=True, dropped_frames=0, corrupted_sections=0, wind_noise=False)
    orchestrator, engine = build(store, settings, report)

    assert orchestrator.process_video(video.id) == JobStatus.COMPLETED.value

    assert engine.calls == ["cut_smoothing", "audio_resync", "platform_export"]
    video, job = load(db, video.id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.progress == 100
    assert job.error_message is None
    assert video.status == VideoStatus.COMPLETED.value
    assert Path(video.processed_file_path).read_bytes() == b"src|cut_smoothing|audio_resync|platform_export"
    assert video.issues["stuttered_cuts"] == 3
    assert video.fixes_applied == {
        "stuttered_cuts_fixed": 3,
        "audio_sync_fixed": True,
        "frames_recovered": 0,
        "sections_repaired": 0,
        "wind_noise_removed": False,
    }


def test_progress_is_monotonic_and_ends_at_100(store, settings, db, make_video):
    video = make_video()
    orchestrator, _ = build(store, settings, DefectReport(dropped_frames=5, wind_noise=True))

    orchestrator.process_video(video.id)

    assert store.progress == [5, 10, 25, 40, 55, 70, 85, 95]
    assert store.progress == sorted(store.progress)
    _, job = load(db, video.id)
    assert job.progress == 100


def test_clean_video_only_exports(store, settings, db, make_video):
    video = make_video(content=b"clean")
    orchestrator, engine = build(store, settings, DefectReport())

    orchestrator.process_video(video.id)

    assert engine.calls == ["platform_export"]
    video, job = load(db, video.id)
    assert job.status == JobStatus.COMPLETED.value
    assert Path(video.processed_file_path).read_bytes() == b"clean|platform_export"


def test_export_timeout_delivers_the_unmodified_original(store, settings, db, make_video):
    video = make_video(content=b"untouched")
    original_path = video.original_path
    failures = {"platform_export": TransformTimeoutError("platform_export", "timed out after 120 seconds")}
    orchestrator, _ = build(store, settings, DefectReport(), failures=failures)

    assert orchestrator.process_video(video.id) == JobStatus.COMPLETED.value

    video, job = load(db, video.id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.error_message is None
    assert Path(video.processed_file_path).read_bytes() == b"untouched"
    assert video.processed_file_path != original_path
    assert Path(original_path).read_bytes() == b"untouched"
    assert video.fixes_applied["sections_repaired"] == 0


def test_mid_stage_failure_keeps_previous_artifact(store, settings, db, make_video):
    video = make_video(content=b"src")
    report = DefectReport(stuttered_cuts=2, audio_sync_issues=True, wind_noise=True)
    failures = {"audio_resync": TransformProcessError("audio_resync", 1, "Invalid data found")}
    orchestrator, engine = build(store, settings, report, failures=failures)

    orchestrator.process_video(video.id)

    assert engine.calls == ["cut_smoothing", "audio_resync", "wind_noise_filter", "platform_export"]
    video, job = load(db, video.id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.error_message is None
    assert Path(video.processed_file_path).read_bytes() == b"src|cut_smoothing|wind_noise_filter|platform_export"
    assert video.fixes_applied["audio_sync_fixed"] is False
    assert video.fixes_applied["wind_noise_removed"] is True


def test_work_directory_is_removed(store, settings, db, make_video):
    video = make_video()
    orchestrator, _ = build(store, settings, DefectReport(stuttered_cuts=1))

    orchestrator.process_video(video.id)

    _, job = load(db, video.id)
    assert not (settings.TEMP_DIR / video.id / job.id).exists()


def test_missing_source_fails_the_job(store, settings, db, make_video, tmp_path):
    video = make_video(original_path=str(tmp_path / "gone.mp4"))
    orchestrator, engine = build(store, settings)

    assert orchestrator.process_video(video.id) == JobStatus.FAILED.value

    assert engine.calls == []
    video, job = load(db, video.id)
    assert job.status == JobStatus.FAILED.value
    assert "not found" in job.error_message
    assert job.current_step is None
    assert video.status == VideoStatus.FAILED.value
    assert video.processed_file_path is None


def test_download_timeout_fails_the_job(store, settings, db, make_video, monkeypatch):
    video = make_video()

    def slow_fetch(source, work_dir, timeout=None, cancel_check=None):
        time.sleep(1)
        return source

    monkeypatch.setattr(StorageService, "fetch_source", staticmethod(slow_fetch))
    orchestrator, engine = build(store, settings, DOWNLOAD_TIMEOUT_SECONDS=0.1)

    orchestrator.process_video(video.id)

    video, job = load(db, video.id)
    assert job.status == JobStatus.FAILED.value
    assert "downloading timeout" in job.error_message
    assert video.processed_file_path is None
    assert engine.calls == []


def test_unreadable_file_fails_the_job(store, settings, db, make_video):
    video = make_video()
    analyzer = FakeAnalyzer(error=UnreadableMediaError("No video stream found in file"))
    orchestrator, engine = build(store, settings, analyzer=analyzer)

    orchestrator.process_video(video.id)

    video, job = load(db, video.id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_message == "No video stream found in file"
    assert video.processed_file_path is None
    assert engine.calls == []


def test_analysis_timeout_falls_back_to_default_report(store, settings, db, make_video):
    video = make_video()
    orchestrator, engine = build(store, settings, analyzer=FakeAnalyzer(DefectReport(stuttered_cuts=4), delay=1),
                                 ANALYSIS_TIMEOUT_SECONDS=0.1)

    orchestrator.process_video(video.id)

    assert engine.calls == ["platform_export"]
    video, job = load(db, video.id)
    assert job.status == JobStatus.COMPLETED.value
    assert video.issues == DefectReport().model_dump()


def test_analysis_error_falls_back_to_default_report(store, settings, db, make_video):
    video = make_video()
    orchestrator, engine = build(store, settings, analyzer=FakeAnalyzer(error=RuntimeError("scene detector crashed")))

    orchestrator.process_video(video.id)

    assert engine.calls == ["platform_export"]
    _, job = load(db, video.id)
    assert job.status == JobStatus.COMPLETED.value


def test_cancellation_between_stages(store, settings, db, make_video):
    video = make_video()

    def cancel_during_cuts(operation):
        if operation == "cut_smoothing":
            JobStore().request_cancel(video.id)

    orchestrator, engine = build(store, settings, DefectReport(stuttered_cuts=1, audio_sync_issues=True),
                                 on_call=cancel_during_cuts)

    assert orchestrator.process_video(video.id) == JobStatus.FAILED.value

    assert engine.calls == ["cut_smoothing"]
    video, job = load(db, video.id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_message == CANCELLED_MESSAGE
    assert video.processed_file_path is None


def test_cancellation_inside_a_transform(store, settings, db, make_video):
    video = make_video()
    failures = {"platform_export": TransformCancelledError("platform_export")}
    orchestrator, _ = build(store, settings, failures=failures)

    orchestrator.process_video(video.id)

    _, job = load(db, video.id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_message == CANCELLED_MESSAGE


def test_backup_draft_is_created(store, settings, db, make_video):
    video = make_video(filename="surf.mp4")
    orchestrator, _ = build(store, settings)

    orchestrator.process_video(video.id)

    video, _ = load(db, video.id)
    draft = db.query(Draft).filter(Draft.source_video_id == video.id).one()
    assert draft.file_name == f"surf.mp4{AUTO_BACKUP_SUFFIX}"
    assert draft.file_path == video.processed_file_path
    assert draft.file_size == Path(video.processed_file_path).stat().st_size


def test_draft_failure_does_not_fail_the_job(settings, db, make_video):
    video = make_video()
    orchestrator, _ = build(RecordingStore(fail_drafts=True), settings)

    assert orchestrator.process_video(video.id) == JobStatus.COMPLETED.value

    video, job = load(db, video.id)
    assert job.status == JobStatus.COMPLETED.value
    assert video.status == VideoStatus.COMPLETED.value
    assert db.query(Draft).count() == 0


def test_active_job_blocks_a_second_pipeline(store, settings, db, make_video):
    video = make_video()
    store.start_job(video.id)
    orchestrator, engine = build(store, settings)

    assert orchestrator.process_video(video.id) is None
    assert engine.calls == []


def test_unknown_video_is_ignored(store, settings):
    orchestrator, engine = build(store, settings)

    assert orchestrator.process_video("missing") is None
    assert engine.calls == []


def test_captions_are_stored_when_enabled(store, settings, db, make_video):
    video = make_video()
    captions = CaptionResult(text="Hello there.", segments=[CaptionSegment(start=0.0, end=1.2, text="Hello there.")])
    orchestrator, _ = build(store, settings, transcription=FakeTranscription(result=captions), ENABLE_CAPTIONS=True)

    orchestrator.process_video(video.id)

    video, _ = load(db, video.id)
    assert video.captions["text"] == "Hello there."
    assert video.captions["segments"][0]["end"] == 1.2


def test_caption_failure_is_not_fatal(store, settings, db, make_video):
    video = make_video()
    orchestrator, _ = build(store, settings, transcription=FakeTranscription(error=RuntimeError("whisper died")),
                            ENABLE_CAPTIONS=True)

    assert orchestrator.process_video(video.id) == JobStatus.COMPLETED.value

    video, _ = load(db, video.id)
    assert video.captions is None


def test_reprocessing_after_failure_succeeds(store, settings, db, make_video):
    video = make_video()
    failing, _ = build(store, settings, analyzer=FakeAnalyzer(error=UnreadableMediaError("Invalid video duration")))
    failing.process_video(video.id)
    store.enqueue_job(video.id)

    orchestrator, _ = build(store, settings)
    assert orchestrator.process_video(video.id) == JobStatus.COMPLETED.value

    assert db.query(ProcessingJob).filter(ProcessingJob.video_id == video.id).count() == 2


def test_end_to_end_with_ffmpeg_subprocess(store, settings, db, make_video, fake_ffmpeg):
    video = make_video(content=b"raw")
    engine_settings = settings.model_copy(update={"FFMPEG_BINARY": fake_ffmpeg, "SUBPROCESS_POLL_SECONDS": 0.05})
    orchestrator = PipelineOrchestrator(
        store=store,
        engine=MediaTransformEngine(engine_settings),
        analyzer=FakeAnalyzer(DefectReport(wind_noise=True)),
        transcription_service=FakeTranscription(),
        settings=engine_settings
    )

    orchestrator.process_video(video.id)

    video, job = load(db, video.id)
    assert job.status == JobStatus.COMPLETED.value
    # wind filter and export each append one byte
    assert Path(video.processed_file_path).read_bytes() == b"rawxx"


def test_stutter_audio_and_wind_defects_end_to_end(store, settings, db, make_video):
    video = make_video(content=b"src", filename="beach.mp4")
    report = DefectReport(stuttered_cuts=2, audio_sync_issues=True, dropped_frames=0, wind_noise=True)
    orchestrator, engine = build(store, settings, report)

    assert orchestrator.process_video(video.id) == JobStatus.COMPLETED.value

    assert engine.calls == ["cut_smoothing", "audio_resync", "wind_noise_filter", "platform_export"]
    assert "frame_recovery" not in engine.calls
    video, job = load(db, video.id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.progress == 100
    assert video.fixes_applied == {
        "stuttered_cuts_fixed": 2,
        "audio_sync_fixed": True,
        "frames_recovered": 0,
        "sections_repaired": 0,
        "wind_noise_removed": True,
    }
    assert Path(video.processed_file_path).read_bytes() == (
        b"src|cut_smoothing|audio_resync|wind_noise_filter|platform_export"
    )
    draft = db.query(Draft).filter(Draft.source_video_id == video.id).one()
    assert draft.file_path == video.processed_file_path
    assert draft.file_name == f"beach.mp4{AUTO_BACKUP_SUFFIX}"


def read_pids(pid_file):
    return [int(line) for line in pid_file.read_text().split()] if pid_file.exists() else []


def assert_not_running(pid):
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_analysis_timeout_kills_the_running_scan(store, settings, db, make_video, fake_ffmpeg, monkeypatch, tmp_path):
    video = make_video(content=b"src")
    pid_file = tmp_path / "ffmpeg.pids"
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "hang")
    monkeypatch.setenv("FAKE_FFMPEG_PIDFILE", str(pid_file))
    monkeypatch.setattr(ffmpeg, "probe", lambda path, **kwargs: {
        "streams": [{"codec_type": "video", "r_frame_rate": "30/1"}, {"codec_type": "audio"}],
        "format": {"duration": "10.0"},
    })
    monkeypatch.setattr(DefectAnalyzer, "detect_stuttered_cuts", lambda self, path, cancel_check=None: 0)
    analysis_settings = settings.model_copy(update={
        "FFMPEG_BINARY": fake_ffmpeg,
        "ANALYSIS_TIMEOUT_SECONDS": 1,
        "SUBPROCESS_POLL_SECONDS": 0.05,
        "STAGE_CANCEL_GRACE_SECONDS": 5,
    })
    orchestrator, engine = build(store, analysis_settings, analyzer=DefectAnalyzer(analysis_settings))

    started = time.monotonic()
    assert orchestrator.process_video(video.id) == JobStatus.COMPLETED.value

    assert time.monotonic() - started < 10
    assert engine.calls == ["platform_export"]
    pids = read_pids(pid_file)
    assert pids
    for pid in pids:
        assert_not_running(pid)


def test_deleting_the_video_stops_its_running_transform(store, settings, db, make_video, fake_ffmpeg, monkeypatch, tmp_path):
    video = make_video(content=b"src")
    video_id = video.id
    pid_file = tmp_path / "ffmpeg.pids"
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "hang")
    monkeypatch.setenv("FAKE_FFMPEG_PIDFILE", str(pid_file))
    engine_settings = settings.model_copy(update={"FFMPEG_BINARY": fake_ffmpeg, "SUBPROCESS_POLL_SECONDS": 0.05})
    orchestrator = PipelineOrchestrator(
        store=store,
        engine=MediaTransformEngine(engine_settings),
        analyzer=FakeAnalyzer(DefectReport(wind_noise=True)),
        transcription_service=FakeTranscription(),
        settings=engine_settings
    )
    results = []
    worker = threading.Thread(target=lambda: results.append(orchestrator.process_video(video_id)))
    worker.start()

    deadline = time.monotonic() + 10
    while not read_pids(pid_file) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert read_pids(pid_file), "wind filter never started"

    response = TestClient(app).delete(f"/api/videos/{video_id}")
    assert response.status_code == 200

    # The wind filter's own timeout is 30s; only the cancel path ends it this soon
    worker.join(timeout=10)
    assert not worker.is_alive()
    assert results == [JobStatus.FAILED.value]
    for pid in read_pids(pid_file):
        assert_not_running(pid)
    assert not (settings.PROCESSED_DIR / video_id).exists()
    assert not (settings.TEMP_DIR / video_id).exists()
    db.expire_all()
    assert db.get(Video, video_id) is None
