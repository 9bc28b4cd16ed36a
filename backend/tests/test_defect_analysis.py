import time

import ffmpeg
import pytest
from reelfix.models import DefectReport
from reelfix.services.defect_analysis import (
    AnalysisCancelledError,
    DefectAnalyzer,
    UnreadableMediaError,
    count_stuttered_cuts,
    parse_frame_rate,
)


@pytest.fixture
def analyzer(settings):
    return DefectAnalyzer(settings)


def probe_result(video_stream=None, audio_stream=None, duration="10.0"):
    streams = []
    if video_stream is not None:
        streams.append({"codec_type": "video", **video_stream})
    if audio_stream is not None:
        streams.append({"codec_type": "audio", **audio_stream})
    return {"streams": streams, "format": {"duration": duration}}


@pytest.mark.parametrize("rate,expected", [
    ("30/1", 30.0),
    ("30000/1001", 30000 / 1001),
    ("25", 25.0),
    ("0/0", 0.0),
    (None, 0.0),
    ("garbage", 0.0),
])
def test_parse_frame_rate(rate, expected):
    assert parse_frame_rate(rate) == pytest.approx(expected)


def test_count_stuttered_cuts_counts_close_pairs():
    assert count_stuttered_cuts([1.0, 1.2, 5.0, 5.3, 9.0], max_gap=0.5) == 2
    assert count_stuttered_cuts([], max_gap=0.5) == 0
    assert count_stuttered_cuts([3.0, 1.0, 3.1], max_gap=0.5) == 1


def test_dropped_frames_against_nominal_rate(analyzer):
    stream = {"r_frame_rate": "30/1", "nb_frames": "280", "duration": "10.0"}
    assert analyzer.detect_dropped_frames(stream, 10.0) == 20


def test_dropped_frames_within_tolerance(analyzer):
    stream = {"r_frame_rate": "30/1", "nb_frames": "299", "duration": "10.0"}
    assert analyzer.detect_dropped_frames(stream, 10.0) == 0


def test_dropped_frames_without_frame_count(analyzer):
    assert analyzer.detect_dropped_frames({"r_frame_rate": "30/1"}, 10.0) == 0


def test_audio_sync_offset(analyzer):
    assert analyzer.detect_audio_sync_issues({"start_time": "0.0"}, {"start_time": "0.35"}) is True
    assert analyzer.detect_audio_sync_issues({"start_time": "0.0"}, {"start_time": "0.02"}) is False
    assert analyzer.detect_audio_sync_issues({"start_time": "0.0"}, None) is False


def test_probe_without_video_stream(analyzer, monkeypatch):
    monkeypatch.setattr(ffmpeg, "probe", lambda path, **kwargs: probe_result(audio_stream={}))

    with pytest.raises(UnreadableMediaError, match="No video stream"):
        analyzer.probe("audio-only.mp4")


def test_probe_zero_duration(analyzer, monkeypatch):
    monkeypatch.setattr(ffmpeg, "probe", lambda path, **kwargs: probe_result(video_stream={}, duration="0"))

    with pytest.raises(UnreadableMediaError, match="duration"):
        analyzer.probe("empty.mp4")


def test_probe_ffprobe_error(analyzer, monkeypatch):
    def broken_probe(path, **kwargs):
        raise ffmpeg.Error("ffprobe", b"", b"moov atom not found")

    monkeypatch.setattr(ffmpeg, "probe", broken_probe)

    with pytest.raises(UnreadableMediaError, match="moov atom not found"):
        analyzer.probe("truncated.mp4")


def test_analyze_combines_detectors(analyzer, monkeypatch, tmp_path):
    monkeypatch.setattr(ffmpeg, "probe", lambda path, **kwargs: probe_result(
        video_stream={"r_frame_rate": "30/1", "nb_frames": "290", "duration": "10.0", "start_time": "0.0"},
        audio_stream={"start_time": "0.5"},
    ))
    monkeypatch.setattr(analyzer, "detect_stuttered_cuts", lambda path, cancel_check=None: 2)
    monkeypatch.setattr(analyzer, "detect_corrupted_sections", lambda path, cancel_check=None: 1)
    monkeypatch.setattr(analyzer, "detect_wind_noise", lambda path, work_dir, cancel_check=None: True)

    analysis = analyzer.analyze(str(tmp_path / "clip.mp4"), tmp_path)

    assert analysis.issues == DefectReport(
        stuttered_cuts=2, audio_sync_issues=True, dropped_frames=10, corrupted_sections=1, wind_noise=True
    )
    assert analysis.degraded is False
    assert "Remove wind noise from audio" in analysis.recommendations


def test_analyze_skips_wind_detection_without_audio(analyzer, monkeypatch, tmp_path):
    monkeypatch.setattr(ffmpeg, "probe", lambda path, **kwargs: probe_result(video_stream={}))
    monkeypatch.setattr(analyzer, "detect_stuttered_cuts", lambda path, cancel_check=None: 0)
    monkeypatch.setattr(analyzer, "detect_corrupted_sections", lambda path, cancel_check=None: 0)

    def unexpected(*args, **kwargs):
        raise AssertionError("wind detection needs an audio stream")

    monkeypatch.setattr(analyzer, "detect_wind_noise", unexpected)

    assert analyzer.analyze(str(tmp_path / "silent.mp4"), tmp_path).issues.wind_noise is False


@pytest.fixture
def stub_transcription(analyzer, monkeypatch):
    monkeypatch.setattr(analyzer.transcription_service, "extract_audio", lambda video, out, max_seconds=None, cancel_check=None: out)
    monkeypatch.setattr(analyzer.transcription_service, "transcribe_words",
                        lambda audio, cancel_check=None: {"text": "whoosh hello whoosh", "words": [], "language": "en"})


def test_wind_noise_without_llm_key_is_absent(analyzer, stub_transcription, tmp_path):
    assert analyzer.detect_wind_noise("clip.mp4", tmp_path) is False


@pytest.mark.parametrize("verdict,expected", [
    ({"hasWindNoise": True, "confidence": 0.8}, True),
    ({"hasWindNoise": True, "confidence": 0.5}, False),
    ({"hasWindNoise": False, "confidence": 0.9}, False),
])
def test_wind_noise_confidence_threshold(analyzer, stub_transcription, monkeypatch, tmp_path, verdict, expected):
    async def classify(transcription):
        return verdict

    monkeypatch.setattr(analyzer, "_classify_wind_noise", classify)

    assert analyzer.detect_wind_noise("clip.mp4", tmp_path) is expected


def test_stuttered_cut_detection_failure_is_absent(analyzer, tmp_path):
    # Not a decodable video; scene detection raises and the heuristic degrades
    bogus = tmp_path / "bogus.mp4"
    bogus.write_bytes(b"not a video")
    assert analyzer.detect_stuttered_cuts(str(bogus)) == 0


def test_analyze_stops_between_detectors_once_cancelled(analyzer, monkeypatch, tmp_path):
    monkeypatch.setattr(ffmpeg, "probe", lambda path, **kwargs: probe_result(video_stream={}, audio_stream={}))
    stop = []

    def stutter_then_stop(path, cancel_check=None):
        stop.append(True)
        return 1

    def unexpected(*args, **kwargs):
        raise AssertionError("detector ran after cancellation")

    monkeypatch.setattr(analyzer, "detect_stuttered_cuts", stutter_then_stop)
    monkeypatch.setattr(analyzer, "detect_corrupted_sections", unexpected)
    monkeypatch.setattr(analyzer, "detect_wind_noise", unexpected)

    with pytest.raises(AnalysisCancelledError):
        analyzer.analyze(str(tmp_path / "clip.mp4"), tmp_path, cancel_check=lambda: bool(stop))


def test_corruption_scan_is_killed_on_cancel(settings, fake_ffmpeg, monkeypatch, tmp_path):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "hang")
    scan_settings = settings.model_copy(update={"FFMPEG_BINARY": fake_ffmpeg, "SUBPROCESS_POLL_SECONDS": 0.05})
    analyzer = DefectAnalyzer(scan_settings)
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"video")
    deadline = time.monotonic() + 0.3

    started = time.monotonic()
    with pytest.raises(AnalysisCancelledError):
        analyzer.detect_corrupted_sections(str(clip), cancel_check=lambda: time.monotonic() > deadline)

    assert time.monotonic() - started < 5
