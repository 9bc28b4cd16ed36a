"""
Defect analysis oracle.
Inspects a video and reports stuttered cuts, audio desync, dropped frames,
corrupted sections and wind noise. Each heuristic degrades to "absent" on
its own failure; only an unreadable file is reported as an error.
"""
import asyncio
import ffmpeg
from fractions import Fraction
from pathlib import Path
from typing import Callable, Dict, List, Optional
from reelfix.config import get_settings, Settings
from reelfix.models import DefectReport, DefectAnalysis
from reelfix.services.media_transforms import run_ffmpeg, TransformError, TransformCancelledError
from reelfix.services.transcription_service import TranscriptionService
from reelfix.services.llm_client import LLMClient, LLMNotConfiguredError
import logging

logger = logging.getLogger(__name__)

WIND_NOISE_SYSTEM_PROMPT = """You are an expert audio engineer analyzing audio quality. Your job is to detect wind noise and background audio distortion.

Wind noise characteristics:
- Low-frequency rumbling sounds
- Consistent background noise that obscures speech
- Buffeting or whooshing sounds
- Audio that sounds muffled or distorted by wind

Respond with JSON only: {"hasWindNoise": boolean, "confidence": number, "description": string}"""


class UnreadableMediaError(Exception):
    """The file has no decodable video stream; nothing downstream can run"""


class AnalysisCancelledError(Exception):
    pass


def raise_if_cancelled(cancel_check: Optional[Callable[[], bool]]):
    if cancel_check is not None and cancel_check():
        raise AnalysisCancelledError("Defect analysis cancelled")


def parse_frame_rate(rate: Optional[str]) -> float:
    """ffprobe rates look like '30000/1001'"""
    if not rate or rate in ("0/0", "0"):
        return 0.0
    try:
        return float(Fraction(rate))
    except (ValueError, ZeroDivisionError):
        return 0.0


def count_stuttered_cuts(cut_times: List[float], max_gap: float) -> int:
    """Cuts that follow the previous cut within max_gap seconds"""
    ordered = sorted(cut_times)
    return sum(1 for prev, cur in zip(ordered, ordered[1:]) if cur - prev < max_gap)


class DefectAnalyzer:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        transcription_service: Optional[TranscriptionService] = None
    ):
        self.settings = settings or get_settings()
        self.transcription_service = transcription_service or TranscriptionService(self.settings)

    def probe(self, video_path: str) -> Dict:
        """Probe the file; raise UnreadableMediaError when it is not a usable video"""
        try:
            probe = ffmpeg.probe(video_path, cmd=self.settings.FFPROBE_BINARY)
        except ffmpeg.Error as e:
            message = e.stderr.decode(errors="replace") if e.stderr else str(e)
            raise UnreadableMediaError(f"Invalid video file: {message.strip()[:500]}")
        except OSError as e:
            raise UnreadableMediaError(f"Could not run {self.settings.FFPROBE_BINARY}: {e}")

        streams = probe.get('streams', [])
        video_stream = next((s for s in streams if s.get('codec_type') == 'video'), None)
        audio_stream = next((s for s in streams if s.get('codec_type') == 'audio'), None)
        if not video_stream:
            raise UnreadableMediaError("No video stream found in file")

        duration = float(probe.get('format', {}).get('duration', 0) or 0)
        if duration <= 0:
            raise UnreadableMediaError("Invalid video duration")

        return {"video": video_stream, "audio": audio_stream, "duration": duration}

    def detect_audio_sync_issues(self, video_stream: Dict, audio_stream: Optional[Dict]) -> bool:
        if not audio_stream:
            return False
        try:
            video_start = float(video_stream.get('start_time', 0) or 0)
            audio_start = float(audio_stream.get('start_time', 0) or 0)
        except (TypeError, ValueError):
            return False
        offset = abs(video_start - audio_start)
        if offset > self.settings.AUDIO_SYNC_TOLERANCE_SECONDS:
            logger.info(f"Audio/video start offset {offset:.3f}s exceeds tolerance")
            return True
        return False

    def detect_dropped_frames(self, video_stream: Dict, duration: float) -> int:
        """Frames missing relative to the nominal rate over the stream duration"""
        nominal_fps = parse_frame_rate(video_stream.get('r_frame_rate'))
        try:
            frame_count = int(video_stream.get('nb_frames', 0) or 0)
        except (TypeError, ValueError):
            frame_count = 0
        if not nominal_fps or not frame_count:
            return 0

        stream_duration = float(video_stream.get('duration', duration) or duration)
        expected = round(stream_duration * nominal_fps)
        missing = expected - frame_count
        return missing if missing > self.settings.DROPPED_FRAME_TOLERANCE else 0

    def detect_stuttered_cuts(self, video_path: str, cancel_check: Optional[Callable[[], bool]] = None) -> int:
        try:
            from scenedetect import open_video, SceneManager, ContentDetector
            video = open_video(video_path)
            scene_manager = SceneManager()
            scene_manager.add_detector(ContentDetector(threshold=self.settings.SCENE_THRESHOLD))
            # Chunked so a cancelled analysis stops between chunks
            while True:
                raise_if_cancelled(cancel_check)
                frames = scene_manager.detect_scenes(video, duration=self.settings.SCENE_DETECT_CHUNK_SECONDS)
                if frames <= 0:
                    break
            scene_list = scene_manager.get_scene_list()
        except AnalysisCancelledError:
            raise
        except Exception as e:
            logger.warning(f"Scene detection failed, assuming no stuttered cuts: {e}")
            return 0

        cut_times = [scene[0].get_seconds() for scene in scene_list[1:]]
        stutters = count_stuttered_cuts(cut_times, self.settings.STUTTER_MAX_GAP_SECONDS)
        logger.info(f"Detected {len(cut_times)} cuts, {stutters} stuttered")
        return stutters

    def detect_corrupted_sections(self, video_path: str, cancel_check: Optional[Callable[[], bool]] = None) -> int:
        """Decode the whole file and count decoder error lines"""
        stream = ffmpeg.input(video_path).output('-', format='null').global_args('-v', 'error')
        try:
            stderr = run_ffmpeg(
                stream,
                "corruption_scan",
                timeout=self.settings.CORRUPTION_SCAN_TIMEOUT_SECONDS,
                cmd=self.settings.FFMPEG_BINARY,
                cancel_check=cancel_check,
                poll_interval=self.settings.SUBPROCESS_POLL_SECONDS
            )
        except TransformCancelledError:
            raise AnalysisCancelledError("Corruption scan cancelled")
        except TransformError as e:
            logger.warning(f"Corruption scan failed: {e}")
            return 0
        return len([line for line in stderr.splitlines() if line.strip()])

    def detect_wind_noise(
        self,
        video_path: str,
        work_dir: Path,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> bool:
        audio_path = str(work_dir / "wind-sample.wav")
        try:
            self.transcription_service.extract_audio(
                video_path, audio_path, max_seconds=self.settings.WIND_SAMPLE_SECONDS,
                cancel_check=cancel_check
            )
            transcript = self.transcription_service.transcribe_words(audio_path, cancel_check=cancel_check)
            raise_if_cancelled(cancel_check)
            verdict = asyncio.run(self._classify_wind_noise(transcript["text"]))
        except (TransformCancelledError, AnalysisCancelledError):
            raise AnalysisCancelledError("Wind noise analysis cancelled")
        except LLMNotConfiguredError:
            logger.warning("LLM not configured, skipping wind noise classification")
            return False
        except Exception as e:
            logger.warning(f"Wind noise analysis failed: {e}")
            return False
        finally:
            Path(audio_path).unlink(missing_ok=True)

        has_wind = bool(verdict.get("hasWindNoise"))
        confidence = float(verdict.get("confidence", 0) or 0)
        logger.info(
            f"Wind noise analysis: {'DETECTED' if has_wind else 'NONE'} "
            f"(confidence: {confidence}) {verdict.get('description', '')}"
        )
        return has_wind and confidence > self.settings.WIND_NOISE_CONFIDENCE_THRESHOLD

    async def _classify_wind_noise(self, transcription: str) -> Dict:
        client = LLMClient(self.settings)
        try:
            return await client.generate_json([
                {"role": "system", "content": WIND_NOISE_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        "Analyze this audio transcription for wind noise and audio quality issues:\n\n"
                        f"Transcription: \"{transcription}\"\n\n"
                        "Based on the transcription quality and any audio artifacts, does this audio "
                        "contain significant wind noise that would benefit from filtering?"
                    )
                }
            ])
        finally:
            await client.close()

    def analyze(
        self,
        video_path: str,
        work_dir: Optional[Path] = None,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> DefectAnalysis:
        """
        Run every detector against the file.
        Raises UnreadableMediaError when the file is not a decodable video, and
        AnalysisCancelledError (after stopping any running subprocess) once
        `cancel_check()` turns true.
        """
        logger.info(f"Starting defect analysis for {video_path}")
        work_dir = Path(work_dir) if work_dir else Path(video_path).parent

        media = self.probe(video_path)
        has_audio = media["audio"] is not None

        stuttered_cuts = self.detect_stuttered_cuts(video_path, cancel_check=cancel_check)
        raise_if_cancelled(cancel_check)
        corrupted_sections = self.detect_corrupted_sections(video_path, cancel_check=cancel_check)
        raise_if_cancelled(cancel_check)
        wind_noise = False
        if has_audio:
            wind_noise = self.detect_wind_noise(video_path, work_dir, cancel_check=cancel_check)

        report = DefectReport(
            stuttered_cuts=stuttered_cuts,
            audio_sync_issues=self.detect_audio_sync_issues(media["video"], media["audio"]),
            dropped_frames=self.detect_dropped_frames(media["video"], media["duration"]),
            corrupted_sections=corrupted_sections,
            wind_noise=wind_noise,
        )

        logger.info(f"Analysis complete for {video_path}: {report.model_dump()}")
        return DefectAnalysis.from_report(report)
