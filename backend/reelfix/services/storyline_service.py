"""
Storyline breakdown.
Samples key frames, has a vision-capable chat model describe each one, then
asks the model to merge the frame notes with the audio transcript into a
scene-by-scene breakdown.
"""
import asyncio
import base64
import json
import ffmpeg
import httpx
from pathlib import Path
from typing import Callable, Dict, List, Optional
from reelfix.config import get_settings, Settings
from reelfix.models import StorylineBreakdown
from reelfix.services.media_transforms import (
    run_ffmpeg, verify_output, TransformError, TransformCancelledError
)
from reelfix.services.transcription_service import TranscriptionService, group_words_into_captions
from reelfix.services.llm_client import LLMClient, LLMNotConfiguredError
from reelfix.services.storage import StorageService
import logging

logger = logging.getLogger(__name__)

FRAME_SYSTEM_PROMPT = """You are a professional video analyst. Describe the frame you are shown. Cover the actions taking place, visible people and objects, emotions and mood, the setting, and the visual style.

Respond with JSON only: {"description": string, "actions": string[], "objects": string[], "emotions": string[], "setting": string, "mood": string}"""

STORYLINE_SYSTEM_PROMPT = """You are an expert video content analyst. Build a storyline breakdown from frame descriptions and an audio transcription.

Provide an engaging title, a 2-3 sentence summary, a scene-by-scene breakdown with MM:SS timestamps, the people who appear or are mentioned, the major themes, the overall mood and genre, and a 0-100 confidence score for your analysis.

Respond with JSON only:
{
  "title": string,
  "summary": string,
  "scenes": [{"timestamp": "MM:SS", "duration": "MM:SS", "description": string, "emotions": string[], "keyObjects": string[], "actions": string[]}],
  "characters": [{"name": string, "description": string, "appearances": ["MM:SS"]}],
  "themes": string[],
  "mood": string,
  "genre": string,
  "confidence": number
}"""


class StorylineUnavailableError(Exception):
    pass


def frame_fallback(timestamp: int) -> Dict:
    return {
        "timestamp": timestamp,
        "description": "Frame analysis failed",
        "actions": [],
        "objects": [],
        "emotions": [],
        "setting": "Unknown",
        "mood": "Neutral"
    }


class StorylineAnalyzer:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        transcription_service: Optional[TranscriptionService] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.settings = settings or get_settings()
        self.transcription_service = transcription_service or TranscriptionService(self.settings)
        self.transport = transport

    def extract_key_frames(
        self,
        video_path: str,
        work_dir: Path,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> List[Dict]:
        """
        Grab one JPEG per configured timestamp.
        Timestamps past the end of the video produce no frame and are skipped.
        """
        frames = []
        for timestamp in self.settings.STORYLINE_FRAME_TIMESTAMPS[:self.settings.STORYLINE_MAX_FRAMES]:
            frame_path = str(Path(work_dir) / f"frame-{timestamp}s.jpg")
            stream = ffmpeg.input(video_path, ss=timestamp).output(frame_path, vframes=1, **{'q:v': 2})
            try:
                run_ffmpeg(
                    stream,
                    "key_frame",
                    timeout=self.settings.FRAME_EXTRACTION_TIMEOUT_SECONDS,
                    cmd=self.settings.FFMPEG_BINARY,
                    cancel_check=cancel_check,
                    poll_interval=self.settings.SUBPROCESS_POLL_SECONDS
                )
                verify_output(frame_path, "key_frame")
            except TransformError as e:
                logger.warning(f"Failed to extract frame at {timestamp}s: {e}")
                continue
            frames.append({"path": frame_path, "timestamp": timestamp})

        logger.info(f"Extracted {len(frames)} key frames from {video_path}")
        return frames

    def transcribe(
        self,
        video_path: str,
        work_dir: Path,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> Dict:
        """Transcript text plus timed segments; empty when the audio cannot be transcribed"""
        audio_path = str(Path(work_dir) / "storyline-audio.wav")
        try:
            self.transcription_service.extract_audio(
                video_path, audio_path, max_seconds=self.settings.STORYLINE_AUDIO_SECONDS,
                cancel_check=cancel_check
            )
            transcript = self.transcription_service.transcribe_words(audio_path, cancel_check=cancel_check)
        except TransformCancelledError:
            raise
        except Exception as e:
            logger.warning(f"Storyline transcription unavailable: {e}")
            return {"text": "", "segments": []}
        finally:
            Path(audio_path).unlink(missing_ok=True)

        segments = group_words_into_captions(transcript["words"], self.settings.CAPTION_MAX_WORDS)
        return {"text": transcript["text"], "segments": [s.model_dump() for s in segments]}

    async def _describe_frame(self, client: LLMClient, frame: Dict) -> Dict:
        image = base64.b64encode(Path(frame["path"]).read_bytes()).decode("ascii")
        try:
            analysis = await client.generate_json([
                {"role": "system", "content": FRAME_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "text",
                            "text": f"Analyze this video frame captured at {frame['timestamp']} seconds."
                        },
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:image/jpeg;base64,{image}"}
                        }
                    ]
                }
            ], temperature=0.3)
        except Exception as e:
            logger.error(f"Error analyzing frame at {frame['timestamp']}s: {e}")
            return frame_fallback(frame["timestamp"])
        return {**analysis, "timestamp": frame["timestamp"]}

    async def _generate(self, frames: List[Dict], transcript: Dict) -> StorylineBreakdown:
        client = LLMClient(self.settings, transport=self.transport)
        try:
            frame_notes = await asyncio.gather(*(self._describe_frame(client, frame) for frame in frames))

            segment_lines = "\n".join(
                f"{s['start']}s-{s['end']}s: {s['text']}" for s in transcript["segments"]
            ) or "No segments available"
            analysis = await client.generate_json([
                {"role": "system", "content": STORYLINE_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        "Analyze this video content:\n\n"
                        f"AUDIO TRANSCRIPTION:\n{transcript['text'] or '(no speech)'}\n\n"
                        f"VISUAL FRAME ANALYSIS:\n{json.dumps(frame_notes, indent=2)}\n\n"
                        f"SEGMENT TIMESTAMPS:\n{segment_lines}\n\n"
                        "Create a detailed storyline breakdown that combines both visual and audio elements."
                    )
                }
            ], temperature=0.4, max_tokens=2000)
            return StorylineBreakdown.from_llm(analysis)
        except Exception as e:
            raise StorylineUnavailableError(f"Storyline generation failed: {e}") from e
        finally:
            await client.close()

    def analyze(
        self,
        source: str,
        work_dir: Path,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> StorylineBreakdown:
        """
        Build a storyline breakdown for a local file or http(s) URL.
        Frames and audio are written to work_dir; the caller removes it.
        """
        if not self.settings.LLM_API_KEY:
            raise LLMNotConfiguredError("LLM_API_KEY is not set")

        logger.info(f"Starting storyline analysis for {source}")
        video_path = StorageService.fetch_source(
            source, work_dir, timeout=self.settings.DOWNLOAD_TIMEOUT_SECONDS, cancel_check=cancel_check
        )

        frames = self.extract_key_frames(video_path, work_dir, cancel_check=cancel_check)
        if not frames:
            raise StorylineUnavailableError("No frames could be extracted from the video")
        transcript = self.transcribe(video_path, work_dir, cancel_check=cancel_check)

        breakdown = asyncio.run(self._generate(frames, transcript))
        logger.info(f"Storyline analysis completed: {breakdown.title} ({len(breakdown.scenes)} scenes)")
        return breakdown
