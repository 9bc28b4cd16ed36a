from pathlib import Path
from typing import Callable, List, Optional
import ffmpeg
from reelfix.config import get_settings, Settings
from reelfix.models import CaptionResult, CaptionSegment
from reelfix.services.media_transforms import run_ffmpeg, verify_output, TransformCancelledError
import logging

logger = logging.getLogger(__name__)

SENTENCE_ENDINGS = (".", "!", "?")


def group_words_into_captions(words: List[dict], max_words: int = 10) -> List[CaptionSegment]:
    """
    Convert word-level timestamps to caption segments.
    A segment ends on sentence punctuation, every `max_words` words, or at the last word.
    """
    segments = []
    current = []
    segment_start = 0.0

    for index, word in enumerate(words):
        if not current:
            segment_start = word["start"]
        current.append(word["word"].strip())

        is_last = index == len(words) - 1
        ends_sentence = any(mark in word["word"] for mark in SENTENCE_ENDINGS)
        if ends_sentence or len(current) >= max_words or is_last:
            segments.append(CaptionSegment(
                start=segment_start,
                end=word["end"],
                text=" ".join(w for w in current if w)
            ))
            current = []

    return segments


class TranscriptionService:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._model = None

    @property
    def model(self):
        # Loaded on first use: importing faster-whisper pulls in ctranslate2
        if self._model is None:
            from faster_whisper import WhisperModel
            self._model = WhisperModel(
                self.settings.WHISPER_MODEL,
                device=self.settings.WHISPER_DEVICE,
                compute_type=self.settings.WHISPER_COMPUTE_TYPE
            )
            logger.info(f"TranscriptionService initialized with Whisper {self.settings.WHISPER_MODEL} model")
        return self._model

    def extract_audio(
        self,
        video_path: str,
        output_path: str,
        max_seconds: Optional[int] = None,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> str:
        """Extract mono 16kHz WAV (Whisper's preferred input)"""
        input_kwargs = {}
        if max_seconds:
            input_kwargs["t"] = max_seconds

        stream = ffmpeg.input(video_path, **input_kwargs).output(
            output_path,
            vn=None,
            acodec='pcm_s16le',  # 16-bit PCM
            ac=1,  # Mono channel
            ar='16000'  # 16kHz sample rate
        )
        logger.info(f"Extracting audio from {video_path} to {output_path}")
        run_ffmpeg(stream, "audio_extraction", timeout=self.settings.CAPTIONS_TIMEOUT_SECONDS,
                   cmd=self.settings.FFMPEG_BINARY, cancel_check=cancel_check,
                   poll_interval=self.settings.SUBPROCESS_POLL_SECONDS)
        verify_output(output_path, "audio_extraction")
        return output_path

    def transcribe_words(self, audio_path: str, cancel_check: Optional[Callable[[], bool]] = None) -> dict:
        """
        Transcribe audio with word timestamps.
        Returns: {text: str, words: [{word, start, end}], language: str}
        """
        segments, info = self.model.transcribe(
            str(audio_path),
            beam_size=5,
            word_timestamps=True
        )

        text_parts = []
        words = []
        # faster-whisper decodes lazily, one segment per iteration
        for segment in segments:
            if cancel_check is not None and cancel_check():
                raise TransformCancelledError("transcription")
            text_parts.append(segment.text.strip())
            for word in segment.words or []:
                words.append({"word": word.word, "start": word.start, "end": word.end})

        return {
            "text": " ".join(text_parts).strip(),
            "words": words,
            "language": getattr(info, "language", None)
        }

    def generate_captions(
        self,
        video_path: str,
        work_dir: Path,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> CaptionResult:
        """Transcribe the video's audio into sentence-level caption segments"""
        audio_path = self.extract_audio(
            video_path, str(Path(work_dir) / "captions-audio.wav"), cancel_check=cancel_check
        )
        try:
            transcript = self.transcribe_words(audio_path, cancel_check=cancel_check)
        finally:
            Path(audio_path).unlink(missing_ok=True)

        segments = group_words_into_captions(transcript["words"], self.settings.CAPTION_MAX_WORDS)
        logger.info(f"Generated {len(segments)} caption segments for {video_path}")
        return CaptionResult(text=transcript["text"], segments=segments)
