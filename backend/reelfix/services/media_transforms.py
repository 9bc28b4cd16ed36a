"""
Media transform engine.
Each corrective operation is a single ffmpeg invocation run as an isolated,
killable subprocess with a bounded execution time.
"""
import ffmpeg
import subprocess
import time
from pathlib import Path
from typing import Callable, Optional
from reelfix.config import get_settings, Settings
import logging

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 2000


class TransformError(Exception):
    """A transform did not produce a usable artifact"""

    def __init__(self, operation: str, message: str, stderr: str = ""):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.stderr = stderr


class TransformSpawnError(TransformError):
    pass


class TransformTimeoutError(TransformError):
    pass


class TransformProcessError(TransformError):
    def __init__(self, operation: str, returncode: int, stderr: str = ""):
        super().__init__(operation, f"ffmpeg exited with code {returncode}", stderr)
        self.returncode = returncode


class TransformOutputError(TransformError):
    pass


class TransformCancelledError(Exception):
    """Cancellation was requested while the subprocess was running"""

    def __init__(self, operation: str):
        super().__init__(f"{operation}: cancelled")
        self.operation = operation


def _decode(stderr: Optional[bytes]) -> str:
    if not stderr:
        return ""
    return stderr.decode("utf-8", errors="replace")


def stderr_tail(stderr: str, limit: int = STDERR_TAIL_CHARS) -> str:
    return stderr[-limit:] if stderr else ""


def run_ffmpeg(
    stream,
    operation: str,
    timeout: Optional[float] = None,
    cmd: str = "ffmpeg",
    cancel_check: Optional[Callable[[], bool]] = None,
    poll_interval: float = 0.5
) -> str:
    """
    Run an ffmpeg-python stream graph and wait for it.

    The process is killed when `timeout` expires or `cancel_check()` turns
    true. Returns the captured stderr on success.
    """
    try:
        process = stream.run_async(
            cmd=cmd,
            pipe_stdout=True,
            pipe_stderr=True,
            overwrite_output=True
        )
    except OSError as e:
        raise TransformSpawnError(operation, f"failed to start {cmd}: {e}")

    deadline = time.monotonic() + timeout if timeout else None

    while True:
        wait = poll_interval
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                process.kill()
                _, stderr = process.communicate()
                logger.warning(f"{operation} timed out after {timeout}s - process killed")
                raise TransformTimeoutError(
                    operation, f"timed out after {timeout} seconds", _decode(stderr)
                )
            wait = min(wait, remaining)

        try:
            _, stderr = process.communicate(timeout=wait)
            break
        except subprocess.TimeoutExpired:
            if cancel_check is not None and cancel_check():
                process.kill()
                process.communicate()
                logger.warning(f"{operation} cancelled - process killed")
                raise TransformCancelledError(operation)

    stderr_text = _decode(stderr)
    if process.returncode != 0:
        raise TransformProcessError(operation, process.returncode, stderr_text)
    return stderr_text


def verify_output(output_path: str, operation: str) -> int:
    """A missing or zero-byte output is a failure even when ffmpeg exited 0"""
    path = Path(output_path)
    if not path.exists():
        raise TransformOutputError(operation, f"output file does not exist: {output_path}")
    size = path.stat().st_size
    if size == 0:
        raise TransformOutputError(operation, f"output file is empty: {output_path}")
    return size


class MediaTransformEngine:
    """Corrective ffmpeg operations used by the repair pipeline"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def _execute(
        self,
        stream,
        operation: str,
        output_path: str,
        timeout: Optional[float],
        cancel_check: Optional[Callable[[], bool]]
    ) -> str:
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"{operation} command: {' '.join(stream.compile(cmd=self.settings.FFMPEG_BINARY))}")

        started = time.monotonic()
        run_ffmpeg(
            stream,
            operation,
            timeout=timeout,
            cmd=self.settings.FFMPEG_BINARY,
            cancel_check=cancel_check,
            poll_interval=self.settings.SUBPROCESS_POLL_SECONDS
        )
        size = verify_output(output_path, operation)

        logger.info(f"{operation} completed in {time.monotonic() - started:.1f}s: {output_path} ({size} bytes)")
        return output_path

    def smooth_cuts(
        self,
        input_path: str,
        output_path: str,
        cut_count: int = 0,
        timeout: Optional[float] = None,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> str:
        """Re-encode to a uniform codec/container so cut points decode cleanly"""
        logger.info(f"Smoothing {cut_count} stuttered cuts: {input_path} -> {output_path}")
        stream = ffmpeg.input(input_path).output(
            output_path,
            vcodec='libx264',
            acodec='aac',
            preset='fast'
        )
        return self._execute(
            stream, "cut_smoothing", output_path,
            timeout or self.settings.CUT_SMOOTHING_TIMEOUT_SECONDS, cancel_check
        )

    def resync_audio(
        self,
        input_path: str,
        output_path: str,
        timeout: Optional[float] = None,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> str:
        """Re-mux audio against video timestamps; video is stream-copied"""
        logger.info(f"Resyncing audio: {input_path} -> {output_path}")
        stream = ffmpeg.input(input_path).output(
            output_path,
            vcodec='copy',
            acodec='aac',
            af='aresample=async=1'
        )
        return self._execute(
            stream, "audio_resync", output_path,
            timeout or self.settings.AUDIO_RESYNC_TIMEOUT_SECONDS, cancel_check
        )

    def filter_wind_noise(
        self,
        input_path: str,
        output_path: str,
        timeout: Optional[float] = None,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> str:
        """Band-limit the audio to cut low-frequency rumble; video untouched"""
        logger.info(f"Filtering wind noise: {input_path} -> {output_path}")
        stream = ffmpeg.input(input_path).output(
            output_path,
            vcodec='copy',
            af=f'highpass=f={self.settings.WIND_HIGHPASS_HZ},lowpass=f={self.settings.WIND_LOWPASS_HZ}',
            acodec='aac',
            audio_bitrate='128k',
            movflags='+faststart'
        )
        return self._execute(
            stream, "wind_noise_filter", output_path,
            timeout or self.settings.WIND_FILTER_TIMEOUT_SECONDS, cancel_check
        )

    def normalize_frame_rate(
        self,
        input_path: str,
        output_path: str,
        dropped_frames: int = 0,
        timeout: Optional[float] = None,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> str:
        """Force a constant frame rate, duplicating frames to fill gaps; audio copied"""
        logger.info(f"Recovering {dropped_frames} dropped frames at {self.settings.TARGET_FPS}fps: {input_path} -> {output_path}")
        stream = ffmpeg.input(input_path).output(
            output_path,
            vf=f'fps={self.settings.TARGET_FPS}',
            acodec='copy'
        )
        return self._execute(
            stream, "frame_recovery", output_path,
            timeout or self.settings.FRAME_RECOVERY_TIMEOUT_SECONDS, cancel_check
        )

    def export_for_platforms(
        self,
        input_path: str,
        output_path: str,
        timeout: Optional[float] = None,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> str:
        """
        Final authoritative re-encode for social platforms and mobile browsers.
        H.264 baseline with bounded bitrate, even dimensions, constant frame
        rate and keyframe interval, fast-start and regenerated timestamps.
        """
        s = self.settings
        logger.info(f"Exporting for platforms: {input_path} -> {output_path}")
        stream = ffmpeg.input(input_path, fflags='+genpts').output(
            output_path,
            vcodec='libx264',
            preset=s.EXPORT_PRESET,
            crf=s.EXPORT_CRF,
            maxrate=s.EXPORT_MAX_BITRATE,
            bufsize=s.EXPORT_BUFFER_SIZE,
            level=s.EXPORT_VIDEO_LEVEL,
            pix_fmt='yuv420p',
            vf='scale=trunc(iw/2)*2:trunc(ih/2)*2',
            r=s.TARGET_FPS,
            g=s.EXPORT_KEYFRAME_INTERVAL,
            keyint_min=s.EXPORT_KEYFRAME_INTERVAL,
            sc_threshold=0,
            acodec='aac',
            audio_bitrate=s.EXPORT_AUDIO_BITRATE,
            ar=s.EXPORT_AUDIO_SAMPLE_RATE,
            ac=2,
            movflags='+faststart',
            avoid_negative_ts='make_zero',
            **{'profile:v': s.EXPORT_VIDEO_PROFILE, 'profile:a': 'aac_low'}
        )
        return self._execute(
            stream, "platform_export", output_path,
            timeout or s.EXPORT_TIMEOUT_SECONDS, cancel_check
        )
