"""
Video repair pipeline.

Drives one processing job through a fixed stage order:

    queued -> downloading -> analyzing -> fixing_cuts -> fixing_audio
    -> removing_wind_noise -> recovering_frames -> adding_captions
    -> exporting -> completed

with `failed` reachable from any non-terminal stage.

Failure policy:
- a repair or export transform that fails keeps the previous artifact and
  the job carries on;
- download failure, an unreadable file, cancellation or any unexpected
  exception fails the whole job;
- an unavailable analysis oracle falls back to an all-clear defect report.
"""
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Tuple
from reelfix.config import get_settings, Settings
from reelfix.models import (
    PipelineStage, JobStatus, STAGE_PROGRESS,
    DefectAnalysis, FixesApplied, CaptionResult
)
from reelfix.services.job_store import (
    JobStore, VideoNotFoundError, JobAlreadyActiveError
)
from reelfix.services.media_transforms import (
    MediaTransformEngine, TransformError, TransformCancelledError, stderr_tail
)
from reelfix.services.defect_analysis import DefectAnalyzer, UnreadableMediaError
from reelfix.services.transcription_service import TranscriptionService
from reelfix.services.storage import StorageService
from reelfix.services.timeouts import run_with_timeout, StageTimeoutError
import logging

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Processing cancelled"


class PipelineCancelledError(Exception):
    pass


class PipelineOrchestrator:
    def __init__(
        self,
        store: Optional[JobStore] = None,
        engine: Optional[MediaTransformEngine] = None,
        analyzer: Optional[DefectAnalyzer] = None,
        transcription_service: Optional[TranscriptionService] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or get_settings()
        self.store = store or JobStore()
        self.engine = engine or MediaTransformEngine(self.settings)
        self.transcription_service = transcription_service or TranscriptionService(self.settings)
        self.analyzer = analyzer or DefectAnalyzer(self.settings, self.transcription_service)
        self.timeouts = self.settings.stage_timeouts()

    def process_video(self, video_id: str) -> Optional[str]:
        """
        Run the full repair pipeline for a video.
        Returns the job's terminal status, or None when no job was started.
        """
        logger.info(f"Starting video processing for ID: {video_id}")

        try:
            context = self.store.start_job(video_id)
        except VideoNotFoundError as e:
            logger.error(str(e))
            return None
        except JobAlreadyActiveError as e:
            logger.warning(f"{e}; not starting a second pipeline")
            return None

        job_id = context["job_id"]
        work_dir = StorageService.get_job_work_directory(video_id, job_id)
        started = time.monotonic()
        processed_path = None

        try:
            final_path, fixes, captions = self._run_stages(context, work_dir, started)
            processed_path = StorageService.promote_final_artifact(final_path, video_id, work_dir)
            self.store.complete(job_id, video_id, processed_path, fixes, captions)
        except (PipelineCancelledError, TransformCancelledError):
            logger.warning(f"Job {job_id} cancelled")
            StorageService.discard_processed_artifact(processed_path)
            self.store.fail(job_id, video_id, CANCELLED_MESSAGE)
            return JobStatus.FAILED.value
        except Exception as e:
            logger.exception(f"Video processing failed for {video_id}: {e}")
            StorageService.discard_processed_artifact(processed_path)
            self.store.fail(job_id, video_id, str(e) or e.__class__.__name__)
            return JobStatus.FAILED.value
        finally:
            StorageService.cleanup_work_directory(work_dir)

        logger.info(f"Processing completed for {video_id} in {time.monotonic() - started:.2f}s")

        # The processed video is already durable; a missing backup is not a failure
        try:
            self.store.create_backup_draft(video_id, processed_path)
        except Exception as e:
            logger.error(f"Failed to create backup draft for {video_id}: {e}")

        return JobStatus.COMPLETED.value

    def _run_stages(self, context: dict, work_dir: Path, started: float) -> Tuple[str, FixesApplied, Optional[CaptionResult]]:
        job_id = context["job_id"]
        video_id = context["video_id"]

        # Download: no fallback input exists yet, so failure is fatal
        self._checkpoint(job_id, PipelineStage.DOWNLOADING, started)
        source_path = self._run_bounded(
            job_id,
            PipelineStage.DOWNLOADING,
            StorageService.fetch_source,
            context["original_path"],
            work_dir,
            self.timeouts[PipelineStage.DOWNLOADING.value]
        )

        self._checkpoint(job_id, PipelineStage.ANALYZING, started)
        analysis = self._analyze(job_id, source_path, work_dir)
        self.store.record_issues(video_id, analysis.issues)
        issues = analysis.issues

        current = source_path

        current, cuts_fixed = self._repair(
            job_id, PipelineStage.FIXING_CUTS, issues.stuttered_cuts > 0, current, work_dir, started,
            lambda src, dst, **kw: self.engine.smooth_cuts(src, dst, issues.stuttered_cuts, **kw)
        )
        current, audio_fixed = self._repair(
            job_id, PipelineStage.FIXING_AUDIO, issues.audio_sync_issues, current, work_dir, started,
            self.engine.resync_audio
        )
        current, wind_removed = self._repair(
            job_id, PipelineStage.REMOVING_WIND_NOISE, issues.wind_noise, current, work_dir, started,
            self.engine.filter_wind_noise
        )
        current, frames_recovered = self._repair(
            job_id, PipelineStage.RECOVERING_FRAMES, issues.dropped_frames > 0, current, work_dir, started,
            lambda src, dst, **kw: self.engine.normalize_frame_rate(src, dst, issues.dropped_frames, **kw)
        )

        captions = self._add_captions(job_id, current, work_dir, started)

        # Export always runs; on failure the last good artifact is delivered as-is
        current, exported = self._repair(
            job_id, PipelineStage.EXPORTING, True, current, work_dir, started,
            self.engine.export_for_platforms
        )

        fixes = FixesApplied(
            stuttered_cuts_fixed=issues.stuttered_cuts if cuts_fixed else 0,
            audio_sync_fixed=audio_fixed,
            frames_recovered=issues.dropped_frames if frames_recovered else 0,
            sections_repaired=issues.corrupted_sections if exported else 0,
            wind_noise_removed=wind_removed
        )
        return current, fixes, captions

    def _checkpoint(self, job_id: str, stage: PipelineStage, started: float):
        """Check for cancellation, then persist the stage's milestone"""
        if self.store.is_cancel_requested(job_id):
            raise PipelineCancelledError(CANCELLED_MESSAGE)

        progress = STAGE_PROGRESS[stage]
        eta = None
        if progress > 0:
            elapsed = time.monotonic() - started
            eta = int(elapsed * (100 - progress) / progress)

        self.store.checkpoint(job_id, stage, progress, eta)
        logger.info(f"Job {job_id}: {stage.value} ({progress}%)")

    def _run_bounded(self, job_id: str, stage: PipelineStage, func: Callable, *args):
        """
        Run a stage that is more than one subprocess under the stage timeout.

        func receives a `cancel_check` callable that turns true once the stage
        times out or the job is cancelled; it must stop its subprocesses then.
        A failure caused by job cancellation surfaces as PipelineCancelledError.
        """
        stop = threading.Event()
        last_poll = [0.0]

        def cancel_check() -> bool:
            if stop.is_set():
                return True
            now = time.monotonic()
            # Called per download chunk; keep the job row lookups sparse
            if now - last_poll[0] >= self.settings.SUBPROCESS_POLL_SECONDS:
                last_poll[0] = now
                if self.store.is_cancel_requested(job_id):
                    stop.set()
            return stop.is_set()

        try:
            return run_with_timeout(
                stage.value,
                self.timeouts[stage.value],
                func,
                *args,
                cancel_event=stop,
                grace=self.settings.STAGE_CANCEL_GRACE_SECONDS,
                cancel_check=cancel_check
            )
        except StageTimeoutError:
            raise
        except Exception:
            if self.store.is_cancel_requested(job_id):
                raise PipelineCancelledError(CANCELLED_MESSAGE)
            raise

    def _analyze(self, job_id: str, source_path: str, work_dir: Path) -> DefectAnalysis:
        try:
            return self._run_bounded(job_id, PipelineStage.ANALYZING, self.analyzer.analyze, source_path, work_dir)
        except (UnreadableMediaError, PipelineCancelledError):
            raise
        except StageTimeoutError as e:
            logger.warning(f"{e}; continuing with default defect report")
        except Exception as e:
            logger.warning(f"Defect analysis unavailable ({e}); continuing with default defect report")
        return DefectAnalysis.conservative_default()

    def _repair(
        self,
        job_id: str,
        stage: PipelineStage,
        needed: bool,
        current: str,
        work_dir: Path,
        started: float,
        transform: Callable[..., str]
    ) -> Tuple[str, bool]:
        """
        Run one transform stage.
        Returns (artifact to carry forward, whether the stage produced output).
        """
        self._checkpoint(job_id, stage, started)

        if not needed:
            logger.info(f"{stage.value}: nothing detected, passing input through")
            return current, False

        output_path = StorageService.stage_output_path(work_dir, stage.value)
        try:
            transform(
                current,
                output_path,
                timeout=self.timeouts[stage.value],
                cancel_check=lambda: self.store.is_cancel_requested(job_id)
            )
        except TransformError as e:
            logger.warning(
                f"{stage.value} failed for job {job_id}, keeping previous artifact: {e}\n"
                f"{stderr_tail(e.stderr)}"
            )
            StorageService.discard_file(output_path)
            return current, False

        return output_path, True

    def _add_captions(self, job_id: str, current: str, work_dir: Path, started: float) -> Optional[CaptionResult]:
        self._checkpoint(job_id, PipelineStage.ADDING_CAPTIONS, started)
        if not self.settings.ENABLE_CAPTIONS:
            return None

        try:
            return self._run_bounded(
                job_id, PipelineStage.ADDING_CAPTIONS, self.transcription_service.generate_captions, current, work_dir
            )
        except PipelineCancelledError:
            raise
        except Exception as e:
            logger.warning(f"Caption generation failed for job {job_id}: {e}")
            return None
