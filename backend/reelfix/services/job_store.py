"""
Job/artifact store.
All pipeline writes go through here so that each checkpoint is a single
atomic UPDATE and terminal jobs can never be modified again.
"""
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional
from sqlalchemy.exc import IntegrityError
from reelfix.database import SessionLocal
from reelfix.models import (
    Video, VideoStatus, ProcessingJob, JobStatus, PipelineStage, Draft,
    DefectReport, FixesApplied, CaptionResult,
    COMPLETED_PROGRESS, ACTIVE_JOB_STATUSES, AUTO_BACKUP_SUFFIX
)
import logging

logger = logging.getLogger(__name__)


class VideoNotFoundError(Exception):
    pass


class JobAlreadyActiveError(Exception):
    """Another pending/processing job exists for the same video"""

    def __init__(self, video_id: str):
        super().__init__(f"Video {video_id} already has an active processing job")
        self.video_id = video_id


class JobStateError(Exception):
    """A write was rejected: the job is terminal or progress would go backwards"""


class JobStore:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def enqueue_job(self, video_id: str) -> str:
        """Create a pending job so polling clients see the video as queued"""
        with self._session() as db:
            job = ProcessingJob(
                video_id=video_id,
                status=JobStatus.PENDING.value,
                progress=0,
                current_step=PipelineStage.QUEUED.value
            )
            db.add(job)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise JobAlreadyActiveError(video_id)
            logger.info(f"Queued job {job.id} for video {video_id}")
            return job.id

    def start_job(self, video_id: str) -> Dict:
        """
        Claim the video's pending job, or create one, and mark it processing.

        Returns the job id plus the video fields the pipeline needs.
        Raises VideoNotFoundError or JobAlreadyActiveError.
        """
        with self._session() as db:
            video = db.get(Video, video_id)
            if not video:
                raise VideoNotFoundError(f"Video {video_id} not found")

            now = datetime.utcnow()
            claimed = db.query(ProcessingJob).filter(
                ProcessingJob.video_id == video_id,
                ProcessingJob.status == JobStatus.PENDING.value
            ).update({
                ProcessingJob.status: JobStatus.PROCESSING.value,
                ProcessingJob.progress: 0,
                ProcessingJob.current_step: PipelineStage.QUEUED.value,
                ProcessingJob.updated_at: now
            }, synchronize_session=False)

            if claimed:
                job = db.query(ProcessingJob).filter(
                    ProcessingJob.video_id == video_id,
                    ProcessingJob.status == JobStatus.PROCESSING.value
                ).one()
            else:
                job = ProcessingJob(
                    video_id=video_id,
                    status=JobStatus.PROCESSING.value,
                    progress=0,
                    current_step=PipelineStage.QUEUED.value
                )
                db.add(job)
                try:
                    db.flush()
                except IntegrityError:
                    db.rollback()
                    raise JobAlreadyActiveError(video_id)

            video.status = VideoStatus.PROCESSING.value
            video.processed_file_path = None
            video.fixes_applied = None
            video.processing_started_at = now
            video.processing_completed_at = None

            context = {
                "job_id": job.id,
                "video_id": video.id,
                "user_id": video.user_id,
                "original_path": video.original_path,
                "original_filename": video.original_filename,
            }
            db.commit()

        logger.info(f"Started job {context['job_id']} for video {video_id}")
        return context

    def checkpoint(
        self,
        job_id: str,
        stage: PipelineStage,
        progress: int,
        estimated_time_remaining: Optional[int] = None
    ):
        """Persist (stage, progress) in one statement; rejects terminal jobs and regressions"""
        with self._session() as db:
            updated = db.query(ProcessingJob).filter(
                ProcessingJob.id == job_id,
                ProcessingJob.status == JobStatus.PROCESSING.value,
                ProcessingJob.progress <= progress
            ).update({
                ProcessingJob.current_step: stage.value,
                ProcessingJob.progress: progress,
                ProcessingJob.estimated_time_remaining: estimated_time_remaining,
                ProcessingJob.updated_at: datetime.utcnow()
            }, synchronize_session=False)
            db.commit()

        if updated != 1:
            raise JobStateError(f"Job {job_id} rejected checkpoint {stage.value}@{progress}")

    def is_cancel_requested(self, job_id: str) -> bool:
        """A job whose row is gone (its video was deleted) counts as cancelled"""
        with self._session() as db:
            flag = db.query(ProcessingJob.cancel_requested).filter(ProcessingJob.id == job_id).scalar()
            return flag is None or bool(flag)

    def request_cancel(self, video_id: str) -> Optional[str]:
        """Flag the video's active job for cooperative cancellation"""
        with self._session() as db:
            job = db.query(ProcessingJob).filter(
                ProcessingJob.video_id == video_id,
                ProcessingJob.status.in_(ACTIVE_JOB_STATUSES)
            ).first()
            if not job:
                return None
            job.cancel_requested = True
            job_id = job.id
            db.commit()
        logger.info(f"Cancellation requested for job {job_id}")
        return job_id

    def record_issues(self, video_id: str, report: DefectReport):
        with self._session() as db:
            db.query(Video).filter(Video.id == video_id).update(
                {Video.issues: report.model_dump()}, synchronize_session=False
            )
            db.commit()

    def complete(
        self,
        job_id: str,
        video_id: str,
        processed_path: str,
        fixes: FixesApplied,
        captions: Optional[CaptionResult] = None
    ):
        """Job and video reach completed together, in one transaction"""
        now = datetime.utcnow()
        with self._session() as db:
            updated = db.query(ProcessingJob).filter(
                ProcessingJob.id == job_id,
                ProcessingJob.status == JobStatus.PROCESSING.value
            ).update({
                ProcessingJob.status: JobStatus.COMPLETED.value,
                ProcessingJob.progress: COMPLETED_PROGRESS,
                ProcessingJob.current_step: None,
                ProcessingJob.estimated_time_remaining: 0,
                ProcessingJob.updated_at: now
            }, synchronize_session=False)
            if updated != 1:
                db.rollback()
                raise JobStateError(f"Job {job_id} is no longer processing; cannot complete")

            db.query(Video).filter(Video.id == video_id).update({
                Video.status: VideoStatus.COMPLETED.value,
                Video.processed_file_path: processed_path,
                Video.fixes_applied: fixes.model_dump(),
                Video.captions: captions.model_dump() if captions else None,
                Video.processing_completed_at: now
            }, synchronize_session=False)
            db.commit()

        logger.info(f"Job {job_id} completed: {processed_path}")

    def fail(self, job_id: Optional[str], video_id: str, message: str) -> bool:
        """
        Mark job and video failed. Returns False when the job was already
        terminal (nothing is written in that case).
        """
        now = datetime.utcnow()
        with self._session() as db:
            if job_id is None:
                job_id = db.query(ProcessingJob.id).filter(
                    ProcessingJob.video_id == video_id,
                    ProcessingJob.status.in_(ACTIVE_JOB_STATUSES)
                ).scalar()

            if job_id:
                updated = db.query(ProcessingJob).filter(
                    ProcessingJob.id == job_id,
                    ProcessingJob.status.in_(ACTIVE_JOB_STATUSES)
                ).update({
                    ProcessingJob.status: JobStatus.FAILED.value,
                    ProcessingJob.error_message: message[:2000],
                    ProcessingJob.current_step: None,
                    ProcessingJob.estimated_time_remaining: None,
                    ProcessingJob.updated_at: now
                }, synchronize_session=False)
                if updated != 1:
                    db.rollback()
                    logger.warning(f"Job {job_id} already terminal; not marking failed")
                    return False

            db.query(Video).filter(Video.id == video_id).update({
                Video.status: VideoStatus.FAILED.value,
                Video.processed_file_path: None,
                Video.processing_completed_at: now
            }, synchronize_session=False)
            db.commit()

        logger.error(f"Video {video_id} marked as failed: {message}")
        return True

    def create_backup_draft(self, video_id: str, file_path: str) -> str:
        with self._session() as db:
            video = db.get(Video, video_id)
            if not video:
                raise VideoNotFoundError(f"Video {video_id} not found")
            draft = Draft(
                user_id=video.user_id,
                file_name=f"{video.original_filename}{AUTO_BACKUP_SUFFIX}",
                file_path=file_path,
                file_size=Path(file_path).stat().st_size,
                is_auto_saved=True,
                source_video_id=video_id
            )
            db.add(draft)
            db.commit()
            logger.info(f"Auto-created draft backup {draft.id} for video {video_id}")
            return draft.id

    def get_latest_job(self, video_id: str) -> Optional[ProcessingJob]:
        with self._session() as db:
            return db.query(ProcessingJob).filter(
                ProcessingJob.video_id == video_id
            ).order_by(ProcessingJob.created_at.desc()).first()
