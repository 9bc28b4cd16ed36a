"""
Processing Job Model
One row per repair attempt; the pipeline state machine lives in services/pipeline.py
"""
from sqlalchemy import (
    Column, String, Integer, Boolean, Text, DateTime, ForeignKey, Index, text
)
from sqlalchemy.orm import relationship
from reelfix.database import Base
from datetime import datetime
import enum
import uuid

class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)
ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)

class PipelineStage(str, enum.Enum):
    """Values persisted in ProcessingJob.current_step, in pipeline order"""
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    ANALYZING = "analyzing"
    FIXING_CUTS = "fixing_cuts"
    FIXING_AUDIO = "fixing_audio"
    REMOVING_WIND_NOISE = "removing_wind_noise"
    RECOVERING_FRAMES = "recovering_frames"
    ADDING_CAPTIONS = "adding_captions"
    EXPORTING = "exporting"

# Fixed checkpoints reported to polling clients
STAGE_PROGRESS = {
    PipelineStage.QUEUED: 0,
    PipelineStage.DOWNLOADING: 5,
    PipelineStage.ANALYZING: 10,
    PipelineStage.FIXING_CUTS: 25,
    PipelineStage.FIXING_AUDIO: 40,
    PipelineStage.REMOVING_WIND_NOISE: 55,
    PipelineStage.RECOVERING_FRAMES: 70,
    PipelineStage.ADDING_CAPTIONS: 85,
    PipelineStage.EXPORTING: 95,
}
COMPLETED_PROGRESS = 100

_active_predicate = text("status IN ('pending', 'processing')")

class ProcessingJob(Base):
    __tablename__ = "processing_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    video_id = Column(String(36), ForeignKey('videos.id', ondelete="CASCADE"), nullable=False)

    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    progress = Column(Integer, nullable=False, default=0)  # 0-100, never decreases
    current_step = Column(String(50), default=PipelineStage.QUEUED.value)  # NULL once terminal
    error_message = Column(Text)
    estimated_time_remaining = Column(Integer)  # seconds
    cancel_requested = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    video = relationship("Video", back_populates="jobs")

    __table_args__ = (
        Index('idx_job_video_created', 'video_id', 'created_at'),
        # At most one pending/processing job per video
        Index(
            'uq_job_active_video', 'video_id',
            unique=True,
            sqlite_where=_active_predicate,
            postgresql_where=_active_predicate
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def to_status_dict(self) -> dict:
        """Poll contract returned to clients"""
        return {
            "video_id": self.video_id,
            "job_id": self.id,
            "status": self.status,
            "progress": self.progress,
            "current_step": self.current_step,
            "error_message": self.error_message,
            "estimated_time_remaining": self.estimated_time_remaining,
        }

    def __repr__(self):
        return f"<ProcessingJob(id={self.id}, video_id={self.video_id}, status={self.status}, progress={self.progress})>"
