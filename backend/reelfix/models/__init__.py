"""
Database models and value objects for the video repair service.
"""
from reelfix.models.video import Video, VideoStatus
from reelfix.models.processing_job import (
    ProcessingJob,
    JobStatus,
    PipelineStage,
    STAGE_PROGRESS,
    COMPLETED_PROGRESS,
    TERMINAL_JOB_STATUSES,
    ACTIVE_JOB_STATUSES,
)
from reelfix.models.draft import Draft, AUTO_BACKUP_SUFFIX, DRAFT_COPY_SUFFIX
from reelfix.models.defects import (
    DefectReport,
    DefectAnalysis,
    FixesApplied,
    CaptionSegment,
    CaptionResult,
)
from reelfix.models.storyline import StorylineBreakdown, StorylineScene, StorylineCharacter

__all__ = [
    "Video",
    "VideoStatus",
    "ProcessingJob",
    "JobStatus",
    "PipelineStage",
    "STAGE_PROGRESS",
    "COMPLETED_PROGRESS",
    "TERMINAL_JOB_STATUSES",
    "ACTIVE_JOB_STATUSES",
    "Draft",
    "AUTO_BACKUP_SUFFIX",
    "DRAFT_COPY_SUFFIX",
    "DefectReport",
    "DefectAnalysis",
    "FixesApplied",
    "CaptionSegment",
    "CaptionResult",
    "StorylineBreakdown",
    "StorylineScene",
    "StorylineCharacter",
]
