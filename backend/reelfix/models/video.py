from sqlalchemy import (
    Column, String, JSON, BigInteger, Index, DateTime
)
from sqlalchemy.orm import relationship
from reelfix.database import Base
from datetime import datetime
import enum
import uuid

class VideoStatus(str, enum.Enum):
    UPLOADED = "uploaded"       # File received, pipeline not started
    PROCESSING = "processing"   # Repair pipeline running
    COMPLETED = "completed"     # processed_file_path is available
    FAILED = "failed"           # Pipeline aborted, no processed artifact

class Video(Base):
    __tablename__ = "videos"

    # Primary identification
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(50))  # Owner reference (auth lives outside this service)

    # File information
    original_filename = Column(String(255), nullable=False)
    original_path = Column(String(1000), nullable=False)  # Local path or http(s) URL
    processed_file_path = Column(String(1000))  # Set only when status = COMPLETED
    file_size = Column(BigInteger, nullable=False, default=0)  # bytes

    status = Column(String(20), nullable=False, default=VideoStatus.UPLOADED.value)

    # Analysis and repair results
    issues = Column(JSON)          # DefectReport.model_dump()
    fixes_applied = Column(JSON)   # FixesApplied.model_dump()
    captions = Column(JSON)        # CaptionResult.model_dump()
    storyline = Column(JSON)       # StorylineBreakdown.model_dump(), generated on request

    processing_started_at = Column(DateTime)
    processing_completed_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Deleting a video removes its jobs; drafts are independent
    jobs = relationship(
        "ProcessingJob",
        back_populates="video",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ProcessingJob.created_at"
    )

    __table_args__ = (
        Index('idx_video_status', 'status'),
        Index('idx_video_user_id', 'user_id'),
        Index('idx_video_created_at', 'created_at'),
    )

    def __repr__(self):
        return f"<Video(id={self.id}, status={self.status})>"
