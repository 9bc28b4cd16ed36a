from sqlalchemy import Column, String, Boolean, BigInteger, DateTime, Index
from reelfix.database import Base
from datetime import datetime
import uuid

AUTO_BACKUP_SUFFIX = " (Auto-backup)"
DRAFT_COPY_SUFFIX = " (Draft Copy)"

class Draft(Base):
    """Backup copy of a processed video; lives independently of the source video"""
    __tablename__ = "drafts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(50))

    file_name = Column(String(255), nullable=False)
    file_path = Column(String(1000), nullable=False)
    file_size = Column(BigInteger, nullable=False, default=0)
    is_auto_saved = Column(Boolean, nullable=False, default=True)

    # Plain column, not a foreign key: deleting the video must not touch drafts
    source_video_id = Column(String(36))

    last_modified = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_draft_user_id', 'user_id'),
        Index('idx_draft_source_video', 'source_video_id'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "file_name": self.file_name,
            "file_path": self.file_path,
            "file_size": self.file_size,
            "is_auto_saved": self.is_auto_saved,
            "source_video_id": self.source_video_id,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
