from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session
from reelfix.database import get_db
from reelfix.models import Video, VideoStatus, Draft

router = APIRouter()

# Rough manual-editing time one repaired video saves
MINUTES_SAVED_PER_VIDEO = 15


def format_time_saved(minutes: int) -> str:
    hours, minutes = divmod(minutes, 60)
    if hours and minutes:
        return f"{hours}h {minutes}m"
    if hours:
        return f"{hours}h"
    return f"{minutes}m"


def count_issues_fixed(fixes_applied: dict) -> int:
    if not fixes_applied:
        return 0
    return (
        fixes_applied.get("stuttered_cuts_fixed", 0)
        + (1 if fixes_applied.get("audio_sync_fixed") else 0)
        + fixes_applied.get("frames_recovered", 0)
        + fixes_applied.get("sections_repaired", 0)
        + (1 if fixes_applied.get("wind_noise_removed") else 0)
    )


@router.get("")
async def get_stats(user_id: str = None, db: Session = Depends(get_db)):
    """Video counts by status and repair totals, for one user or the whole service"""
    status_query = db.query(Video.status, func.count(Video.id))
    fixes_query = db.query(Video.fixes_applied).filter(Video.fixes_applied.isnot(None))
    drafts_query = db.query(func.count(Draft.id))
    if user_id:
        status_query = status_query.filter(Video.user_id == user_id)
        fixes_query = fixes_query.filter(Video.user_id == user_id)
        drafts_query = drafts_query.filter(Draft.user_id == user_id)

    by_status = {status.value: 0 for status in VideoStatus}
    for status, count in status_query.group_by(Video.status).all():
        by_status[status] = count

    videos_processed = by_status[VideoStatus.COMPLETED.value]
    return {
        "user_id": user_id,
        "total_videos": sum(by_status.values()),
        "videos_by_status": by_status,
        "videos_processed": videos_processed,
        "drafts_saved": drafts_query.scalar() or 0,
        "issues_fixed": sum(count_issues_fixed(fixes) for (fixes,) in fixes_query.all()),
        "time_saved": format_time_saved(videos_processed * MINUTES_SAVED_PER_VIDEO),
    }
