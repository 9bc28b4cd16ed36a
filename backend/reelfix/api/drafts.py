from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from reelfix.database import get_db
from reelfix.models import Draft, Video
from reelfix.services.storage import StorageService
import logging

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/")
async def list_drafts(user_id: str = None, db: Session = Depends(get_db)):
    """List drafts, newest first"""
    query = db.query(Draft)
    if user_id:
        query = query.filter(Draft.user_id == user_id)

    drafts = query.order_by(Draft.created_at.desc()).all()
    return {"total": len(drafts), "drafts": [d.to_dict() for d in drafts]}


@router.delete("/{draft_id}")
async def delete_draft(draft_id: str, db: Session = Depends(get_db)):
    """
    Delete a draft. Its file is removed only when no other draft and no
    video still points at it.
    """
    draft = db.get(Draft, draft_id)
    if not draft:
        raise HTTPException(status_code=404, detail="Draft not found")

    file_path = draft.file_path
    db.delete(draft)
    db.commit()

    still_referenced = (
        db.query(Draft.id).filter(Draft.file_path == file_path).first() is not None
        or db.query(Video.id).filter(Video.processed_file_path == file_path).first() is not None
    )
    if not still_referenced:
        StorageService.discard_file(file_path)

    logger.info(f"Deleted draft {draft_id}")
    return {"message": "Draft deleted successfully", "draft_id": draft_id}
