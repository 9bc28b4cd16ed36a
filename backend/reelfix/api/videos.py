from fastapi import APIRouter, UploadFile, File, Depends, HTTPException, Form, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, Response, StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session
from reelfix.database import get_db
from reelfix.models import (
    Video, VideoStatus, ProcessingJob, JobStatus, Draft,
    AUTO_BACKUP_SUFFIX, DRAFT_COPY_SUFFIX
)
from reelfix.services.storage import StorageService, DownloadError
from reelfix.services.job_store import JobStore, JobAlreadyActiveError
from reelfix.services.llm_client import LLMNotConfiguredError
from reelfix.services.storyline_service import StorylineAnalyzer, StorylineUnavailableError
from reelfix.services.timeouts import run_with_timeout, StageTimeoutError
from reelfix.workers import tasks
from reelfix.config import get_settings
from pathlib import Path
from typing import Optional, Tuple
import mimetypes
import re
import threading
import uuid
import logging

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter()

STREAM_CHUNK_SIZE = 1024 * 1024
RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")


class RenameRequest(BaseModel):
    name: str


class AddToDraftsRequest(BaseModel):
    user_id: Optional[str] = None


class RangeNotSatisfiable(Exception):
    pass


def parse_range_header(header: Optional[str], file_size: int) -> Optional[Tuple[int, int]]:
    """
    Resolve a `Range: bytes=...` header to an inclusive (start, end) pair.
    Returns None for absent or malformed headers (serve the full body).
    Only the first range of a multi-range request is honoured.
    """
    if not header:
        return None

    match = RANGE_PATTERN.match(header.split(",")[0].strip())
    if not match:
        return None

    start_text, end_text = match.groups()
    if not start_text and not end_text:
        return None

    if not start_text:
        # Suffix range: the last N bytes
        length = int(end_text)
        if length == 0 or file_size == 0:
            raise RangeNotSatisfiable()
        return max(file_size - length, 0), file_size - 1

    start = int(start_text)
    end = int(end_text) if end_text else file_size - 1
    if start >= file_size or end < start:
        raise RangeNotSatisfiable()
    return start, min(end, file_size - 1)


def iter_file_range(path: Path, start: int, end: int):
    with open(path, "rb") as f:
        f.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            chunk = f.read(min(STREAM_CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


def video_to_dict(video: Video, latest_job: Optional[ProcessingJob] = None) -> dict:
    return {
        "id": video.id,
        "user_id": video.user_id,
        "filename": video.original_filename,
        "status": video.status,
        "file_size": video.file_size,
        "issues": video.issues,
        "fixes_applied": video.fixes_applied,
        "captions": video.captions,
        "storyline": video.storyline,
        "has_processed_video": bool(video.processed_file_path),
        "processing_started_at": video.processing_started_at.isoformat() if video.processing_started_at else None,
        "processing_completed_at": video.processing_completed_at.isoformat() if video.processing_completed_at else None,
        "created_at": video.created_at.isoformat() if video.created_at else None,
        "job": latest_job.to_status_dict() if latest_job else None,
    }


def get_video_or_404(db: Session, video_id: str) -> Video:
    video = db.get(Video, video_id)
    if not video:
        raise HTTPException(status_code=404, detail="Video not found")
    return video


def get_latest_job(db: Session, video_id: str) -> Optional[ProcessingJob]:
    return db.query(ProcessingJob).filter(
        ProcessingJob.video_id == video_id
    ).order_by(ProcessingJob.created_at.desc()).first()


def get_processed_file_or_404(video: Video) -> Path:
    """The processed artifact, or a 404 that clients can tell apart from a missing video"""
    path = Path(video.processed_file_path) if video.processed_file_path else None
    if video.status != VideoStatus.COMPLETED.value or not path or not path.is_file():
        raise HTTPException(
            status_code=404,
            detail={
                "error": "processed_video_unavailable",
                "message": "Processed video is not available",
                "video_id": video.id,
                "status": video.status
            }
        )
    return path


def queue_processing(video_id: str) -> str:
    """Create the pending job and hand it to the worker"""
    store = JobStore()
    job_id = store.enqueue_job(video_id)
    try:
        tasks.dispatch_processing(video_id)
    except Exception as e:
        logger.error(f"Could not dispatch processing for {video_id}: {e}")
        store.fail(job_id, video_id, f"Could not queue processing: {e}")
        raise HTTPException(status_code=503, detail="Processing queue unavailable")
    return job_id


def build_storyline(source: str, work_dir: Path) -> dict:
    """Run the storyline analysis under its timeout; frame grabs are killed if it expires"""
    stop = threading.Event()
    breakdown = run_with_timeout(
        "storyline",
        settings.STORYLINE_TIMEOUT_SECONDS,
        StorylineAnalyzer().analyze,
        source,
        work_dir,
        cancel_event=stop,
        grace=settings.STAGE_CANCEL_GRACE_SECONDS,
        cancel_check=stop.is_set
    )
    return breakdown.model_dump()


@router.get("/")
async def list_videos(
    user_id: str = None,
    status: str = None,
    skip: int = 0,
    limit: int = 20,
    db: Session = Depends(get_db)
):
    """List videos with pagination"""
    query = db.query(Video)

    if user_id:
        query = query.filter(Video.user_id == user_id)
    if status:
        query = query.filter(Video.status == status)

    total = query.count()
    videos = query.order_by(Video.created_at.desc()).offset(skip).limit(limit).all()

    return {
        "total": total,
        "skip": skip,
        "limit": limit,
        "videos": [video_to_dict(v) for v in videos]
    }


@router.post("/upload")
async def upload_video(
    file: UploadFile = File(...),
    user_id: str = Form(None),
    db: Session = Depends(get_db)
):
    """Upload a video and start the repair pipeline"""
    if not file.filename:
        raise HTTPException(status_code=400, detail="No file provided")

    file_ext = Path(file.filename).suffix.lower()
    if file_ext not in settings.ALLOWED_VIDEO_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail=f"File type not allowed. Allowed: {settings.ALLOWED_VIDEO_EXTENSIONS}"
        )

    if file.content_type and file.content_type not in settings.ALLOWED_MIME_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"MIME type not allowed: {file.content_type}"
        )

    video_id = str(uuid.uuid4())

    # Save file FIRST (before creating DB record)
    final_path = StorageService.save_upload(file.file, video_id, file.filename)
    file_size = Path(final_path).stat().st_size

    if file_size == 0 or file_size > settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024:
        StorageService.delete_video(video_id)
        if file_size == 0:
            raise HTTPException(status_code=400, detail="Uploaded file is empty")
        raise HTTPException(status_code=413, detail=f"File exceeds {settings.MAX_UPLOAD_SIZE_MB}MB limit")

    try:
        video = Video(
            id=video_id,
            user_id=user_id,
            original_filename=Path(file.filename).name,
            original_path=final_path,
            file_size=file_size,
            status=VideoStatus.UPLOADED.value
        )
        db.add(video)
        db.commit()
    except Exception as e:
        logger.error(f"Upload failed: {str(e)}")
        db.rollback()
        StorageService.delete_video(video_id)
        raise HTTPException(status_code=500, detail="Could not store video record")

    job_id = queue_processing(video_id)

    logger.info(f"Video uploaded: {video_id} ({file_size} bytes)")

    return {
        "video_id": video_id,
        "job_id": job_id,
        "filename": video.original_filename,
        "status": video.status,
        "file_size": file_size,
        "message": "Upload complete. Processing started."
    }


@router.get("/{video_id}")
async def get_video(video_id: str, db: Session = Depends(get_db)):
    video = get_video_or_404(db, video_id)
    return video_to_dict(video, get_latest_job(db, video_id))


@router.get("/{video_id}/status")
async def get_video_status(video_id: str, db: Session = Depends(get_db)):
    """Poll the latest processing job"""
    get_video_or_404(db, video_id)
    job = get_latest_job(db, video_id)
    if not job:
        raise HTTPException(status_code=404, detail="No processing job for this video")
    return job.to_status_dict()


@router.api_route("/{video_id}/stream", methods=["GET", "HEAD"])
async def stream_video(video_id: str, request: Request, db: Session = Depends(get_db)):
    """Serve the processed video with HTTP byte-range support"""
    video = get_video_or_404(db, video_id)
    path = get_processed_file_or_404(video)

    file_size = path.stat().st_size
    media_type = mimetypes.guess_type(path.name)[0] or "video/mp4"

    try:
        byte_range = parse_range_header(request.headers.get("range"), file_size)
    except RangeNotSatisfiable:
        return Response(status_code=416, headers={"Content-Range": f"bytes */{file_size}"})

    start, end = byte_range if byte_range else (0, file_size - 1)
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Length": str(end - start + 1),
    }
    status_code = 200
    if byte_range:
        status_code = 206
        headers["Content-Range"] = f"bytes {start}-{end}/{file_size}"

    if request.method == "HEAD":
        return Response(status_code=status_code, headers=headers, media_type=media_type)

    return StreamingResponse(
        iter_file_range(path, start, end),
        status_code=status_code,
        headers=headers,
        media_type=media_type
    )


@router.get("/{video_id}/download")
async def download_video(video_id: str, db: Session = Depends(get_db)):
    video = get_video_or_404(db, video_id)
    path = get_processed_file_or_404(video)

    download_name = f"{Path(video.original_filename).stem}{path.suffix}"
    return FileResponse(
        path,
        filename=download_name,
        media_type=mimetypes.guess_type(path.name)[0] or "video/mp4"
    )


@router.delete("/{video_id}")
async def delete_video(video_id: str, db: Session = Depends(get_db)):
    """Delete a video, its jobs and files. Drafts (and the files they point at) are kept."""
    video = get_video_or_404(db, video_id)

    # A running pipeline sees its job row disappear with the cascade below and
    # treats that as a cancel request; the flag also covers the window before it
    JobStore().request_cancel(video_id)

    draft_paths = {
        path for (path,) in db.query(Draft.file_path).filter(Draft.source_video_id == video_id).all()
    }

    db.delete(video)
    db.commit()

    StorageService.delete_video(video_id, keep_paths=draft_paths)
    logger.info(f"Deleted video {video_id}")

    return {"message": "Video deleted successfully", "video_id": video_id}


@router.put("/{video_id}/rename")
async def rename_video(video_id: str, request: RenameRequest, db: Session = Depends(get_db)):
    """Rename a video; its auto-backup drafts follow the new name"""
    new_name = request.name.strip()
    if not new_name:
        raise HTTPException(status_code=400, detail="Name must not be empty")

    video = get_video_or_404(db, video_id)
    video.original_filename = new_name

    renamed_drafts = db.query(Draft).filter(
        Draft.source_video_id == video_id,
        Draft.is_auto_saved.is_(True)
    ).update({Draft.file_name: f"{new_name}{AUTO_BACKUP_SUFFIX}"}, synchronize_session=False)
    db.commit()

    logger.info(f"Renamed video {video_id} to {new_name!r} ({renamed_drafts} drafts updated)")
    return video_to_dict(video)


@router.post("/{video_id}/reprocess")
async def reprocess_video(video_id: str, db: Session = Depends(get_db)):
    """Retry a failed video with a fresh job"""
    get_video_or_404(db, video_id)
    job = get_latest_job(db, video_id)
    if not job or job.status != JobStatus.FAILED.value:
        raise HTTPException(
            status_code=409,
            detail=f"Only failed videos can be reprocessed (latest job: {job.status if job else 'none'})"
        )

    try:
        job_id = queue_processing(video_id)
    except JobAlreadyActiveError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {"video_id": video_id, "job_id": job_id, "message": "Reprocessing started."}


@router.post("/{video_id}/cancel")
async def cancel_processing(video_id: str, db: Session = Depends(get_db)):
    get_video_or_404(db, video_id)
    job_id = JobStore().request_cancel(video_id)
    if not job_id:
        raise HTTPException(status_code=409, detail="No active processing job to cancel")
    return {"video_id": video_id, "job_id": job_id, "message": "Cancellation requested."}


@router.post("/{video_id}/add-to-drafts")
async def add_to_drafts(
    video_id: str,
    request: Optional[AddToDraftsRequest] = None,
    db: Session = Depends(get_db)
):
    """Save a manual draft copy of the processed video"""
    video = get_video_or_404(db, video_id)
    path = get_processed_file_or_404(video)

    draft = Draft(
        user_id=(request.user_id if request and request.user_id else video.user_id),
        file_name=f"{video.original_filename}{DRAFT_COPY_SUFFIX}",
        file_path=str(path),
        file_size=path.stat().st_size,
        is_auto_saved=False,
        source_video_id=video_id
    )
    db.add(draft)
    db.commit()

    logger.info(f"Created draft copy {draft.id} for video {video_id}")
    return draft.to_dict()


@router.post("/{video_id}/storyline")
async def analyze_storyline(video_id: str, db: Session = Depends(get_db)):
    """Generate the AI storyline breakdown; an existing breakdown is returned as-is"""
    video = get_video_or_404(db, video_id)
    if video.storyline:
        return {
            "video_id": video_id,
            "message": "Storyline analysis already exists",
            "storyline": video.storyline
        }

    # Prefer the repaired file when there is one
    source = video.processed_file_path or video.original_path
    work_dir = StorageService.get_job_work_directory(video_id, f"storyline-{uuid.uuid4().hex[:12]}")
    try:
        storyline = await run_in_threadpool(build_storyline, source, work_dir)
    except LLMNotConfiguredError:
        raise HTTPException(status_code=503, detail="Storyline analysis is not configured")
    except StageTimeoutError as e:
        logger.error(f"Storyline analysis for {video_id} timed out: {e}")
        raise HTTPException(status_code=504, detail="Storyline analysis timed out")
    except (DownloadError, StorylineUnavailableError) as e:
        logger.error(f"Storyline analysis for {video_id} failed: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to analyze video storyline: {e}")
    finally:
        StorageService.cleanup_work_directory(work_dir)

    video.storyline = storyline
    db.commit()
    logger.info(f"Storyline analysis completed for video {video_id}")

    return {
        "video_id": video_id,
        "message": "Storyline analysis completed successfully",
        "storyline": storyline
    }


@router.get("/{video_id}/storyline")
async def get_storyline(video_id: str, db: Session = Depends(get_db)):
    video = get_video_or_404(db, video_id)
    if not video.storyline:
        raise HTTPException(status_code=404, detail="Storyline breakdown not found")
    return {"video_id": video_id, "storyline": video.storyline}


@router.delete("/{video_id}/storyline")
async def delete_storyline(video_id: str, db: Session = Depends(get_db)):
    video = get_video_or_404(db, video_id)
    if not video.storyline:
        raise HTTPException(status_code=404, detail="Storyline breakdown not found")

    video.storyline = None
    db.commit()
    return {"video_id": video_id, "message": "Storyline breakdown deleted successfully"}
