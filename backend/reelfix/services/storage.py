from pathlib import Path
from typing import BinaryIO, Callable, Optional
from urllib.parse import urlparse
import os
import shutil
import uuid
import requests
from reelfix.config import get_settings
import logging

logger = logging.getLogger(__name__)
settings = get_settings()


class DownloadError(Exception):
    """The source video could not be fetched or is empty"""


class StorageService:
    """Handle file storage operations"""

    @staticmethod
    def get_video_directory(video_id: str) -> Path:
        """Get dedicated upload directory for a video"""
        path = settings.UPLOAD_DIR / video_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    @staticmethod
    def get_processed_directory(video_id: str) -> Path:
        """Get directory for processed assets"""
        path = settings.PROCESSED_DIR / video_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    @staticmethod
    def get_job_work_directory(video_id: str, job_id: str) -> Path:
        """Scratch directory for one pipeline run's intermediate artifacts"""
        path = settings.TEMP_DIR / video_id / job_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    @staticmethod
    def stage_output_path(work_dir: Path, stage: str, suffix: str = ".mp4") -> str:
        """Unique file per stage attempt; never overwrites a predecessor's output"""
        return str(work_dir / f"{stage}-{uuid.uuid4().hex[:12]}{suffix}")

    @staticmethod
    def save_upload(
        file: BinaryIO,
        video_id: str,
        filename: str
    ) -> str:
        """
        Save uploaded file
        Returns: absolute path to saved file
        """
        try:
            directory = StorageService.get_video_directory(video_id)
            # Strip any client-side directories from the name
            file_path = directory / Path(filename).name

            with open(file_path, "wb") as buffer:
                shutil.copyfileobj(file, buffer)

            logger.info(f"Saved upload: {file_path} ({os.path.getsize(file_path)} bytes)")
            return str(file_path.resolve())

        except Exception as e:
            logger.error(f"Failed to save upload: {str(e)}")
            raise

    @staticmethod
    def is_remote(source: str) -> bool:
        return urlparse(source).scheme in ("http", "https")

    @staticmethod
    def fetch_source(
        source: str,
        work_dir: Path,
        timeout: Optional[float] = None,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> str:
        """
        Make the original video available as a local file.
        Remote URLs are downloaded into the job work directory; local paths
        are verified in place (never copied, never deleted by the pipeline).
        """
        if StorageService.is_remote(source):
            return StorageService.download_video_from_url(
                source, work_dir, timeout=timeout, cancel_check=cancel_check
            )

        path = Path(source)
        if not path.exists():
            raise DownloadError(f"Source file not found: {source}")
        if path.stat().st_size == 0:
            raise DownloadError(f"Source file is empty: {source}")
        logger.info(f"Using local file path: {source}")
        return str(path)

    @staticmethod
    def download_video_from_url(
        video_url: str,
        work_dir: Path,
        timeout: Optional[float] = None,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> str:
        """
        Download video from URL (S3 or HTTP) into the work directory.

        `timeout` bounds each socket read, not the whole transfer; callers
        racing a stage deadline stop the transfer through `cancel_check`.

        Returns:
            Path to downloaded video file
        """
        suffix = Path(urlparse(video_url).path).suffix or ".mp4"
        output_path = work_dir / f"input-{uuid.uuid4().hex[:12]}{suffix}"

        logger.info(f"Downloading video from URL: {video_url[:80]}...")
        try:
            # Download with streaming to handle large files
            response = requests.get(video_url, stream=True, timeout=timeout or settings.DOWNLOAD_TIMEOUT_SECONDS)
            response.raise_for_status()

            total_size = int(response.headers.get('content-length', 0))
            downloaded = 0

            with open(output_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=8192):
                    if cancel_check is not None and cancel_check():
                        raise DownloadError(f"Download cancelled after {downloaded} bytes")
                    if chunk:
                        f.write(chunk)
                        downloaded += len(chunk)

            if downloaded == 0:
                raise DownloadError("Downloaded file is empty")

            if total_size and downloaded != total_size:
                raise DownloadError(f"Incomplete download: {downloaded} of {total_size} bytes")

            logger.info(f"Video downloaded: {output_path} ({downloaded / (1024*1024):.1f}MB)")
            return str(output_path)

        except requests.RequestException as e:
            logger.error(f"Failed to download video from URL: {e}")
            raise DownloadError(f"Download failed: {e}") from e

    @staticmethod
    def promote_final_artifact(artifact_path: str, video_id: str, work_dir: Path) -> str:
        """
        Place the pipeline's final artifact in the processed directory.
        Files produced inside the work directory are moved; anything else
        (the original upload, when every stage passed through) is copied.
        """
        source = Path(artifact_path)
        destination_dir = StorageService.get_processed_directory(video_id)
        destination = destination_dir / f"processed-{uuid.uuid4().hex[:12]}{source.suffix or '.mp4'}"

        if work_dir.resolve() in source.resolve().parents:
            shutil.move(str(source), str(destination))
        else:
            shutil.copy2(str(source), str(destination))

        logger.info(f"Final artifact for {video_id}: {destination}")
        return str(destination)

    @staticmethod
    def discard_file(path: Optional[str]):
        """Remove a failed stage's partial output, if any"""
        if not path:
            return
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")

    @staticmethod
    def discard_processed_artifact(path: Optional[str]):
        """Remove a promoted artifact that never got recorded, and its directory if now empty"""
        if not path:
            return
        StorageService.discard_file(path)
        directory = Path(path).parent
        try:
            if directory.exists() and not any(directory.iterdir()):
                directory.rmdir()
                logger.info(f"Deleted empty directory: {directory}")
        except OSError as e:
            logger.warning(f"Could not remove {directory}: {e}")

    @staticmethod
    def cleanup_work_directory(work_dir: Optional[Path]):
        if work_dir and work_dir.exists():
            shutil.rmtree(work_dir, ignore_errors=True)
            logger.info(f"Deleted work directory: {work_dir}")

    @staticmethod
    def delete_video(video_id: str, keep_paths: Optional[set] = None):
        """
        Delete all files associated with a video.
        Processed files listed in keep_paths (still referenced by drafts) survive.
        """
        keep_paths = {str(Path(p)) for p in (keep_paths or set())}

        for directory in [settings.UPLOAD_DIR, settings.TEMP_DIR]:
            video_dir = directory / video_id
            if video_dir.exists():
                shutil.rmtree(video_dir)
                logger.info(f"Deleted directory: {video_dir}")

        processed_dir = settings.PROCESSED_DIR / video_id
        if processed_dir.exists():
            for file_path in processed_dir.iterdir():
                if str(file_path) not in keep_paths:
                    file_path.unlink()
            if not any(processed_dir.iterdir()):
                processed_dir.rmdir()
