import os
import stat
import tempfile
from pathlib import Path

# Settings are read once at import time; point them at a throwaway tree first
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="reelfix-tests-"))
os.environ["STORAGE_PATH"] = str(_TEST_ROOT / "storage")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT / 'reelfix-test.db'}"
os.environ["LLM_API_KEY"] = ""
os.environ["ENABLE_CAPTIONS"] = "false"

import pytest
from reelfix.config import get_settings
from reelfix.database import Base, SessionLocal, engine
from reelfix.models import (
    Video, VideoStatus, ProcessingJob, JobStatus, Draft, AUTO_BACKUP_SUFFIX
)

FAKE_FFMPEG = """#!/bin/sh
# Stand-in for ffmpeg: input follows -i, output is the last argument other than -y
input=""
output=""
prev=""
for arg in "$@"; do
    if [ "$prev" = "-i" ]; then input="$arg"; fi
    if [ "$arg" != "-y" ]; then output="$arg"; fi
    prev="$arg"
done

# Lets tests check that a killed process is really gone
if [ -n "$FAKE_FFMPEG_PIDFILE" ]; then echo $$ >> "$FAKE_FFMPEG_PIDFILE"; fi

case "${FAKE_FFMPEG_MODE:-copy}" in
    fail)
        echo "Invalid data found when processing input" >&2
        exit 1
        ;;
    hang)
        exec sleep 30
        ;;
    empty)
        : > "$output"
        exit 0
        ;;
    *)
        cat "$input" > "$output"
        printf 'x' >> "$output"
        exit 0
        ;;
esac
"""


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def fake_ffmpeg(tmp_path):
    script = tmp_path / "fake-ffmpeg"
    script.write_text(FAKE_FFMPEG)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


@pytest.fixture
def make_video(db, settings):
    """Create a Video row backed by a real upload file"""

    def _make(
        content: bytes = b"original-video-bytes",
        filename: str = "clip.mp4",
        user_id: str = "user-1",
        status: str = VideoStatus.UPLOADED.value,
        original_path: str = None
    ) -> Video:
        video = Video(
            user_id=user_id,
            original_filename=filename,
            original_path="pending",
            file_size=len(content),
            status=status
        )
        db.add(video)
        db.flush()

        if original_path is None:
            upload_dir = settings.UPLOAD_DIR / video.id
            upload_dir.mkdir(parents=True, exist_ok=True)
            upload = upload_dir / filename
            upload.write_bytes(content)
            original_path = str(upload)

        video.original_path = original_path
        db.commit()
        return video

    return _make


@pytest.fixture
def make_completed_video(db, settings, make_video):
    """A video that went through the pipeline, with a processed file and an auto-backup draft"""

    def _make(content: bytes = bytes(range(256)) * 4, filename: str = "clip.mp4", user_id: str = "user-1"):
        video = make_video(filename=filename, user_id=user_id)

        processed_dir = settings.PROCESSED_DIR / video.id
        processed_dir.mkdir(parents=True, exist_ok=True)
        processed = processed_dir / "processed-test.mp4"
        processed.write_bytes(content)

        video.status = VideoStatus.COMPLETED.value
        video.processed_file_path = str(processed)
        db.add(ProcessingJob(
            video_id=video.id,
            status=JobStatus.COMPLETED.value,
            progress=100,
            current_step=None
        ))
        db.add(Draft(
            user_id=user_id,
            file_name=f"{filename}{AUTO_BACKUP_SUFFIX}",
            file_path=str(processed),
            file_size=len(content),
            is_auto_saved=True,
            source_video_id=video.id
        ))
        db.commit()
        return video

    return _make
