from pydantic_settings import BaseSettings
from functools import lru_cache
import os
from pathlib import Path

class Settings(BaseSettings):
    # Application
    APP_NAME: str = "ReelFix Video Repair"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = int(os.getenv("PORT", 8000))

    # Security
    ALLOWED_ORIGINS: list = []  # Will be set dynamically
    MAX_UPLOAD_SIZE_MB: int = 500
    ALLOWED_VIDEO_EXTENSIONS: list = [".mp4", ".mov", ".avi", ".mkv", ".webm", ".m4v"]
    ALLOWED_MIME_TYPES: list = [
        "video/mp4", "video/quicktime", "video/x-msvideo", "video/x-matroska",
        "video/webm", "video/x-m4v", "application/octet-stream"
    ]

    # Storage
    BASE_STORAGE_PATH: Path = Path(os.getenv("STORAGE_PATH", "../storage"))
    UPLOAD_DIR: Path = Path("../storage/uploads")
    PROCESSED_DIR: Path = Path("../storage/processed")
    TEMP_DIR: Path = Path("../storage/temp")

    # Media toolchain
    FFMPEG_BINARY: str = "ffmpeg"
    FFPROBE_BINARY: str = "ffprobe"
    SUBPROCESS_POLL_SECONDS: float = 0.5  # How often a running ffmpeg checks for cancellation
    STAGE_CANCEL_GRACE_SECONDS: float = 5.0  # How long a timed-out stage gets to stop its subprocesses

    # Stage timeouts (seconds)
    DOWNLOAD_TIMEOUT_SECONDS: int = 60
    ANALYSIS_TIMEOUT_SECONDS: int = 120
    CUT_SMOOTHING_TIMEOUT_SECONDS: int = 60
    AUDIO_RESYNC_TIMEOUT_SECONDS: int = 45
    WIND_FILTER_TIMEOUT_SECONDS: int = 30
    FRAME_RECOVERY_TIMEOUT_SECONDS: int = 60
    CAPTIONS_TIMEOUT_SECONDS: int = 120
    EXPORT_TIMEOUT_SECONDS: int = 120  # Longest: full re-encode

    # Transforms
    TARGET_FPS: int = 30
    WIND_HIGHPASS_HZ: int = 200
    WIND_LOWPASS_HZ: int = 5000

    # Platform export profile
    EXPORT_VIDEO_PROFILE: str = "baseline"
    EXPORT_VIDEO_LEVEL: str = "3.1"
    EXPORT_PRESET: str = "medium"
    EXPORT_CRF: int = 28
    EXPORT_MAX_BITRATE: str = "800k"
    EXPORT_BUFFER_SIZE: str = "1600k"
    EXPORT_AUDIO_BITRATE: str = "96k"
    EXPORT_AUDIO_SAMPLE_RATE: int = 44100
    EXPORT_KEYFRAME_INTERVAL: int = 30

    # Defect analysis
    AUDIO_SYNC_TOLERANCE_SECONDS: float = 0.1
    DROPPED_FRAME_TOLERANCE: int = 2
    STUTTER_MAX_GAP_SECONDS: float = 0.5
    SCENE_THRESHOLD: float = 30.0
    WIND_SAMPLE_SECONDS: int = 30
    WIND_NOISE_CONFIDENCE_THRESHOLD: float = 0.6
    CORRUPTION_SCAN_TIMEOUT_SECONDS: int = 60
    SCENE_DETECT_CHUNK_SECONDS: float = 5.0  # Scene detection checks for cancellation between chunks

    # Storyline breakdown
    STORYLINE_FRAME_TIMESTAMPS: list = [0, 30, 60, 90, 120, 150, 180, 240]
    STORYLINE_MAX_FRAMES: int = 8
    STORYLINE_AUDIO_SECONDS: int = 300
    STORYLINE_TIMEOUT_SECONDS: int = 300
    FRAME_EXTRACTION_TIMEOUT_SECONDS: int = 30

    # Transcription / captions
    ENABLE_CAPTIONS: bool = False
    WHISPER_MODEL: str = "base"  # tiny, base, small, medium, large
    WHISPER_DEVICE: str = "cpu"
    WHISPER_COMPUTE_TYPE: str = "int8"
    CAPTION_MAX_WORDS: int = 10

    # LLM (OpenAI-compatible chat completions)
    LLM_API_KEY: str = ""
    LLM_BASE_URL: str = "https://api.openai.com/v1"
    LLM_MODEL: str = "gpt-4o"
    LLM_TIMEOUT_SECONDS: int = 60
    LLM_MAX_RETRIES: int = 3

    # Database
    DATABASE_URL: str = "sqlite:///./reelfix.db"
    DB_ECHO: bool = False

    # Redis/Celery
    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""
    CELERY_TASK_ALWAYS_EAGER: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)

        # Set up storage paths
        self.UPLOAD_DIR = self.BASE_STORAGE_PATH / "uploads"
        self.PROCESSED_DIR = self.BASE_STORAGE_PATH / "processed"
        self.TEMP_DIR = self.BASE_STORAGE_PATH / "temp"

        # Create storage directories
        for path in [self.UPLOAD_DIR, self.PROCESSED_DIR, self.TEMP_DIR]:
            path.mkdir(parents=True, exist_ok=True)

        # Set Celery URLs if not provided
        if not self.CELERY_BROKER_URL:
            self.CELERY_BROKER_URL = self.REDIS_URL
        if not self.CELERY_RESULT_BACKEND:
            self.CELERY_RESULT_BACKEND = self.REDIS_URL

        # Set CORS origins dynamically
        if self.ENVIRONMENT == "production":
            frontend_url = os.getenv("FRONTEND_URL")
            origins = []
            if frontend_url:
                # Handle both with and without protocol
                if not frontend_url.startswith("http"):
                    origins.extend([f"https://{frontend_url}", f"http://{frontend_url}"])
                else:
                    origins.append(frontend_url)
            self.ALLOWED_ORIGINS = origins if origins else ["*"]
        else:
            self.ALLOWED_ORIGINS = ["http://localhost:5173", "http://localhost:3000", "http://localhost:8000"]

    def get_database_url(self) -> str:
        # Heroku-style URLs still use the deprecated postgres:// scheme
        if self.DATABASE_URL.startswith("postgres://"):
            return self.DATABASE_URL.replace("postgres://", "postgresql://", 1)
        return self.DATABASE_URL

    def stage_timeouts(self) -> dict:
        """Timeout budget per pipeline stage, keyed by stage name"""
        return {
            "downloading": self.DOWNLOAD_TIMEOUT_SECONDS,
            "analyzing": self.ANALYSIS_TIMEOUT_SECONDS,
            "fixing_cuts": self.CUT_SMOOTHING_TIMEOUT_SECONDS,
            "fixing_audio": self.AUDIO_RESYNC_TIMEOUT_SECONDS,
            "removing_wind_noise": self.WIND_FILTER_TIMEOUT_SECONDS,
            "recovering_frames": self.FRAME_RECOVERY_TIMEOUT_SECONDS,
            "adding_captions": self.CAPTIONS_TIMEOUT_SECONDS,
            "exporting": self.EXPORT_TIMEOUT_SECONDS,
        }


@lru_cache()
def get_settings() -> Settings:
    return Settings()
