"""Application configuration."""
from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CLIPFORGE_",
    )

    # App settings
    app_name: str = "ClipForge"
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/clipforge.db"

    # Data directories
    data_dir: Path = Path("./data")
    work_dir: Path = Path("./data/work")  # Per-job scratch directories
    assets_dir: Path = Path("./data/assets")  # Already-stored source uploads
    storage_dir: Path = Path("./data/storage")  # Published clips and thumbnails
    public_base_url: str = "http://localhost:8000/media"

    # FFmpeg settings
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # yt-dlp settings
    ytdlp_path: str = "yt-dlp"

    # Timeouts (seconds)
    source_timeout_seconds: float = 900.0
    encode_timeout_seconds: float = 600.0
    upload_timeout_seconds: float = 120.0
    analyzer_timeout_seconds: float = 300.0

    # Subject tracking analyzer (external service, disabled when unset)
    tracking_analyzer_url: Optional[str] = None

    # Job execution
    worker_count: int = 1
    max_retries: int = 3
    default_plan_code: str = "free"

    # Thumbnail settings
    thumbnail_format: str = "jpg"

    def ensure_directories(self) -> None:
        """Create the data directories used by the service."""
        for path in (self.data_dir, self.work_dir, self.assets_dir, self.storage_dir):
            path.mkdir(parents=True, exist_ok=True)


settings = Settings()
