"""Application configuration."""
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8"
    )

    # App settings
    app_name: str = "ShortSmith"
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 10000
    service_token: str = ""

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/shortsmith.db"

    # Data directories
    data_dir: Path = Path("./data")
    processing_dir: Path = Path("./data/processing")
    output_dir: Path = Path("./data/output")
    stale_file_max_age_seconds: float = 6 * 3600

    # External tools
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    ytdlp_path: str = "yt-dlp"

    # Job lifecycle
    job_timeout_seconds: float = 600.0
    estimated_completion_seconds: int = 300

    # Rate governor (per upstream domain)
    rate_max_requests: int = 5
    rate_window_seconds: float = 60.0
    rate_base_backoff_seconds: float = 5.0
    rate_max_backoff_seconds: float = 300.0
    rate_bot_backoff_seconds: float = 30.0
    rate_max_global_backoff_seconds: float = 1800.0

    # Acquisition
    preflight_enabled: bool = True
    preflight_timeout_seconds: float = 10.0
    strategy_timeout_seconds: float = 600.0
    info_timeout_seconds: float = 60.0
    attempts_per_strategy: int = 2
    strategy_retry_delay_seconds: float = 3.0
    admission_retries: int = 3
    max_admission_wait_seconds: float = 120.0
    bot_delay_base_seconds: float = 15.0
    bot_delay_max_seconds: float = 120.0
    bot_delay_jitter_seconds: float = 10.0
    user_agents: List[str] = [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    ]

    # Source policy
    min_source_seconds: float = 60.0
    min_source_width: int = 480
    min_source_height: int = 360

    # Subscription tiers
    free_max_shorts: int = 2
    free_max_duration_seconds: float = 600.0
    free_max_size_mb: float = 150.0
    premium_max_shorts: int = 8
    premium_max_duration_seconds: float = 1800.0
    premium_max_size_mb: float = 750.0
    watermark_text: str = "@ShortSmith"

    # Segmentation
    segment_seconds: float = 60.0
    segment_start_margin_seconds: float = 10.0
    segment_end_margin_seconds: float = 10.0
    segment_jitter_seconds: float = 5.0
    segment_concurrency: int = 2
    segment_timeout_seconds: float = 300.0

    # Export settings
    export_video_codec: str = "libx264"
    export_video_preset: str = "medium"
    export_video_crf: int = 20
    export_audio_codec: str = "aac"
    export_audio_bitrate: str = "128k"

    # Thumbnail settings
    thumbnail_width: int = 854
    thumbnail_height: int = 480
    thumbnail_offset_seconds: float = 5.0
    thumbnail_timeout_seconds: float = 30.0

    # Object storage (S3 compatible)
    storage_bucket: str = "processed-shorts"
    storage_endpoint_url: Optional[str] = None
    storage_region: str = "auto"
    storage_access_key_id: Optional[str] = None
    storage_secret_access_key: Optional[str] = None
    storage_public_base_url: Optional[str] = None
    storage_url_expiry_seconds: int = 7 * 24 * 3600
    upload_attempts: int = 3
    upload_retry_delay_seconds: float = 2.0

    # Webhook callbacks
    webhook_attempts: int = 5
    webhook_delays_seconds: List[float] = [1.0, 2.0, 5.0, 10.0, 30.0]
    webhook_timeout_seconds: float = 15.0
    webhook_user_agent: str = "ShortSmith/1.0"


settings = Settings()

# Ensure directories exist
settings.data_dir.mkdir(parents=True, exist_ok=True)
settings.processing_dir.mkdir(parents=True, exist_ok=True)
settings.output_dir.mkdir(parents=True, exist_ok=True)
