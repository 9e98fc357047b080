"""Configuration management for the identity verification service."""

from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    # Server configuration
    port: int = 8000
    host: str = "0.0.0.0"

    # Face comparator configuration
    comparator_url: str = "http://localhost:9000"
    comparator_timeout: float = 30.0
    match_threshold: int = 60

    # Image preprocessing
    enhance_target_size: int = 400
    enhance_contrast: float = 1.1
    transport_max_dimension: int = 1024
    transport_target_bytes: int = 500 * 1024
    transport_start_quality: int = 90
    transport_quality_step: int = 10
    transport_min_quality: int = 30

    # Uploads
    max_upload_bytes: int = 3 * 1024 * 1024
    min_upload_bytes: int = 1024

    # Camera capture
    camera_index: int = 0
    camera_permission_probe: bool = True
    selfie_width: int = 320
    selfie_height: int = 240
    document_width: int = 400
    document_height: int = 300

    # Verification sessions
    session_idle_seconds: float = 15 * 60
    session_sweep_seconds: float = 60

    # Video recording
    video_min_seconds: int = 5
    video_max_seconds: int = 7
    video_width: int = 320
    video_height: int = 240
    video_fps: int = 15
    video_bitrate: str = "250k"

    # Submission delivery (SMTP)
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 465
    smtp_use_tls: bool = True
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    smtp_timeout: float = 30.0
    mail_from_name: str = "Identity Verification"
    mail_to: Optional[str] = None
    max_submission_bytes: int = 20 * 1024 * 1024

    # HTTP
    max_request_bytes: int = 25 * 1024 * 1024

    # Observability
    otlp_endpoint: Optional[str] = None
    otel_console_export: bool = False

    # Logging configuration
    log_level: str = "INFO"

    @field_validator('comparator_url')
    @classmethod
    def validate_comparator_url(cls, v):
        if not v.startswith(('http://', 'https://')):
            raise ValueError('COMPARATOR_URL must be a valid HTTP/HTTPS URL')
        return v.rstrip('/')

    @field_validator('match_threshold')
    @classmethod
    def validate_match_threshold(cls, v):
        if not 0 <= v <= 100:
            raise ValueError('MATCH_THRESHOLD must be between 0 and 100')
        return v

    @field_validator('transport_start_quality', 'transport_min_quality')
    @classmethod
    def validate_quality(cls, v):
        if not 1 <= v <= 95:
            raise ValueError('JPEG quality must be between 1 and 95')
        return v

    @field_validator('transport_quality_step')
    @classmethod
    def validate_quality_step(cls, v):
        if v <= 0:
            raise ValueError('TRANSPORT_QUALITY_STEP must be positive')
        return v


# Global settings instance
settings = Settings()
