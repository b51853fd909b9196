import os
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_EXTENSIONS = [".wav", ".mp3", ".flac", ".m4a", ".ogg", ".aac", ".aiff"]


def _default_workers() -> int:
    return os.cpu_count() or 1


def normalize_extension(ext: str) -> str:
    ext = ext.strip().lower()
    return ext if ext.startswith(".") else f".{ext}"


class GeneralConfig(BaseModel):
    output_dir: Optional[str] = None
    workers: int = Field(default_factory=_default_workers, gt=0)
    queue_capacity: int = Field(default=1024, ge=1)
    channel_capacity: int = Field(default=256, ge=1)
    state_file: Optional[str] = None
    shutdown_grace_seconds: float = Field(default=30.0, ge=0.0)
    fingerprint: Literal["stat", "sha256"] = "stat"
    retry_failed: bool = False
    log_path: Optional[str] = None
    debug: bool = False


class WatchConfig(BaseModel):
    root_dir: Optional[str] = None
    extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    recursive: bool = True
    debounce_seconds: float = Field(default=2.0, gt=0.0)
    rescan_interval_seconds: float = Field(default=30.0, gt=0.0)
    use_polling: bool = False

    @field_validator("extensions")
    @classmethod
    def validate_extensions(cls, v: List[str]) -> List[str]:
        normalized = [normalize_extension(ext) for ext in v if ext.strip()]
        if not normalized:
            raise ValueError("extensions must contain at least one entry")
        if ".tmp" in normalized:
            raise ValueError(".tmp is reserved for in-progress encoder output")
        return normalized


class EncoderConfig(BaseModel):
    executable: str = "ffmpeg"
    options: List[str] = Field(default_factory=lambda: ["-vn", "-c:a", "libmp3lame", "-q:a", "2"])
    output_extension: str = ".mp3"
    output_format: str = "mp3"
    # Replaces the built-in ffmpeg argument layout when set. Placeholders:
    # {input}, {output}, {format}; a bare "{options}" item expands to `options`.
    command_template: Optional[List[str]] = None
    timeout_seconds: float = Field(default=600.0, gt=0.0)
    transient_exit_codes: List[int] = Field(default_factory=lambda: [75, 137])
    estimate_bytes_per_second: int = Field(default=4_000_000, gt=0)

    @field_validator("output_extension")
    @classmethod
    def validate_output_extension(cls, v: str) -> str:
        ext = normalize_extension(v)
        if ext == ".tmp":
            raise ValueError(".tmp is reserved for in-progress encoder output")
        return ext


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0.0)
    factor: float = Field(default=2.0, ge=1.0)
    max_delay_seconds: float = Field(default=60.0, ge=0.0)

    @model_validator(mode="after")
    def validate_delays(self):
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows failed attempt number `attempt` (1-based)."""
        exponent = max(0, attempt - 1)
        return min(self.base_delay_seconds * (self.factor ** exponent), self.max_delay_seconds)


class ReporterConfig(BaseModel):
    url: Optional[str] = None
    timeout_seconds: float = Field(default=10.0, gt=0.0)
    max_retries: int = Field(default=3, ge=0)
    backoff_seconds: float = Field(default=0.5, ge=0.0)
    queue_capacity: int = Field(default=256, ge=1)


class UiConfig(BaseModel):
    """Dashboard configuration."""
    enabled: bool = True
    refresh_per_second: float = Field(default=4.0, gt=0.0, le=30.0)
    active_jobs_max_display: int = Field(default=8, ge=1, le=32)


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    reporter: ReporterConfig = Field(default_factory=ReporterConfig)
    ui: UiConfig = Field(default_factory=UiConfig)
