"""Validated processing options and clip segments.

These are the boundary types for job submission. Unknown fields are rejected
so that a typo in a client payload fails loudly instead of being ignored.
"""
import enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Resolution(str, enum.Enum):
    """Output resolution tiers, ordered from lowest to highest."""
    P720 = "720p"
    P1080 = "1080p"
    UHD_4K = "4k"

    @property
    def order(self) -> int:
        return _RESOLUTION_ORDER.index(self)


_RESOLUTION_ORDER = [Resolution.P720, Resolution.P1080, Resolution.UHD_4K]


class Quality(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class OutputFormat(str, enum.Enum):
    MP4 = "mp4"
    WEBM = "webm"


class Platform(str, enum.Enum):
    """Supported short-form platforms."""
    TIKTOK = "tiktok"
    YOUTUBE_SHORTS = "youtube_shorts"
    INSTAGRAM_REELS = "instagram_reels"


class WatermarkPosition(str, enum.Enum):
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"
    CENTER = "center"


class WatermarkConfig(BaseModel):
    """Text watermark drawn over the clip."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    text: str = Field("Creator Clip AI", min_length=1, max_length=50)
    position: WatermarkPosition = WatermarkPosition.BOTTOM_RIGHT
    opacity: float = Field(0.7, ge=0.0, le=1.0)
    font_size: int = Field(24, ge=8, le=72)
    font_color: str = "#ffffff"
    background_color: Optional[str] = "black@0.5"  # None disables the box
    padding: int = Field(8, ge=0, le=50)
    margin: int = Field(20, ge=0, le=100)

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Watermark text cannot be empty")
        return value


DEFAULT_WATERMARK = WatermarkConfig()


class TrackingOptions(BaseModel):
    """Options forwarded to the subject-tracking analyzer."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    crop_aspect_ratio: float = Field(9 / 16, gt=0)
    confidence_threshold: float = Field(0.7, ge=0.0, le=1.0)
    tracking_smoothing: float = Field(0.8, ge=0.0, le=1.0)


class ProcessingOptions(BaseModel):
    """How every clip of a job should be rendered."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    apply_watermark: bool = False
    watermark_config: Optional[WatermarkConfig] = None
    requested_max_resolution: Resolution = Resolution.P1080
    quality: Quality = Quality.MEDIUM
    format: OutputFormat = OutputFormat.MP4
    enable_subject_tracking: bool = False
    tracking_options: TrackingOptions = Field(default_factory=TrackingOptions)
    enhance_audio: bool = False


class ClipSegment(BaseModel):
    """A requested highlight: time range, title and target platform."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    start_time: float = Field(..., ge=0)
    end_time: float
    title: str = Field("", max_length=255)
    target_platform: Platform = Platform.TIKTOK
    ai_score: Optional[float] = None  # Advisory only, never used for rendering

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def midpoint(self) -> float:
        return (self.start_time + self.end_time) / 2


class JobSubmission(BaseModel):
    """Payload accepted by the job submission endpoint."""
    model_config = ConfigDict(extra="forbid")

    source_ref: str = Field(..., min_length=1)
    options: ProcessingOptions = Field(default_factory=ProcessingOptions)
    segments: List[ClipSegment] = Field(..., min_length=1)

    @model_validator(mode="after")
    def segments_have_positive_duration(self) -> "JobSubmission":
        for i, segment in enumerate(self.segments):
            if segment.end_time <= segment.start_time:
                raise ValueError(f"Segment {i + 1}: end_time must be after start_time")
        return self
