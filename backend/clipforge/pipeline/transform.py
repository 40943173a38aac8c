"""Declarative per-clip transform construction.

``ClipSpecBuilder.build`` turns a segment plus job options into a
``TransformSpec``: a frozen description of crop, scale, filters, codec and
bitrate cap. Nothing here touches the filesystem or spawns processes, so the
same inputs always produce an equal spec.
"""
import math
from dataclasses import dataclass
from typing import Optional, Tuple

from clipforge.errors import InvalidSegment
from clipforge.pipeline.options import (
    ClipSegment,
    DEFAULT_WATERMARK,
    OutputFormat,
    ProcessingOptions,
    Quality,
    Resolution,
    WatermarkConfig,
    WatermarkPosition,
)
from clipforge.pipeline.plans import PlanLimits
from clipforge.pipeline.platforms import PlatformConfig, get_platform_config
from clipforge.pipeline.tracking import (
    CropRect,
    TrackingTimeline,
    centered_crop,
    crop_from_window,
)

AUDIO_BITRATE_KBPS = 128
SIZE_SAFETY_MARGIN = 0.9
MIN_VIDEO_BITRATE_KBPS = 500

# Vertical (9:16) output size per resolution tier
RESOLUTION_SIZES = {
    Resolution.P720: (720, 1280),
    Resolution.P1080: (1080, 1920),
    Resolution.UHD_4K: (2160, 3840),
}

AUDIO_ENHANCE_CHAIN = (
    ("volume", (("volume", "1.1"),)),
    ("dynaudnorm", ()),
    ("highpass", (("f", "80"),)),
    ("lowpass", (("f", "12000"),)),
)


@dataclass(frozen=True)
class FilterStep:
    """One filter in an ffmpeg-style chain, with ordered named parameters."""
    name: str
    params: Tuple[Tuple[str, str], ...] = ()

    def get(self, key: str) -> Optional[str]:
        for k, v in self.params:
            if k == key:
                return v
        return None

    def render(self) -> str:
        if not self.params:
            return self.name
        return f"{self.name}=" + ":".join(f"{k}={v}" for k, v in self.params)


@dataclass(frozen=True)
class CodecParams:
    """Encoder settings derived from format and quality."""
    container: str
    video_codec: str
    audio_codec: str
    audio_bitrate_kbps: int
    speed_preset: Optional[str] = None  # x264 -preset
    crf: Optional[int] = None
    video_bitrate_kbps: Optional[int] = None  # VP9 target bitrate
    deadline: Optional[str] = None  # VP9 -deadline
    pixel_format: str = "yuv420p"


@dataclass(frozen=True)
class BitrateCap:
    target_kbps: int

    @property
    def maxrate_kbps(self) -> int:
        return self.target_kbps

    @property
    def bufsize_kbps(self) -> int:
        return self.target_kbps * 2


@dataclass(frozen=True)
class TransformSpec:
    """Encoder-agnostic description of how one segment is rendered."""
    start_time: float
    end_time: float
    platform: str
    resolution: Resolution
    output_width: int
    output_height: int
    crop: CropRect
    crop_source: str  # "tracking" or "center"
    video_filters: Tuple[FilterStep, ...]
    audio_filters: Tuple[FilterStep, ...]
    codec: CodecParams
    bitrate: BitrateCap
    frame_rate: int
    watermark: bool

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def resolution_label(self) -> str:
        return f"{self.output_width}x{self.output_height}"

    def video_filtergraph(self) -> str:
        return ",".join(step.render() for step in self.video_filters)

    def audio_filtergraph(self) -> str:
        return ",".join(step.render() for step in self.audio_filters)

    def filter_names(self) -> Tuple[str, ...]:
        return tuple(step.name for step in self.video_filters)


def resolve_resolution(requested: Resolution, cap: Resolution) -> Resolution:
    """Clamp a requested resolution to the plan's ceiling."""
    requested = Resolution(requested)
    cap = Resolution(cap)
    return requested if requested.order <= cap.order else cap


def effective_watermark(options: ProcessingOptions, plan: PlanLimits) -> Optional[WatermarkConfig]:
    """Watermark to draw, or None. Plans that require a watermark override the request."""
    if not (plan.watermark_enabled or options.apply_watermark):
        return None
    return options.watermark_config or DEFAULT_WATERMARK


def restrictions_applied(options: ProcessingOptions, plan: PlanLimits) -> dict:
    """Summary of plan restrictions as they will apply to a job."""
    return {
        "watermark": effective_watermark(options, plan) is not None,
        "max_resolution": resolve_resolution(options.requested_max_resolution, plan.max_resolution).value,
        "priority": "high" if plan.priority_hint else "normal",
    }


def calculate_target_bitrate(duration_seconds: float, max_size_mb: float) -> int:
    """
    Video bitrate cap (kbps) that keeps a clip under the platform's size limit.

    Reserves a fixed 128 kbps audio budget and a 10% safety margin, and never
    goes below 500 kbps.
    """
    if duration_seconds <= 0:
        raise ValueError("Duration must be positive")
    max_bits = max_size_mb * 8 * 1024 * 1024 * SIZE_SAFETY_MARGIN
    audio_bits = AUDIO_BITRATE_KBPS * 1024 * duration_seconds
    video_kbps = math.floor((max_bits - audio_bits) / 1024 / duration_seconds)
    return max(MIN_VIDEO_BITRATE_KBPS, video_kbps)


def quality_preset(quality: Quality, output_format: OutputFormat) -> CodecParams:
    """Map a quality tier to concrete encoder parameters."""
    quality = Quality(quality)
    if OutputFormat(output_format) == OutputFormat.WEBM:
        bitrate, deadline = {
            Quality.LOW: (500, "good"),
            Quality.MEDIUM: (1000, "good"),
            Quality.HIGH: (2000, "best"),
        }[quality]
        return CodecParams(
            container="webm",
            video_codec="libvpx-vp9",
            audio_codec="libopus",
            audio_bitrate_kbps=AUDIO_BITRATE_KBPS,
            video_bitrate_kbps=bitrate,
            deadline=deadline,
        )

    preset, crf = {
        Quality.LOW: ("fast", 28),
        Quality.MEDIUM: ("medium", 23),
        Quality.HIGH: ("slower", 18),
    }[quality]
    return CodecParams(
        container="mp4",
        video_codec="libx264",
        audio_codec="aac",
        audio_bitrate_kbps=AUDIO_BITRATE_KBPS,
        speed_preset=preset,
        crf=crf,
    )


def _escape_drawtext(text: str) -> str:
    for char in ("\\", ":", "'", "%", ","):
        text = text.replace(char, "\\" + char)
    return text


def watermark_filter(config: WatermarkConfig) -> FilterStep:
    """drawtext filter for one of the five anchor positions."""
    m = config.margin
    x, y = {
        WatermarkPosition.TOP_LEFT: (f"{m}", f"{m}"),
        WatermarkPosition.TOP_RIGHT: (f"w-tw-{m}", f"{m}"),
        WatermarkPosition.BOTTOM_LEFT: (f"{m}", f"h-th-{m}"),
        WatermarkPosition.BOTTOM_RIGHT: (f"w-tw-{m}", f"h-th-{m}"),
        WatermarkPosition.CENTER: ("(w-tw)/2", "(h-th)/2"),
    }[config.position]

    params = [
        ("text", _escape_drawtext(config.text)),
        ("fontsize", str(config.font_size)),
        ("fontcolor", config.font_color),
        ("x", x),
        ("y", y),
        ("alpha", f"{config.opacity:g}"),
    ]
    if config.background_color:
        params += [
            ("box", "1"),
            ("boxcolor", config.background_color),
            ("boxborderw", str(config.padding)),
        ]
    return FilterStep("drawtext", tuple(params))


def _fit_size(crop: CropRect, width: int, height: int) -> Tuple[int, int]:
    """Aspect-preserving size of ``crop`` that fits inside width x height."""
    if crop.width * height >= crop.height * width:
        scaled_w = width
        scaled_h = crop.height * width // crop.width
    else:
        scaled_h = height
        scaled_w = crop.width * height // crop.height
    scaled_w = min(width, max(2, scaled_w // 2 * 2))
    scaled_h = min(height, max(2, scaled_h // 2 * 2))
    return scaled_w, scaled_h


class ClipSpecBuilder:
    """Builds TransformSpecs for one job's source under one plan."""

    def __init__(self, plan: PlanLimits, source_width: int, source_height: int):
        if source_width <= 0 or source_height <= 0:
            raise ValueError(f"Invalid source size {source_width}x{source_height}")
        self.plan = plan
        self.source_width = source_width
        self.source_height = source_height

    def build(
        self,
        segment: ClipSegment,
        options: ProcessingOptions,
        tracking_timeline: Optional[TrackingTimeline] = None,
        platform_config: Optional[PlatformConfig] = None,
    ) -> TransformSpec:
        """
        Build the render description for one segment.

        Raises:
            InvalidSegment: If the duration is not positive or exceeds the
                platform's maximum clip length
        """
        platform_config = platform_config or get_platform_config(segment.target_platform)
        duration = segment.end_time - segment.start_time

        if duration <= 0:
            raise InvalidSegment(
                f"Segment '{segment.title}' has non-positive duration ({duration:.2f}s)"
            )
        if duration > platform_config.max_duration:
            raise InvalidSegment(
                f"Segment '{segment.title}' is {duration:.1f}s, "
                f"max for {platform_config.platform.value} is {platform_config.max_duration:g}s"
            )

        resolution = resolve_resolution(options.requested_max_resolution, self.plan.max_resolution)
        out_w, out_h = RESOLUTION_SIZES[resolution]

        crop, crop_source = self._resolve_crop(segment, options, tracking_timeline, platform_config)

        filters = [
            FilterStep("crop", (
                ("w", str(crop.width)),
                ("h", str(crop.height)),
                ("x", str(crop.x)),
                ("y", str(crop.y)),
            )),
        ]

        scaled_w, scaled_h = _fit_size(crop, out_w, out_h)
        filters.append(FilterStep("scale", (("w", str(scaled_w)), ("h", str(scaled_h)))))
        if (scaled_w, scaled_h) != (out_w, out_h):
            filters.append(FilterStep("pad", (
                ("width", str(out_w)),
                ("height", str(out_h)),
                ("x", str((out_w - scaled_w) // 2)),
                ("y", str((out_h - scaled_h) // 2)),
                ("color", "black"),
            )))

        for name, params in platform_config.enhance_filters:
            filters.append(FilterStep(name, params))

        watermark = effective_watermark(options, self.plan)
        if watermark is not None:
            filters.append(watermark_filter(watermark))

        audio_filters = ()
        if options.enhance_audio:
            audio_filters = tuple(FilterStep(name, params) for name, params in AUDIO_ENHANCE_CHAIN)

        return TransformSpec(
            start_time=segment.start_time,
            end_time=segment.end_time,
            platform=platform_config.platform.value,
            resolution=resolution,
            output_width=out_w,
            output_height=out_h,
            crop=crop,
            crop_source=crop_source,
            video_filters=tuple(filters),
            audio_filters=audio_filters,
            codec=quality_preset(options.quality, options.format),
            bitrate=BitrateCap(calculate_target_bitrate(duration, platform_config.max_file_size_mb)),
            frame_rate=platform_config.frame_rate,
            watermark=watermark is not None,
        )

    def _resolve_crop(
        self,
        segment: ClipSegment,
        options: ProcessingOptions,
        tracking_timeline: Optional[TrackingTimeline],
        platform_config: PlatformConfig,
    ) -> Tuple[CropRect, str]:
        if tracking_timeline:
            window = tracking_timeline.window_at(
                segment.midpoint,
                min_confidence=options.tracking_options.confidence_threshold,
            )
            if window is not None:
                crop = crop_from_window(
                    window, self.source_width, self.source_height, platform_config.aspect_ratio
                )
                return crop, "tracking"
        crop = centered_crop(self.source_width, self.source_height, platform_config.aspect_ratio)
        return crop, "center"
