"""Platform-specific requirements for rendered clips."""
from dataclasses import dataclass
from typing import Dict

from clipforge.pipeline.options import Platform


@dataclass(frozen=True)
class PlatformConfig:
    """Upload constraints and look for one platform."""
    platform: Platform
    max_duration: float  # seconds
    max_file_size_mb: int
    aspect_ratio: tuple  # (width, height)
    frame_rate: int
    enhance_filters: tuple  # ((filter_name, ((key, value), ...)), ...)


_SHARPEN = ("unsharp", (("luma_msize_x", "5"), ("luma_msize_y", "5"), ("luma_amount", "1.0"),
                        ("chroma_msize_x", "5"), ("chroma_msize_y", "5"), ("chroma_amount", "0.0")))


PLATFORM_SPECS: Dict[Platform, PlatformConfig] = {
    Platform.TIKTOK: PlatformConfig(
        platform=Platform.TIKTOK,
        max_duration=60,
        max_file_size_mb=287,
        aspect_ratio=(9, 16),
        frame_rate=30,
        enhance_filters=(
            _SHARPEN,
            ("eq", (("contrast", "1.1"), ("brightness", "0.02"), ("saturation", "1.1"))),
        ),
    ),
    Platform.YOUTUBE_SHORTS: PlatformConfig(
        platform=Platform.YOUTUBE_SHORTS,
        max_duration=60,
        max_file_size_mb=256,
        aspect_ratio=(9, 16),
        frame_rate=30,
        enhance_filters=(_SHARPEN,),
    ),
    Platform.INSTAGRAM_REELS: PlatformConfig(
        platform=Platform.INSTAGRAM_REELS,
        max_duration=90,
        max_file_size_mb=250,
        aspect_ratio=(9, 16),
        frame_rate=30,
        enhance_filters=(
            _SHARPEN,
            ("eq", (("contrast", "1.05"), ("saturation", "1.05"))),
        ),
    ),
}


def get_platform_config(platform) -> PlatformConfig:
    """Look up a platform by enum or value."""
    try:
        return PLATFORM_SPECS[Platform(platform)]
    except ValueError:
        raise ValueError(f"Unknown platform: {platform}")
