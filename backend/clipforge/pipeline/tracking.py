"""Subject-tracking timeline and crop geometry.

The timeline comes from an external analyzer and is advisory. The centered
crop here is independent of it and is always available as the fallback.
"""
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple


def round_even(value: float) -> int:
    """Round down to an even integer (yuv420p needs even dimensions), minimum 2."""
    return max(2, int(value) // 2 * 2)


@dataclass(frozen=True)
class CropRect:
    """Pixel crop rectangle in source coordinates."""
    x: int
    y: int
    width: int
    height: int

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.width, self.height)


@dataclass(frozen=True)
class TrackingWindow:
    """Subject box (normalized 0-1 coordinates) for a span of the source."""
    start_time: float
    end_time: float
    center_x: float
    center_y: float
    width: float
    height: float
    confidence: float

    def covers(self, timestamp: float) -> bool:
        return self.start_time <= timestamp <= self.end_time


@dataclass(frozen=True)
class TrackingTimeline:
    """Piecewise list of tracking windows for one source."""
    windows: Tuple[TrackingWindow, ...] = ()

    def __len__(self) -> int:
        return len(self.windows)

    def window_at(self, timestamp: float, min_confidence: float = 0.0) -> Optional[TrackingWindow]:
        """Return the most confident window covering ``timestamp``, if any."""
        best = None
        for window in self.windows:
            if not window.covers(timestamp) or window.confidence < min_confidence:
                continue
            if best is None or window.confidence > best.confidence:
                best = window
        return best

    @classmethod
    def from_payload(cls, payload: dict) -> "TrackingTimeline":
        """
        Parse an analyzer response.

        Accepts ``{"windows": [...]}`` with snake_case keys, or the older
        ``{"trackingRegions": [...]}`` shape with camelCase keys.

        Raises:
            ValueError: If the payload or a window is malformed
        """
        if not isinstance(payload, dict):
            raise ValueError(f"Tracking payload must be an object, got {type(payload).__name__}")
        raw_windows = payload.get("windows")
        camel = False
        if raw_windows is None:
            raw_windows = payload.get("trackingRegions", [])
            camel = True
        if not isinstance(raw_windows, list):
            raise ValueError("Tracking windows must be a list")

        windows = []
        for i, raw in enumerate(raw_windows):
            try:
                if camel:
                    window = TrackingWindow(
                        start_time=float(raw["startTime"]),
                        end_time=float(raw["endTime"]),
                        center_x=float(raw["centerX"]),
                        center_y=float(raw["centerY"]),
                        width=float(raw["width"]),
                        height=float(raw["height"]),
                        confidence=float(raw.get("confidence", 1.0)),
                    )
                else:
                    window = TrackingWindow(
                        start_time=float(raw["start_time"]),
                        end_time=float(raw["end_time"]),
                        center_x=float(raw["center_x"]),
                        center_y=float(raw["center_y"]),
                        width=float(raw["width"]),
                        height=float(raw["height"]),
                        confidence=float(raw.get("confidence", 1.0)),
                    )
            except (KeyError, TypeError, ValueError) as e:
                raise ValueError(f"Malformed tracking window {i}: {e}")

            if window.end_time <= window.start_time:
                raise ValueError(f"Tracking window {i} has non-positive duration")
            for name in ("center_x", "center_y", "width", "height", "confidence"):
                value = getattr(window, name)
                if not 0.0 <= value <= 1.0:
                    raise ValueError(f"Tracking window {i}: {name}={value} outside 0-1")
            windows.append(window)

        windows.sort(key=lambda w: (w.start_time, w.end_time))
        return cls(windows=tuple(windows))


def _crop_size(source_width: int, source_height: int, aspect: Iterable[int]) -> Tuple[int, int]:
    aspect_w, aspect_h = aspect
    if source_width * aspect_h > source_height * aspect_w:
        # Source is wider than the target aspect: keep full height
        height = round_even(source_height)
        width = round_even(height * aspect_w / aspect_h)
    else:
        width = round_even(source_width)
        height = round_even(width * aspect_h / aspect_w)
    return min(width, round_even(source_width)), min(height, round_even(source_height))


def centered_crop(source_width: int, source_height: int, aspect=(9, 16)) -> CropRect:
    """Largest crop of the given aspect ratio, centered in the frame."""
    width, height = _crop_size(source_width, source_height, aspect)
    return CropRect(
        x=(source_width - width) // 2,
        y=(source_height - height) // 2,
        width=width,
        height=height,
    )


def crop_from_window(
    window: TrackingWindow,
    source_width: int,
    source_height: int,
    aspect=(9, 16),
) -> CropRect:
    """Crop of the given aspect centered on the tracked subject, kept inside the frame."""
    width, height = _crop_size(source_width, source_height, aspect)
    center_x = window.center_x * source_width
    center_y = window.center_y * source_height
    x = int(round(center_x - width / 2))
    y = int(round(center_y - height / 2))
    x = min(max(0, x), source_width - width)
    y = min(max(0, y), source_height - height)
    return CropRect(x=x, y=y, width=width, height=height)
