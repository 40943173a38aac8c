"""Tests for tracking timeline parsing and crop geometry."""
import pytest

from clipforge.pipeline.tracking import (
    TrackingTimeline,
    TrackingWindow,
    centered_crop,
    crop_from_window,
    round_even,
)


def test_round_even():
    assert round_even(607.5) == 606
    assert round_even(1080) == 1080
    assert round_even(1) == 2


class TestTimelinePayload:
    """Tests for TrackingTimeline.from_payload."""

    def test_snake_case_windows(self):
        timeline = TrackingTimeline.from_payload({
            "windows": [
                {"start_time": 5, "end_time": 9, "center_x": 0.4, "center_y": 0.5,
                 "width": 0.2, "height": 0.4, "confidence": 0.8},
                {"start_time": 0, "end_time": 5, "center_x": 0.5, "center_y": 0.5,
                 "width": 0.2, "height": 0.4},
            ]
        })
        assert len(timeline) == 2
        assert timeline.windows[0].start_time == 0
        assert timeline.windows[0].confidence == 1.0

    def test_camel_case_regions(self):
        timeline = TrackingTimeline.from_payload({
            "trackingRegions": [
                {"startTime": 0, "endTime": 3, "centerX": 0.3, "centerY": 0.6,
                 "width": 0.1, "height": 0.2, "confidence": 0.95},
            ]
        })
        assert timeline.windows[0].center_x == 0.3

    def test_empty_payload(self):
        timeline = TrackingTimeline.from_payload({})
        assert len(timeline) == 0
        assert not timeline

    def test_out_of_range_coordinate_rejected(self):
        with pytest.raises(ValueError):
            TrackingTimeline.from_payload({"windows": [
                {"start_time": 0, "end_time": 1, "center_x": 1.5, "center_y": 0.5,
                 "width": 0.1, "height": 0.1},
            ]})

    def test_missing_key_rejected(self):
        with pytest.raises(ValueError):
            TrackingTimeline.from_payload({"windows": [{"start_time": 0}]})

    def test_inverted_window_rejected(self):
        with pytest.raises(ValueError):
            TrackingTimeline.from_payload({"windows": [
                {"start_time": 4, "end_time": 2, "center_x": 0.5, "center_y": 0.5,
                 "width": 0.1, "height": 0.1},
            ]})

    @pytest.mark.parametrize("payload", [[], "windows", {"windows": {"start_time": 0}}])
    def test_non_object_payload_rejected(self, payload):
        with pytest.raises(ValueError):
            TrackingTimeline.from_payload(payload)


class TestWindowLookup:
    def test_most_confident_covering_window(self):
        timeline = TrackingTimeline(windows=(
            TrackingWindow(0, 10, 0.2, 0.5, 0.1, 0.1, confidence=0.75),
            TrackingWindow(4, 8, 0.8, 0.5, 0.1, 0.1, confidence=0.9),
        ))
        assert timeline.window_at(5).center_x == 0.8
        assert timeline.window_at(9).center_x == 0.2
        assert timeline.window_at(11) is None

    def test_confidence_threshold(self):
        timeline = TrackingTimeline(windows=(
            TrackingWindow(0, 10, 0.2, 0.5, 0.1, 0.1, confidence=0.6),
        ))
        assert timeline.window_at(5, min_confidence=0.7) is None
        assert timeline.window_at(5, min_confidence=0.5) is not None


class TestCropGeometry:
    def test_centered_crop_landscape(self):
        crop = centered_crop(1920, 1080)
        assert (crop.width, crop.height) == (606, 1080)
        assert crop.x == 657
        assert crop.y == 0

    def test_centered_crop_narrow_source(self):
        crop = centered_crop(720, 1600)
        assert crop.width == 720
        assert crop.height == 1280
        assert crop.y == (1600 - 1280) // 2

    def test_window_crop_clamped_to_frame(self):
        window = TrackingWindow(0, 5, center_x=0.99, center_y=0.5, width=0.1, height=0.3, confidence=1.0)
        crop = crop_from_window(window, 1920, 1080)
        assert crop.x + crop.width == 1920

        window = TrackingWindow(0, 5, center_x=0.0, center_y=0.5, width=0.1, height=0.3, confidence=1.0)
        assert crop_from_window(window, 1920, 1080).x == 0
