"""HTTP adapter for the external subject-tracking analyzer."""
import logging

import httpx

from clipforge.errors import AnalyzerFailure
from clipforge.pipeline.options import ProcessingOptions
from clipforge.pipeline.tracking import TrackingTimeline

logger = logging.getLogger(__name__)


class HttpSubjectAnalyzer:
    """
    Posts the source location and tracking options to an analyzer service.

    The service answers with ``{"windows": [...]}`` (or the older
    ``{"trackingRegions": [...]}``), parsed by ``TrackingTimeline.from_payload``.
    """

    def __init__(self, url: str, timeout: float = 300.0):
        self.url = url
        self.timeout = timeout

    async def analyze(self, handle, options: ProcessingOptions) -> TrackingTimeline:
        """
        Run subject tracking for one source.

        Raises:
            AnalyzerFailure: If the service is unreachable or answers badly
        """
        tracking = options.tracking_options
        payload = {
            "source_path": str(handle.path),
            "duration": handle.duration,
            "width": handle.width,
            "height": handle.height,
            "crop_aspect_ratio": tracking.crop_aspect_ratio,
            "confidence_threshold": tracking.confidence_threshold,
            "tracking_smoothing": tracking.tracking_smoothing,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
        except httpx.TimeoutException as exc:
            raise AnalyzerFailure("Subject tracking timed out") from exc
        except httpx.RequestError as exc:
            raise AnalyzerFailure(f"Unable to reach subject tracking service: {exc}") from exc

        if response.status_code != 200:
            raise AnalyzerFailure(f"Subject tracking failed: HTTP {response.status_code}")

        try:
            timeline = TrackingTimeline.from_payload(response.json())
        except ValueError as exc:
            raise AnalyzerFailure(f"Invalid tracking response: {exc}") from exc

        logger.info(f"Subject tracking returned {len(timeline)} windows for {handle.path}")
        return timeline
