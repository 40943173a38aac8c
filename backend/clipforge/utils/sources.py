"""Source video acquisition."""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx

from clipforge.errors import SourceUnavailable
from clipforge.utils.ffmpeg import FFmpegError, VideoInfo, get_video_info
from clipforge.utils.ytdlp import YtdlpError, download_video, is_youtube_url

logger = logging.getLogger(__name__)

ASSET_SCHEME = "asset://"
DOWNLOAD_CHUNK_SIZE = 1024 * 1024


@dataclass
class SourceHandle:
    """A probed source video available for the duration of one job."""
    path: Path
    work_dir: Path
    width: int
    height: int
    duration: float
    reused: bool = False  # True when an already-stored asset was used in place
    size_bytes: int = 0


class DefaultSourceProvider:
    """
    Resolves a job's ``source_ref`` to a local, probed video file.

    - ``asset://name`` and local paths inside the asset directory are reused
      in place; anything outside it is rejected
    - YouTube URLs are fetched with yt-dlp
    - other http(s) URLs are streamed with httpx
    """

    def __init__(
        self,
        assets_dir: Path,
        ffprobe_path: str = "ffprobe",
        ytdlp_path: str = "yt-dlp",
        http_timeout: float = 60.0,
    ):
        self.assets_dir = Path(assets_dir)
        self.ffprobe_path = ffprobe_path
        self.ytdlp_path = ytdlp_path
        self.http_timeout = http_timeout

    async def fetch_source(self, ref: str, work_dir: Path) -> SourceHandle:
        """
        Acquire and probe the source video.

        Raises:
            SourceUnavailable: If the source cannot be found, downloaded or probed
        """
        work_dir = Path(work_dir)
        reused = False

        local = self._resolve_local(ref)
        if local is not None:
            if not local.is_file():
                raise SourceUnavailable(f"Stored asset not found: {ref}")
            path = local
            reused = True
            logger.info(f"Reusing stored asset {path}")
        elif is_youtube_url(ref):
            try:
                path = await download_video(ref, work_dir, ytdlp_path=self.ytdlp_path)
            except YtdlpError as e:
                raise SourceUnavailable(f"YouTube download failed: {e}")
        elif urlparse(ref).scheme in ("http", "https"):
            path = await self._download_http(ref, work_dir)
        else:
            raise SourceUnavailable(f"Unsupported source reference: {ref}")

        info = await self._probe(path)
        return SourceHandle(
            path=path,
            work_dir=work_dir,
            width=info.width,
            height=info.height,
            duration=info.duration,
            reused=reused,
            size_bytes=path.stat().st_size,
        )

    def _resolve_local(self, ref: str) -> Optional[Path]:
        if ref.startswith(ASSET_SCHEME):
            candidate = self.assets_dir / ref[len(ASSET_SCHEME):]
        elif ref.startswith("file://"):
            candidate = Path(urlparse(ref).path)
        elif "://" not in ref and Path(ref).is_absolute():
            candidate = Path(ref)
        else:
            return None

        candidate = candidate.resolve()
        if self.assets_dir.resolve() not in candidate.parents:
            raise SourceUnavailable(f"Source path is outside the asset directory: {ref}")
        return candidate

    async def _download_http(self, url: str, work_dir: Path) -> Path:
        suffix = Path(urlparse(url).path).suffix or ".mp4"
        destination = work_dir / f"source{suffix}"
        logger.info(f"Downloading source {url}")

        try:
            async with httpx.AsyncClient(timeout=self.http_timeout, follow_redirects=True) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code != 200:
                        raise SourceUnavailable(f"Source download failed: HTTP {response.status_code}")
                    with open(destination, "wb") as f:
                        async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                            f.write(chunk)
        except httpx.TimeoutException as e:
            raise SourceUnavailable(f"Source download timed out: {url}") from e
        except httpx.RequestError as e:
            raise SourceUnavailable(f"Unable to reach source: {e}") from e

        return destination

    async def _probe(self, path: Path) -> VideoInfo:
        try:
            info = await get_video_info(path, self.ffprobe_path)
        except FFmpegError as e:
            raise SourceUnavailable(f"Source is not a readable video: {e}")
        if info.width <= 0 or info.height <= 0:
            raise SourceUnavailable(f"Source has invalid frame size {info.width}x{info.height}")
        return info
