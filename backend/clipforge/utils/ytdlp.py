"""yt-dlp utilities for YouTube source download."""
import asyncio
import logging
import re
import shutil
from pathlib import Path
from typing import Optional

from clipforge.config import settings

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = ("mp4", "mkv", "webm", "mov")

YOUTUBE_PATTERNS = [
    r"^https?://(?:www\.|m\.)?youtube\.com/watch\?v=[\w-]+",
    r"^https?://(?:www\.)?youtube\.com/shorts/[\w-]+",
    r"^https?://youtu\.be/[\w-]+",
    r"^https?://(?:www\.)?youtube\.com/embed/[\w-]+",
]


class YtdlpError(Exception):
    """yt-dlp related error."""
    pass


def check_ytdlp_available(ytdlp_path: Optional[str] = None) -> bool:
    """Check if yt-dlp is available."""
    return shutil.which(ytdlp_path or settings.ytdlp_path) is not None


def is_youtube_url(url: str) -> bool:
    """Check if a URL is a valid YouTube URL."""
    return any(re.match(pattern, url) for pattern in YOUTUBE_PATTERNS)


def build_download_args(url: str, output_dir: Path, filename: str, ytdlp_path: str) -> list:
    output_template = str(Path(output_dir) / f"{filename}.%(ext)s")
    return [
        ytdlp_path,
        # bv* requires a video stream, never selects audio-only
        "-f", "bv*[ext=mp4]+ba[ext=m4a]/bv*[ext=mp4]+ba/bv*+ba/bv*",
        "--merge-output-format", "mp4",
        "-o", output_template,
        "--no-playlist",
        "--newline",
        "--force-overwrites",
        url
    ]


async def download_video(
    url: str,
    output_dir: Path,
    filename: str = "source",
    ytdlp_path: Optional[str] = None,
    progress_callback=None
) -> Path:
    """
    Download a YouTube video with best quality.

    Args:
        url: YouTube URL
        output_dir: Directory to save the video
        filename: Base filename without extension
        ytdlp_path: yt-dlp binary, defaults to the configured one
        progress_callback: Optional async callback(progress: float)

    Returns:
        Path to downloaded video file

    Raises:
        YtdlpError: If the download fails or produces no video file
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    cmd = build_download_args(url, output_dir, filename, ytdlp_path or settings.ytdlp_path)
    logger.info(f"Running yt-dlp for {url}")

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT
        )
    except FileNotFoundError as e:
        raise YtdlpError(f"yt-dlp not found: {e}")

    merged_path: Optional[Path] = None
    downloaded_path: Optional[Path] = None
    output_lines = []

    try:
        while True:
            line = await proc.stdout.readline()
            if not line:
                break

            line_str = line.decode("utf-8", errors="ignore").strip()
            output_lines.append(line_str)

            if progress_callback:
                progress_match = re.search(r"\[download\]\s+(\d+\.?\d*)%", line_str)
                if progress_match:
                    await progress_callback(float(progress_match.group(1)))

            merge_match = re.search(r'Merging formats into "(.+)"', line_str)
            if merge_match:
                merged_path = Path(merge_match.group(1))
                continue
            dest_match = re.search(r"Destination:\s+(.+)", line_str)
            if dest_match:
                downloaded_path = Path(dest_match.group(1))

        await proc.wait()
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    if proc.returncode != 0:
        logger.error("yt-dlp failed with output:\n" + "\n".join(output_lines[-20:]))
        raise YtdlpError("Download failed - check URL and try again")

    for candidate in (merged_path, downloaded_path):
        if candidate and candidate.exists():
            return candidate

    for ext in VIDEO_EXTENSIONS:
        candidate = output_dir / f"{filename}.{ext}"
        if candidate.exists() and candidate.stat().st_size > 0:
            return candidate

    logger.error(f"No video file found in {output_dir}. Contents: {list(output_dir.iterdir())}")
    raise YtdlpError("Download completed but video file not found")
