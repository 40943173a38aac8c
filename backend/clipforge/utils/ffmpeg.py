"""FFmpeg and ffprobe utilities."""
import asyncio
import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from clipforge.config import settings
from clipforge.errors import EncodeFailure
from clipforge.pipeline.transform import TransformSpec

logger = logging.getLogger(__name__)


@dataclass
class VideoInfo:
    """Video metadata container."""
    duration: float
    width: int
    height: int
    fps: float
    video_codec: str
    audio_codec: Optional[str]
    format_name: str
    bit_rate: Optional[int]


@dataclass
class EncodedClip:
    """Encoder output for one segment, held in memory until upload."""
    video_bytes: bytes
    thumbnail_bytes: bytes
    metadata: dict = field(default_factory=dict)


class FFmpegError(Exception):
    """FFmpeg related error."""
    pass


def check_ffmpeg_available(ffmpeg_path: Optional[str] = None) -> bool:
    """Check if ffmpeg is available."""
    return shutil.which(ffmpeg_path or settings.ffmpeg_path) is not None


def check_ffprobe_available(ffprobe_path: Optional[str] = None) -> bool:
    """Check if ffprobe is available."""
    return shutil.which(ffprobe_path or settings.ffprobe_path) is not None


async def get_video_info(video_path: str | Path, ffprobe_path: Optional[str] = None) -> VideoInfo:
    """
    Get video metadata using ffprobe.

    Args:
        video_path: Path to video file
        ffprobe_path: ffprobe binary, defaults to the configured one

    Returns:
        VideoInfo with video metadata

    Raises:
        FFmpegError: If ffprobe fails
    """
    video_path = Path(video_path)
    if not video_path.exists():
        raise FFmpegError(f"Video file not found: {video_path}")

    cmd = [
        ffprobe_path or settings.ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(video_path)
    ]

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        stdout, stderr = await proc.communicate()

        if proc.returncode != 0:
            raise FFmpegError(f"ffprobe failed: {stderr.decode()}")

        return parse_probe_output(json.loads(stdout.decode()))
    except json.JSONDecodeError as e:
        raise FFmpegError(f"Failed to parse ffprobe output: {e}")
    except FFmpegError:
        raise
    except Exception as e:
        raise FFmpegError(f"ffprobe error: {e}")


def parse_probe_output(data: dict) -> VideoInfo:
    """Build VideoInfo from ffprobe's JSON output."""
    video_stream = None
    audio_stream = None
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video" and video_stream is None:
            video_stream = stream
        elif stream.get("codec_type") == "audio" and audio_stream is None:
            audio_stream = stream

    if not video_stream:
        raise FFmpegError("No video stream found")

    # Parse frame rate
    fps_str = video_stream.get("r_frame_rate", "30/1")
    if "/" in fps_str:
        num, den = fps_str.split("/")
        fps = float(num) / float(den) if float(den) > 0 else 30.0
    else:
        fps = float(fps_str)

    # Get duration
    duration = float(data.get("format", {}).get("duration", 0))
    if duration == 0:
        duration = float(video_stream.get("duration", 0))

    return VideoInfo(
        duration=duration,
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        fps=fps,
        video_codec=video_stream.get("codec_name", "unknown"),
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
        format_name=data.get("format", {}).get("format_name", "unknown"),
        bit_rate=int(data.get("format", {}).get("bit_rate", 0)) or None
    )


def build_ffmpeg_args(
    spec: TransformSpec,
    input_path: str | Path,
    output_path: str | Path,
    ffmpeg_path: str = "ffmpeg",
) -> List[str]:
    """
    Render a TransformSpec into an ffmpeg command line.

    Args:
        spec: Clip transform
        input_path: Source video
        output_path: Encoded clip destination
        ffmpeg_path: ffmpeg binary

    Returns:
        Argument list suitable for create_subprocess_exec
    """
    codec = spec.codec
    cap = spec.bitrate

    cmd = [
        ffmpeg_path,
        "-y",
        "-ss", f"{spec.start_time:g}",
        "-i", str(input_path),
        "-t", f"{spec.duration:g}",
        "-vf", spec.video_filtergraph(),
    ]
    if spec.audio_filters:
        cmd += ["-af", spec.audio_filtergraph()]

    cmd += [
        "-r", str(spec.frame_rate),
        "-c:v", codec.video_codec,
    ]

    if codec.video_codec == "libx264":
        cmd += [
            "-preset", codec.speed_preset,
            "-crf", str(codec.crf),
        ]
    else:
        video_kbps = min(codec.video_bitrate_kbps or cap.target_kbps, cap.target_kbps)
        cmd += [
            "-b:v", f"{video_kbps}k",
            "-deadline", codec.deadline or "good",
        ]

    cmd += [
        "-maxrate", f"{cap.maxrate_kbps}k",
        "-bufsize", f"{cap.bufsize_kbps}k",
        "-pix_fmt", codec.pixel_format,
        "-c:a", codec.audio_codec,
        "-b:a", f"{codec.audio_bitrate_kbps}k",
    ]
    if codec.container == "mp4":
        cmd += ["-movflags", "+faststart"]

    cmd.append(str(output_path))
    return cmd


def build_thumbnail_args(
    clip_path: str | Path,
    output_path: str | Path,
    timestamp: float,
    ffmpeg_path: str = "ffmpeg",
) -> List[str]:
    """ffmpeg command line that grabs one frame of an encoded clip."""
    return [
        ffmpeg_path,
        "-y",
        "-ss", f"{timestamp:g}",
        "-i", str(clip_path),
        "-vframes", "1",
        "-q:v", "2",
        str(output_path)
    ]


async def run_ffmpeg(cmd: List[str]) -> None:
    """Run an ffmpeg command, raising FFmpegError on a non-zero exit."""
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE
    )
    try:
        _, stderr = await proc.communicate()
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    if proc.returncode != 0:
        tail = stderr.decode("utf-8", errors="ignore").strip().splitlines()[-5:]
        raise FFmpegError(f"ffmpeg exited with {proc.returncode}: {' | '.join(tail)}")


class FFmpegEncoder:
    """Encoder adapter: runs a TransformSpec through ffmpeg."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        thumbnail_format: str = "jpg",
    ):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.thumbnail_format = thumbnail_format

    async def encode(self, handle, spec: TransformSpec) -> EncodedClip:
        """
        Encode one clip and its thumbnail inside the job's working directory.

        Args:
            handle: SourceHandle with ``path`` and ``work_dir``
            spec: Clip transform

        Returns:
            EncodedClip with video/thumbnail bytes and metadata

        Raises:
            EncodeFailure: If ffmpeg fails
        """
        stem = f"clip_{spec.start_time:g}_{spec.end_time:g}_{spec.platform}"
        output_path = Path(handle.work_dir) / f"{stem}.{spec.codec.container}"
        thumb_path = Path(handle.work_dir) / f"{stem}.{self.thumbnail_format}"

        cmd = build_ffmpeg_args(spec, handle.path, output_path, self.ffmpeg_path)
        logger.debug(f"Encoding {stem}: {' '.join(cmd)}")

        try:
            await run_ffmpeg(cmd)
            await run_ffmpeg(build_thumbnail_args(
                output_path, thumb_path, min(1.0, spec.duration / 2), self.ffmpeg_path
            ))
        except (FFmpegError, OSError) as e:
            raise EncodeFailure(str(e))

        try:
            info = await get_video_info(output_path, self.ffprobe_path)
            duration = info.duration or spec.duration
        except FFmpegError as e:
            logger.warning(f"Could not probe encoded clip {output_path}: {e}")
            duration = spec.duration

        try:
            video_bytes = output_path.read_bytes()
            thumbnail_bytes = thumb_path.read_bytes()
        except OSError as e:
            raise EncodeFailure(f"Encoded output unreadable: {e}")
        return EncodedClip(
            video_bytes=video_bytes,
            thumbnail_bytes=thumbnail_bytes,
            metadata={
                "duration": round(duration, 3),
                "resolution": spec.resolution_label,
                "file_size": len(video_bytes),
                "format": spec.codec.container,
            },
        )
