#!/usr/bin/env python3
"""
CLI tool to preview the render plan of a job submission.

Builds the TransformSpec for every segment under a plan and prints it with
the ffmpeg command that would encode it. Nothing is encoded.

Usage:
    python scripts/render_plan_cli.py <submission.json> [--plan CODE] [--source-size WxH | --probe VIDEO]

Example:
    python scripts/render_plan_cli.py job.json --plan free --source-size 1920x1080
"""
import argparse
import asyncio
import json
import logging
import shlex
import sys
from dataclasses import asdict
from pathlib import Path
from typing import List, Tuple

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError

from clipforge.errors import InvalidSegment
from clipforge.pipeline.options import JobSubmission
from clipforge.pipeline.plans import PlanCatalog, PlanLimits
from clipforge.pipeline.transform import ClipSpecBuilder, restrictions_applied
from clipforge.utils.ffmpeg import FFmpegError, build_ffmpeg_args, get_video_info


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger(__name__)


def parse_size(value: str) -> Tuple[int, int]:
    try:
        width, height = (int(part) for part in value.lower().split("x"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected WIDTHxHEIGHT, got {value!r}")
    if width <= 0 or height <= 0:
        raise argparse.ArgumentTypeError("Source size must be positive")
    return width, height


def render_plan(
    submission: JobSubmission,
    limits: PlanLimits,
    source_width: int,
    source_height: int,
    input_path: str = "source.mp4",
) -> List[dict]:
    """
    Describe how every segment of a submission would be rendered.

    Segments that cannot be rendered are reported with their error instead
    of a spec.
    """
    builder = ClipSpecBuilder(limits, source_width, source_height)
    plan = []
    for index, segment in enumerate(submission.segments):
        entry = {"index": index, "title": segment.title, "platform": segment.target_platform.value}
        try:
            spec = builder.build(segment, submission.options)
        except InvalidSegment as e:
            entry["error"] = e.describe()
            plan.append(entry)
            continue

        output = f"clip_{index + 1:02d}.{spec.codec.container}"
        entry.update({
            "resolution": spec.resolution.value,
            "output_size": spec.resolution_label,
            "crop": asdict(spec.crop),
            "crop_source": spec.crop_source,
            "video_filters": spec.video_filtergraph(),
            "audio_filters": spec.audio_filtergraph() or None,
            "codec": asdict(spec.codec),
            "target_bitrate_kbps": spec.bitrate.target_kbps,
            "watermark": spec.watermark,
            "ffmpeg": shlex.join(build_ffmpeg_args(spec, input_path, output)),
        })
        plan.append(entry)
    return plan


async def probe_size(video_path: Path) -> Tuple[int, int]:
    info = await get_video_info(video_path)
    logger.info(f"Duration: {info.duration:.1f}s, Resolution: {info.width}x{info.height}")
    return info.width, info.height


def main():
    parser = argparse.ArgumentParser(
        description="Preview TransformSpecs and ffmpeg commands for a job submission",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Free plan, 1080p landscape source
    python scripts/render_plan_cli.py job.json

    # Enterprise plan, size read from the actual source
    python scripts/render_plan_cli.py job.json --plan viral_enterprise_monthly --probe source.mp4
        """
    )

    parser.add_argument(
        "submission",
        type=Path,
        help="JSON file with source_ref, options and segments"
    )

    parser.add_argument(
        "--plan", "-p",
        default="free",
        help="Plan code (default: free)"
    )

    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--source-size", "-s",
        type=parse_size,
        default=(1920, 1080),
        help="Source frame size as WIDTHxHEIGHT (default: 1920x1080)"
    )
    source.add_argument(
        "--probe",
        type=Path,
        default=None,
        help="Read the source frame size from this video with ffprobe"
    )

    args = parser.parse_args()

    try:
        submission = JobSubmission.model_validate_json(args.submission.read_text())
        width, height = asyncio.run(probe_size(args.probe)) if args.probe else args.source_size

        catalog = PlanCatalog()
        limits = catalog.get(args.plan)
        if limits.plan_code != args.plan:
            logger.warning(f"Unknown plan {args.plan!r}, using {limits.plan_code}")

        output = {
            "plan": limits.to_dict(),
            "restrictions_applied": restrictions_applied(submission.options, limits),
            "source_size": f"{width}x{height}",
            "segments": render_plan(submission, limits, width, height, submission.source_ref),
        }
        print(json.dumps(output, indent=2))
    except FileNotFoundError as e:
        logger.error(str(e))
        sys.exit(1)
    except ValidationError as e:
        logger.error(f"Invalid submission: {e}")
        sys.exit(2)
    except FFmpegError as e:
        logger.error(f"Could not probe source: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
