"""In-memory stand-ins for the source provider, encoder and storage."""
from pathlib import Path

from clipforge.errors import EncodeFailure, UploadFailure
from clipforge.pipeline.options import JobSubmission
from clipforge.utils.ffmpeg import EncodedClip
from clipforge.utils.sources import SourceHandle


class FakeSourceProvider:
    def __init__(self, width=1920, height=1080, duration=300.0, error=None, size_bytes=6):
        self.width = width
        self.height = height
        self.duration = duration
        self.error = error
        self.size_bytes = size_bytes
        self.work_dirs = []

    async def fetch_source(self, ref, work_dir):
        self.work_dirs.append(Path(work_dir))
        if self.error:
            raise self.error
        path = Path(work_dir) / "source.mp4"
        path.write_bytes(b"source")
        return SourceHandle(
            path=path,
            work_dir=Path(work_dir),
            width=self.width,
            height=self.height,
            duration=self.duration,
            size_bytes=self.size_bytes,
        )


class FakeEncoder:
    """Encodes instantly; segments starting at ``fail_starts`` fail."""

    thumbnail_format = "jpg"

    def __init__(self, fail_starts=(), on_encode=None):
        self.fail_starts = set(fail_starts)
        self.on_encode = on_encode
        self.specs = []

    async def encode(self, handle, spec):
        self.specs.append(spec)
        if self.on_encode:
            await self.on_encode(spec)
        if spec.start_time in self.fail_starts:
            raise EncodeFailure(f"encoder crashed at {spec.start_time:g}s")
        return EncodedClip(
            video_bytes=b"video-" + str(spec.start_time).encode(),
            thumbnail_bytes=b"thumb",
            metadata={
                "duration": spec.duration,
                "resolution": spec.resolution_label,
                "file_size": 11,
            },
        )


class FakeStorage:
    def __init__(self, fail_paths_containing=None):
        self.objects = {}
        self.fail_paths_containing = fail_paths_containing

    async def upload(self, data, path):
        if self.fail_paths_containing and self.fail_paths_containing in path:
            raise UploadFailure(f"bucket rejected {path}")
        self.objects[path] = data
        return f"https://cdn.test/{path}"


def make_submission(segment_count=1, platform="tiktok", length=10.0, **options):
    """Submission with segments at 0s, 20s, 40s, ... each ``length`` long."""
    return JobSubmission.model_validate({
        "source_ref": "asset://talk.mp4",
        "options": options,
        "segments": [
            {
                "start_time": i * 20.0,
                "end_time": i * 20.0 + length,
                "title": f"Highlight {i + 1}",
                "target_platform": platform,
            }
            for i in range(segment_count)
        ],
    })
