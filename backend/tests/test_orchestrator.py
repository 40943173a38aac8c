"""Tests for the job orchestrator."""
import pytest
from sqlalchemy import select

from clipforge.errors import AnalyzerFailure, SourceUnavailable
from clipforge.models.job import ClipResult, Job
from clipforge.models.usage import CreditLedgerEntry
from clipforge.pipeline.state import ClipStatus, JobStatus
from clipforge.pipeline.tracking import TrackingTimeline, TrackingWindow
from clipforge.workers.orchestrator import (
    CANCEL_DISCARD_REASON,
    CANCEL_SKIP_REASON,
    INTERRUPTED_REASON,
    JobOrchestrator,
)

from fakes import FakeEncoder, FakeSourceProvider, FakeStorage, make_submission


class _FakeAnalyzer:
    def __init__(self, timeline=None, error=None):
        self.timeline = timeline
        self.error = error
        self.calls = 0

    async def analyze(self, handle, options):
        self.calls += 1
        if self.error:
            raise self.error
        return self.timeline


@pytest.fixture
def build_orchestrator(session_maker, plans, tracker, cleanup, credits):
    def _build(source=None, encoder=None, storage=None, analyzer=None):
        return JobOrchestrator(
            session_maker,
            plans,
            tracker,
            cleanup,
            source or FakeSourceProvider(),
            encoder or FakeEncoder(),
            storage or FakeStorage(),
            credits,
            analyzer=analyzer,
        )

    return _build


async def _load(session_maker, job_id):
    async with session_maker() as session:
        job = await session.get(Job, job_id)
        clips = (await session.execute(
            select(ClipResult).where(ClipResult.job_id == job_id).order_by(ClipResult.index)
        )).scalars().all()
        return job, list(clips)


async def _ledger(session_maker, job_id):
    async with session_maker() as session:
        result = await session.execute(
            select(CreditLedgerEntry).where(CreditLedgerEntry.job_id == job_id)
        )
        return list(result.scalars().all())


class TestBatchOutcomes:
    """Partial failure, total failure and source failure."""

    @pytest.mark.asyncio
    async def test_one_bad_segment_does_not_fail_the_job(self, build_orchestrator, submit_job, session_maker):
        job_id = await submit_job(submission=make_submission(segment_count=5))
        storage = FakeStorage()
        orchestrator = build_orchestrator(encoder=FakeEncoder(fail_starts={40.0}), storage=storage)

        assert await orchestrator.run(job_id) == JobStatus.COMPLETED

        job, clips = await _load(session_maker, job_id)
        assert job.progress == 100
        assert len(job.output_url_list) == 4
        assert job.error_summary == (
            "4 of 5 clips generated; 1 failed: clip 3 'Highlight 3': "
            "encode_failure: encoder crashed at 40s"
        )
        assert [clip.status for clip in clips] == [
            ClipStatus.COMPLETED, ClipStatus.COMPLETED, ClipStatus.FAILED,
            ClipStatus.COMPLETED, ClipStatus.COMPLETED,
        ]
        assert clips[2].error.startswith("encode_failure")
        assert clips[0].output_url == f"https://cdn.test/owner-1/{job_id}/attempt_0/clip_01.mp4"
        assert clips[0].thumbnail_url.endswith("clip_01_thumb.jpg")
        assert clips[0].resolution == "720x1280"
        assert len(storage.objects) == 8

    @pytest.mark.asyncio
    async def test_every_segment_failing_fails_the_job(self, build_orchestrator, submit_job, session_maker):
        job_id = await submit_job(submission=make_submission(segment_count=2))
        orchestrator = build_orchestrator(encoder=FakeEncoder(fail_starts={0.0, 20.0}))

        assert await orchestrator.run(job_id) == JobStatus.FAILED

        job, clips = await _load(session_maker, job_id)
        assert job.output_url_list == []
        assert job.progress == 100
        assert job.error_summary.startswith("0 of 2 clips generated; 2 failed")
        assert all(clip.status == ClipStatus.FAILED for clip in clips)

    @pytest.mark.asyncio
    async def test_source_failure_fails_every_clip(self, build_orchestrator, submit_job, session_maker):
        job_id = await submit_job(submission=make_submission(segment_count=3))
        encoder = FakeEncoder()
        orchestrator = build_orchestrator(
            source=FakeSourceProvider(error=SourceUnavailable("404 from origin")),
            encoder=encoder,
        )

        assert await orchestrator.run(job_id) == JobStatus.FAILED

        job, clips = await _load(session_maker, job_id)
        assert job.error_summary == "source_unavailable: 404 from origin"
        assert all(clip.error == "source_unavailable: 404 from origin" for clip in clips)
        assert encoder.specs == []

    @pytest.mark.asyncio
    async def test_upload_failure_fails_only_that_clip(self, build_orchestrator, submit_job, session_maker):
        job_id = await submit_job(submission=make_submission(segment_count=2))
        orchestrator = build_orchestrator(storage=FakeStorage(fail_paths_containing="clip_02"))

        assert await orchestrator.run(job_id) == JobStatus.COMPLETED

        job, clips = await _load(session_maker, job_id)
        assert clips[0].status == ClipStatus.COMPLETED
        assert clips[1].status == ClipStatus.FAILED
        assert clips[1].error.startswith("upload_failure")
        assert clips[1].output_url is None

    @pytest.mark.asyncio
    async def test_os_error_in_encoder_fails_only_that_clip(self, build_orchestrator, submit_job, session_maker):
        async def _missing_output(spec):
            if spec.start_time == 20.0:
                raise FileNotFoundError("clip_20_30_tiktok.jpg")

        job_id = await submit_job(submission=make_submission(segment_count=3))
        encoder = FakeEncoder(on_encode=_missing_output)

        assert await build_orchestrator(encoder=encoder).run(job_id) == JobStatus.COMPLETED

        job, clips = await _load(session_maker, job_id)
        assert [clip.status for clip in clips] == [
            ClipStatus.COMPLETED, ClipStatus.FAILED, ClipStatus.COMPLETED,
        ]
        assert clips[1].error == "encode_failure: clip_20_30_tiktok.jpg"
        assert len(encoder.specs) == 3
        assert len(job.output_url_list) == 2
        entries = await _ledger(session_maker, job_id)
        assert [entry.credits for entry in entries] == [2]

    @pytest.mark.asyncio
    async def test_unexpected_storage_error_fails_only_that_clip(self, build_orchestrator, submit_job, session_maker):
        class _BrokenStorage(FakeStorage):
            async def upload(self, data, path):
                if "clip_01" in path:
                    raise RuntimeError("connection reset")
                return await super().upload(data, path)

        job_id = await submit_job(submission=make_submission(segment_count=2))
        assert await build_orchestrator(storage=_BrokenStorage()).run(job_id) == JobStatus.COMPLETED

        _, clips = await _load(session_maker, job_id)
        assert clips[0].error == "upload_failure: connection reset"
        assert clips[1].status == ClipStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unexpected_source_error_fails_the_job(self, build_orchestrator, submit_job, session_maker):
        job_id = await submit_job(submission=make_submission(segment_count=2))
        orchestrator = build_orchestrator(source=FakeSourceProvider(error=RuntimeError("disk on fire")))

        assert await orchestrator.run(job_id) == JobStatus.FAILED

        job, clips = await _load(session_maker, job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_summary == "internal_error: disk on fire"
        assert all(clip.status == ClipStatus.FAILED for clip in clips)
        assert all(clip.error == "internal_error: disk on fire" for clip in clips)
        entries = await _ledger(session_maker, job_id)
        assert [entry.credits for entry in entries] == [0]

    @pytest.mark.asyncio
    async def test_source_over_plan_size_limit(self, build_orchestrator, submit_job, session_maker):
        job_id = await submit_job(submission=make_submission(segment_count=2))
        encoder = FakeEncoder()
        source = FakeSourceProvider(size_bytes=150 * 1024 * 1024)

        assert await build_orchestrator(source=source, encoder=encoder).run(job_id) == JobStatus.FAILED

        job, clips = await _load(session_maker, job_id)
        assert job.error_summary == (
            "source_unavailable: Source size (150.0MB) exceeds the free plan limit (100MB). "
            "Upgrade for larger file support."
        )
        assert all(clip.status == ClipStatus.FAILED for clip in clips)
        assert encoder.specs == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_working_directory_removed(self, build_orchestrator, submit_job):
        job_id = await submit_job()
        source = FakeSourceProvider()
        await build_orchestrator(source=source).run(job_id)

        assert len(source.work_dirs) == 1
        assert not source.work_dirs[0].exists()

    @pytest.mark.asyncio
    async def test_working_directory_removed_after_source_failure(self, build_orchestrator, submit_job):
        job_id = await submit_job()
        source = FakeSourceProvider(error=SourceUnavailable("gone"))
        await build_orchestrator(source=source).run(job_id)

        assert not source.work_dirs[0].exists()

    @pytest.mark.asyncio
    async def test_non_queued_job_is_skipped(self, build_orchestrator, submit_job, tracker):
        job_id = await submit_job()
        await tracker.mark_cancelled(job_id)
        encoder = FakeEncoder()

        assert await build_orchestrator(encoder=encoder).run(job_id) is None
        assert encoder.specs == []

    @pytest.mark.asyncio
    async def test_unknown_job_is_skipped(self, build_orchestrator):
        assert await build_orchestrator().run("no-such-job") is None

    @pytest.mark.asyncio
    async def test_segments_run_in_submission_order(self, build_orchestrator, submit_job):
        job_id = await submit_job(submission=make_submission(segment_count=3))
        encoder = FakeEncoder()
        await build_orchestrator(encoder=encoder).run(job_id)

        assert [spec.start_time for spec in encoder.specs] == [0.0, 20.0, 40.0]

    @pytest.mark.asyncio
    async def test_progress_events_never_decrease(self, build_orchestrator, submit_job, tracker):
        job_id = await submit_job(submission=make_submission(segment_count=3))
        queue = tracker.subscribe(job_id)
        await build_orchestrator(encoder=FakeEncoder(fail_starts={20.0})).run(job_id)

        progress = []
        while not queue.empty():
            event = queue.get_nowait()
            if event["type"] == "progress":
                progress.append(event["progress"])
        assert progress == sorted(progress)
        assert progress[-1] == 100


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_encode_discards_clip(self, build_orchestrator, submit_job, session_maker):
        job_id = await submit_job(submission=make_submission(segment_count=3))

        async def _cancel_on_second(spec):
            if spec.start_time == 20.0:
                async with session_maker() as session:
                    job = await session.get(Job, job_id)
                    job.cancel_requested = True
                    await session.commit()

        storage = FakeStorage()
        orchestrator = build_orchestrator(encoder=FakeEncoder(on_encode=_cancel_on_second), storage=storage)

        assert await orchestrator.run(job_id) == JobStatus.CANCELLED

        job, clips = await _load(session_maker, job_id)
        assert job.status == JobStatus.CANCELLED
        assert clips[0].status == ClipStatus.COMPLETED
        assert (clips[1].status, clips[1].error) == (ClipStatus.FAILED, CANCEL_DISCARD_REASON)
        assert (clips[2].status, clips[2].error) == (ClipStatus.FAILED, CANCEL_SKIP_REASON)
        assert not any("clip_02" in path for path in storage.objects)

        entries = await _ledger(session_maker, job_id)
        assert [entry.credits for entry in entries] == [1]

    @pytest.mark.asyncio
    async def test_cancel_before_first_segment(self, build_orchestrator, submit_job, session_maker):
        job_id = await submit_job(submission=make_submission(segment_count=2))

        class _CancellingSource(FakeSourceProvider):
            async def fetch_source(self, ref, work_dir):
                async with session_maker() as session:
                    job = await session.get(Job, job_id)
                    job.cancel_requested = True
                    await session.commit()
                return await super().fetch_source(ref, work_dir)

        encoder = FakeEncoder()
        status = await build_orchestrator(source=_CancellingSource(), encoder=encoder).run(job_id)

        assert status == JobStatus.CANCELLED
        assert encoder.specs == []
        _, clips = await _load(session_maker, job_id)
        assert all(clip.error == CANCEL_SKIP_REASON for clip in clips)

    @pytest.mark.asyncio
    async def test_job_cancelled_outright_stops_after_encode(
        self, build_orchestrator, submit_job, session_maker, tracker
    ):
        job_id = await submit_job(submission=make_submission(segment_count=3))

        async def _cancel_outright(spec):
            if spec.start_time == 0.0:
                await tracker.mark_cancelled(job_id)

        encoder = FakeEncoder(on_encode=_cancel_outright)
        storage = FakeStorage()

        assert await build_orchestrator(encoder=encoder, storage=storage).run(job_id) == JobStatus.CANCELLED

        job, clips = await _load(session_maker, job_id)
        assert job.status == JobStatus.CANCELLED
        assert len(encoder.specs) == 1
        assert storage.objects == {}
        assert (clips[0].status, clips[0].error) == (ClipStatus.FAILED, CANCEL_DISCARD_REASON)
        assert [clip.error for clip in clips[1:]] == [CANCEL_SKIP_REASON, CANCEL_SKIP_REASON]
        entries = await _ledger(session_maker, job_id)
        assert [entry.credits for entry in entries] == [0]


class TestCredits:
    @pytest.mark.asyncio
    async def test_charged_once_per_attempt(self, build_orchestrator, submit_job, session_maker, credits):
        job_id = await submit_job(submission=make_submission(segment_count=2))
        await build_orchestrator().run(job_id)

        assert await credits.charge("owner-1", job_id, 0, 2) is False
        entries = await _ledger(session_maker, job_id)
        assert len(entries) == 1
        assert entries[0].credits == 2
        assert await credits.total_for_owner("owner-1") == 2

    @pytest.mark.asyncio
    async def test_retry_attempt_is_charged_separately(
        self, build_orchestrator, submit_job, session_maker, tracker
    ):
        job_id = await submit_job()
        await build_orchestrator(encoder=FakeEncoder(fail_starts={0.0})).run(job_id)
        await tracker.requeue_for_retry(job_id)
        assert await build_orchestrator().run(job_id) == JobStatus.COMPLETED

        entries = await _ledger(session_maker, job_id)
        assert sorted((entry.attempt, entry.credits) for entry in entries) == [(0, 0), (1, 1)]
        job, _ = await _load(session_maker, job_id)
        assert "/attempt_1/" in job.output_url_list[0]


class TestSubjectTracking:
    @pytest.mark.asyncio
    async def test_analyzer_failure_falls_back_to_center(self, build_orchestrator, submit_job):
        job_id = await submit_job(submission=make_submission(enable_subject_tracking=True))
        encoder = FakeEncoder()
        analyzer = _FakeAnalyzer(error=AnalyzerFailure("analyzer returned 503"))

        assert await build_orchestrator(encoder=encoder, analyzer=analyzer).run(job_id) == JobStatus.COMPLETED
        assert analyzer.calls == 1
        assert encoder.specs[0].crop_source == "center"

    @pytest.mark.asyncio
    async def test_timeline_drives_crop(self, build_orchestrator, submit_job):
        timeline = TrackingTimeline(windows=(
            TrackingWindow(0.0, 10.0, center_x=0.2, center_y=0.5, width=0.1, height=0.3, confidence=0.9),
        ))
        job_id = await submit_job(submission=make_submission(enable_subject_tracking=True))
        encoder = FakeEncoder()

        await build_orchestrator(encoder=encoder, analyzer=_FakeAnalyzer(timeline=timeline)).run(job_id)
        assert encoder.specs[0].crop_source == "tracking"

    @pytest.mark.asyncio
    async def test_analyzer_not_called_when_disabled(self, build_orchestrator, submit_job):
        job_id = await submit_job()
        analyzer = _FakeAnalyzer()
        await build_orchestrator(analyzer=analyzer).run(job_id)
        assert analyzer.calls == 0

    @pytest.mark.asyncio
    async def test_unexpected_analyzer_error_falls_back_to_center(self, build_orchestrator, submit_job):
        job_id = await submit_job(submission=make_submission(enable_subject_tracking=True))
        encoder = FakeEncoder()
        analyzer = _FakeAnalyzer(error=AttributeError("'list' object has no attribute 'get'"))

        assert await build_orchestrator(encoder=encoder, analyzer=analyzer).run(job_id) == JobStatus.COMPLETED
        assert encoder.specs[0].crop_source == "center"


class TestInterruptedJobs:
    """Jobs a previous process left PROCESSING are settled on startup."""

    @pytest.mark.asyncio
    async def test_processing_job_fails_and_keeps_completed_clips(
        self, build_orchestrator, submit_job, session_maker, tracker
    ):
        job_id = await submit_job(submission=make_submission(segment_count=3))
        await tracker.mark_processing(job_id)
        _, clips = await _load(session_maker, job_id)
        await tracker.report_clip_status(clips[0].id, ClipStatus.PROCESSING)
        await tracker.report_clip_status(clips[0].id, ClipStatus.COMPLETED)
        await tracker.report_clip_status(clips[1].id, ClipStatus.PROCESSING)

        assert await build_orchestrator().settle_interrupted() == 1

        job, clips = await _load(session_maker, job_id)
        assert job.status == JobStatus.FAILED
        assert job.message == "Job interrupted"
        assert [clip.status for clip in clips] == [
            ClipStatus.COMPLETED, ClipStatus.FAILED, ClipStatus.FAILED,
        ]
        assert clips[1].error == INTERRUPTED_REASON
        entries = await _ledger(session_maker, job_id)
        assert [entry.credits for entry in entries] == [1]

        await tracker.requeue_for_retry(job_id)
        assert await build_orchestrator().run(job_id) == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_requested_job_is_cancelled(self, build_orchestrator, submit_job, session_maker, tracker):
        job_id = await submit_job()
        await tracker.mark_processing(job_id)
        async with session_maker() as session:
            job = await session.get(Job, job_id)
            job.cancel_requested = True
            await session.commit()

        await build_orchestrator().settle_interrupted()

        job, clips = await _load(session_maker, job_id)
        assert job.status == JobStatus.CANCELLED
        assert clips[0].error == CANCEL_SKIP_REASON

    @pytest.mark.asyncio
    async def test_queued_and_terminal_jobs_untouched(self, build_orchestrator, submit_job, session_maker):
        queued_id = await submit_job()
        assert await build_orchestrator().settle_interrupted() == 0

        job, _ = await _load(session_maker, queued_id)
        assert job.status == JobStatus.QUEUED
