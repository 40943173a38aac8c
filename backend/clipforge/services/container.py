"""Service wiring for one application lifetime."""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.config import Settings
from clipforge.db.database import Database
from clipforge.pipeline.plans import PlanCatalog
from clipforge.services.cleanup import CleanupManager
from clipforge.services.credit_service import CreditLedger
from clipforge.services.job_service import JobService, OwnerLocks
from clipforge.services.progress import ProgressTracker
from clipforge.services.quota_service import QuotaGate
from clipforge.utils.analyzer import HttpSubjectAnalyzer
from clipforge.utils.ffmpeg import FFmpegEncoder
from clipforge.utils.sources import DefaultSourceProvider
from clipforge.utils.storage import LocalStorage
from clipforge.workers.job_runner import JobRunner
from clipforge.workers.orchestrator import JobOrchestrator


@dataclass
class ServiceContainer:
    """Long-lived services shared by requests and workers."""
    settings: Settings
    database: Database
    plans: PlanCatalog
    tracker: ProgressTracker
    cleanup: CleanupManager
    credits: CreditLedger
    owner_locks: OwnerLocks
    orchestrator: JobOrchestrator
    runner: JobRunner

    def quota_gate(self, session: AsyncSession) -> QuotaGate:
        return QuotaGate(session, self.plans)

    def job_service(self, session: AsyncSession) -> JobService:
        return JobService(
            session,
            self.quota_gate(session),
            self.tracker,
            self.owner_locks,
            max_retries=self.settings.max_retries,
        )

    async def start(self) -> None:
        """Create tables, settle interrupted jobs, start workers and pick up jobs left queued."""
        await self.database.init()
        await self.orchestrator.settle_interrupted()
        self.runner.start()
        await self.runner.recover(self.database.session_maker)

    async def close(self) -> None:
        await self.runner.shutdown()
        await self.database.close()


def build_services(
    settings: Settings,
    database: Optional[Database] = None,
    source_provider=None,
    encoder=None,
    storage=None,
    analyzer=None,
) -> ServiceContainer:
    """
    Construct every service from settings.

    External collaborators may be passed in to replace the default adapters.
    """
    database = database or Database(settings.database_url, echo=settings.debug)
    plans = PlanCatalog(default_code=settings.default_plan_code)
    tracker = ProgressTracker(database.session_maker)
    cleanup = CleanupManager(settings.work_dir)
    credits = CreditLedger(database.session_maker)

    if analyzer is None and settings.tracking_analyzer_url:
        analyzer = HttpSubjectAnalyzer(settings.tracking_analyzer_url, settings.analyzer_timeout_seconds)

    orchestrator = JobOrchestrator(
        session_maker=database.session_maker,
        plans=plans,
        tracker=tracker,
        cleanup=cleanup,
        source_provider=source_provider or DefaultSourceProvider(
            settings.assets_dir,
            ffprobe_path=settings.ffprobe_path,
            ytdlp_path=settings.ytdlp_path,
        ),
        encoder=encoder or FFmpegEncoder(
            ffmpeg_path=settings.ffmpeg_path,
            ffprobe_path=settings.ffprobe_path,
            thumbnail_format=settings.thumbnail_format,
        ),
        storage=storage or LocalStorage(settings.storage_dir, settings.public_base_url),
        credits=credits,
        analyzer=analyzer,
        source_timeout=settings.source_timeout_seconds,
        encode_timeout=settings.encode_timeout_seconds,
        upload_timeout=settings.upload_timeout_seconds,
        analyzer_timeout=settings.analyzer_timeout_seconds,
    )
    runner = JobRunner(orchestrator.run, worker_count=settings.worker_count)

    return ServiceContainer(
        settings=settings,
        database=database,
        plans=plans,
        tracker=tracker,
        cleanup=cleanup,
        credits=credits,
        owner_locks=OwnerLocks(),
        orchestrator=orchestrator,
        runner=runner,
    )
