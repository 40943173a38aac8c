"""Shared fixtures: a per-test SQLite database and the services built on it."""
import pytest

from clipforge.config import Settings
from clipforge.db.database import Database
from clipforge.pipeline.plans import PlanCatalog
from clipforge.services.cleanup import CleanupManager
from clipforge.services.credit_service import CreditLedger
from clipforge.services.job_service import JobService, OwnerLocks
from clipforge.services.progress import ProgressTracker
from clipforge.services.quota_service import QuotaGate

from fakes import make_submission


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        data_dir=tmp_path,
        work_dir=tmp_path / "work",
        assets_dir=tmp_path / "assets",
        storage_dir=tmp_path / "storage",
        tracking_analyzer_url=None,
        worker_count=1,
        max_retries=3,
    )


@pytest.fixture
async def database(test_settings):
    db = Database(test_settings.database_url)
    await db.init()
    yield db
    await db.close()


@pytest.fixture
def session_maker(database):
    return database.session_maker


@pytest.fixture
def plans():
    return PlanCatalog()


@pytest.fixture
def tracker(session_maker):
    return ProgressTracker(session_maker)


@pytest.fixture
def owner_locks():
    return OwnerLocks()


@pytest.fixture
def cleanup(test_settings):
    return CleanupManager(test_settings.work_dir)


@pytest.fixture
def credits(session_maker):
    return CreditLedger(session_maker)


@pytest.fixture
def submit_job(session_maker, plans, tracker, owner_locks):
    """Create a queued job through JobService, as the API does."""

    async def _submit(owner_id="owner-1", submission=None, max_retries=3):
        submission = submission or make_submission()
        async with session_maker() as session:
            service = JobService(
                session, QuotaGate(session, plans), tracker, owner_locks, max_retries=max_retries
            )
            job, _ = await service.create_job(owner_id, submission)
            return job.id

    return _submit
