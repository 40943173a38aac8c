"""Per-job working directories."""
import asyncio
import logging
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class CleanupManager:
    """
    Owns job working directories under ``work_root``.

    Each job gets its own directory; it is removed on every exit path of the
    ``working_directory`` block, including errors and cancellation.
    """

    def __init__(self, work_root: Path):
        self.work_root = Path(work_root)

    @asynccontextmanager
    async def working_directory(self, job_id: str) -> AsyncIterator[Path]:
        self.work_root.mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix=f"job_{job_id}_", dir=self.work_root))
        logger.debug(f"Created working directory {path}")
        try:
            yield path
        finally:
            await self.release(path)

    async def release(self, path: Path) -> bool:
        """Remove a working directory. Failures are logged, never raised."""
        try:
            await asyncio.to_thread(shutil.rmtree, path)
            logger.debug(f"Removed working directory {path}")
            return True
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.warning(f"Failed to remove working directory {path}: {e}")
            return False
