"""Tests for per-job working directories."""
import logging

import pytest

from clipforge.services import cleanup as cleanup_module


class TestWorkingDirectory:
    @pytest.mark.asyncio
    async def test_removed_after_success(self, cleanup):
        async with cleanup.working_directory("abc") as work_dir:
            (work_dir / "source.mp4").write_bytes(b"data")
            assert work_dir.name.startswith("job_abc_")
            assert work_dir.parent == cleanup.work_root

        assert not work_dir.exists()

    @pytest.mark.asyncio
    async def test_removed_after_error(self, cleanup):
        with pytest.raises(RuntimeError):
            async with cleanup.working_directory("abc") as work_dir:
                (work_dir / "partial.mp4").write_bytes(b"data")
                raise RuntimeError("encoder exploded")

        assert not work_dir.exists()

    @pytest.mark.asyncio
    async def test_jobs_get_separate_directories(self, cleanup):
        async with cleanup.working_directory("a") as first:
            async with cleanup.working_directory("a") as second:
                assert first != second


class TestRelease:
    @pytest.mark.asyncio
    async def test_missing_directory_is_fine(self, cleanup, tmp_path):
        assert await cleanup.release(tmp_path / "never-created") is True

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, cleanup, tmp_path, monkeypatch, caplog):
        def _refuse(path):
            raise PermissionError("busy")

        monkeypatch.setattr(cleanup_module.shutil, "rmtree", _refuse)

        with caplog.at_level(logging.WARNING, logger="clipforge.services.cleanup"):
            assert await cleanup.release(tmp_path) is False
        assert "Failed to remove working directory" in caplog.text

    @pytest.mark.asyncio
    async def test_block_error_survives_release_failure(self, cleanup, monkeypatch):
        def _refuse(path):
            raise OSError("busy")

        monkeypatch.setattr(cleanup_module.shutil, "rmtree", _refuse)

        with pytest.raises(ValueError):
            async with cleanup.working_directory("abc"):
                raise ValueError("original")
