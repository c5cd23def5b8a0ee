"""Tests for the pgtmp CLI."""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from pgtmp.cli import _pool_purge, _pool_status, _pool_warm, _run, main


class TestPoolStatus:
    """Tests for pool status command."""

    def test_pool_status_empty(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Test pool status with nothing prepared."""
        mock_cache = MagicMock()
        mock_cache.status.return_value = {
            "pool_root": "/tmp",
            "ready_count": 0,
            "total_size_human": "0.0 B",
            "entries": [],
        }

        _pool_status(mock_cache)

        captured = capsys.readouterr()
        assert "Pool Status:" in captured.out
        assert "Root: /tmp" in captured.out
        assert "Ready directories: 0" in captured.out
        assert "No prepared data directories." in captured.out

    def test_pool_status_with_entries(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Test pool status listing ready directories."""
        mock_cache = MagicMock()
        mock_cache.status.return_value = {
            "pool_root": "/tmp",
            "ready_count": 2,
            "total_size_human": "80.0 MB",
            "entries": [
                {
                    "path": "/tmp/pgtmp3f9b2c1d4e5f6071",
                    "prepared_at": "2026-10-17T10:30:00",
                    "size_human": "40.0 MB",
                },
                {
                    "path": "/tmp/pgtmp8a7e6d5c4b3a2910",
                    "prepared_at": "2026-10-17T09:15:00",
                    "size_human": "40.0 MB",
                },
            ],
        }

        _pool_status(mock_cache)

        captured = capsys.readouterr()
        assert "Ready directories: 2" in captured.out
        assert "Total size: 80.0 MB" in captured.out
        assert "Prepared data directories (most recent first):" in captured.out
        assert "/tmp/pgtmp3f9b2c1d4e5f6071" in captured.out
        assert "Size: 40.0 MB" in captured.out
        assert "Prepared: 2026-10-17T09:15:00" in captured.out


class TestPoolWarmAndPurge:
    """Tests for pool warm and purge commands."""

    def test_pool_warm(self, capsys: pytest.CaptureFixture[str]) -> None:
        mock_cache = MagicMock()
        mock_cache.warm.return_value = [MagicMock(path=Path("/tmp/pgtmpone"))]

        _pool_warm(mock_cache, 1)

        mock_cache.warm.assert_called_once_with(1)
        captured = capsys.readouterr()
        assert "Prepared 1 data directory:" in captured.out
        assert "/tmp/pgtmpone" in captured.out

    def test_pool_purge_nothing(self, capsys: pytest.CaptureFixture[str]) -> None:
        mock_cache = MagicMock()
        mock_cache.purge.return_value = []

        _pool_purge(mock_cache)

        assert "No prepared data directories to purge." in capsys.readouterr().out

    def test_pool_purge(self, capsys: pytest.CaptureFixture[str]) -> None:
        mock_cache = MagicMock()
        mock_cache.purge.return_value = ["/tmp/pgtmpone", "/tmp/pgtmptwo"]

        _pool_purge(mock_cache)

        captured = capsys.readouterr()
        assert "Purged 2 data directories:" in captured.out
        assert "/tmp/pgtmptwo" in captured.out

    def test_pool_purge_stale(self, capsys: pytest.CaptureFixture[str]) -> None:
        mock_cache = MagicMock()
        mock_cache.purge_stale.return_value = ["/tmp/pgtmpdead"]

        _pool_purge(mock_cache, stale=True, max_age=60.0)

        mock_cache.purge_stale.assert_called_once_with(60.0)
        mock_cache.purge.assert_not_called()
        captured = capsys.readouterr()
        assert "Purged 1 data directory:" in captured.out
        assert "/tmp/pgtmpdead" in captured.out

    def test_pool_purge_stale_nothing(self, capsys: pytest.CaptureFixture[str]) -> None:
        mock_cache = MagicMock()
        mock_cache.purge_stale.return_value = []

        _pool_purge(mock_cache, stale=True)

        assert "No abandoned data directories to purge." in capsys.readouterr().out


class TestRun:
    """Tests for the run command."""

    def _cache(self) -> tuple[MagicMock, MagicMock]:
        cleanup = MagicMock()
        mock_cache = MagicMock()
        mock_cache.acquire.return_value = ("postgres://u:p@localhost:1/db?sslmode=disable", cleanup)
        return mock_cache, cleanup

    def test_passes_url_and_exit_status(self) -> None:
        mock_cache, cleanup = self._cache()
        code = (
            "import os, sys; "
            "sys.exit(0 if os.environ['DATABASE_URL'].startswith('postgres://') else 5)"
        )

        status = _run(mock_cache, ["--", sys.executable, "-c", code], "DATABASE_URL", 2.0)

        assert status == 0
        mock_cache.acquire.assert_called_once_with(timeout=2.0)
        cleanup.assert_called_once()

    def test_propagates_command_failure(self) -> None:
        mock_cache, cleanup = self._cache()

        status = _run(mock_cache, [sys.executable, "-c", "raise SystemExit(3)"], "PGURL", None)

        assert status == 3
        cleanup.assert_called_once()

    def test_missing_command(self, capsys: pytest.CaptureFixture[str]) -> None:
        mock_cache, _ = self._cache()

        assert _run(mock_cache, ["--"], "PGURL", None) == 2
        mock_cache.acquire.assert_not_called()
        assert "missing command" in capsys.readouterr().err

    def test_unknown_program(self) -> None:
        mock_cache, cleanup = self._cache()

        status = _run(mock_cache, ["/nonexistent/pgtmp-test-binary"], "PGURL", None)

        assert status == 127
        cleanup.assert_called_once()

    def test_acquire_failure(self) -> None:
        mock_cache = MagicMock()
        mock_cache.acquire.side_effect = RuntimeError("initdb not found")

        assert _run(mock_cache, ["true"], "PGURL", None) == 1


class TestMain:
    """Tests for main() dispatch."""

    @patch("pgtmp.cache.PrewarmCache")
    def test_pool_status_via_main(
        self, mock_cache_class: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        mock_cache = MagicMock()
        mock_cache.status.return_value = {
            "pool_root": "/tmp",
            "ready_count": 0,
            "total_size_human": "0.0 B",
            "entries": [],
        }
        mock_cache_class.return_value = mock_cache

        main(["pool", "status"])

        assert "Pool Status:" in capsys.readouterr().out

    @patch("pgtmp.cache.PrewarmCache")
    def test_pool_warm_via_main(self, mock_cache_class: MagicMock) -> None:
        mock_cache = MagicMock()
        mock_cache.warm.return_value = []
        mock_cache_class.return_value = mock_cache

        main(["pool", "warm", "--count", "3"])

        mock_cache.warm.assert_called_once_with(3)

    @patch("pgtmp.cache.PrewarmCache")
    def test_pool_purge_stale_via_main(self, mock_cache_class: MagicMock) -> None:
        mock_cache = MagicMock()
        mock_cache.purge_stale.return_value = []
        mock_cache_class.return_value = mock_cache

        main(["pool", "purge", "--stale", "--older-than", "10"])

        mock_cache.purge_stale.assert_called_once_with(10.0)

    @patch("pgtmp.cache.PrewarmCache")
    def test_pool_no_subcommand(self, mock_cache_class: MagicMock) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["pool"])
        assert exc_info.value.code == 0

    @patch("pgtmp.cache.PrewarmCache")
    def test_run_via_main(self, mock_cache_class: MagicMock) -> None:
        mock_cache = MagicMock()
        mock_cache.acquire.return_value = ("postgres://x", MagicMock())
        mock_cache_class.return_value = mock_cache

        with pytest.raises(SystemExit) as exc_info:
            main(["run", "--env-var", "MY_DB", "--", sys.executable, "-c", "pass"])

        assert exc_info.value.code == 0

    def test_no_command(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 2
        assert "usage:" in capsys.readouterr().out

    def test_version_flag(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])

        assert exc_info.value.code == 0
        assert "pgtmp" in capsys.readouterr().out

    def test_prepare_directive_bypasses_argparse(self) -> None:
        with patch("pgtmp.relay.subprocess.Popen") as popen:
            with pytest.raises(SystemExit) as exc_info:
                main(["--prepare=0", "/tmp/pgtmpnext"])

        assert exc_info.value.code == 0
        popen.assert_called_once()
