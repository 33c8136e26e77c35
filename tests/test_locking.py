"""Tests for the single-instance host lock."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from nodeadm.locking import GLOBAL_LOCK_NAME, LockManager, LockTimeoutError


def test_host_lock_writes_metadata(tmp_path: Path) -> None:
    manager = LockManager(tmp_path / "run", default_timeout=1.0)
    lock_path = tmp_path / "run" / f"{GLOBAL_LOCK_NAME}.lock"

    with manager.host_lock() as handle:
        assert handle.path == lock_path
        assert handle.wait_ms >= 0
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)
        assert "acquired_at" in data

    # The file stays behind for diagnostics but is no longer held.
    with manager.host_lock(timeout=0.2):
        pass


def test_second_host_lock_times_out(tmp_path: Path) -> None:
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.host_lock():
        with pytest.raises(LockTimeoutError, match="another nodeadm command"):
            with manager.host_lock(timeout=0.1):
                pass


def test_named_locks_are_independent(tmp_path: Path) -> None:
    manager = LockManager(tmp_path / "run", default_timeout=0.5)

    with manager.host_lock():
        with manager.named_lock("tracker", timeout=0.1) as handle:
            assert handle.path == tmp_path / "run" / "tracker.lock"
