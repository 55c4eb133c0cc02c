"""Tests for the host lock and maintenance windows."""

import os
from datetime import datetime

import pytest

from hostconverge.errors import ConcurrentRunError
from hostconverge.reconciler.lock import HostLock
from hostconverge.reconciler.window import in_maintenance_window


class TestHostLock:
    def test_second_holder_fails_fast(self, tmp_path):
        path = str(tmp_path / "run" / "hostconverge.lock")
        with HostLock(path) as first:
            assert first.held
            with pytest.raises(ConcurrentRunError):
                HostLock(path).acquire()

    def test_reacquire_after_release(self, tmp_path):
        path = str(tmp_path / "hostconverge.lock")
        lock = HostLock(path)
        lock.acquire()
        lock.release()
        assert not lock.held
        with HostLock(path) as again:
            assert again.held

    def test_writes_pid(self, tmp_path):
        path = tmp_path / "hostconverge.lock"
        with HostLock(str(path)):
            assert path.read_text().strip() == str(os.getpid())

    def test_released_on_error(self, tmp_path):
        path = str(tmp_path / "hostconverge.lock")
        with pytest.raises(RuntimeError):
            with HostLock(path):
                raise RuntimeError("boom")
        with HostLock(path) as lock:
            assert lock.held

    def test_release_is_idempotent(self, tmp_path):
        lock = HostLock(str(tmp_path / "hostconverge.lock"))
        lock.release()
        lock.acquire()
        lock.release()
        lock.release()
        assert not lock.held


class TestMaintenanceWindow:
    def test_no_schedule_always_open(self):
        assert in_maintenance_window(None, datetime(2026, 3, 1, 12, 0))
        assert in_maintenance_window("", datetime(2026, 3, 1, 12, 0))

    def test_inside_window(self):
        # Every minute from 02:00 to 04:59 on Sundays
        assert in_maintenance_window("* 2-4 * * 0", datetime(2026, 3, 1, 3, 30))

    def test_outside_window(self):
        assert not in_maintenance_window("* 2-4 * * 0", datetime(2026, 3, 1, 5, 0))
        assert not in_maintenance_window("* 2-4 * * 0", datetime(2026, 3, 2, 3, 30))

    def test_invalid_expression_never_matches(self):
        assert not in_maintenance_window("not a cron", datetime(2026, 3, 1, 3, 30))
