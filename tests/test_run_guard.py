from pathlib import Path

import pytest

from cloudsync.core.errors import ConcurrentRunError
from cloudsync.core.run_guard import RunGuard


def _guard(tmp_path: Path, **kw) -> RunGuard:
    cache = tmp_path / "docs.cache"
    return RunGuard(cache, cache.with_suffix(".lock"), cache.with_suffix(".pid"), **kw)


def test_session_writes_and_removes_pid(tmp_path: Path):
    guard = _guard(tmp_path)
    with guard.session():
        assert guard.pid_file.exists()
    assert not guard.pid_file.exists()


def test_session_refuses_second_instance(tmp_path: Path):
    guard = _guard(tmp_path)
    guard.pid_file.write_text("12345", encoding="utf-8")

    with pytest.raises(ConcurrentRunError, match="--forcestart"):
        with guard.session():
            pass
    assert guard.pid_file.exists()

    with guard.session(force=True):
        pass
    assert not guard.pid_file.exists()


def test_read_only_session_leaves_pid_file_alone(tmp_path: Path):
    guard = _guard(tmp_path)
    guard.pid_file.write_text("12345", encoding="utf-8")
    with guard.session(check_pid=False):
        pass
    assert guard.pid_file.read_text(encoding="utf-8") == "12345"


def test_pid_removed_on_error(tmp_path: Path):
    guard = _guard(tmp_path)
    with pytest.raises(RuntimeError):
        with guard.session():
            raise RuntimeError("boom")
    assert not guard.pid_file.exists()


def test_release_writes_snapshot_before_dropping_lock(tmp_path: Path):
    guard = _guard(tmp_path)
    seen = []

    assert guard.release(lambda: seen.append("early")) is False
    guard.lock()
    assert guard.lock_file.exists()

    def write():
        seen.append(guard.lock_file.exists())
        guard.cache_file.write_text("", encoding="utf-8")

    assert guard.release(write) is True
    assert seen == [True]
    assert not guard.lock_file.exists()
    assert guard.cache_usable()


def test_lock_left_behind_marks_crash(tmp_path: Path):
    first = _guard(tmp_path)
    first.cache_file.write_text("", encoding="utf-8")
    first.lock()

    second = _guard(tmp_path)
    assert second.crash_detected()
    assert not second.cache_usable()


def test_dry_run_never_touches_disk(tmp_path: Path):
    guard = _guard(tmp_path, dry_run=True)
    guard.lock()
    assert guard.locked
    assert not guard.lock_file.exists()
    assert guard.release(lambda: pytest.fail("snapshot written in dry-run")) is True
