import os

from kiro_bridge.server.server_lock import ServerLock


def test_server_lock_blocks_when_pid_alive(tmp_path):
    lock = ServerLock(9999, namespace="test-lock", lock_dir=tmp_path)
    # Lock file owned by a live process other than us.
    lock.lock_file.write_text("1", encoding="utf-8")
    assert lock.status().is_running is True
    assert lock.acquire(force=False, timeout_s=0) is False
    assert "another kiro-bridge instance (PID 1)" in lock.status().describe(9999)


def test_server_lock_clears_stale_pid(tmp_path):
    lock = ServerLock(9998, namespace="test-lock", lock_dir=tmp_path)
    lock.lock_file.write_text("999999", encoding="utf-8")  # very likely nonexistent
    status = lock.status()
    assert status.is_running is False
    assert "did not shut down cleanly" in status.describe(9998)
    assert lock.acquire(force=False, timeout_s=1) is True
    assert lock.lock_file.read_text() == str(os.getpid())
    lock.release()
    assert not lock.lock_file.exists()


def test_invalid_lock_file_needs_force(tmp_path):
    lock = ServerLock(9997, namespace="test-lock", lock_dir=tmp_path)
    lock.lock_file.write_text("garbage", encoding="utf-8")
    assert lock.status().reason == "invalid lock file"
    assert lock.acquire(force=False, timeout_s=0) is False
    assert lock.acquire(force=True, timeout_s=0) is True


def test_release_leaves_foreign_lock(tmp_path):
    lock = ServerLock(9996, namespace="test-lock", lock_dir=tmp_path)
    lock.lock_file.write_text("1", encoding="utf-8")
    lock.release()
    assert lock.lock_file.exists()


def test_context_manager(tmp_path):
    with ServerLock(9995, namespace="test-lock", lock_dir=tmp_path) as lock:
        assert lock.status().pid == os.getpid()
    assert not lock.lock_file.exists()
