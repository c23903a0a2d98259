"""Unit tests for the host-wide lock."""

import threading
import time

import pytest

from proxyctl.core.exceptions import LockError
from proxyctl.services.lock import ExclusivityLock


class TestExclusivityLock:
    """Tests for ExclusivityLock."""

    def test_acquire_release(self, tmp_path):
        """The lock is held inside the block and released after."""
        lock = ExclusivityLock(tmp_path / "proxyctl.lock")

        with lock:
            assert lock.held
        assert not lock.held
        assert (tmp_path / "proxyctl.lock").exists()

    def test_released_on_exception(self, tmp_path):
        """An exception inside the block releases the lock."""
        lock = ExclusivityLock(tmp_path / "proxyctl.lock")

        with pytest.raises(RuntimeError):
            with lock:
                raise RuntimeError("fail")

        assert not lock.held
        with ExclusivityLock(tmp_path / "proxyctl.lock"):
            pass

    def test_second_holder_blocks(self, tmp_path):
        """A second lock on the same path waits for the first to release."""
        path = tmp_path / "proxyctl.lock"
        events = []
        first_has_lock = threading.Event()

        def first():
            with ExclusivityLock(path):
                events.append("first-in")
                first_has_lock.set()
                time.sleep(0.3)
                events.append("first-out")

        def second():
            first_has_lock.wait(timeout=5)
            with ExclusivityLock(path):
                events.append("second-in")

        threads = [threading.Thread(target=first), threading.Thread(target=second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert events == ["first-in", "first-out", "second-in"]

    def test_run(self, tmp_path):
        """run calls the operation while holding the lock."""
        lock = ExclusivityLock(tmp_path / "proxyctl.lock")

        def operation(a, b=0):
            assert lock.held
            return a + b

        assert lock.run(operation, 1, b=2) == 3
        assert not lock.held

    def test_release_without_acquire(self, tmp_path):
        """Releasing an unheld lock is a no-op."""
        ExclusivityLock(tmp_path / "proxyctl.lock").release()

    def test_unopenable_path(self, tmp_path):
        """A lock path that cannot be created raises LockError."""
        blocker = tmp_path / "file"
        blocker.write_text("")

        with pytest.raises(LockError):
            ExclusivityLock(blocker / "proxyctl.lock").acquire()
