"""Single instance lock tests."""

import os

from fieldsync.process_lock import ProcessLock


class TestProcessLock:
    """Test acquiring and discovering the service lock."""

    def test_acquire_and_discover(self, temp_config):
        lock = ProcessLock(temp_config)
        assert lock.acquire() is True
        try:
            assert ProcessLock(temp_config).find_running_pid() == os.getpid()
            assert ProcessLock(temp_config).acquire() is False
        finally:
            lock.release()

        assert ProcessLock(temp_config).find_running_pid() is None

    def test_no_lock_file(self, temp_config):
        assert ProcessLock(temp_config).find_running_pid() is None

    def test_release_twice(self, temp_config):
        lock = ProcessLock(temp_config)
        lock.acquire()
        lock.release()
        lock.release()

        assert lock.lock_fd is None

    def test_stop_dead_process(self):
        assert ProcessLock.stop_process(2**22 + 12345) is True
