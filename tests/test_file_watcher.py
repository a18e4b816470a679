"""Tests for debounced store-file change detection.

poll() takes an explicit clock value so debounce behaviour is checked
without sleeping.
"""

from __future__ import annotations

import os
import time

from eventlog.runtime.lifecycle.file_watcher import StoreFileWatcher, file_identity


def _replace(path, content=b"new"):
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(content)
    os.replace(tmp, path)


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, exists):
        self.calls.append(exists)


class TestFileIdentity:
    def test_missing_file(self, tmp_path):
        assert file_identity(tmp_path / "absent.db") is None

    def test_replacement_changes_identity(self, tmp_path):
        path = tmp_path / "events.db"
        path.write_bytes(b"old")
        before = file_identity(path)
        _replace(path)
        assert file_identity(path) != before


class TestDebounce:
    def test_unchanged_file_never_fires(self, tmp_path):
        path = tmp_path / "events.db"
        path.write_bytes(b"x")
        recorder = Recorder()
        watcher = StoreFileWatcher(path, recorder, debounce=0.5)
        assert watcher.poll(now=0.0) is False
        assert watcher.poll(now=10.0) is False
        assert recorder.calls == []

    def test_removal_fires_after_debounce(self, tmp_path):
        path = tmp_path / "events.db"
        path.write_bytes(b"x")
        recorder = Recorder()
        watcher = StoreFileWatcher(path, recorder, debounce=0.5)

        path.unlink()
        assert watcher.poll(now=0.0) is False
        assert watcher.poll(now=0.2) is False
        assert watcher.poll(now=0.6) is True
        assert recorder.calls == [False]

    def test_burst_of_changes_fires_once(self, tmp_path):
        path = tmp_path / "events.db"
        path.write_bytes(b"x")
        recorder = Recorder()
        watcher = StoreFileWatcher(path, recorder, debounce=0.5)

        # Keep the original inode alive so it cannot be reused by the new files
        with open(path, "rb"):
            path.unlink()
            watcher.poll(now=0.0)
            path.write_bytes(b"y")
            watcher.poll(now=0.1)
            _replace(path, b"z")
            watcher.poll(now=0.2)
        assert watcher.poll(now=0.8) is True
        assert watcher.poll(now=5.0) is False
        assert recorder.calls == [True]
        assert watcher.fire_count == 1

    def test_appearing_file_fires(self, tmp_path):
        path = tmp_path / "events.db"
        recorder = Recorder()
        watcher = StoreFileWatcher(path, recorder, debounce=0.1)
        path.write_bytes(b"x")
        watcher.poll(now=0.0)
        assert watcher.poll(now=0.2) is True
        assert recorder.calls == [True]

    def test_rebaseline_suppresses_known_change(self, tmp_path):
        path = tmp_path / "events.db"
        path.write_bytes(b"x")
        recorder = Recorder()
        watcher = StoreFileWatcher(path, recorder, debounce=0.1)
        _replace(path)
        watcher.rebaseline()
        watcher.poll(now=0.0)
        assert watcher.poll(now=1.0) is False
        assert recorder.calls == []

    def test_callback_error_is_contained(self, tmp_path):
        path = tmp_path / "events.db"
        path.write_bytes(b"x")

        def explode(exists):
            raise RuntimeError("boom")

        watcher = StoreFileWatcher(path, explode, debounce=0.1)
        path.unlink()
        watcher.poll(now=0.0)
        assert watcher.poll(now=0.5) is True
        assert watcher.fire_count == 1


class TestBackgroundThread:
    def test_thread_detects_replacement(self, tmp_path):
        path = tmp_path / "events.db"
        path.write_bytes(b"x")
        recorder = Recorder()
        watcher = StoreFileWatcher(path, recorder, debounce=0.02, poll_interval=0.005)
        watcher.start()
        try:
            _replace(path)
            deadline = time.monotonic() + 2.0
            while not recorder.calls and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            watcher.stop()
        assert recorder.calls == [True]
