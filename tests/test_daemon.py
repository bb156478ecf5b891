"""Tests for configuration, background scheduling, parent-process tracking,
daemon composition and the command-line launcher."""

import argparse
import csv
import json
import os
import subprocess
import sys
import threading
import time

import pytest

import run
from save_enroller.config import (
    DEFAULT_CONFIG,
    SAVE_EXTENSIONS,
    SIZE_LIMIT_BYTES,
    DaemonConfig,
    load_config,
)
from save_enroller.daemon.parent_tracker import get_parent_process, wait_for_parent
from save_enroller.daemon.scheduler import PeriodicTask
from save_enroller.daemon.service import SaveEnrollerDaemon, storage_dir_for
from save_enroller.storage.hashing import content_digest


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def finished_pid() -> int:
    """PID of a process that has already exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def wait_until(predicate, timeout=3.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def fast_config():
    return DaemonConfig(
        flush_interval_seconds=0.05,
        retention_interval_seconds=3600,
        read_retry_attempts=2,
        read_retry_delay_seconds=0,
        parent_poll_seconds=0.05,
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestConfig:
    def test_shipped_config_matches_defaults(self):
        assert DEFAULT_CONFIG.exists()
        cfg = load_config()
        assert cfg == DaemonConfig()
        assert cfg.source == str(DEFAULT_CONFIG)

    def test_explicit_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.json"))

    def test_overrides(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "watcher": {"extensions": ["sav", ".BAK"], "read_retry_attempts": 9},
            "retention": {"size_limit_bytes": 1024},
        }))
        cfg = load_config(str(path))
        assert cfg.extensions == (".sav", ".bak")
        assert cfg.read_retry_attempts == 9
        assert cfg.size_limit_bytes == 1024
        assert cfg.flush_interval_seconds == DaemonConfig().flush_interval_seconds

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"watcher": {"colour": "blue"}, "dashboard": {}}))
        assert load_config(str(path)) == DaemonConfig()

    def test_defaults(self):
        cfg = DaemonConfig()
        assert cfg.extensions == SAVE_EXTENSIONS
        assert cfg.size_limit_bytes == SIZE_LIMIT_BYTES == 10 * 1024 ** 3


# ---------------------------------------------------------------------------
# PeriodicTask
# ---------------------------------------------------------------------------

class TestPeriodicTask:
    def test_runs_repeatedly(self):
        hits = []
        task = PeriodicTask("test", 0.01, lambda: hits.append(1))
        task.start()
        try:
            assert wait_until(lambda: len(hits) >= 3)
        finally:
            task.stop()
        assert not task.running

    def test_failures_do_not_stop_schedule(self):
        def boom():
            raise RuntimeError("bad tick")

        task = PeriodicTask("failing", 0.01, boom)
        task.start()
        try:
            assert wait_until(lambda: task.failures >= 3)
            assert task.running
        finally:
            task.stop()

    def test_stop_before_first_tick(self):
        hits = []
        task = PeriodicTask("slow", 60, lambda: hits.append(1))
        task.start()
        task.stop()
        assert hits == []

    def test_run_once(self):
        hits = []
        task = PeriodicTask("manual", 60, lambda: hits.append(1))
        task.run_once()
        assert hits == [1]
        assert task.runs == 1


# ---------------------------------------------------------------------------
# Parent tracking
# ---------------------------------------------------------------------------

class TestParentTracker:
    def test_current_process_is_running(self):
        assert get_parent_process(os.getpid()) is not None

    def test_finished_process(self):
        assert get_parent_process(finished_pid()) is None

    def test_returns_when_parent_exits(self):
        proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(0.3)"])
        try:
            assert wait_for_parent(proc.pid, threading.Event(), poll_interval=0.05) is True
        finally:
            proc.wait()

    def test_missing_parent_returns_immediately(self):
        assert wait_for_parent(finished_pid(), threading.Event(), poll_interval=0.05) is True

    def test_stop_event_ends_wait(self):
        stop = threading.Event()
        timer = threading.Timer(0.1, stop.set)
        timer.start()
        assert wait_for_parent(os.getpid(), stop, poll_interval=0.05) is False
        timer.join()


# ---------------------------------------------------------------------------
# SaveEnrollerDaemon
# ---------------------------------------------------------------------------

class TestDaemon:
    def test_layout(self, tmp_path, fast_config):
        saves = tmp_path / "Saves"
        saves.mkdir()
        daemon = SaveEnrollerDaemon(str(tmp_path / "ModsData"), str(saves), fast_config)
        assert daemon.storage_dir == tmp_path / "ModsData" / ".SaveEnroller"
        assert daemon.blobs.versions_dir == daemon.storage_dir / "versions"
        assert daemon.ledger.track_file.name == "track.csv"
        assert daemon.ledger.time_file.name == "time.csv"

    def test_start_scans_and_stop_flushes(self, tmp_path, fast_config, make_save):
        saves = tmp_path / "Saves"
        data = make_save(saves / "city.cok")

        with SaveEnrollerDaemon(str(tmp_path), str(saves), fast_config) as daemon:
            assert "city.cok" in daemon.ledger
            assert daemon.blobs.exists(content_digest(data))
            assert daemon.flush_task.running
            assert daemon.retention_task.running

        track = storage_dir_for(str(tmp_path)) / "track.csv"
        with open(track, newline="") as f:
            rows = list(csv.reader(f))
        assert rows[0][0] == "city.cok"
        assert not daemon.flush_task.running

    def test_periodic_flush(self, tmp_path, fast_config, make_save):
        saves = tmp_path / "Saves"
        saves.mkdir()
        daemon = SaveEnrollerDaemon(str(tmp_path), str(saves), fast_config)
        daemon.start()
        try:
            daemon.ledger.update("manual.cok", "abc")
            assert wait_until(lambda: not daemon.ledger.dirty)
            assert "manual.cok" in (daemon.storage_dir / "track.csv").read_text()
        finally:
            daemon.stop()

    def test_restart_keeps_history(self, tmp_path, fast_config, make_save):
        saves = tmp_path / "Saves"
        make_save(saves / "city.cok", b"v1")
        with SaveEnrollerDaemon(str(tmp_path), str(saves), fast_config):
            pass
        make_save(saves / "city.cok", b"v2")
        with SaveEnrollerDaemon(str(tmp_path), str(saves), fast_config) as daemon:
            assert len(daemon.ledger.history("city.cok").versions) == 2


# ---------------------------------------------------------------------------
# Launcher
# ---------------------------------------------------------------------------

class TestLauncher:
    def test_parse_parent(self):
        assert run.parse_parent("debug") is None
        assert run.parse_parent("DEBUG") is None
        assert run.parse_parent("4242") == 4242

    @pytest.mark.parametrize("value", ["abc", "0", "-5"])
    def test_parse_parent_rejects(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            run.parse_parent(value)

    def test_missing_saves_dir(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            run.main([str(tmp_path), str(tmp_path / "missing"), "debug"])
        assert exc.value.code == 2

    def test_exits_with_parent(self, tmp_path, make_save, monkeypatch):
        monkeypatch.setattr(run.signal, "signal", lambda *args: None)
        saves = tmp_path / "Saves"
        make_save(saves / "city.cok")
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"daemon": {"parent_poll_seconds": 0.05}}))

        code = run.main([
            str(tmp_path), str(saves), str(finished_pid()),
            "--config", str(config),
            "--log-file", str(tmp_path / "daemon.log"),
        ])

        assert code == 0
        track = storage_dir_for(str(tmp_path)) / "track.csv"
        assert "city.cok" in track.read_text()
