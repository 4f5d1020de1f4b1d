"""
Tests for upload orchestration, backoff and manifest commits.
"""

import shutil
import tempfile
import threading
import time
import unittest
from pathlib import Path

import pytest

from asset_sync.processing.manifest import ManifestStore
from asset_sync.processing.uploader import (
    BackoffPolicy, JobStatus, ManifestUpdate, UploadJob, UploadOrchestrator
)
from asset_sync.providers.base import AssetHost, HostError, RateLimitedError
from asset_sync.providers.local import DebugAssetHost


class ScriptedHost(AssetHost):
    """Host whose responses are scripted per display name."""

    name = "scripted"

    def __init__(self, script=None):
        super().__init__({})
        self.script = {key: list(outcomes) for key, outcomes in (script or {}).items()}
        self.calls = []
        self._next_id = 100
        self._lock = threading.Lock()

    def configure(self, config):
        self._configured = True

    def upload(self, data, display_name):
        with self._lock:
            self.calls.append(display_name)
            outcomes = self.script.get(display_name)
            outcome = outcomes.pop(0) if outcomes else "ok"
            if outcome == "ok":
                self._next_id += 1
                return self._next_id

        if outcome == "rate-limited-forever":
            self.script[display_name] = ["rate-limited-forever"]
            raise RateLimitedError(self.name)
        if isinstance(outcome, Exception):
            raise outcome
        raise RateLimitedError(self.name, outcome)


class HoldingHost(ScriptedHost):
    """Scripted host that holds uploads in flight until their condition is met."""

    def __init__(self, script, holds):
        super().__init__(script)
        self.holds = holds
        self.started = set()

    def upload(self, data, display_name):
        with self._lock:
            self.started.add(display_name)
        release = self.holds.get(display_name)
        if release is not None:
            deadline = time.monotonic() + 5.0
            while not release() and time.monotonic() < deadline:
                time.sleep(0.01)
        return super().upload(data, display_name)


def make_job(key):
    return UploadJob(
        key=key,
        data=key.encode(),
        display_name=key,
        updates=[ManifestUpdate(key, f"fp-{key}")],
    )


class TestBackoffPolicy(unittest.TestCase):
    """Test retry delays."""

    def test_delay_doubles(self):
        policy = BackoffPolicy(max_retries=5, base_delay=0.5, max_delay=60.0)

        self.assertEqual([policy.delay(n) for n in range(1, 5)], [0.5, 1.0, 2.0, 4.0])

    def test_delay_capped(self):
        policy = BackoffPolicy(base_delay=10.0, max_delay=15.0)

        self.assertEqual(policy.delay(3), 15.0)

    def test_retry_after_is_a_floor(self):
        policy = BackoffPolicy(base_delay=1.0, max_delay=60.0)

        self.assertEqual(policy.delay(1, retry_after=7.0), 7.0)
        self.assertEqual(policy.delay(4, retry_after=2.0), 8.0)

    def test_exhausted_after_max_retries(self):
        policy = BackoffPolicy(max_retries=2)

        self.assertFalse(policy.exhausted(2))
        self.assertTrue(policy.exhausted(3))

    def test_negative_values_rejected(self):
        with self.assertRaises(ValueError):
            BackoffPolicy(max_retries=-1)


class TestUploadOrchestrator:
    """Test orchestrated batches against a scripted host."""

    def setup_method(self):
        """Set up a manifest store and a sleep recorder."""
        self.temp_dir = Path(tempfile.mkdtemp())
        self.manifest_path = self.temp_dir / "asset-manifest.toml"
        self.store = ManifestStore(self.manifest_path)
        self.store.load()
        self.sleeps = []

    def teardown_method(self):
        """Clean up temporary files."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def orchestrator(self, host, **policy):
        return UploadOrchestrator(
            host, self.store, BackoffPolicy(**policy), parallelism=1, sleep=self.sleeps.append
        )

    def test_empty_batch(self):
        report = self.orchestrator(ScriptedHost()).run([])

        assert report.success
        assert not self.manifest_path.exists()

    def test_recovers_from_single_rate_limit(self):
        host = ScriptedHost({"b": [None]})

        report = self.orchestrator(host, max_retries=3, base_delay=0.25).run(
            [make_job("a"), make_job("b"), make_job("c")]
        )

        assert report.success
        assert set(report.succeeded) == {"a", "b", "c"}
        assert self.sleeps == [0.25]
        assert host.calls == ["a", "b", "b", "c"]

        persisted = ManifestStore(self.manifest_path).load()
        assert persisted.identities() == ["a", "b", "c"]
        assert persisted.get("b").remote_id == report.succeeded["b"]

    def test_retry_after_hint_used(self):
        host = ScriptedHost({"a": [4.0]})

        report = self.orchestrator(host, base_delay=0.5).run([make_job("a")])

        assert report.success
        assert self.sleeps == [4.0]

    def test_exhausted_budget_aborts_batch(self):
        host = ScriptedHost({"b": ["rate-limited-forever"]})
        jobs = [make_job("a"), make_job("b"), make_job("c")]

        report = self.orchestrator(host, max_retries=2, base_delay=1.0).run(jobs)

        assert report.aborted
        assert report.aborted_by == "b"
        assert report.succeeded == {"a": 101}
        assert report.pending == ["b", "c"]
        assert not report.success
        assert self.sleeps == [1.0, 2.0]
        assert "c" not in host.calls
        assert jobs[2].status is JobStatus.PENDING

        persisted = ManifestStore(self.manifest_path).load()
        assert persisted.identities() == ["a"]

    def test_host_error_isolated_to_job(self):
        host = ScriptedHost({"b": [HostError("rejected", "scripted")]})

        report = self.orchestrator(host).run([make_job("a"), make_job("b"), make_job("c")])

        assert not report.aborted
        assert set(report.succeeded) == {"a", "c"}
        assert list(report.failed) == ["b"]
        assert str(report.failed["b"]) == "rejected"
        assert self.sleeps == []
        assert ManifestStore(self.manifest_path).load().identities() == ["a", "c"]

    def test_job_updates_share_remote_id(self):
        job = UploadJob(
            key="spritesheet-0",
            data=b"page",
            display_name="spritesheet-0",
            updates=[ManifestUpdate("x.png", "fp-x", packable=True),
                     ManifestUpdate("y.png", "fp-y", packable=True)],
        )

        report = self.orchestrator(ScriptedHost()).run([job])

        manifest = self.store.manifest
        assert manifest.get("x.png").remote_id == report.succeeded["spritesheet-0"]
        assert manifest.get("y.png").remote_id == report.succeeded["spritesheet-0"]

    def test_orchestrator_reusable_after_abort(self):
        host = ScriptedHost({"a": ["rate-limited-forever"]})
        orchestrator = self.orchestrator(host, max_retries=0)

        first = orchestrator.run([make_job("a")])
        host.script["a"] = []
        second = orchestrator.run([make_job("a")])

        assert first.aborted
        assert not second.aborted
        assert "a" in second.succeeded

    def test_run_one_without_store(self):
        orchestrator = UploadOrchestrator(ScriptedHost(), sleep=self.sleeps.append)

        job = orchestrator.run_one(UploadJob("single", b"data", "single"))

        assert job.status is JobStatus.SUCCEEDED
        assert job.remote_id == 101

    def test_rejects_bad_parallelism(self):
        with pytest.raises(ValueError):
            UploadOrchestrator(ScriptedHost(), parallelism=0)


class TestParallelUploads:
    """Test concurrent uploads and draining with several workers."""

    def setup_method(self):
        """Set up a debug host folder."""
        self.temp_dir = Path(tempfile.mkdtemp())
        self.host = DebugAssetHost({"output_dir": str(self.temp_dir / "uploads")})
        self.host.configure({"output_dir": str(self.temp_dir / "uploads")})
        self.store = ManifestStore(self.temp_dir / "asset-manifest.toml")

    def teardown_method(self):
        """Clean up temporary files."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_every_job_gets_distinct_id(self):
        jobs = [make_job(f"asset-{i}") for i in range(20)]

        report = UploadOrchestrator(self.host, self.store, parallelism=4).run(jobs)

        assert report.success
        assert sorted(report.succeeded.values()) == list(range(1, 21))
        assert list(report.succeeded) == [job.key for job in jobs]
        assert len(ManifestStore(self.store.path).load()) == 20

    def test_drain_lets_in_flight_upload_finish(self):
        sleeps = []
        host = HoldingHost({"b": ["rate-limited-forever"]}, holds={
            "a": lambda: orchestrator.draining,
            "b": lambda: "a" in host.started,
        })
        orchestrator = UploadOrchestrator(
            host, self.store, BackoffPolicy(max_retries=1, base_delay=0.5),
            parallelism=2, sleep=sleeps.append
        )
        jobs = [make_job("a"), make_job("b"), make_job("c"), make_job("d")]

        report = orchestrator.run(jobs)

        assert report.aborted
        assert report.aborted_by == "b"
        assert report.succeeded == {"a": 101}
        assert report.pending == ["b", "c", "d"]
        assert sorted(host.calls) == ["a", "b", "b"]
        assert sleeps == [0.5]
        assert jobs[2].status is JobStatus.PENDING
        assert ManifestStore(self.store.path).load().identities() == ["a"]
