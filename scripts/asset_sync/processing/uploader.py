"""
Upload orchestration.

Drives a batch of upload jobs against an asset host with bounded parallelism,
exponential backoff on rate limiting, and a manifest commit after every
successful upload. When any job exhausts its retry budget the whole batch
drains: jobs already uploading finish, nothing new starts, and the manifest is
flushed so that a re-run resumes where this one stopped.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from ..providers.base import AssetHost, HostError, RateLimitedError
from .manifest import ManifestStore
from .packer import ImageSlice

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Upload job states."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass(frozen=True)
class ManifestUpdate:
    """Manifest entry to write once the job carrying it succeeds."""
    identity: str
    fingerprint: str
    packable: bool = False
    slice: Optional[ImageSlice] = None


@dataclass
class UploadJob:
    """One payload to upload, plus the manifest entries it confirms."""
    key: str
    data: bytes
    display_name: str
    updates: List[ManifestUpdate] = field(default_factory=list)
    retry_count: int = 0
    status: JobStatus = JobStatus.PENDING
    remote_id: Optional[int] = None
    error: Optional[HostError] = None


@dataclass
class BackoffPolicy:
    """Retry budget and delay curve for rate-limited uploads."""
    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries cannot be negative, got {self.max_retries}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("backoff delays cannot be negative")

    def delay(self, retry_count: int, retry_after: Optional[float] = None) -> float:
        """
        Delay before retry number `retry_count` (1-based).

        Doubles from base_delay, never shorter than the host's Retry-After hint
        and never longer than max_delay.
        """
        exponential = self.base_delay * (2 ** (retry_count - 1))
        return min(self.max_delay, max(exponential, retry_after or 0.0))

    def exhausted(self, retry_count: int) -> bool:
        return retry_count > self.max_retries


@dataclass
class UploadReport:
    """Outcome of one orchestrator run, in job order."""
    succeeded: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, HostError] = field(default_factory=dict)
    pending: List[str] = field(default_factory=list)
    aborted: bool = False
    aborted_by: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.aborted and not self.failed and not self.pending


class UploadOrchestrator:
    """
    Runs upload jobs against an asset host.

    Manifest updates go through the given ManifestStore; without a store the
    orchestrator only uploads, which is what one-off uploads need.
    """

    def __init__(self, host: AssetHost, store: Optional[ManifestStore] = None,
                 policy: Optional[BackoffPolicy] = None, parallelism: int = 1,
                 sleep: Callable[[float], None] = time.sleep):
        if parallelism < 1:
            raise ValueError(f"parallelism must be at least 1, got {parallelism}")

        self.host = host
        self.store = store
        self.policy = policy or BackoffPolicy()
        self.parallelism = parallelism
        self._sleep = sleep
        self._draining = threading.Event()
        self._abort_lock = threading.Lock()
        self._aborted_by: Optional[str] = None

    @property
    def draining(self) -> bool:
        return self._draining.is_set()

    def run(self, jobs: Iterable[UploadJob]) -> UploadReport:
        """
        Upload every job, stopping early only when the retry budget runs out.

        Args:
            jobs: Jobs with unique keys

        Returns:
            UploadReport describing every job
        """
        jobs = list(jobs)
        self._draining.clear()
        self._aborted_by = None
        if not jobs:
            return UploadReport()

        logger.info(f"Uploading {len(jobs)} jobs (parallelism {self.parallelism})")

        with ThreadPoolExecutor(max_workers=self.parallelism,
                                thread_name_prefix="asset-upload") as executor:
            futures = [executor.submit(self._process, job) for job in jobs]
            for future in futures:
                future.result()

        report = UploadReport(aborted=self.draining, aborted_by=self._aborted_by)
        for job in jobs:
            if job.status is JobStatus.SUCCEEDED:
                report.succeeded[job.key] = job.remote_id
            elif job.status is JobStatus.FAILED:
                report.failed[job.key] = job.error
            else:
                report.pending.append(job.key)

        if report.aborted:
            if self.store is not None:
                self.store.flush()
            logger.error(
                f"Upload aborted: retry budget exhausted by '{report.aborted_by}', "
                f"{len(report.pending)} jobs left pending"
            )

        logger.info(
            f"Uploads finished: {len(report.succeeded)} succeeded, "
            f"{len(report.failed)} failed, {len(report.pending)} pending"
        )
        return report

    def run_one(self, job: UploadJob) -> UploadJob:
        """Run a single job synchronously and return it."""
        self._process(job)
        return job

    def _process(self, job: UploadJob) -> None:
        while True:
            if self.draining:
                job.status = JobStatus.PENDING
                return

            job.status = JobStatus.IN_FLIGHT
            try:
                remote_id = self.host.upload(job.data, job.display_name)
            except RateLimitedError as e:
                job.status = JobStatus.RATE_LIMITED
                job.retry_count += 1
                job.error = e

                if self.policy.exhausted(job.retry_count):
                    self._begin_draining(job)
                    job.status = JobStatus.PENDING
                    return

                delay = self.policy.delay(job.retry_count, e.retry_after)
                logger.warning(
                    f"Rate limited uploading '{job.key}', retry {job.retry_count}/"
                    f"{self.policy.max_retries} in {delay:.2f}s"
                )
                self._sleep(delay)
                job.status = JobStatus.PENDING
                continue
            except HostError as e:
                job.status = JobStatus.FAILED
                job.error = e
                logger.error(f"Upload of '{job.key}' failed: {e}")
                return

            self._commit(job, remote_id)
            return

    def _commit(self, job: UploadJob, remote_id: int) -> None:
        if self.store is not None and job.updates:
            with self.store.transaction():
                for update in job.updates:
                    self.store.record(update.identity, update.fingerprint, remote_id,
                                      packable=update.packable, image_slice=update.slice)
                self.store.flush()

        job.remote_id = remote_id
        job.error = None
        job.status = JobStatus.SUCCEEDED
        logger.info(f"Uploaded '{job.key}' -> {remote_id}")

    def _begin_draining(self, job: UploadJob) -> None:
        with self._abort_lock:
            if self._aborted_by is None:
                self._aborted_by = job.key
        self._draining.set()
        logger.warning(
            f"Retry budget exhausted for '{job.key}' after {job.retry_count - 1} retries, draining"
        )
