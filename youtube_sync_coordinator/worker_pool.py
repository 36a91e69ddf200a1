"""
Bounded job queue drained by a fixed set of worker threads, with the per-job
retry loop that acts on the failure classification.
"""

import logging
import queue
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from .config import Config
from .failures import FailureKind, classify_of, is_daemon_glitch, is_interruption, should_retry
from .sync_job import SyncJob


logger = logging.getLogger(__name__)

DAEMON_GLITCH_PAUSE_SECONDS = 5.0
_QUEUE_POLL_SECONDS = 0.5

_CLOSED = object()


class JobState(Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    PUBLISHED = "published"
    SKIPPED_UP_TO_DATE = "skipped_up_to_date"
    SKIPPED_PERMANENT = "skipped_permanent"
    FAILED = "failed"
    ABANDONED = "abandoned"


TERMINAL_STATES = (
    JobState.PUBLISHED,
    JobState.SKIPPED_UP_TO_DATE,
    JobState.SKIPPED_PERMANENT,
    JobState.FAILED,
    JobState.ABANDONED,
)


@dataclass
class JobOutcome:
    video_id: str
    state: JobState
    tries: int = 0
    reason: str = ''


class HardFailure:
    """
    Process-wide flag raised by the first fatal job failure. Later reasons are ignored.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._failed = False
        self._reason = ''


    def flag(self, reason: str):
        with self._lock:
            if self._failed:
                return
            self._failed = True
            self._reason = reason


    @property
    def failed(self) -> bool:
        with self._lock:
            return self._failed


    @property
    def reason(self) -> str:
        with self._lock:
            return self._reason


@dataclass
class RetryHooks:
    """Collaborators the retry loop calls before retrying a job."""

    wait_for_new_block: Callable[[], None] = lambda: None
    repair_wallet: Callable[[], None] = lambda: None
    consolidate_utxos: Callable[[], None] = lambda: None
    sleep: Callable[[float], None] = time.sleep


@dataclass
class PoolReport:
    outcomes: Dict[str, JobOutcome] = field(default_factory=dict)


    @property
    def counts(self) -> Counter:
        return Counter(outcome.state for outcome in self.outcomes.values())


    @property
    def unfinished(self) -> List[str]:
        """Jobs that never reached a terminal state, usually because the run was cancelled."""
        return [video_id for video_id, outcome in self.outcomes.items() if outcome.state not in TERMINAL_STATES]


class WorkerPool:
    """
    Runs `process_job` for every enqueued job on `concurrent_jobs` threads.

    `process_job` returns the terminal JobState of a successful attempt or raises.
    Failures are classified and either retried, escalated to a run-wide abort,
    or handed to `on_failed` once the retry budget is spent.
    """

    def __init__(
        self,
        process_job: Callable[[SyncJob], JobState],
        on_failed: Callable[[SyncJob, str], None],
        config: Config,
        cancel_event: Optional[threading.Event] = None,
        hooks: Optional[RetryHooks] = None,
    ):
        self.process_job = process_job
        self.on_failed = on_failed
        self.config = config
        self.cancel_event = cancel_event or threading.Event()
        self.hooks = hooks or RetryHooks()
        self.hard_failure = HardFailure()
        self.report = PoolReport()

        self._queue: queue.Queue = queue.Queue(maxsize=max(config.queue_size, 0))
        self._workers: List[threading.Thread] = []
        self._report_lock = threading.Lock()
        self._closed = False


    def _set_state(self, job: SyncJob, state: JobState, tries: int = 0, reason: str = ''):
        with self._report_lock:
            self.report.outcomes[job.video_id] = JobOutcome(job.video_id, state, tries, reason)


    def start(self):
        for worker_number in range(max(self.config.concurrent_jobs, 1)):
            worker = threading.Thread(
                target=self._worker_loop,
                args=(worker_number,),
                name=f"sync-worker-{worker_number}",
                daemon=True,
            )
            worker.start()
            self._workers.append(worker)
        logger.info(f"Started {len(self._workers)} workers.")


    def _put(self, item) -> bool:
        while not self.cancel_event.is_set():
            try:
                self._queue.put(item, timeout=_QUEUE_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False


    def enqueue(self, job: SyncJob) -> bool:
        """Blocks while the queue is full. Returns False once the run is cancelled."""
        if self._closed:
            raise RuntimeError("cannot enqueue on a closed worker pool")
        self._set_state(job, JobState.QUEUED)
        return self._put(job)


    def close(self):
        """No more jobs: every worker exits after draining the queue."""
        if self._closed:
            return
        self._closed = True
        for _ in self._workers:
            if not self._put(_CLOSED):
                break


    def join(self):
        for worker in self._workers:
            worker.join()
        self._workers = []


    def run(self, jobs: Iterable[SyncJob]) -> PoolReport:
        self.start()
        try:
            for job in jobs:
                if not self.enqueue(job):
                    break
        finally:
            self.close()
            self.join()
        return self.report


    def _next_job(self):
        while not self.cancel_event.is_set():
            try:
                return self._queue.get(timeout=_QUEUE_POLL_SECONDS)
            except queue.Empty:
                continue
        return None


    def _worker_loop(self, worker_number: int):
        while True:
            if self.cancel_event.is_set():
                logger.info(f"Stopping worker {worker_number}")
                return
            job = self._next_job()
            if job is None or job is _CLOSED:
                return
            self._run_job(job)


    def _run_job(self, job: SyncJob):
        """
        Retry loop of a single job. Exceptions never escape into the worker.
        """
        try_count = 0
        while True:
            if self.cancel_event.is_set():
                logger.info(f"Stopping work on {job.video_id}: run cancelled")
                self._set_state(job, JobState.ABANDONED, try_count)
                return
            try_count += 1
            self._set_state(job, JobState.IN_PROGRESS, try_count)

            try:
                state = self.process_job(job)
            except Exception as e:
                reason = str(e)
                kind = classify_of(e)
                logger.error(f"error processing video {job.video_id}: {reason}")

                if is_interruption(reason):
                    self.cancel_event.set()
                    self._set_state(job, JobState.ABANDONED, try_count, reason)
                    return
                if kind is FailureKind.FATAL_ABORT_ALL:
                    self.hard_failure.flag(reason)
                    self.cancel_event.set()
                    self._set_state(job, JobState.FAILED, try_count, reason)
                    return

                retry = (
                    self.config.max_tries > 1
                    and kind is not FailureKind.PERMANENT_SKIP
                    and should_retry(reason)
                    and try_count < self.config.max_tries
                )
                if retry:
                    if not self._prepare_retry(job, kind, reason):
                        self._set_state(job, JobState.ABANDONED, try_count, reason)
                        return
                    logger.info(f"Retrying {job.video_id}")
                    continue

                logger.error(f"Video {job.video_id} failed after {try_count} retries, skipping.")
                self._set_state(job, JobState.FAILED, try_count, reason)
                try:
                    self.on_failed(job, reason)
                except Exception as record_error:
                    logger.error(f"Failed to mark video on the database: {record_error}")
                return

            self._set_state(job, state, try_count)
            return


    def _prepare_retry(self, job: SyncJob, kind: FailureKind, reason: str) -> bool:
        """Runs the repair a failure asks for. False means the run was cancelled instead."""
        try:
            if kind is FailureKind.RETRYABLE_NEEDS_NEW_BLOCK:
                logger.info("waiting for a block before retrying")
                self.hooks.wait_for_new_block()
            elif kind is FailureKind.RETRYABLE_NEEDS_WALLET_REPAIR:
                logger.info("checking funds and UTXOs before retrying...")
                self.hooks.repair_wallet()
            elif kind is FailureKind.RETRYABLE_NEEDS_UTXO_CONSOLIDATION:
                logger.info("transaction too large, consolidating UTXOs before retrying")
                self.hooks.consolidate_utxos()
            elif is_daemon_glitch(reason):
                self.hooks.sleep(DAEMON_GLITCH_PAUSE_SECONDS)
        except Exception as e:
            logger.error(f"something went wrong while preparing to retry {job.video_id}: {e}")
            self.cancel_event.set()
            return False
        return True
