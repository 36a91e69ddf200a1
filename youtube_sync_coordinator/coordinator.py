import logging
import threading
import time
from pathlib import Path
from typing import Optional

from filelock import FileLock, Timeout

from .config import Config
from .discovery import VideoDiscovery
from .downloader import DownloadOrchestrator
from .failures import FailureKind, SyncError, is_benign_run_failure, needs_db_wipe
from .identity_pool import IdentityPool
from .ledger_client import LedgerClient
from .namer import ClaimNamer
from .reconcile import Reconciler
from .record_store import SheetRecordStore
from .sync_job import SyncJob
from .synced_video import ChannelRecord, SyncedVideoMap, VideoStatus, VideoSyncRecord
from .utils.system_utils import disk_usage_percent
from .video_sync import SyncAction, SyncParams, SyncPolicy, VideoSyncer, decide
from .wallet import CreditSource, WalletManager
from .worker_pool import JobState, RetryHooks, WorkerPool


logger = logging.getLogger(__name__)

CHANNEL_LOCKED_MESSAGE = "this youtube channel is being managed by another server"
INITIAL_WALLET_SETUP_MESSAGE = "Initial wallet setup failed! Manual Intervention is required."
UPGRADE_FAILED_MESSAGE = "upgrade failed"


class SyncCoordinator:
    """
    Runs one full sync cycle of a source channel: wallet setup, reconciliation
    with the ledger, discovery and the worker pool.
    """

    def __init__(
        self,
        config: Config,
        channel_id: str,
        store=None,
        ledger: Optional[LedgerClient] = None,
        pool: Optional[IdentityPool] = None,
        downloader: Optional[DownloadOrchestrator] = None,
        wallet: Optional[WalletManager] = None,
        syncer: Optional[VideoSyncer] = None,
        discovery: Optional[VideoDiscovery] = None,
        credit_source: Optional[CreditSource] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """Initializes every collaborator not given by the caller."""

        self.config = config
        self.channel_id = channel_id
        self.cancel_event = cancel_event or threading.Event()

        self.store = store or SheetRecordStore(config)
        self.ledger = ledger or LedgerClient.from_config(config)
        self.pool = pool or IdentityPool.from_config(config)
        self.downloader = downloader or DownloadOrchestrator(config, self.pool)
        self.wallet = wallet or WalletManager(config, self.ledger, credit_source, self.cancel_event)
        self.syncer = syncer or VideoSyncer(config, self.ledger, self.downloader, self.wallet.lock)
        self.discovery = discovery or VideoDiscovery(
            config, self.downloader, self.pool, self.store, cancel_event=self.cancel_event
        )

        self.channel: Optional[ChannelRecord] = None
        self.synced_videos = SyncedVideoMap()
        self.namer = ClaimNamer()
        self.workers: Optional[WorkerPool] = None
        logger.info(f"Coordinator initialized for channel {channel_id}.")


    def stop(self):
        """Asks the running cycle to stop at its next check point."""
        logger.info("Got interrupt signal, shutting down (if publishing, will shut down after current publish)")
        self.cancel_event.set()


    @property
    def interrupted(self) -> bool:
        return self.cancel_event.is_set()


    @property
    def policy(self) -> SyncPolicy:
        return SyncPolicy(
            sync_window=self.config.videos_to_sync(self.channel.total_subscribers),
            upgrade_metadata=self.config.upgrade_metadata,
            target_metadata_version=self.config.latest_metadata_version,
        )


    def reload(self):
        """Marks the channel as syncing and reloads its records and used claim names."""
        synced, claim_names = self.store.set_channel_status(self.channel_id, self.config.STATUS_SYNCING)
        self.synced_videos.replace_all(synced)
        self.namer.set_names(claim_names)


    def full_cycle(self):
        """
        Syncs the channel once. Only one process per host may sync a channel at a time.
        """
        lock_path = Path(self.config.locks_dir) / f"{self.channel_id}.lock"
        lock = FileLock(str(lock_path), timeout=0)
        try:
            lock.acquire()
        except Timeout:
            raise SyncError(CHANNEL_LOCKED_MESSAGE)

        try:
            self._run_cycle()
        finally:
            lock.release()


    def _run_cycle(self):
        self.channel = self.store.get_channel(self.channel_id)
        self.reload()

        try:
            # In-use flags may be stale if a previous run crashed.
            self.pool.release_all()
            self.pool.refresh()

            logger.info("Waiting for daemon to finish starting...")
            self.wallet.wait_for_daemon_start()
            self.do_sync()
        except Exception as e:
            self.pool.shutdown()
            self._set_termination_status(str(e))
            raise

        self.pool.shutdown()
        self._set_termination_status(None)


    def _set_termination_status(self, error: Optional[str]):
        if error is not None:
            if is_benign_run_failure(error):
                logger.info(f"Channel {self.channel_id} stopped without failing: {error}")
                return
            status = self.config.STATUS_WIPE_DB if needs_db_wipe(error) else self.config.STATUS_FAILED
            try:
                self.store.set_channel_status(self.channel_id, status, failure_reason=error)
            except SyncError as e:
                logger.error(f"Failed setting failed state for channel {self.channel.desired_channel_name}: {e}")
            return

        if not self.interrupted:
            self.store.set_channel_status(self.channel_id, self.config.STATUS_SYNCED)


    def wallet_setup(self):
        self.wallet.wallet_setup(self.channel, self.synced_videos.values(), self.store)


    def do_sync(self):
        self.wallet.enable_address_reuse()
        self.ledger.utxo_release()
        try:
            self.wallet_setup()
        except SyncError as e:
            raise SyncError(f"{INITIAL_WALLET_SETUP_MESSAGE}: {e}", FailureKind.FATAL_ABORT_ALL)

        reconciler = Reconciler(
            self.config, self.ledger, self.store, self.wallet, self.channel, self.synced_videos, self.reload
        )
        reconciler.check_integrity()

        self.workers = WorkerPool(
            process_job=self.process_video,
            on_failed=self.record_failure,
            config=self.config,
            cancel_event=self.cancel_event,
            hooks=RetryHooks(
                wait_for_new_block=self.wallet.wait_for_new_block,
                repair_wallet=self.wallet_setup,
                consolidate_utxos=self.wallet.consolidate_utxos_exclusively,
            ),
        )
        self.workers.start()

        error: Optional[Exception] = None
        if not self.channel.is_deleted_on_source:
            try:
                self.enqueue_videos()
            except Exception as e:
                error = e
        self.workers.close()
        self.workers.join()

        counts = self.workers.report.counts
        logger.info(
            "Run summary: "
            + ", ".join(f"{state.value}={counts[state]}" for state in JobState if counts[state])
        )
        unfinished = self.workers.report.unfinished
        if unfinished:
            logger.warning(f"{len(unfinished)} videos were left unfinished: {', '.join(unfinished)}")

        if error is not None:
            raise error
        if self.workers.hard_failure.failed:
            raise SyncError(self.workers.hard_failure.reason, FailureKind.FATAL_ABORT_ALL)


    def enqueue_videos(self):
        jobs = self.discovery.videos_to_sync(
            self.channel_id,
            self.synced_videos.snapshot(),
            self.config.videos_to_sync(self.channel.total_subscribers),
            self.channel.last_uploaded_video,
        )
        for job in jobs:
            if not self.workers.enqueue(job):
                break


    def check_used_space(self):
        if self.config.skip_space_check:
            return
        used = disk_usage_percent(self.config.work_dir)
        if used > self.config.max_disk_usage_percent:
            raise SyncError(
                f"more than {self.config.max_disk_usage_percent:.0f}% of the space has been used. "
                f"use --skip-space-check to ignore. Used: {used:.1f}%",
                FailureKind.FATAL_ABORT_ALL,
            )


    def process_video(self, job: SyncJob) -> JobState:
        """
        Decides what a job needs and carries it out. Returns its terminal state or raises.
        """
        logger.info(f"Processing {job.id_and_num()}")
        start = time.monotonic()
        try:
            record = self.synced_videos.get(job.video_id)
            decision = decide(job, record, self.policy)
            if not decision.needs_work:
                logger.info(decision.reason)
                if decision.action is SyncAction.SKIP_NEVER_RETRY:
                    return JobState.SKIPPED_PERMANENT
                return JobState.SKIPPED_UP_TO_DATE

            self.check_used_space()
            params = SyncParams(
                claim_address=self.channel.publish_address,
                amount=self.config.publish_amount,
                channel_claim_id=self.channel.channel_claim_id,
                default_account=self.wallet.get_default_account(),
                namer=self.namer,
                max_video_size_mb=self.channel.size_limit_mb,
                max_video_length_seconds=self.channel.length_limit_minutes * 60,
                fee=self.channel.fee,
            )
            summary = self.syncer.sync(
                job, params, record, decision.action is SyncAction.REPROCESS, self.cancel_event
            )
        finally:
            logger.info(f"{job.video_id} took {time.monotonic() - start:.1f}s")

        size = summary.size if summary.size is not None else (record.size if record else 0)
        self.synced_videos.append(VideoSyncRecord(
            video_id=job.video_id,
            published=True,
            claim_id=summary.claim_id,
            claim_name=summary.claim_name,
            metadata_version=self.config.latest_metadata_version,
            size=size,
        ))
        try:
            self.store.mark_video_status(VideoStatus(
                channel_id=self.channel_id,
                video_id=job.video_id,
                status=self.config.VIDEO_STATUS_PUBLISHED,
                claim_id=summary.claim_id,
                claim_name=summary.claim_name,
                size=size,
                metadata_version=self.config.latest_metadata_version,
                is_transferred=self.wallet.should_transfer(self.channel),
            ))
        except SyncError as e:
            logger.error(f"Failed to mark video on the database: {e}")
        return JobState.PUBLISHED


    def record_failure(self, job: SyncJob, reason: str):
        """
        Persists a job that exhausted its retries, keeping any claim it already has.
        """
        existing = self.synced_videos.get(job.video_id)
        claim_id = existing.claim_id if existing else ''
        claim_name = existing.claim_name if existing else ''
        size = existing.size if existing and existing.size > 0 else 0

        status = self.config.VIDEO_STATUS_FAILED
        if UPGRADE_FAILED_MESSAGE in reason:
            status = self.config.VIDEO_STATUS_UPGRADE_FAILED
        else:
            self.synced_videos.append(VideoSyncRecord(
                video_id=job.video_id,
                published=False,
                failure_reason=reason,
                claim_id=claim_id,
                claim_name=claim_name,
                size=size,
            ))

        self.store.mark_video_status(VideoStatus(
            channel_id=self.channel_id,
            video_id=job.video_id,
            status=status,
            claim_id=claim_id,
            claim_name=claim_name,
            failure_reason=reason,
            size=size,
        ))
