"""
Per-video decision and the publish / reprocess sequences against the ledger.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from .config import Config
from .downloader import DownloadedFile, DownloadOrchestrator
from .failures import SyncError, classify_of, is_never_retry
from .language import detect_language
from .ledger_client import LedgerClient, LedgerError, first_output
from .media import get_media_duration
from .namer import ClaimNamer
from .sync_job import DiscoveredVideo, MockedPublishedVideo, SyncJob
from .synced_video import Fee, ReadWriteLock, VideoSyncRecord


logger = logging.getLogger(__name__)

LATEST_METADATA_VERSION = 2
MULTIPLE_CLAIMS_MESSAGE = "failed: Multiple claims ("
BUGGED_LIVESTREAM_SECONDS = 2 * 60 * 60
REPROCESS_WIDTH = 1280
REPROCESS_HEIGHT = 720

# (source thumbnail url, video id) -> url of the mirrored thumbnail
ThumbnailMirror = Callable[[str, str], str]


class SyncAction(Enum):
    SKIP_NEVER_RETRY = "skip_never_retry"
    SKIP_PUBLISHED = "skip_published"
    SKIP_UPGRADED = "skip_upgraded"
    SKIP_TOO_OLD = "skip_too_old"
    REPROCESS = "reprocess"
    DOWNLOAD_AND_PUBLISH = "download_and_publish"


@dataclass(frozen=True)
class SyncPolicy:
    sync_window: int
    upgrade_metadata: bool = False
    target_metadata_version: int = LATEST_METADATA_VERSION


@dataclass(frozen=True)
class SyncDecision:
    action: SyncAction
    reason: str


    @property
    def needs_work(self) -> bool:
        return self.action in (SyncAction.REPROCESS, SyncAction.DOWNLOAD_AND_PUBLISH)


@dataclass
class SyncParams:
    claim_address: str
    amount: float
    channel_claim_id: str
    default_account: str
    namer: ClaimNamer
    max_video_size_mb: int = 0
    max_video_length_seconds: int = 0
    fee: Optional[Fee] = None


@dataclass
class SyncSummary:
    claim_id: str
    claim_name: str
    size: Optional[int] = None


def decide(job: SyncJob, record: Optional[VideoSyncRecord], policy: SyncPolicy) -> SyncDecision:
    """
    What a video needs, from its persisted record and the current policy.

    Checks run in priority order; the first that applies wins.
    """
    exists = record is not None
    already_published = exists and record.published
    requires_upgrade = (
        exists and policy.upgrade_metadata and record.metadata_version < policy.target_metadata_version
    )

    if exists and not record.published and is_never_retry(record.failure_reason):
        return SyncDecision(SyncAction.SKIP_NEVER_RETRY, f"{job.video_id} can't ever be published")
    if already_published and not requires_upgrade:
        return SyncDecision(SyncAction.SKIP_PUBLISHED, f"{job.video_id} already published")
    if exists and record.metadata_version >= policy.target_metadata_version:
        return SyncDecision(SyncAction.SKIP_UPGRADED, f"{job.video_id} upgraded to the new metadata")
    if not requires_upgrade and job.playlist_position >= policy.sync_window:
        return SyncDecision(SyncAction.SKIP_TOO_OLD, f"{job.video_id} is old: skipping")
    if requires_upgrade and already_published:
        return SyncDecision(SyncAction.REPROCESS, f"{job.video_id} requires a metadata upgrade")
    return SyncDecision(SyncAction.DOWNLOAD_AND_PUBLISH, f"{job.video_id} needs to be published")


def description_with_link(
    description: str,
    video_id: str,
    max_length: int = 6500,
    canonical_url: str = "https://www.youtube.com/watch?v=",
) -> str:
    """Description cut to max_length with a link back to the source video appended."""
    text = (description or '').strip()
    if len(text) > max_length:
        text = text[:max_length]
    return f"{text}\n...\n{canonical_url}{video_id}"


def _prefixed(prefix: str, error: Exception) -> SyncError:
    return SyncError(f"{prefix}: {error}", classify_of(error))


class VideoSyncer:
    """
    Publishes a video to the ledger or upgrades the metadata of its existing claim.
    """

    def __init__(
        self,
        config: Config,
        ledger: LedgerClient,
        downloader: DownloadOrchestrator,
        wallet_lock: Optional[ReadWriteLock] = None,
        thumbnail_mirror: Optional[ThumbnailMirror] = None,
        duration_probe: Callable[[str], float] = get_media_duration,
        language_detector: Callable[[str, str], Optional[str]] = detect_language,
    ):
        self.config = config
        self.ledger = ledger
        self.downloader = downloader
        self.wallet_lock = wallet_lock or ReadWriteLock()
        self.thumbnail_mirror = thumbnail_mirror or self._endpoint_thumbnail
        self.duration_probe = duration_probe
        self.language_detector = language_detector


    def _endpoint_thumbnail(self, source_url: str, video_id: str) -> str:
        """Thumbnails are mirrored out of band and served from the endpoint by video id."""
        return self.config.thumbnail_endpoint + video_id


    def sync(
        self,
        job: SyncJob,
        params: SyncParams,
        record: Optional[VideoSyncRecord],
        reprocess: bool,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncSummary:
        if reprocess and record is not None and record.published:
            try:
                return self.reprocess(job, params, record, cancel_event)
            except Exception as e:
                raise _prefixed("upgrade failed", e)
        return self.download_and_publish(job, params, cancel_event)


    def _reject_before_download(self, video: DiscoveredVideo, params: SyncParams):
        duration = video.duration
        if video.is_live:
            raise SyncError("video is a live stream and hasn't completed yet")
        if video.availability not in (None, 'public', 'needs_auth'):
            raise SyncError("video is not public")
        if params.max_video_length_seconds > 0 and duration > params.max_video_length_seconds:
            logger.warning(
                f"{video.video_id} is {duration}s long and the limit is {params.max_video_length_seconds}s"
            )
            raise SyncError("video is too long to process")
        if duration < self.config.min_video_seconds:
            logger.warning(f"{video.video_id} is {duration}s long and the minimum is {self.config.min_video_seconds}s")
            raise SyncError("video is too short to process")
        if video.live_status == 'post_live' and duration >= BUGGED_LIVESTREAM_SECONDS:
            raise SyncError(
                f"livestream is likely bugged as it was recently published and has a length of "
                f"{duration}s which is more than 2 hours"
            )


    def download_and_publish(
        self,
        job: SyncJob,
        params: SyncParams,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncSummary:
        if isinstance(job, MockedPublishedVideo):
            raise SyncError("Video is not available - hardcoded fix")

        self._reject_before_download(job, params)

        try:
            downloaded = self.downloader.download(
                job,
                cancel_event,
                max_filesize_mb=params.max_video_size_mb,
                max_duration_seconds=params.max_video_length_seconds,
            )
        except SyncError as e:
            raise _prefixed("download error", e)

        try:
            self._verify_duration(downloaded)

            try:
                thumbnail_url = self._mirror_thumbnail(job)
            except Exception as e:
                raise _prefixed("thumbnail error", e)
            logger.debug(f"Created thumbnail for {job.video_id}")

            try:
                return self._publish(job, params, downloaded, thumbnail_url)
            except Exception as e:
                raise _prefixed("publish error", e)
        finally:
            self.downloader.delete(job.video_id, "finished download and publish")


    def _verify_duration(self, downloaded: DownloadedFile):
        try:
            duration = self.duration_probe(downloaded.path)
        except (RuntimeError, ValueError) as e:
            logger.error(f"failure in probing downloaded video: {e}")
            return
        if duration < self.config.min_video_seconds:
            raise SyncError("video is too short to process")


    def _mirror_thumbnail(self, video: DiscoveredVideo) -> str:
        best = self._best_thumbnail(video.thumbnails)
        if best is None:
            raise SyncError("default youtube thumbnail found")
        try:
            return self.thumbnail_mirror(best['url'], video.video_id)
        except Exception as e:
            if not video.thumbnail_url:
                raise
            logger.warning(f"mirroring {best['url']} failed ({e}), trying {video.thumbnail_url}")
            return self.thumbnail_mirror(video.thumbnail_url, video.video_id)


    @staticmethod
    def _best_thumbnail(thumbnails: List[Dict]) -> Optional[Dict]:
        sized = [t for t in thumbnails if t.get('url') and int(t.get('width') or 0) > 0]
        if not sized:
            return None
        return max(sized, key=lambda t: int(t.get('width') or 0) * int(t.get('height') or 0))


    @staticmethod
    def _tags(job: SyncJob) -> List[str]:
        if isinstance(job, MockedPublishedVideo):
            return []
        tags: List[str] = []
        for tag in list(job.tags) + list(job.categories):
            normalized = tag.strip().lower()
            if normalized and normalized not in tags:
                tags.append(normalized)
        return tags


    def _claim_options(self, params: SyncParams, thumbnail_url: str, tags: List[str]) -> Dict:
        options = {
            'thumbnail_url': thumbnail_url,
            'tags': tags,
            'funding_account_ids': [params.default_account],
            'license': self.config.license,
            'channel_id': params.channel_claim_id,
        }
        if params.fee is not None:
            options.update(
                fee_amount=params.fee.amount,
                fee_currency=params.fee.currency,
                fee_address=params.fee.address,
            )
        return options


    def _publish(
        self,
        video: DiscoveredVideo,
        params: SyncParams,
        downloaded: DownloadedFile,
        thumbnail_url: str,
    ) -> SyncSummary:
        language = self.language_detector(video.description, video.title)
        options = self._claim_options(params, thumbnail_url, self._tags(video))
        options.update(
            title=video.title,
            description=description_with_link(
                video.description,
                video.video_id,
                self.config.description_max_length,
                self.config.canonical_video_url,
            ),
            claim_address=params.claim_address,
            languages=[language] if language else None,
            release_time=int(video.published_at.timestamp()),
        )

        with self.wallet_lock.read_locked():
            while True:
                name = params.namer.next_name(video.title)
                try:
                    transaction = self.ledger.stream_create(name, params.amount, downloaded.path, **options)
                except LedgerError as e:
                    if MULTIPLE_CLAIMS_MESSAGE in str(e):
                        logger.warning(f"name {name} already exists on the ledger, trying the next one")
                        continue
                    raise
                output = first_output(transaction)
                return SyncSummary(output.get('claim_id', ''), output.get('name', name), downloaded.size)


    def reprocess(
        self,
        job: SyncJob,
        params: SyncParams,
        record: VideoSyncRecord,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncSummary:
        """
        Updates the metadata of the existing claim in place, republishing only
        when the claim's size cannot be recovered.
        """
        mocked = isinstance(job, MockedPublishedVideo)
        claims = self.ledger.claim_search(claim_id=record.claim_id, page=1, page_size=20)
        if not claims:
            raise SyncError("cannot reprocess: no claim found for this video")
        if len(claims) > 1:
            raise SyncError(f"cannot reprocess: too many claims. claimID: {record.claim_id}")
        current = claims[0]

        if not current.thumbnail_url:
            if mocked:
                raise SyncError("could not find thumbnail for mocked video")
            thumbnail_url = self._mirror_thumbnail(job)
        else:
            thumbnail_url = self.config.thumbnail_endpoint + job.video_id

        size = current.stream_size
        if size is None:
            if record.size > 0:
                size = record.size
            else:
                logger.info(f"{job.video_id}: the video must be republished as we can't get the right size")
                if not mocked:
                    self.ledger.stream_abandon(current.txid, current.nout, blocking=True)
                    return self.download_and_publish(job, params, cancel_event)
                raise SyncError(
                    "the video must be republished as we can't get the right size "
                    "and it doesn't exist on youtube anymore"
                )

        options = self._claim_options(params, thumbnail_url, self._tags(job))
        options.update(
            author='',
            height=REPROCESS_HEIGHT,
            width=REPROCESS_WIDTH,
            file_size=str(size),
        )
        if not mocked:
            options.update(
                title=job.title,
                description=description_with_link(
                    job.description,
                    job.video_id,
                    self.config.description_max_length,
                    self.config.canonical_video_url,
                ),
                duration=job.duration,
                release_time=int(job.published_at.timestamp()),
                clear_languages=True,
                clear_locations=True,
                clear_tags=True,
            )

        with self.wallet_lock.read_locked():
            transaction = self.ledger.stream_update(record.claim_id, **options)
        output = first_output(transaction)
        return SyncSummary(output.get('claim_id', ''), output.get('name', ''), size)
