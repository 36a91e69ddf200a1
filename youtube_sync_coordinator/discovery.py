import json
import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import yt_dlp

from .config import Config
from .downloader import DownloadOrchestrator
from .failures import InterruptedByUser, SyncError, THROTTLED_MESSAGES, is_never_retry, substring_in
from .identity_pool import IdentityPool
from .sync_job import DiscoveredVideo, MockedPublishedVideo, SyncJob, job_sort_key
from .synced_video import VideoStatus, VideoSyncRecord


logger = logging.getLogger(__name__)

CHANNEL_URL = "https://www.youtube.com/channel/"
CHANNEL_TABS = ('videos', 'shorts', 'streams')
# Listing errors that only mean the tab is empty or missing.
SKIPPABLE_TAB_ERRORS = ("This channel does not have a", "Incomplete data received")
_MIN_VIDEO_ID_LENGTH = 5


class VideoDiscovery:
    """
    Expands a source channel into the jobs of one sync run.

    Every request to the source binds an identity from the pool.
    """

    def __init__(
        self,
        config: Config,
        downloader: DownloadOrchestrator,
        pool: IdentityPool,
        store,
        ydl_factory: Callable[[Dict], yt_dlp.YoutubeDL] = yt_dlp.YoutubeDL,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = config
        self.downloader = downloader
        self.pool = pool
        self.store = store
        self.ydl_factory = ydl_factory
        self.cancel_event = cancel_event or threading.Event()


    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise InterruptedByUser()


    def list_video_ids(self, channel_id: str, max_videos: int) -> List[str]:
        """
        Most recent video ids of every channel tab, newest first within a tab.
        """
        video_ids: List[str] = []
        for tab in CHANNEL_TABS:
            args = [
                "--skip-download",
                f"{CHANNEL_URL}{channel_id}/{tab}",
                "--get-id",
                "--flat-playlist",
                "--playlist-end", str(max_videos),
            ]
            if self.config.cookies_file:
                args += ["--cookies", self.config.cookies_file]
            try:
                lines = self.downloader.fetch_lines(args, channel_id, self.cancel_event)
            except SyncError as e:
                if substring_in(str(e), SKIPPABLE_TAB_ERRORS):
                    logger.debug(f"channel {channel_id} has no {tab}")
                    continue
                raise

            ids = [line.strip() for line in lines if line.strip()]
            video_ids.extend(ids[:max_videos])
        return video_ids


    def _metadata_path(self, video_id: str) -> Path:
        return Path(self.config.video_metadata_dir) / f"{video_id}.info.json"


    def fetch_video_info(self, video_id: str) -> Dict:
        """
        Full metadata of one video, also written to the metadata directory for the downloader.
        """
        url = f"{self.config.canonical_video_url}{video_id}"
        attempts = 0
        while True:
            self._check_cancelled()
            attempts += 1
            with self.pool.lease(video_id, self.cancel_event) as source_address:
                ydl_opts = {
                    'quiet': True,
                    'skip_download': True,
                    'noplaylist': True,
                    'source_address': source_address,
                }
                if self.config.cookies_file:
                    ydl_opts['cookiefile'] = self.config.cookies_file
                try:
                    with self.ydl_factory(ydl_opts) as ydl:
                        info = ydl.sanitize_info(ydl.extract_info(url, download=False))
                    break
                except yt_dlp.utils.DownloadError as e:
                    if substring_in(str(e), THROTTLED_MESSAGES):
                        self.pool.mark_throttled(source_address)
                        attempts -= 1
                        continue
                    if attempts >= self.config.download_attempts:
                        raise SyncError(str(e))
                    logger.warning(f"failed to get info for {video_id} (attempt {attempts}): {e}")

        with open(self._metadata_path(video_id), 'w', encoding='utf-8') as f:
            json.dump(info, f)
        return info


    def _needs_info(self, record: Optional[VideoSyncRecord]) -> bool:
        if record is None or not record.published:
            return True
        return self.config.upgrade_metadata and record.metadata_version < self.config.latest_metadata_version


    def videos_to_sync(
        self,
        channel_id: str,
        synced_videos: Dict[str, VideoSyncRecord],
        max_videos: int,
        last_uploaded_video: str = '',
    ) -> List[SyncJob]:
        """
        Jobs of one run sorted oldest first: listed videos with fresh metadata plus
        mocked jobs for published videos the source no longer lists.
        """
        if self.config.quick_sync and max_videos > self.config.quick_sync_limit:
            max_videos = self.config.quick_sync_limit

        video_ids = []
        for video_id in self.list_video_ids(channel_id, max_videos):
            record = synced_videos.get(video_id)
            if record is not None and is_never_retry(record.failure_reason):
                continue
            video_ids.append(video_id)
        logger.info(f"Got info for {len(video_ids)} videos from youtube downloader")

        positions = {video_id: position for position, video_id in enumerate(video_ids)}
        if last_uploaded_video and last_uploaded_video not in positions:
            positions[last_uploaded_video] = 0
            video_ids.append(last_uploaded_video)

        jobs: List[SyncJob] = []
        for video_id in video_ids:
            if len(video_id) < _MIN_VIDEO_ID_LENGTH:
                continue
            self._check_cancelled()
            if not self._needs_info(synced_videos.get(video_id)):
                continue
            try:
                info = self.fetch_video_info(video_id)
            except InterruptedByUser:
                raise
            except SyncError as e:
                logger.error(f"Skipping video ({video_id}): {e}")
                self.store.mark_video_status(VideoStatus(
                    channel_id=channel_id,
                    video_id=video_id,
                    status=self.config.VIDEO_STATUS_FAILED,
                    failure_reason=str(e),
                ))
                continue
            jobs.append(DiscoveredVideo.from_info(info, channel_id, positions[video_id]))

        for video_id, record in synced_videos.items():
            if record.published and video_id not in positions:
                jobs.append(MockedPublishedVideo(video_id, channel_id))

        jobs.sort(key=job_sort_key)
        return jobs
