from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union


EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)

WATCH_URL = "https://www.youtube.com/watch?v="


def _parse_published_at(info: Dict) -> datetime:
    for key in ('timestamp', 'release_timestamp'):
        value = info.get(key)
        if value:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)

    upload_date = info.get('upload_date')
    if upload_date:
        try:
            return datetime.strptime(str(upload_date), "%Y%m%d").replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return EPOCH


@dataclass
class DiscoveredVideo:
    """
    A video found on the source channel, with the metadata yt-dlp reported for it.

    Ownership moves to the worker that dequeues it; it is never shared between workers.
    """

    video_id: str
    channel_id: str
    playlist_position: int
    title: str = ''
    description: str = ''
    tags: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    duration: int = 0
    published_at: datetime = EPOCH
    is_live: bool = False
    live_status: Optional[str] = None
    availability: Optional[str] = None
    thumbnail_url: Optional[str] = None
    thumbnails: List[Dict] = field(default_factory=list)


    @classmethod
    def from_info(cls, info: Dict, channel_id: str, playlist_position: int) -> 'DiscoveredVideo':
        """
        Creates a DiscoveredVideo from a yt-dlp info dictionary.
        """

        return cls(
            video_id=str(info.get('id', '')),
            channel_id=info.get('channel_id') or channel_id,
            playlist_position=playlist_position,
            title=info.get('title') or '',
            description=info.get('description') or '',
            tags=[str(tag) for tag in (info.get('tags') or [])],
            categories=[str(category) for category in (info.get('categories') or [])],
            duration=int(info.get('duration') or 0),
            published_at=_parse_published_at(info),
            is_live=bool(info.get('is_live')),
            live_status=info.get('live_status'),
            availability=info.get('availability'),
            thumbnail_url=info.get('thumbnail'),
            thumbnails=list(info.get('thumbnails') or []),
        )


    @property
    def url(self) -> str:
        return WATCH_URL + self.video_id


    def id_and_num(self) -> str:
        return f"{self.video_id} ({self.playlist_position} in channel)"


@dataclass
class MockedPublishedVideo:
    """
    A video already published from this channel that no longer shows up on the source.

    It keeps its place at the start of the publication order and carries no metadata.
    """

    video_id: str
    channel_id: str
    playlist_position: int = 0


    @property
    def published_at(self) -> datetime:
        return EPOCH


    @property
    def url(self) -> str:
        return WATCH_URL + self.video_id


    def id_and_num(self) -> str:
        return f"{self.video_id} ({self.playlist_position} in channel)"


SyncJob = Union[DiscoveredVideo, MockedPublishedVideo]


def job_sort_key(job: SyncJob) -> datetime:
    """Sorts jobs by publication time, oldest first."""
    return job.published_at
