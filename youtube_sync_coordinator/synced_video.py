import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ('true', '1', 'yes')


def _as_int(value, default: int = 0) -> int:
    if value is None or value == '':
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _as_optional_str(value) -> Optional[str]:
    if value is None or value == '':
        return None
    return str(value)


@dataclass
class VideoSyncRecord:
    """
    The durable state of one video of a channel, as kept by the record store.

    A record with published=True must match a live claim on the ledger unless
    it was transferred; reconciliation repairs the ones that drift.
    """

    video_id: str
    published: bool = False
    failure_reason: str = ''
    claim_id: str = ''
    claim_name: str = ''
    metadata_version: int = 0
    size: int = 0
    transferred: bool = False
    is_lbry_first: bool = False


    @classmethod
    def from_dict(cls, data: Dict) -> 'VideoSyncRecord':
        """
        Creates a VideoSyncRecord instance from a dictionary row retrieved from gspread.
        """

        return cls(
            video_id=str(data.get('VideoID', '')),
            published=_as_bool(data.get('Published')),
            failure_reason=str(data.get('FailureReason') or ''),
            claim_id=str(data.get('ClaimID') or ''),
            claim_name=str(data.get('ClaimName') or ''),
            metadata_version=_as_int(data.get('MetadataVersion')),
            size=_as_int(data.get('Size')),
            transferred=_as_bool(data.get('Transferred')),
            is_lbry_first=_as_bool(data.get('IsLbryFirst')),
        )


@dataclass
class VideoStatus:
    """Payload of a mark-video-status call."""

    channel_id: str
    video_id: str
    status: str
    claim_id: str = ''
    claim_name: str = ''
    failure_reason: str = ''
    size: Optional[int] = None
    metadata_version: int = 0
    is_transferred: Optional[bool] = None


# Transfer states of a channel whose claims are handed over to their owner.
TRANSFER_STATE_NOT_TOUCHED = 0
TRANSFER_STATE_PENDING = 1
TRANSFER_STATE_COMPLETE = 2
TRANSFER_STATE_MANUAL = 3


@dataclass
class Fee:
    amount: str
    address: str
    currency: str = 'LBC'


@dataclass
class ChannelRecord:
    """
    Channel-level settings and state, as kept by the record store.
    """

    channel_id: str
    desired_channel_name: str = ''
    channel_claim_id: str = ''
    total_videos: int = 0
    total_subscribers: int = 0
    transfer_state: int = 0
    publish_address: str = ''
    publish_address_is_mine: bool = False
    size_limit_mb: int = 0
    length_limit_minutes: int = 0
    fee: Optional[Fee] = None
    last_uploaded_video: str = ''
    is_deleted_on_source: bool = False
    language: Optional[str] = None


    @classmethod
    def from_dict(cls, data: Dict) -> 'ChannelRecord':
        """
        Creates a ChannelRecord instance from a dictionary row retrieved from gspread.
        """

        fee = None
        fee_amount = _as_optional_str(data.get('FeeAmount'))
        fee_address = _as_optional_str(data.get('FeeAddress'))
        if fee_amount and fee_address:
            fee = Fee(amount=fee_amount, address=fee_address, currency=data.get('FeeCurrency') or 'LBC')

        return cls(
            channel_id=str(data.get('ChannelID', '')),
            desired_channel_name=str(data.get('DesiredChannelName') or ''),
            channel_claim_id=str(data.get('ChannelClaimID') or ''),
            total_videos=_as_int(data.get('TotalVideos')),
            total_subscribers=_as_int(data.get('TotalSubscribers')),
            transfer_state=_as_int(data.get('TransferState')),
            publish_address=str(data.get('PublishAddress') or ''),
            publish_address_is_mine=_as_bool(data.get('PublishAddressIsMine')),
            size_limit_mb=_as_int(data.get('SizeLimitMB')),
            length_limit_minutes=_as_int(data.get('LengthLimitMinutes')),
            fee=fee,
            last_uploaded_video=str(data.get('LastUploadedVideo') or ''),
            is_deleted_on_source=_as_bool(data.get('IsDeletedOnSource')),
            language=_as_optional_str(data.get('Language')),
        )


    @property
    def transfers_enabled(self) -> bool:
        return self.transfer_state > 0


class ReadWriteLock:
    """
    Many readers or a single writer. Writers wait for active readers to drain.
    """

    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False


    def acquire_read(self):
        with self._condition:
            while self._writer:
                self._condition.wait()
            self._readers += 1


    def release_read(self):
        with self._condition:
            self._readers -= 1
            if self._readers == 0:
                self._condition.notify_all()


    def acquire_write(self):
        with self._condition:
            while self._writer or self._readers > 0:
                self._condition.wait()
            self._writer = True


    def release_write(self):
        with self._condition:
            self._writer = False
            self._condition.notify_all()


    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()


    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


@dataclass
class SyncedVideoMap:
    """
    In-memory view of the channel's VideoSyncRecords shared by every worker.
    """

    records: Dict[str, VideoSyncRecord] = field(default_factory=dict)
    lock: ReadWriteLock = field(default_factory=ReadWriteLock)


    def get(self, video_id: str) -> Optional[VideoSyncRecord]:
        with self.lock.read_locked():
            return self.records.get(video_id)


    def append(self, record: VideoSyncRecord):
        with self.lock.write_locked():
            self.records[record.video_id] = record


    def replace_all(self, records: Dict[str, VideoSyncRecord]):
        with self.lock.write_locked():
            self.records = dict(records)


    def values(self) -> List[VideoSyncRecord]:
        with self.lock.read_locked():
            return list(self.records.values())


    def snapshot(self) -> Dict[str, VideoSyncRecord]:
        with self.lock.read_locked():
            return dict(self.records)


    def __contains__(self, video_id: str) -> bool:
        with self.lock.read_locked():
            return video_id in self.records


    def __len__(self) -> int:
        with self.lock.read_locked():
            return len(self.records)
