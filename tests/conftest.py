import threading
from typing import Dict, List, Optional

import pytest

from youtube_sync_coordinator.config import Config
from youtube_sync_coordinator.ledger_client import Claim, LedgerError
from youtube_sync_coordinator.synced_video import ChannelRecord, VideoStatus, VideoSyncRecord


CHANNEL_CLAIM_ID = "c0ffee"


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides) -> Config:
        values = {
            "credentials_file": "credentials.json",
            "spreadsheet_id": "sheet-id",
            "work_dir": str(tmp_path / "work"),
            "cookies_file": None,
            "block_poll_seconds": 0.0,
            "api_wait_seconds": 0.0,
        }
        values.update(overrides)
        return Config(**values)
    return _make


@pytest.fixture
def config(make_config):
    return make_config()


def make_claim(
    video_id: str,
    claim_id: str,
    name: str = '',
    height: int = 100,
    address: str = 'bPublish',
    thumbnail_host: str = 'https://thumbnails.lbry.com/',
    channel_claim_id: str = CHANNEL_CLAIM_ID,
    stream_size: Optional[int] = 1000,
    txid: str = '',
) -> Claim:
    return Claim(
        claim_id=claim_id,
        name=name or f"name-{video_id}",
        address=address,
        txid=txid or f"tx-{claim_id}",
        nout=0,
        height=height,
        claim_type='claim',
        value_type='stream',
        signing_channel_id=channel_claim_id,
        thumbnail_url=f"{thumbnail_host}{video_id}",
        stream_size=stream_size,
    )


class FakeLedger:
    """In-memory stand-in for LedgerClient that records every call."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.block = 1
        self.balance = 100.0
        self.streams: List[Claim] = []
        self.own_streams: Optional[List[Claim]] = None
        self.channels: List[Claim] = []
        self.utxos: List[Dict] = []
        self.search_results: Dict[str, List[Claim]] = {}
        self.stream_create_errors: List[str] = []
        self.abandoned: List[tuple] = []
        self._created = 0


    def status(self):
        self.calls.append(('status',))
        # Every status poll sees a new block.
        self.block += 1
        return {'is_running': True, 'wallet': {'blocks': self.block, 'blocks_behind': 0}}


    def account_list(self):
        return [{'id': 'acct-1', 'is_default': True}]


    def account_balance(self, account_id=None):
        return {'available': str(self.balance)}


    def account_fund(self, from_account=None, to_account=None, amount=None, outputs=1, everything=False, broadcast=True):
        self.calls.append(('account_fund', amount, outputs))
        return {}


    def account_set(self, account_id, **settings):
        self.calls.append(('account_set', account_id, settings))
        return {}


    def address_list(self, account_id=None):
        return [{'address': 'bWalletAddress'}]


    def address_unused(self, account_id=None):
        return 'bUnused'


    def utxo_list(self, account_id=None):
        return list(self.utxos)


    def utxo_release(self, account_id=None):
        self.calls.append(('utxo_release',))


    def txo_spend(self, account_id=None, txo_type=None, batch_size=500):
        self.calls.append(('txo_spend', txo_type))


    def channel_list(self, account_id=None):
        return list(self.channels)


    def channel_create(self, name, bid, **options):
        self.calls.append(('channel_create', name))
        return {'outputs': [{'claim_id': 'new-channel', 'name': name}]}


    def stream_list(self, account_id=None):
        self.calls.append(('stream_list', account_id))
        if account_id is not None and self.own_streams is not None:
            return list(self.own_streams)
        return list(self.streams)


    def claim_search(self, **criteria):
        self.calls.append(('claim_search', criteria))
        return list(self.search_results.get(criteria.get('claim_id'), []))


    def stream_create(self, name, bid, file_path, **options):
        self.calls.append(('stream_create', name, file_path, options))
        if self.stream_create_errors:
            raise LedgerError(self.stream_create_errors.pop(0))
        self._created += 1
        return {'outputs': [{'claim_id': f"claim-{self._created}", 'name': name}]}


    def stream_update(self, claim_id, **options):
        self.calls.append(('stream_update', claim_id, options))
        return {'outputs': [{'claim_id': claim_id, 'name': f"updated-{claim_id}"}]}


    def stream_abandon(self, txid, nout, account_id=None, blocking=True):
        self.abandoned.append((txid, nout))
        return {}


    def called(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]


class FakeStore:
    """In-memory record store with the SheetRecordStore interface."""

    def __init__(self, channel: Optional[ChannelRecord] = None, records: Optional[Dict[str, VideoSyncRecord]] = None):
        self.channel = channel or ChannelRecord(channel_id='UC123', desired_channel_name='@chan')
        self.records: Dict[str, VideoSyncRecord] = dict(records or {})
        self.statuses: List[tuple] = []
        self.marked: List[VideoStatus] = []
        self.deleted: List[str] = []
        self.claim_ids: List[str] = []
        self._lock = threading.Lock()


    def get_channel(self, channel_id):
        return self.channel


    def set_channel_status(self, channel_id, status, failure_reason='', transfer_state=None):
        self.statuses.append((status, failure_reason))
        if status != 'syncing':
            return {}, {}
        records = self.get_synced_videos(channel_id)
        return records, {r.claim_name: True for r in records.values() if r.claim_name}


    def set_channel_claim_id(self, channel_id, claim_id):
        self.claim_ids.append(claim_id)


    def get_synced_videos(self, channel_id):
        with self._lock:
            return dict(self.records)


    def mark_video_status(self, status: VideoStatus):
        with self._lock:
            self.marked.append(status)
            existing = self.records.get(status.video_id)
            self.records[status.video_id] = VideoSyncRecord(
                video_id=status.video_id,
                published=status.status == 'published',
                failure_reason=status.failure_reason,
                claim_id=status.claim_id,
                claim_name=status.claim_name,
                metadata_version=status.metadata_version,
                size=status.size or 0,
                transferred=bool(status.is_transferred) if status.is_transferred is not None
                else bool(existing and existing.transferred),
            )


    def delete_videos(self, channel_id, video_ids):
        with self._lock:
            for video_id in video_ids:
                self.deleted.append(video_id)
                self.records.pop(video_id, None)


@pytest.fixture
def ledger():
    return FakeLedger()
