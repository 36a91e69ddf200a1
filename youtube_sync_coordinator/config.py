from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional


# Subscriber count threshold -> number of most recent videos to keep in sync.
DEFAULT_SYNC_WINDOW_TIERS: Dict[int, int] = {
    10000: 1000,
    5000: 500,
    1000: 400,
    800: 250,
    600: 200,
    200: 80,
    100: 20,
    1: 10,
}


@dataclass
class Config:
    """
    Configuration settings for the Sync Coordinator.
    """
    # --- Core Settings ---
    credentials_file: str
    spreadsheet_id: str
    api_wait_seconds: float = 1.0
    work_dir: Optional[str] = None

    # --- Worksheet Names ---
    channels_worksheet_name: str = 'Channels'
    synced_videos_worksheet_name: str = 'Synced Videos'

    # --- Channel Status Constants ---
    STATUS_QUEUED: str = 'queued'
    STATUS_SYNCING: str = 'syncing'
    STATUS_SYNCED: str = 'synced'
    STATUS_FAILED: str = 'failed'
    STATUS_WIPE_DB: str = 'wipe_db'

    # --- Video Status Constants ---
    VIDEO_STATUS_PUBLISHED: str = 'published'
    VIDEO_STATUS_FAILED: str = 'failed'
    VIDEO_STATUS_UPGRADE_FAILED: str = 'upgradefailed'

    # --- Worker Pool Tuning ---
    concurrent_jobs: int = 1
    max_tries: int = 3
    queue_size: int = 0
    videos_limit: int = 0
    quick_sync: bool = False
    quick_sync_limit: int = 50

    # --- Sync Behaviour ---
    upgrade_metadata: bool = False
    remove_db_unpublished: bool = False
    disable_transfers: bool = False
    skip_space_check: bool = False
    max_disk_usage_percent: float = 90.0
    latest_metadata_version: int = 2

    # --- Identity Pool ---
    identity_cooldown_seconds: float = 20.0
    identity_unban_seconds: float = 48 * 60 * 60
    identity_busy_wait_seconds: float = 5.0

    # --- Downloader ---
    ytdlp_binary: str = 'yt-dlp'
    cookies_file: Optional[str] = 'cookies.txt'
    download_attempts: int = 3
    stall_check_interval_seconds: float = 10.0
    stall_min_bytes_per_second: int = 30 * 1024
    stall_max_strikes: int = 3
    long_video_seconds: int = 60 * 60
    min_video_seconds: int = 7

    # --- Ledger ---
    ledger_url: str = 'http://localhost:5279'
    ledger_rpc_timeout_seconds: float = 5 * 60
    daemon_start_timeout_seconds: float = 2 * 60 * 60
    block_poll_seconds: float = 10.0
    publish_amount: float = 0.002
    channel_claim_amount: float = 0.01
    estimated_max_tx_fee: float = 0.0015
    minimum_account_balance: float = 1.0
    minimum_refill_amount: float = 1.0
    refill: float = 0.0
    utxo_target: int = 40
    utxo_wait_threshold: int = 16
    max_utxos: int = 500

    # --- Publishing ---
    description_max_length: int = 6500
    canonical_video_url: str = 'https://www.youtube.com/watch?v='
    thumbnail_endpoint: str = 'https://thumbnails.lbry.com/'
    legacy_thumbnail_hosts: tuple = ('berk.ninja/thumbnails/',)
    license: str = 'Copyrighted (contact publisher)'

    sync_window_tiers: Dict[int, int] = field(default_factory=lambda: dict(DEFAULT_SYNC_WINDOW_TIERS))

    # --- Derived Paths ---
    video_metadata_dir: str = field(init=False)
    locks_dir: str = field(init=False)

    def __post_init__(self):
        base_dir = Path(self.work_dir) if self.work_dir else Path.home() / ".ytsync"
        base_dir.mkdir(parents=True, exist_ok=True)
        self.work_dir = str(base_dir)

        metadata_dir = base_dir / "metadata"
        metadata_dir.mkdir(parents=True, exist_ok=True)
        self.video_metadata_dir = str(metadata_dir)

        locks_dir = base_dir / "locks"
        locks_dir.mkdir(parents=True, exist_ok=True)
        self.locks_dir = str(locks_dir)

    def videos_to_sync(self, total_subscribers: int) -> int:
        """
        Size of the sync window: how many of the channel's most recent videos are considered.
        """
        if self.videos_limit > 0:
            return self.videos_limit

        window = 0
        for threshold, size in self.sync_window_tiers.items():
            if total_subscribers >= threshold and size > window:
                window = size
        return window
