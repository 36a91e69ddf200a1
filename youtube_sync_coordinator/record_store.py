import gspread
from gspread import Worksheet
from gspread.exceptions import APIError, SpreadsheetNotFound, WorksheetNotFound

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from .config import Config
from .failures import SyncError
from .synced_video import ChannelRecord, VideoStatus, VideoSyncRecord
from .utils.system_utils import get_current_timestamp, get_machine_hostname


logger = logging.getLogger(__name__)

SYNCED_VIDEO_HEADERS = [
    'ChannelID', 'VideoID', 'Status', 'Published', 'FailureReason', 'ClaimID',
    'ClaimName', 'MetadataVersion', 'Size', 'Transferred', 'IsLbryFirst', 'UpdatedAt',
]

# Failure reasons are free text from the tool or the daemon; cells have a hard size limit.
_MAX_FAILURE_REASON_LENGTH = 1000


class RecordStoreError(SyncError):
    """Raised when the record store cannot be read or written."""


class SheetRecordStore:
    """
    Durable per-channel and per-video state kept in a Google Sheets document.

    All access goes through a single lock and the API pacing of `_wait_for_api`,
    so workers can share one instance.
    """

    def __init__(self, config: Config, spreadsheet=None):
        """
        Authenticates with Google Sheets (unless a spreadsheet is given) and
        opens the Channels and Synced Videos worksheets.
        """

        self.config = config

        self.api_wait_seconds: float = config.api_wait_seconds
        self.last_api_call_time: float = 0
        self._lock = threading.RLock()

        try:
            if spreadsheet is None:
                gc = gspread.service_account(filename=config.credentials_file)
                spreadsheet = gc.open_by_key(config.spreadsheet_id)

            self.channels_worksheet: Worksheet = spreadsheet.worksheet(config.channels_worksheet_name)
            self.synced_videos_worksheet: Worksheet = spreadsheet.worksheet(config.synced_videos_worksheet_name)

            self.last_api_call_time = time.monotonic()

            logger.info("Successfully connected to the record store.")

        except FileNotFoundError:
            raise RecordStoreError(f"Credentials file not found at '{config.credentials_file}'.")

        except SpreadsheetNotFound:
            raise RecordStoreError(
                f"Spreadsheet with ID '{config.spreadsheet_id}' not found or is inaccessible."
            )

        except WorksheetNotFound as e:
            raise RecordStoreError(f"Required worksheet is missing from the spreadsheet: {e}")

        except APIError as e:
            raise RecordStoreError(
                f"API error occurred. Check if the service account has editor permissions. Details: {e}"
            )


    def _wait_for_api(self):
        """
        Ensures a minimum wait time between consecutive API calls to avoid rate limiting.
        """
        elapsed = time.monotonic() - self.last_api_call_time
        if elapsed < self.api_wait_seconds:
            sleep_duration = self.api_wait_seconds - elapsed
            logger.debug(f"Rate limiting: sleeping for {sleep_duration:.2f} seconds.")
            time.sleep(sleep_duration)
        self.last_api_call_time = time.monotonic()


    def _records(self, worksheet: Worksheet) -> List[Dict]:
        self._wait_for_api()
        return worksheet.get_all_records()


    def _find_row_index(self, worksheet: Worksheet, match: Callable[[Dict], bool]) -> Tuple[int, Optional[Dict]]:
        """
        Returns the sheet row index (1-based, header included) of the first matching record.
        """
        for index, record in enumerate(self._records(worksheet)):
            if match(record):
                return index + 2, record
        return -1, None


    def _update_row(self, worksheet: Worksheet, row_index: int, updates: Dict[str, object]):
        """
        Updates the given cells of a row, ignoring keys without a matching header.
        """
        self._wait_for_api()
        headers = worksheet.row_values(1)
        header_map = {header: i + 1 for i, header in enumerate(headers)}

        update_list = []
        for key, value in updates.items():
            column_index = header_map.get(key)
            if column_index:
                update_list.append(gspread.Cell(row_index, column_index, value))

        if update_list:
            self._wait_for_api()
            worksheet.update_cells(update_list)


    def _append_row(self, worksheet: Worksheet, values: Dict[str, object]):
        self._wait_for_api()
        headers = worksheet.row_values(1) or SYNCED_VIDEO_HEADERS
        row = ['' if values.get(header) is None else values.get(header) for header in headers]
        self._wait_for_api()
        worksheet.append_row(row, value_input_option='USER_ENTERED')


    def get_channel(self, channel_id: str) -> ChannelRecord:
        with self._lock:
            try:
                _, record = self._find_row_index(
                    self.channels_worksheet, lambda r: str(r.get('ChannelID')) == channel_id
                )
            except APIError as e:
                raise RecordStoreError(f"failed to read channel {channel_id}: {e}")

        if record is None:
            raise RecordStoreError(f"channel {channel_id} not found in the record store")
        return ChannelRecord.from_dict(record)


    def set_channel_status(
        self,
        channel_id: str,
        status: str,
        failure_reason: str = '',
        transfer_state: Optional[int] = None,
    ) -> Tuple[Dict[str, VideoSyncRecord], Dict[str, bool]]:
        """
        Updates the channel status. When the channel starts syncing, returns its
        synced videos and the claim names already in use; otherwise two empty maps.
        """
        updates: Dict[str, object] = {
            'Status': status,
            'FailureReason': failure_reason[:_MAX_FAILURE_REASON_LENGTH],
            'SyncedBy': get_machine_hostname(),
            'UpdatedAt': get_current_timestamp(),
        }
        if transfer_state is not None:
            updates['TransferState'] = transfer_state

        with self._lock:
            try:
                row_index, _ = self._find_row_index(
                    self.channels_worksheet, lambda r: str(r.get('ChannelID')) == channel_id
                )
                if row_index == -1:
                    raise RecordStoreError(f"channel {channel_id} not found in the record store")
                self._update_row(self.channels_worksheet, row_index, updates)
            except APIError as e:
                raise RecordStoreError(f"failed to set status of channel {channel_id}: {e}")

        logger.info(f"Channel {channel_id} marked as '{status}'.")

        if status != self.config.STATUS_SYNCING:
            return {}, {}

        synced_videos = self.get_synced_videos(channel_id)
        claim_names = {record.claim_name: True for record in synced_videos.values() if record.claim_name}
        return synced_videos, claim_names


    def set_channel_claim_id(self, channel_id: str, claim_id: str):
        with self._lock:
            try:
                row_index, _ = self._find_row_index(
                    self.channels_worksheet, lambda r: str(r.get('ChannelID')) == channel_id
                )
                if row_index == -1:
                    raise RecordStoreError(f"channel {channel_id} not found in the record store")
                self._update_row(self.channels_worksheet, row_index, {'ChannelClaimID': claim_id})
            except APIError as e:
                raise RecordStoreError(f"failed to set claim id of channel {channel_id}: {e}")


    def get_synced_videos(self, channel_id: str) -> Dict[str, VideoSyncRecord]:
        with self._lock:
            try:
                records = self._records(self.synced_videos_worksheet)
            except APIError as e:
                raise RecordStoreError(f"failed to read synced videos of channel {channel_id}: {e}")

        synced: Dict[str, VideoSyncRecord] = {}
        for record in records:
            if str(record.get('ChannelID')) != channel_id:
                continue
            video = VideoSyncRecord.from_dict(record)
            if video.video_id:
                synced[video.video_id] = video
        return synced


    def mark_video_status(self, status: VideoStatus):
        """
        Inserts or updates the row of a video with the outcome of its last sync.
        """
        values: Dict[str, object] = {
            'ChannelID': status.channel_id,
            'VideoID': status.video_id,
            'Status': status.status,
            'Published': status.status == self.config.VIDEO_STATUS_PUBLISHED,
            'FailureReason': status.failure_reason[:_MAX_FAILURE_REASON_LENGTH],
            'ClaimID': status.claim_id,
            'ClaimName': status.claim_name,
            'MetadataVersion': status.metadata_version,
            'UpdatedAt': get_current_timestamp(),
        }
        if status.size is not None:
            values['Size'] = status.size
        if status.is_transferred is not None:
            values['Transferred'] = status.is_transferred

        with self._lock:
            try:
                row_index, _ = self._find_row_index(
                    self.synced_videos_worksheet,
                    lambda r: str(r.get('ChannelID')) == status.channel_id and str(r.get('VideoID')) == status.video_id,
                )
                if row_index == -1:
                    self._append_row(self.synced_videos_worksheet, values)
                else:
                    self._update_row(self.synced_videos_worksheet, row_index, values)
            except APIError as e:
                raise RecordStoreError(f"failed to mark status of video {status.video_id}: {e}")

        logger.debug(f"Video {status.video_id} marked as '{status.status}'.")


    def delete_videos(self, channel_id: str, video_ids: List[str]):
        if not video_ids:
            return
        targets = set(video_ids)

        with self._lock:
            try:
                rows = [
                    index + 2
                    for index, record in enumerate(self._records(self.synced_videos_worksheet))
                    if str(record.get('ChannelID')) == channel_id and str(record.get('VideoID')) in targets
                ]
                # Bottom-up so earlier deletions do not shift the remaining rows.
                for row_index in sorted(rows, reverse=True):
                    self._wait_for_api()
                    self.synced_videos_worksheet.delete_rows(row_index)
            except APIError as e:
                raise RecordStoreError(f"failed to delete videos of channel {channel_id}: {e}")

        logger.info(f"Deleted {len(rows)} video records of channel {channel_id}.")
