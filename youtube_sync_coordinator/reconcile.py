import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

from .config import Config
from .ledger_client import Claim, LedgerClient
from .synced_video import TRANSFER_STATE_MANUAL, ChannelRecord, SyncedVideoMap, VideoStatus
from .wallet import WalletManager


logger = logging.getLogger(__name__)


_SYNC_CLAIM_TYPES = ('claim', 'update')


@dataclass
class ChainClaim:
    """
    What the ledger says about the claim of one synced video.
    """

    video_id: str
    claim_id: str
    claim_name: str
    metadata_version: int
    publish_address: str
    claim: Claim


class Reconciler:
    """
    Brings the record store back in line with the claims actually on the ledger.

    The ledger is the authority: records missing or disagreeing with a claim
    are rewritten, and duplicate claims of one video are abandoned.
    """

    def __init__(
        self,
        config: Config,
        ledger: LedgerClient,
        store,
        wallet: WalletManager,
        channel: ChannelRecord,
        synced_videos: SyncedVideoMap,
        reload: Callable[[], None],
    ):
        self.config = config
        self.ledger = ledger
        self.store = store
        self.wallet = wallet
        self.channel = channel
        self.synced_videos = synced_videos
        self.reload = reload


    @property
    def thumbnail_hosts(self) -> Tuple[str, ...]:
        return (self.config.thumbnail_endpoint,) + tuple(self.config.legacy_thumbnail_hosts)


    def is_sync_claim(self, claim: Claim) -> bool:
        """True for stream claims this channel published through the sync."""
        if claim.claim_type not in _SYNC_CLAIM_TYPES or claim.value_type != 'stream':
            return False
        # Claims without a thumbnail were created by hand.
        if not claim.thumbnail_url:
            return False
        if not claim.signing_channel_id or claim.signing_channel_id != self.channel.channel_claim_id:
            return False
        return any(host in claim.thumbnail_url for host in self.thumbnail_hosts)


    @staticmethod
    def video_id_from_claim(claim: Claim) -> str:
        return claim.thumbnail_url[claim.thumbnail_url.rfind('/') + 1:]


    def metadata_version_from_claim(self, claim: Claim) -> int:
        return 2 if self.config.thumbnail_endpoint in claim.thumbnail_url else 1


    def get_claims(self, default_only: bool = False) -> List[Claim]:
        """Stream claims of the wallet signed by this channel."""
        account = self.wallet.get_default_account() if default_only else None
        return [
            claim for claim in self.ledger.stream_list(account)
            if claim.signing_channel_id and claim.signing_channel_id == self.channel.channel_claim_id
        ]


    def fix_dupes(self, claims: List[Claim]) -> bool:
        """
        Abandons all but the highest claim of each video. Returns True if anything was abandoned.
        """
        abandoned = False
        kept: Dict[str, Claim] = {}
        for claim in claims:
            if not self.is_sync_claim(claim):
                continue
            video_id = self.video_id_from_claim(claim)

            current = kept.get(video_id)
            if current is None or current.claim_id == claim.claim_id:
                kept[video_id] = claim
                continue

            to_abandon = claim
            if claim.height > current.height:
                to_abandon = current
                kept[video_id] = claim

            record = self.synced_videos.get(video_id)
            transferred = record is not None and record.transferred
            ours = to_abandon.address != self.channel.publish_address or self.channel.publish_address_is_mine
            if ours and not transferred:
                logger.warning(f"abandoning duplicate claim {to_abandon.claim_id} of {video_id}")
                self.ledger.stream_abandon(to_abandon.txid, to_abandon.nout, blocking=True)
                abandoned = True
            else:
                logger.warning(
                    f"duplicate claim {to_abandon.claim_id} of {video_id} is not ours. Have the user run this: "
                    f"lbrynet stream abandon --txid={to_abandon.txid} --nout={to_abandon.nout}"
                )
        return abandoned


    def map_from_claims(self, claims: List[Claim]) -> Dict[str, ChainClaim]:
        mapped: Dict[str, ChainClaim] = {}
        for claim in claims:
            if not self.is_sync_claim(claim):
                continue
            video_id = self.video_id_from_claim(claim)
            existing = mapped.get(video_id)
            if existing is not None and existing.claim.height >= claim.height:
                continue
            mapped[video_id] = ChainClaim(
                video_id=video_id,
                claim_id=claim.claim_id,
                claim_name=claim.name,
                metadata_version=self.metadata_version_from_claim(claim),
                publish_address=claim.address,
                claim=claim,
            )
        return mapped


    def update_remote_db(self, all_claims: List[Claim], own_claims: List[Claim]) -> Tuple[int, int, int]:
        """
        Rewrites records that disagree with the ledger and drops the ones claiming
        a publication that does not exist. Returns (total, fixed, removed).
        """
        all_info = self.map_from_claims(all_claims)
        own_info = self.map_from_claims(own_claims)
        fixed = 0

        for video_id, chain in all_info.items():
            record = self.synced_videos.get(video_id)
            in_db = record is not None
            transferred = video_id not in own_info or self.channel.transfer_state == TRANSFER_STATE_MANUAL

            reasons = []
            if not in_db:
                reasons.append("missing from the records")
            else:
                if record.metadata_version != chain.metadata_version:
                    reasons.append(f"metadata version {record.metadata_version} != {chain.metadata_version}")
                if record.claim_id != chain.claim_id:
                    reasons.append(f"claim id {record.claim_id} != {chain.claim_id}")
                if record.claim_name != chain.claim_name:
                    reasons.append(f"claim name {record.claim_name} != {chain.claim_name}")
                if not record.published:
                    reasons.append("marked as unpublished")
                if record.transferred != transferred:
                    reasons.append(f"transferred {record.transferred} != {transferred}")
            if not reasons:
                continue

            logger.warning(f"{video_id}: fixing record ({'; '.join(reasons)})")
            self.store.mark_video_status(VideoStatus(
                channel_id=self.channel.channel_id,
                video_id=video_id,
                status=self.config.VIDEO_STATUS_PUBLISHED,
                claim_id=chain.claim_id,
                claim_name=chain.claim_name,
                size=chain.claim.stream_size or 0,
                metadata_version=chain.metadata_version,
                is_transferred=transferred,
            ))
            fixed += 1

        if fixed > 0:
            self.reload()

        to_remove: List[str] = []
        for video_id, record in self.synced_videos.snapshot().items():
            if record.transferred or record.is_lbry_first:
                if video_id not in all_info and record.published:
                    self._log_missing_transferred(video_id, record.claim_id, record.is_lbry_first)
                continue
            if video_id not in own_info and record.published:
                logger.debug(
                    f"{video_id}: claims to be published but wasn't found in the list of claims and will be "
                    f"removed if removing unpublished records is enabled ({self.config.remove_db_unpublished})"
                )
                to_remove.append(video_id)

        removed = 0
        if self.config.remove_db_unpublished and to_remove:
            logger.warning(f"removing: {','.join(to_remove)}")
            self.store.delete_videos(self.channel.channel_id, to_remove)
            removed = len(to_remove)
            self.reload()

        return len(all_info), fixed, removed


    def _log_missing_transferred(self, video_id: str, claim_id: str, is_lbry_first: bool):
        claims = self.ledger.claim_search(claim_id=claim_id)
        if not claims:
            logger.debug(f"{video_id}: was transferred but appears abandoned! we should ignore this - claimID: {claim_id}")
        elif is_lbry_first:
            logger.debug(f"{video_id}: was published first on the ledger and is not synced - claimID: {claim_id}")
        else:
            logger.warning(f"{video_id}: was transferred but is not in the list of claims - claimID: {claim_id}")


    def check_integrity(self) -> int:
        """
        Full reconciliation pass run before any video is processed. Returns the
        number of sync claims found on the ledger.
        """
        all_claims = self.get_claims()
        if self.fix_dupes(all_claims):
            logger.warning("Channel had dupes and was fixed!")
            self.wallet.wait_for_new_block()
            all_claims = self.get_claims()

        own_claims = self.get_claims(default_only=True)
        on_ledger, fixed, removed = self.update_remote_db(all_claims, own_claims)
        if fixed > 0:
            logger.warning(f"{fixed} claims had mismatched database info or were completely missing and were fixed")
        if removed > 0:
            logger.warning(f"{removed} were marked as published but weren't actually published and thus removed")

        on_db = sum(1 for record in self.synced_videos.values() if record.published)
        if on_ledger > on_db:
            logger.warning(
                f"We're claiming to have published {on_db} videos but in reality we published "
                f"{on_ledger} ({self.channel.channel_id})"
            )
        elif on_ledger < on_db:
            logger.warning(
                f"we're claiming to have published {on_db} videos but we only published "
                f"{on_ledger} ({self.channel.channel_id})"
            )
        return on_ledger
