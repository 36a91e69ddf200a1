import logging
import math
import threading
import time
from typing import Callable, Dict, Iterable, Optional

from .config import Config
from .failures import FailureKind, InterruptedByUser, SyncError, is_tx_too_large
from .ledger_client import LedgerClient, LedgerError, first_output
from .synced_video import ChannelRecord, ReadWriteLock, VideoSyncRecord


logger = logging.getLogger(__name__)

CHANNEL_MISMATCH_MESSAGE = "the channel in the wallet is different than the channel in the database"
UNSUPPORTED_CHANNEL_MESSAGE = (
    "this channel does not have a recorded claimID in the database. To prevent failures, "
    "updates are not supported until an entry is manually added in the database"
)
DAEMON_STARTUP_INTERRUPTED_MESSAGE = "interrupted during daemon startup"

# Smallest UTXO counted as spendable for a publish.
_MIN_UTXO_AMOUNT = 0.001
_UTXO_SPLIT_UNIT = 0.1
_BROADCAST_FEE = 0.1

# Sends `amount` credits to `address`, e.g. from a funded hot wallet.
CreditSource = Callable[[str, float], None]


class WalletManager:
    """
    Keeps the wallet able to publish: channel ownership, balance and UTXO count.

    Setup holds the write side of `lock` and publishes hold the read side, so
    no publish proceeds mid-refill.
    """

    def __init__(
        self,
        config: Config,
        ledger: LedgerClient,
        credit_source: Optional[CreditSource] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = config
        self.ledger = ledger
        self.credit_source = credit_source
        self.cancel_event = cancel_event or threading.Event()
        self.lock = ReadWriteLock()
        self._default_account_id: Optional[str] = None


    def _pause(self, seconds: float):
        self.cancel_event.wait(seconds)
        if self.cancel_event.is_set():
            raise InterruptedByUser()


    def wait_for_daemon_start(self):
        """
        Polls the daemon until its wallet is up. Gives up (fatal) after the startup ceiling.
        """
        deadline = time.monotonic() + self.config.daemon_start_timeout_seconds
        while True:
            if self.cancel_event.is_set():
                raise SyncError(DAEMON_STARTUP_INTERRUPTED_MESSAGE, FailureKind.FATAL_ABORT_ALL)
            try:
                status = self.ledger.status()
                if status.get('is_running'):
                    logger.info("Ledger daemon is up.")
                    return
            except LedgerError as e:
                logger.debug(f"daemon not ready yet: {e}")

            if time.monotonic() >= deadline:
                raise SyncError(
                    f"the daemon did not start within {self.config.daemon_start_timeout_seconds:.0f} seconds",
                    FailureKind.FATAL_ABORT_ALL,
                )
            self.cancel_event.wait(self.config.block_poll_seconds)


    def wait_for_new_block(self):
        """
        Waits until the wallet is synced with the chain and then for the next block.
        """
        status = self.ledger.status()
        while self._wallet_status(status, 'blocks') == 0 or self._wallet_status(status, 'blocks_behind') != 0:
            self._pause(self.config.block_poll_seconds / 2)
            status = self.ledger.status()

        current_block = self._wallet_status(status, 'blocks')
        i = 0
        while self._wallet_status(status, 'blocks') <= current_block:
            if i % 3 == 0:
                logger.info(f"Waiting for new block ({current_block + 1})...")
            self._pause(self.config.block_poll_seconds)
            status = self.ledger.status()
            i += 1


    @staticmethod
    def _wallet_status(status: Dict, key: str) -> int:
        return int((status.get('wallet') or {}).get(key) or 0)


    def get_default_account(self) -> str:
        if self._default_account_id is None:
            for account in self.ledger.account_list():
                if account.get('is_default'):
                    self._default_account_id = account.get('id')
                    break
            if not self._default_account_id:
                raise LedgerError("No default account found")
        return self._default_account_id


    def enable_address_reuse(self):
        for account in self.ledger.account_list():
            self.ledger.account_set(account['id'], change_max_uses=1000, receiving_max_uses=100)


    def ensure_channel_ownership(self, channel: ChannelRecord, store=None) -> str:
        """
        Makes sure the wallet holds the channel recorded for this source, creating
        it when the wallet is empty. Returns the channel claim id.
        """
        if not channel.desired_channel_name:
            raise SyncError("no channel name set", FailureKind.FATAL_ABORT_ALL)

        channels = self.ledger.channel_list()
        if channels:
            if not channel.channel_claim_id:
                raise SyncError(UNSUPPORTED_CHANNEL_MESSAGE, FailureKind.FATAL_ABORT_ALL)
            for listed in channels:
                logger.debug(f"checking listed channel {listed.claim_id} ({listed.name})")
                if listed.claim_id != channel.channel_claim_id:
                    continue
                if listed.name != channel.desired_channel_name:
                    raise SyncError(CHANNEL_MISMATCH_MESSAGE, FailureKind.FATAL_ABORT_ALL)
                return listed.claim_id
            raise SyncError(
                f"this wallet has channels but not a single one is ours! Expected claim_id: "
                f"{channel.channel_claim_id} ({channel.desired_channel_name})",
                FailureKind.FATAL_ABORT_ALL,
            )

        if channel.channel_claim_id:
            raise SyncError(
                "the channel recorded in the database is not in the wallet",
                FailureKind.FATAL_ABORT_ALL,
            )

        logger.info(f"Creating channel {channel.desired_channel_name}")
        transaction = self.ledger.channel_create(
            channel.desired_channel_name,
            self.config.channel_claim_amount,
            funding_account_ids=[self.get_default_account()],
        )
        channel.channel_claim_id = first_output(transaction).get('claim_id', '')
        if store is not None:
            store.set_channel_claim_id(channel.channel_id, channel.channel_claim_id)
        self.wait_for_new_block()
        return channel.channel_claim_id


    def required_balance(self, channel: ChannelRecord, synced_videos: Iterable[VideoSyncRecord]) -> float:
        """
        Credits needed to publish every video of the sync window not yet allocated.
        """
        published = 0
        not_upgraded = 0
        failed = 0
        for record in synced_videos:
            if record.published:
                published += 1
                if record.metadata_version < self.config.latest_metadata_version:
                    not_upgraded += 1
            else:
                failed += 1

        videos_on_source = min(channel.total_videos, self.config.videos_to_sync(channel.total_subscribers))
        unallocated = max(videos_on_source - (published + failed), 0)
        channel_fee = 0.0 if channel.channel_claim_id else self.config.channel_claim_amount

        required = unallocated * (self.config.publish_amount + self.config.estimated_max_tx_fee) + channel_fee
        if self.config.upgrade_metadata:
            required += not_upgraded * self.config.estimated_max_tx_fee
        return required


    def refill_amount(self, balance: float, required: float) -> float:
        amount = 0.0
        if balance < required or balance < self.config.minimum_account_balance:
            amount = max(
                required - balance,
                self.config.minimum_account_balance - balance,
                self.config.minimum_refill_amount,
            )
        if self.config.refill > 0:
            amount += self.config.refill
        return amount


    def add_credits(self, amount: float):
        if self.credit_source is None:
            raise SyncError(
                f"NotEnoughFunds: the wallet needs {amount:.4f} more credits and no credit source is configured",
                FailureKind.FATAL_ABORT_ALL,
            )
        address = self.ledger.address_unused(self.get_default_account())
        logger.info(f"Adding {amount:.4f} credits to {address}")
        self.credit_source(address, amount)
        self.wait_for_new_block()


    def ensure_enough_utxos(self):
        """
        Splits the balance into enough UTXOs for concurrent publishing.
        """
        account = self.get_default_account()
        utxos = self.ledger.utxo_list(account)

        target = self.config.utxo_target
        slack = int(0.1 * target)
        count = 0
        confirmed = 0
        for utxo in utxos:
            amount = float(utxo.get('amount') or 0)
            if utxo.get('is_my_output') and utxo.get('type') == 'payment' and amount > _MIN_UTXO_AMOUNT:
                count += 1
                if int(utxo.get('confirmations') or 0) > 0:
                    confirmed += 1
        logger.info(f"utxo count: {count} ({confirmed} confirmed)")

        if count >= target - slack:
            if confirmed < self.config.utxo_wait_threshold:
                logger.info("Waiting for previous txns to confirm")
                self.wait_for_new_block()
            return

        balance = float((self.ledger.account_balance(account) or {}).get('available') or 0)
        desired = min(int(math.floor(balance / _UTXO_SPLIT_UNIT)), self.config.max_utxos)
        if desired < confirmed:
            return
        if balance < _UTXO_SPLIT_UNIT:
            raise LedgerError("not enough balance to split UTXOs")

        logger.info(f"Splitting balance of {balance:.3f} evenly between {desired} UTXOs")
        self.ledger.account_fund(account, account, balance - _BROADCAST_FEE, outputs=desired, broadcast=True)
        if confirmed < self.config.utxo_wait_threshold:
            self.wait_for_new_block()


    def consolidate_utxos(self):
        """
        Spends small outputs back into the wallet so transactions stay under the size limit.
        """
        account = self.get_default_account()
        logger.warning("Transaction too large, consolidating UTXOs")
        self.ledger.txo_spend(account_id=account, txo_type='other')
        self.wait_for_new_block()


    def consolidate_utxos_exclusively(self):
        """Consolidates while holding the write side of the lock, so no publish runs meanwhile."""
        with self.lock.write_locked():
            self.consolidate_utxos()


    def wallet_setup(self, channel: ChannelRecord, synced_videos: Iterable[VideoSyncRecord], store=None) -> str:
        """
        Ensures ownership, balance and UTXOs. Returns the address claims are published to.
        """
        with self.lock.write_locked():
            self.ensure_channel_ownership(channel, store)

            balance = float((self.ledger.account_balance() or {}).get('available') or 0)
            logger.debug(f"Starting balance is {balance:.4f}")

            if channel.total_videos > 0:
                required = self.required_balance(channel, list(synced_videos))
                refill = self.refill_amount(balance, required)
                if refill > 0:
                    try:
                        self.add_credits(refill)
                    except LedgerError as e:
                        if not is_tx_too_large(str(e)):
                            raise
                        self.consolidate_utxos()
                        self.add_credits(refill)

            if not channel.publish_address or not self.should_transfer(channel):
                addresses = self.ledger.address_list()
                if not addresses:
                    raise LedgerError("could not get an address")
                channel.publish_address = addresses[0].get('address', '')
                channel.publish_address_is_mine = True
            if not channel.publish_address:
                raise LedgerError("found blank claim address")

            self.ensure_enough_utxos()
            return channel.publish_address


    def should_transfer(self, channel: ChannelRecord) -> bool:
        return (
            channel.transfers_enabled
            and bool(channel.publish_address)
            and not channel.publish_address_is_mine
            and not self.config.disable_transfers
        )
