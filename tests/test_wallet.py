import threading

import pytest

from youtube_sync_coordinator.failures import FailureKind, InterruptedByUser, SyncError
from youtube_sync_coordinator.ledger_client import Claim, LedgerError
from youtube_sync_coordinator.synced_video import ChannelRecord, VideoSyncRecord
from youtube_sync_coordinator.wallet import CHANNEL_MISMATCH_MESSAGE, UNSUPPORTED_CHANNEL_MESSAGE, WalletManager

from conftest import CHANNEL_CLAIM_ID, FakeStore


def make_channel(**overrides):
    values = dict(channel_id="UC123", desired_channel_name="@chan", channel_claim_id=CHANNEL_CLAIM_ID)
    values.update(overrides)
    return ChannelRecord(**values)


def utxo(confirmations=1, amount="1.0"):
    return {'is_my_output': True, 'type': 'payment', 'amount': amount, 'confirmations': confirmations}


def test_required_balance_counts_unallocated_videos(make_config, ledger):
    wallet = WalletManager(make_config(), ledger)
    channel = make_channel(total_videos=100, total_subscribers=150)
    records = [
        VideoSyncRecord("a", published=True, metadata_version=2),
        VideoSyncRecord("b", published=True, metadata_version=2),
        VideoSyncRecord("c", published=True, metadata_version=1),
        VideoSyncRecord("d", failure_reason="HTTP Error 500"),
        VideoSyncRecord("e", failure_reason="HTTP Error 500"),
    ]

    assert wallet.required_balance(channel, records) == pytest.approx(15 * 0.0035)

    upgrading = WalletManager(make_config(upgrade_metadata=True), ledger)
    assert upgrading.required_balance(channel, records) == pytest.approx(15 * 0.0035 + 0.0015)


def test_required_balance_includes_the_channel_claim(make_config, ledger):
    wallet = WalletManager(make_config(), ledger)
    channel = make_channel(channel_claim_id='', total_videos=1, total_subscribers=1)

    assert wallet.required_balance(channel, []) == pytest.approx(0.0035 + 0.01)


def test_refill_amount(make_config, ledger):
    wallet = WalletManager(make_config(), ledger)

    assert wallet.refill_amount(balance=0.5, required=0.05) == pytest.approx(1.0)
    assert wallet.refill_amount(balance=2.0, required=4.5) == pytest.approx(2.5)
    assert wallet.refill_amount(balance=5.0, required=0.05) == 0

    topping_up = WalletManager(make_config(refill=2.0), ledger)
    assert topping_up.refill_amount(balance=5.0, required=0.05) == pytest.approx(2.0)


def test_add_credits_without_a_source_is_fatal(config, ledger):
    wallet = WalletManager(config, ledger)

    with pytest.raises(SyncError) as excinfo:
        wallet.add_credits(1.5)

    assert excinfo.value.kind is FailureKind.FATAL_ABORT_ALL
    assert "NotEnoughFunds" in str(excinfo.value)


def test_add_credits_sends_to_an_unused_address_and_waits(config, ledger):
    sent = []
    wallet = WalletManager(config, ledger, credit_source=lambda address, amount: sent.append((address, amount)))

    wallet.add_credits(1.5)

    assert sent == [("bUnused", 1.5)]
    assert ledger.called('status')


def test_enough_confirmed_utxos_need_no_split(config, ledger):
    ledger.utxos = [utxo() for _ in range(40)]
    wallet = WalletManager(config, ledger)

    wallet.ensure_enough_utxos()

    assert ledger.called('account_fund') == []
    assert ledger.called('status') == []


def test_unconfirmed_utxos_wait_for_a_block(config, ledger):
    ledger.utxos = [utxo(confirmations=0) for _ in range(40)]
    wallet = WalletManager(config, ledger)

    wallet.ensure_enough_utxos()

    assert ledger.called('account_fund') == []
    assert ledger.called('status')


def test_too_few_utxos_splits_the_balance(config, ledger):
    ledger.utxos = [utxo(amount="0.0001"), {'is_my_output': False, 'type': 'payment', 'amount': "5"}]
    ledger.balance = 100.0
    wallet = WalletManager(config, ledger)

    wallet.ensure_enough_utxos()

    (_, amount, outputs), = ledger.called('account_fund')
    assert amount == pytest.approx(99.9)
    assert outputs == 500


def test_splitting_needs_a_minimum_balance(config, ledger):
    ledger.balance = 0.05
    wallet = WalletManager(config, ledger)

    with pytest.raises(LedgerError):
        wallet.ensure_enough_utxos()


def test_empty_wallet_creates_the_channel(config, ledger):
    store = FakeStore()
    channel = make_channel(channel_claim_id='')
    wallet = WalletManager(config, ledger)

    assert wallet.ensure_channel_ownership(channel, store) == "new-channel"

    assert ledger.called('channel_create') == [('channel_create', '@chan')]
    assert channel.channel_claim_id == "new-channel"
    assert store.claim_ids == ["new-channel"]


def test_matching_channel_is_accepted(config, ledger):
    ledger.channels = [Claim(claim_id="other", name="@other"), Claim(claim_id=CHANNEL_CLAIM_ID, name="@chan")]
    wallet = WalletManager(config, ledger)

    assert wallet.ensure_channel_ownership(make_channel()) == CHANNEL_CLAIM_ID
    assert ledger.called('channel_create') == []


@pytest.mark.parametrize("listed, channel, message", [
    ([Claim(claim_id=CHANNEL_CLAIM_ID, name="@renamed")], make_channel(), CHANNEL_MISMATCH_MESSAGE),
    ([Claim(claim_id=CHANNEL_CLAIM_ID, name="@chan")], make_channel(channel_claim_id=''), UNSUPPORTED_CHANNEL_MESSAGE),
    ([Claim(claim_id="stranger", name="@chan")], make_channel(), "not a single one is ours"),
    ([], make_channel(), "not in the wallet"),
])
def test_channel_ownership_mismatches_are_fatal(config, ledger, listed, channel, message):
    ledger.channels = listed
    wallet = WalletManager(config, ledger)

    with pytest.raises(SyncError) as excinfo:
        wallet.ensure_channel_ownership(channel)

    assert message in str(excinfo.value)
    assert excinfo.value.kind is FailureKind.FATAL_ABORT_ALL


def test_wallet_setup_publishes_to_the_wallet_address(config, ledger):
    ledger.channels = [Claim(claim_id=CHANNEL_CLAIM_ID, name="@chan")]
    ledger.utxos = [utxo() for _ in range(40)]
    channel = make_channel()
    wallet = WalletManager(config, ledger)

    assert wallet.wallet_setup(channel, []) == "bWalletAddress"
    assert channel.publish_address_is_mine


def test_wallet_setup_keeps_the_transfer_address(make_config, ledger):
    ledger.channels = [Claim(claim_id=CHANNEL_CLAIM_ID, name="@chan")]
    ledger.utxos = [utxo() for _ in range(40)]
    channel = make_channel(transfer_state=2, publish_address="bOwner")

    assert WalletManager(make_config(), ledger).wallet_setup(channel, []) == "bOwner"

    disabled = make_channel(transfer_state=2, publish_address="bOwner")
    assert WalletManager(make_config(disable_transfers=True), ledger).wallet_setup(disabled, []) == "bWalletAddress"


def test_wallet_setup_consolidates_when_the_refill_is_too_large(config, ledger):
    ledger.channels = [Claim(claim_id=CHANNEL_CLAIM_ID, name="@chan")]
    ledger.utxos = [utxo() for _ in range(40)]
    ledger.balance = 0.0
    attempts = []

    def credit_source(address, amount):
        attempts.append(amount)
        if len(attempts) == 1:
            raise LedgerError("Error in daemon: tx-size")

    wallet = WalletManager(config, ledger, credit_source=credit_source)

    wallet.wallet_setup(make_channel(total_videos=5, total_subscribers=5), [])

    assert len(attempts) == 2
    assert ledger.called('txo_spend') == [('txo_spend', 'other')]


def test_consolidation_waits_for_running_publishes(config, ledger):
    wallet = WalletManager(config, ledger)
    done = threading.Event()

    def consolidate():
        wallet.consolidate_utxos_exclusively()
        done.set()

    with wallet.lock.read_locked():
        worker = threading.Thread(target=consolidate)
        worker.start()
        assert not done.wait(0.2)
        assert ledger.called('txo_spend') == []

    worker.join(timeout=5)
    assert done.is_set()
    assert ledger.called('txo_spend') == [('txo_spend', 'other')]


def test_wait_for_daemon_start(config, ledger):
    WalletManager(config, ledger).wait_for_daemon_start()

    cancel_event = threading.Event()
    cancel_event.set()
    with pytest.raises(SyncError) as excinfo:
        WalletManager(config, ledger, cancel_event=cancel_event).wait_for_daemon_start()
    assert "interrupted during daemon startup" in str(excinfo.value)


def test_wait_for_new_block_sees_the_next_block(config, ledger):
    WalletManager(config, ledger).wait_for_new_block()

    assert len(ledger.called('status')) == 2


def test_wait_for_new_block_stops_on_cancel(config, ledger):
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(InterruptedByUser):
        WalletManager(config, ledger, cancel_event=cancel_event).wait_for_new_block()
