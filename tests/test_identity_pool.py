import threading
import time

import pytest

from youtube_sync_coordinator.failures import FailureKind, InterruptedByUser, SyncError
from youtube_sync_coordinator.identity_pool import AcquireStatus, IdentityPool


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now


    def __call__(self) -> float:
        return self.now


    def advance(self, seconds: float):
        self.now += seconds


def make_pool(addresses, clock=None, **kwargs) -> IdentityPool:
    return IdentityPool(
        address_provider=lambda: list(addresses),
        clock=clock or FakeClock(),
        **kwargs,
    )


def test_try_acquire_picks_least_recently_used_with_pool_order_tie_break():
    clock = FakeClock()
    pool = make_pool(["10.0.0.1", "10.0.0.2", "10.0.0.3"], clock=clock)

    first = pool.try_acquire("v1")
    assert first.status is AcquireStatus.ACQUIRED
    assert first.address == "10.0.0.1"
    assert first.cooldown_remaining == 0

    clock.advance(1)
    pool.release("10.0.0.1")
    # The two untouched identities are older than the one just released.
    assert pool.try_acquire("v2").address == "10.0.0.2"
    assert pool.try_acquire("v3").address == "10.0.0.3"

    clock.advance(1)
    result = pool.try_acquire("v4")
    assert result.status is AcquireStatus.ACQUIRED
    assert result.address == "10.0.0.1"
    assert result.cooldown_remaining == pytest.approx(19.0)


def test_try_acquire_would_block_and_all_throttled():
    pool = make_pool(["10.0.0.1", "10.0.0.2"])
    pool.try_acquire("v1")
    pool.mark_throttled("10.0.0.2")
    assert pool.try_acquire("v2").status is AcquireStatus.WOULD_BLOCK

    pool.mark_throttled("10.0.0.1")
    assert pool.try_acquire("v3").status is AcquireStatus.ALL_THROTTLED


def test_empty_pool_is_fatal():
    pool = make_pool([])
    with pytest.raises(SyncError) as excinfo:
        pool.try_acquire("v1")
    assert excinfo.value.kind is FailureKind.FATAL_ABORT_ALL


def test_throttled_identity_comes_back_after_unban_deadline():
    clock = FakeClock()
    pool = make_pool(["10.0.0.1"], clock=clock, unban_seconds=100)
    pool.mark_throttled("10.0.0.1")
    pool.mark_throttled("10.0.0.1")

    clock.advance(99)
    assert pool.try_acquire("v1").status is AcquireStatus.ALL_THROTTLED

    clock.advance(1)
    assert pool.try_acquire("v1").status is AcquireStatus.ACQUIRED


def test_shutdown_cancels_unbans_without_clearing_flags():
    clock = FakeClock()
    pool = make_pool(["10.0.0.1"], clock=clock, unban_seconds=10)
    pool.mark_throttled("10.0.0.1")
    pool.shutdown()

    clock.advance(1000)
    [identity] = pool.snapshot()
    assert identity.throttled
    assert identity.unban_at is None


def test_release_all_skips_throttled_identities():
    pool = make_pool(["10.0.0.1", "10.0.0.2"])
    pool.try_acquire("v1")
    pool.try_acquire("v2")
    pool.mark_throttled("10.0.0.2")

    pool.release_all()

    states = {identity.address: identity for identity in pool.snapshot()}
    assert not states["10.0.0.1"].in_use
    assert states["10.0.0.2"].in_use


def test_refresh_keeps_state_of_surviving_addresses():
    addresses = ["10.0.0.1", "10.0.0.2"]
    pool = IdentityPool(address_provider=lambda: list(addresses), clock=FakeClock())
    pool.mark_throttled("10.0.0.1")

    addresses[:] = ["10.0.0.1", "10.0.0.3"]
    pool.refresh()

    states = {identity.address: identity for identity in pool.snapshot()}
    assert set(states) == {"10.0.0.1", "10.0.0.3"}
    assert states["10.0.0.1"].throttled
    assert not states["10.0.0.3"].throttled


def test_release_of_unknown_address_is_ignored():
    pool = make_pool(["10.0.0.1"])
    pool.release("192.0.2.1")
    assert len(pool) == 1


def test_third_acquire_waits_for_release_and_cooldown():
    pool = IdentityPool(
        address_provider=lambda: ["10.0.0.1", "10.0.0.2"],
        cooldown_seconds=0.2,
        busy_wait_seconds=0.01,
    )
    first = pool.acquire("v1")
    second = pool.acquire("v2")
    assert {first, second} == {"10.0.0.1", "10.0.0.2"}

    acquired = []

    def third():
        acquired.append((pool.acquire("v3"), time.monotonic()))

    worker = threading.Thread(target=third)
    worker.start()
    time.sleep(0.1)
    assert acquired == []

    released_at = time.monotonic()
    pool.release(first)
    worker.join(timeout=5)

    assert not worker.is_alive()
    address, acquired_at = acquired[0]
    assert address == first
    assert acquired_at - released_at >= 0.2 - 0.01


def test_acquire_observes_cancellation():
    pool = make_pool(["10.0.0.1"], busy_wait_seconds=0.01)
    pool.try_acquire("v1")
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(InterruptedByUser):
        pool.acquire("v2", cancel)


def test_lease_releases_on_error():
    pool = make_pool(["10.0.0.1"])
    with pytest.raises(RuntimeError):
        with pool.lease("v1") as address:
            assert address == "10.0.0.1"
            raise RuntimeError("boom")

    assert not pool.snapshot()[0].in_use


def test_concurrent_workers_never_share_an_address():
    pool = IdentityPool(
        address_provider=lambda: ["10.0.0.1", "10.0.0.2", "10.0.0.3"],
        cooldown_seconds=0,
        busy_wait_seconds=0.001,
    )
    held = set()
    collisions = []
    held_lock = threading.Lock()

    def work(worker_number):
        for attempt in range(50):
            address = pool.acquire(f"v{worker_number}-{attempt}")
            with held_lock:
                if address in held:
                    collisions.append(address)
                held.add(address)
            time.sleep(0.0005)
            with held_lock:
                held.discard(address)
            pool.release(address)

    workers = [threading.Thread(target=work, args=(n,)) for n in range(6)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=30)

    assert not any(worker.is_alive() for worker in workers)
    assert collisions == []
    assert not any(identity.in_use for identity in pool.snapshot())
