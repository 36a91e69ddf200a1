import ipaddress
import logging
import socket
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Iterator, List, Optional

import psutil

from .failures import FailureKind, InterruptedByUser, SyncError


logger = logging.getLogger(__name__)

IDENTITY_COOLDOWN_SECONDS = 20.0
IDENTITY_UNBAN_SECONDS = 48 * 60 * 60.0
IDENTITY_BUSY_WAIT_SECONDS = 5.0

# Fresh identities are considered last used this long ago, so they start cold.
_FRESH_IDENTITY_AGE_SECONDS = 5 * 60.0


class AcquireStatus(Enum):
    ACQUIRED = "acquired"
    WOULD_BLOCK = "would_block"
    ALL_THROTTLED = "all_throttled"


@dataclass
class SourceIdentity:
    """
    One outbound network address usable as the apparent origin of requests.
    """

    address: str
    in_use: bool = False
    throttled: bool = False
    last_used_at: float = 0.0
    assigned_job_tag: Optional[str] = None
    unban_at: Optional[float] = None


@dataclass(frozen=True)
class AcquireResult:
    status: AcquireStatus
    address: Optional[str] = None
    cooldown_remaining: float = 0.0


def _is_usable_address(raw: str) -> bool:
    try:
        ip = ipaddress.ip_address(raw.split('%', 1)[0])
    except ValueError:
        return False
    return not (ip.is_loopback or ip.is_link_local or ip.is_multicast or ip.is_unspecified)


def enumerate_local_addresses() -> List[str]:
    """
    Lists the unicast IPv4/IPv6 addresses bound to local interfaces, in interface order.
    """
    addresses: List[str] = []
    for interface_addresses in psutil.net_if_addrs().values():
        for entry in interface_addresses:
            if entry.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            address = entry.address.split('%', 1)[0]
            if _is_usable_address(address) and address not in addresses:
                addresses.append(address)
    return addresses


class IdentityPool:
    """
    Rate-limited allocator of outbound identities shared by every worker of a run.

    All identity state is guarded by a single lock. Unban timers are kept as
    deadlines on each identity and expired lazily whenever the pool is accessed.
    """

    def __init__(
        self,
        address_provider: Callable[[], List[str]] = enumerate_local_addresses,
        cooldown_seconds: float = IDENTITY_COOLDOWN_SECONDS,
        unban_seconds: float = IDENTITY_UNBAN_SECONDS,
        busy_wait_seconds: float = IDENTITY_BUSY_WAIT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._address_provider = address_provider
        self.cooldown_seconds = cooldown_seconds
        self.unban_seconds = unban_seconds
        self.busy_wait_seconds = busy_wait_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._shut_down = False
        self._identities: List[SourceIdentity] = [
            self._fresh_identity(address) for address in address_provider()
        ]
        logger.info(f"Identity pool initialized with {len(self._identities)} addresses.")


    @classmethod
    def from_config(cls, config, address_provider: Callable[[], List[str]] = enumerate_local_addresses) -> 'IdentityPool':
        return cls(
            address_provider=address_provider,
            cooldown_seconds=config.identity_cooldown_seconds,
            unban_seconds=config.identity_unban_seconds,
            busy_wait_seconds=config.identity_busy_wait_seconds,
        )


    def _fresh_identity(self, address: str) -> SourceIdentity:
        return SourceIdentity(address=address, last_used_at=self._clock() - _FRESH_IDENTITY_AGE_SECONDS)


    def _find(self, address: str) -> Optional[SourceIdentity]:
        for identity in self._identities:
            if identity.address == address:
                return identity
        return None


    def _expire_unbans(self, now: float):
        """Not thread safe, must be called with the lock held."""
        if self._shut_down:
            return
        for identity in self._identities:
            if identity.throttled and identity.unban_at is not None and now >= identity.unban_at:
                identity.throttled = False
                identity.unban_at = None
                logger.info(f"{identity.address} set back to not throttled")


    def try_acquire(self, job_tag: str) -> AcquireResult:
        """
        Picks the least recently used identity that is neither in use nor throttled.

        Ties are broken by pool order. Never blocks.
        """
        with self._lock:
            now = self._clock()
            self._expire_unbans(now)

            if not self._identities:
                raise SyncError("no outbound addresses available in the identity pool", FailureKind.FATAL_ABORT_ALL)

            if all(identity.throttled for identity in self._identities):
                return AcquireResult(AcquireStatus.ALL_THROTTLED)

            available = [i for i in self._identities if not i.in_use and not i.throttled]
            if not available:
                return AcquireResult(AcquireStatus.WOULD_BLOCK)

            chosen = sorted(available, key=lambda identity: identity.last_used_at)[0]
            chosen.in_use = True
            chosen.assigned_job_tag = job_tag
            remaining = max(0.0, self.cooldown_seconds - (now - chosen.last_used_at))
            return AcquireResult(AcquireStatus.ACQUIRED, chosen.address, remaining)


    def acquire(self, job_tag: str, cancel_event: Optional[threading.Event] = None) -> str:
        """
        Blocks until an identity is available and cold, then returns its address.

        Busy pools are polled every busy_wait_seconds, fully throttled pools every
        cooldown_seconds. Raises InterruptedByUser once the cancel event is set.
        """
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise InterruptedByUser()

            result = self.try_acquire(job_tag)

            if result.status is AcquireStatus.ACQUIRED:
                if result.cooldown_remaining > 0:
                    logger.debug(
                        f"The IP {result.address} is too hot, waiting for "
                        f"{result.cooldown_remaining:.1f} seconds before continuing"
                    )
                    self._pause(result.cooldown_remaining, cancel_event)
                    if cancel_event is not None and cancel_event.is_set():
                        self.release(result.address)
                        raise InterruptedByUser()
                return result.address

            if result.status is AcquireStatus.WOULD_BLOCK:
                self._pause(self.busy_wait_seconds, cancel_event)
            else:
                logger.warning(f"All identities are throttled, waiting {self.cooldown_seconds:.0f}s ({job_tag})")
                self._pause(self.cooldown_seconds, cancel_event)


    @staticmethod
    def _pause(seconds: float, cancel_event: Optional[threading.Event]):
        if cancel_event is not None:
            cancel_event.wait(seconds)
        else:
            time.sleep(seconds)


    @contextmanager
    def lease(self, job_tag: str, cancel_event: Optional[threading.Event] = None) -> Iterator[str]:
        """Acquires an identity and releases it exactly once when the block exits."""
        address = self.acquire(job_tag, cancel_event)
        try:
            yield address
        finally:
            self.release(address)


    def release(self, address: str):
        with self._lock:
            identity = self._find(address)
            if identity is None:
                logger.error(f"something went wrong while releasing the IP {address}: it is not in the pool")
                return
            identity.in_use = False
            identity.assigned_job_tag = None
            identity.last_used_at = self._clock()


    def release_all(self):
        """Clears in-use on every non-throttled identity (stale state from a crashed run)."""
        with self._lock:
            for identity in self._identities:
                if identity.throttled:
                    continue
                identity.in_use = False
                identity.assigned_job_tag = None


    def mark_throttled(self, address: str):
        """Quarantines an identity until the unban timeout elapses. Idempotent."""
        with self._lock:
            identity = self._find(address)
            if identity is None:
                logger.warning(f"cannot throttle {address}: it is not in the pool")
                return
            if identity.throttled:
                return
            identity.throttled = True
            identity.unban_at = self._clock() + self.unban_seconds
        logger.warning(f"{address} set to throttled")


    def refresh(self):
        """
        Re-enumerates local addresses, keeping state for the ones that still exist.
        """
        current = self._address_provider()
        with self._lock:
            current_set = set(current)
            refreshed = [identity for identity in self._identities if identity.address in current_set]
            known = {identity.address for identity in refreshed}
            for address in current:
                if address not in known:
                    refreshed.append(self._fresh_identity(address))
                    known.add(address)
            dropped = sum(1 for identity in self._identities if identity.address not in current_set)
            self._identities = refreshed
        logger.info(f"Identity pool refreshed: {len(refreshed)} addresses available.")
        if dropped > 0:
            logger.debug(f"{dropped} addresses vanished from the pool.")


    def shutdown(self):
        """Cancels every pending unban without flipping the throttled flags."""
        with self._lock:
            self._shut_down = True
            for identity in self._identities:
                identity.unban_at = None


    def snapshot(self) -> List[SourceIdentity]:
        with self._lock:
            self._expire_unbans(self._clock())
            return [replace(identity) for identity in self._identities]


    def __len__(self) -> int:
        with self._lock:
            return len(self._identities)
