"""Admission control for relayed requests.

Every admitted request holds one slot against its client IP and one against
its destination hostname until it is released. Slots held by other requests
make a new request wait before it is forwarded:

    delay_ms = (host outstanding + client active) * increment_ms

computed from the counts *before* the new slot is taken, so the first request
from an idle client to an idle host goes out immediately. Counters stay
raised for the whole life of a request, delay included, so bursts against
one client or host compound each other's wait.

All methods are synchronous and run on the event loop thread; no read and
write of a counter is ever separated by an await, which serializes access to
both maps.
"""

import asyncio
import enum
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from relay.app.core.logging import get_logger
from relay.app.exceptions import AdmissionDeniedError
from relay.app.services.scheduler import DelayScheduler

logger = get_logger(__name__)


@dataclass
class ClientState:
    """In-flight reservations for one client IP."""
    active_count: int = 0
    last_activity: float = field(default_factory=time.monotonic)


@dataclass
class HostnameState:
    """In-flight reservations against one destination hostname."""
    outstanding_count: int = 0
    last_activity: float = field(default_factory=time.monotonic)


class ReservationState(enum.Enum):
    PENDING = "pending"
    GUARD_FIRED = "guard_fired"
    COMPLETED = "completed"
    RELEASED = "released"


class Reservation:
    """One admission slot and the two timers that can give it back.

    The guard timer is armed at admission and releases the slot if the
    request never reports completion. complete() cancels the guard and arms
    the grace timer instead. Only the PENDING state can move on, so exactly
    one of the two paths releases the slot.
    """

    def __init__(
        self,
        release: Callable[[], None],
        scheduler: DelayScheduler,
        client_ip: str,
        hostname: str,
        delay_ms: int = 0,
    ):
        self._release = release
        self._scheduler = scheduler
        self.client_ip = client_ip
        self.hostname = hostname
        self.delay_ms = delay_ms
        self.state = ReservationState.PENDING
        self._guard: Optional[asyncio.TimerHandle] = None
        self._grace: Optional[asyncio.TimerHandle] = None

    def arm_guard(self, timeout_seconds: float) -> None:
        """Arm the safety-net release for timeout_seconds plus the delay."""
        if self.state is not ReservationState.PENDING or self._guard is not None:
            return
        self._guard = self._scheduler.call_later(
            timeout_seconds + self.delay_ms / 1000, self._on_guard
        )

    def complete(self, grace_seconds: float) -> None:
        """Report completion (success, error or abort); release after the grace period."""
        if self.state is not ReservationState.PENDING:
            return
        self.state = ReservationState.COMPLETED
        if self._guard is not None:
            self._guard.cancel()
            self._guard = None
        if grace_seconds > 0:
            self._grace = self._scheduler.call_later(grace_seconds, self._on_grace)
        else:
            self._on_grace()

    def _on_guard(self) -> None:
        if self.state is not ReservationState.PENDING:
            return
        self.state = ReservationState.GUARD_FIRED
        self._guard = None
        logger.warning(
            f"Guard timer released slot for {self.client_ip} -> {self.hostname}"
        )
        self._release()

    def _on_grace(self) -> None:
        if self.state is not ReservationState.COMPLETED:
            return
        self.state = ReservationState.RELEASED
        self._grace = None
        self._release()


@dataclass
class AdmissionDecision:
    """Result of an admission request."""
    accepted: bool
    delay_ms: int
    reservation: Reservation


def _noop() -> None:
    pass


class AdmissionController:
    """Per-IP and per-hostname in-flight counters.

    Usage:
        controller = AdmissionController(max_concurrent_per_ip=15, delay_increment_ms=500)
        decision = controller.reserve("203.0.113.7", "api.example.com")
        decision.reservation.arm_guard(timeout_seconds=10)
        ...
        decision.reservation.complete(grace_seconds=2)
    """

    def __init__(
        self,
        max_concurrent_per_ip: int = 15,
        delay_increment_ms: int = 500,
        enabled: bool = True,
        scheduler: Optional[DelayScheduler] = None,
    ):
        self.max_concurrent_per_ip = max_concurrent_per_ip
        self.delay_increment_ms = delay_increment_ms
        self.enabled = enabled
        self.scheduler = scheduler or DelayScheduler()

        self._clients: Dict[str, ClientState] = {}
        self._hostnames: Dict[str, HostnameState] = {}

    def reserve(self, client_ip: str, hostname: str) -> AdmissionDecision:
        """Take a slot for client_ip against hostname.

        Raises:
            AdmissionDeniedError: client_ip already holds the maximum
                number of slots
        """
        if not self.enabled:
            reservation = Reservation(_noop, self.scheduler, client_ip, hostname)
            return AdmissionDecision(accepted=True, delay_ms=0, reservation=reservation)

        now = time.monotonic()
        client = self._clients.get(client_ip)
        if client is None:
            client = self._clients[client_ip] = ClientState(last_activity=now)

        if client.active_count >= self.max_concurrent_per_ip:
            raise AdmissionDeniedError(client_ip, self.max_concurrent_per_ip)

        host = self._hostnames.get(hostname)
        if host is None:
            host = self._hostnames[hostname] = HostnameState(last_activity=now)

        delay_ms = (
            host.outstanding_count * self.delay_increment_ms
            + client.active_count * self.delay_increment_ms
        )

        client.active_count += 1
        client.last_activity = now
        host.outstanding_count += 1
        host.last_activity = now

        reservation = Reservation(
            lambda: self.release(client_ip, hostname),
            self.scheduler,
            client_ip,
            hostname,
            delay_ms,
        )
        return AdmissionDecision(accepted=True, delay_ms=delay_ms, reservation=reservation)

    def release(self, client_ip: str, hostname: str) -> None:
        """Give back one slot; counters never drop below zero."""
        client = self._clients.get(client_ip)
        if client is not None:
            client.active_count = max(0, client.active_count - 1)

        host = self._hostnames.get(hostname)
        if host is not None:
            host.outstanding_count = max(0, host.outstanding_count - 1)

    def client_count(self, client_ip: str) -> int:
        client = self._clients.get(client_ip)
        return client.active_count if client else 0

    def hostname_count(self, hostname: str) -> int:
        host = self._hostnames.get(hostname)
        return host.outstanding_count if host else 0

    def sweep(self, retention_seconds: float, now: Optional[float] = None) -> int:
        """Evict idle or stale entries.

        An entry goes when it holds no slots, or when nothing has reserved
        through it for longer than retention_seconds.

        Returns:
            Number of entries removed across both maps
        """
        now = time.monotonic() if now is None else now

        expired_clients = [
            ip for ip, state in self._clients.items()
            if state.active_count == 0 or now - state.last_activity > retention_seconds
        ]
        for ip in expired_clients:
            del self._clients[ip]

        expired_hosts = [
            name for name, state in self._hostnames.items()
            if state.outstanding_count == 0 or now - state.last_activity > retention_seconds
        ]
        for name in expired_hosts:
            del self._hostnames[name]

        return len(expired_clients) + len(expired_hosts)

    def get_stats(self) -> dict:
        """Current counter sizes, for metrics and health."""
        return {
            "enabled": self.enabled,
            "stored_clients": len(self._clients),
            "stored_hostnames": len(self._hostnames),
            "active_requests": sum(s.active_count for s in self._clients.values()),
            "waiting": self.scheduler.waiting,
        }
