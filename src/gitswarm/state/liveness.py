from __future__ import annotations

import socket
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from gitswarm.state.leases import Lease

LivenessProbe = Callable[[str], bool]
LeaseHealth = Literal["live", "dead_holder", "expired"]

UNKNOWN_HOLDER = "unknown"


def dns_liveness_probe(holder: str) -> bool:
    """Holder is alive while its name resolves (compose service containers)."""
    if not holder or holder == UNKNOWN_HOLDER:
        return False
    try:
        socket.getaddrinfo(holder, None)
    except (socket.gaierror, UnicodeError):
        return False
    return True


def assume_alive(holder: str) -> bool:
    return bool(holder) and holder != UNKNOWN_HOLDER


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StalenessDetector:
    def __init__(
        self,
        probe: LivenessProbe = dns_liveness_probe,
        *,
        ttl: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.probe = probe
        self.ttl = ttl
        self.clock = clock

    def assess(self, lease: Lease) -> LeaseHealth:
        if not self.probe(lease.holder):
            return "dead_holder"
        if lease.created is not None and self.clock() - lease.created >= self.ttl:
            return "expired"
        return "live"

    def is_live(self, lease: Lease) -> bool:
        return self.assess(lease) == "live"

    def now(self) -> datetime:
        return self.clock()
