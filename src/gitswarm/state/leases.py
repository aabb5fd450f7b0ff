from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote, unquote

from gitswarm.state.base import SharedStore, SwarmStateError
from gitswarm.state.liveness import UNKNOWN_HOLDER, StalenessDetector

logger = logging.getLogger(__name__)

LOCK_DIR = "current_tasks"
LOCK_SUFFIX = ".lock"
PLANNING_LOCK = "_planning"
VALIDATION_LOCK = "_validation"
PHASE_LOCKS = frozenset({PLANNING_LOCK, VALIDATION_LOCK})


class AlreadyLocked(SwarmStateError):
    """Raised when a live lease already guards the resource."""

    def __init__(self, lease: Lease) -> None:
        super().__init__(f"{lease.resource_id} is locked by {lease.holder}")
        self.lease = lease


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(raw: object) -> datetime | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(slots=True, frozen=True)
class Lease:
    resource_id: str
    holder: str
    created: datetime | None = None

    @property
    def is_phase(self) -> bool:
        return self.resource_id in PHASE_LOCKS

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"agent": self.holder}
        if not self.is_phase:
            payload["task_id"] = self.resource_id
        if self.created is not None:
            payload["started"] = format_timestamp(self.created)
        return payload

    @classmethod
    def from_dict(cls, resource_id: str, payload: Any) -> Lease:
        if not isinstance(payload, dict):
            return cls(resource_id=resource_id, holder=UNKNOWN_HOLDER)
        holder = payload.get("agent")
        return cls(
            resource_id=resource_id,
            holder=holder if isinstance(holder, str) and holder else UNKNOWN_HOLDER,
            created=parse_timestamp(payload.get("started")),
        )


class LockManager:
    """Lease records stored as ``current_tasks/<resource>.lock`` in the shared store."""

    def __init__(self, store: SharedStore, detector: StalenessDetector) -> None:
        self.store = store
        self.detector = detector

    @staticmethod
    def path_for(resource_id: str) -> str:
        """Lock path for a resource; ids are percent-encoded into a single file name."""
        if not resource_id:
            raise SwarmStateError(f"Invalid lock resource id: {resource_id!r}")
        name = quote(resource_id, safe="")
        if name.startswith("."):
            name = "%2E" + name[1:]
        return f"{LOCK_DIR}/{name}{LOCK_SUFFIX}"

    def read(self, resource_id: str) -> Lease | None:
        relative = self.path_for(resource_id)
        content = self.store.read_text(relative)
        if content is None:
            return None
        try:
            payload = json.loads(content)
        except json.JSONDecodeError:
            payload = None
        return Lease.from_dict(resource_id, payload)

    def list_leases(self) -> list[Lease]:
        lock_dir = self.store.path(LOCK_DIR)
        if not lock_dir.is_dir():
            return []
        leases: list[Lease] = []
        for lock_path in sorted(lock_dir.glob(f"*{LOCK_SUFFIX}")):
            lease = self.read(unquote(lock_path.name[: -len(LOCK_SUFFIX)]))
            if lease is not None:
                leases.append(lease)
        return leases

    def write(self, lease: Lease) -> None:
        self.store.write_json(self.path_for(lease.resource_id), lease.to_dict())

    def acquire(self, resource_id: str, holder: str) -> Lease:
        existing = self.read(resource_id)
        if existing is not None:
            health = self.detector.assess(existing)
            if health == "live":
                raise AlreadyLocked(existing)
            logger.info(
                "Replacing %s lock from %s (%s)", resource_id, existing.holder, health
            )
        lease = Lease(
            resource_id=resource_id,
            holder=holder,
            created=self.detector.now().replace(microsecond=0),
        )
        self.write(lease)
        return lease

    def release(self, resource_id: str) -> bool:
        return self.store.remove(self.path_for(resource_id))
