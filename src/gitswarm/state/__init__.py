from gitswarm.state.base import SharedStore, SwarmStateError, SyncResult
from gitswarm.state.git_remote import GitRemoteStore
from gitswarm.state.leases import (
    PLANNING_LOCK,
    VALIDATION_LOCK,
    AlreadyLocked,
    Lease,
    LockManager,
)
from gitswarm.state.liveness import StalenessDetector, assume_alive, dns_liveness_probe

__all__ = [
    "PLANNING_LOCK",
    "VALIDATION_LOCK",
    "AlreadyLocked",
    "GitRemoteStore",
    "Lease",
    "LockManager",
    "SharedStore",
    "StalenessDetector",
    "SwarmStateError",
    "SyncResult",
    "assume_alive",
    "dns_liveness_probe",
]
