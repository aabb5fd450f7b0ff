from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class SwarmStateError(RuntimeError):
    """Raised when shared-state operations fail."""


@dataclass(slots=True)
class SyncResult:
    ok: bool = True
    reset: bool = False
    discarded_commits: int = 0


class SharedStore(ABC):
    """Versioned store shared by every agent.

    Appends are compare-and-swap: they succeed only when the local history
    descends from the current shared head, and a rejected append leaves the
    shared head untouched.
    """

    workdir: Path

    @abstractmethod
    def ensure_clone(self) -> bool:
        """Materialize the local view; return True when it was created."""

    @abstractmethod
    def sync_down(self) -> SyncResult:
        """Merge the shared head into the local view, resetting on conflict."""

    @abstractmethod
    def try_append(self) -> bool:
        """Publish local history. False means another agent appended first."""

    @abstractmethod
    def replay(self) -> bool:
        """Reapply local history on top of the shared head."""

    @abstractmethod
    def hard_reset(self) -> int:
        """Drop unpublished local history; return the number of dropped commits."""

    @abstractmethod
    def rewind(self, revision: str) -> None:
        """Drop local commits made after ``revision`` and keep the earlier ones.

        The kept history is replayed onto the shared head when that applies
        cleanly; otherwise the local view stays at ``revision``.
        """

    @abstractmethod
    def restore_paths(self, revision: str, paths: Iterable[str]) -> None:
        """Stage ``paths`` exactly as they were at ``revision``, deleting what it lacked."""

    @abstractmethod
    def clean(self) -> None:
        """Delete untracked files left in the local view."""

    @abstractmethod
    def commit(self, message: str) -> bool:
        """Record staged changes."""

    @abstractmethod
    def commit_all(self, message: str) -> bool:
        """Stage and record every change in the local view."""

    @abstractmethod
    def stage(self, relative_path: str) -> None:
        """Mark a local path for the next commit."""

    @abstractmethod
    def unstage_remove(self, relative_path: str) -> None:
        """Remove a path from the local view and the next commit."""

    @abstractmethod
    def head(self) -> str:
        """Short identifier of the local head."""

    @abstractmethod
    def revision(self) -> str:
        """Full identifier of the local head."""

    def publish(self, attempts: int = 3) -> bool:
        for _ in range(max(1, attempts)):
            if self.try_append():
                return True
            if not self.replay():
                return False
        return False

    def path(self, relative_path: str) -> Path:
        return self.workdir / relative_path

    def exists(self, relative_path: str) -> bool:
        return self.path(relative_path).exists()

    def read_text(self, relative_path: str) -> str | None:
        target = self.path(relative_path)
        if not target.exists():
            return None
        return target.read_text(encoding="utf-8")

    def read_json(self, relative_path: str) -> Any:
        content = self.read_text(relative_path)
        if content is None or not content.strip():
            return None
        return json.loads(content)

    def write_text(self, relative_path: str, content: str) -> None:
        target = self.path(relative_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        self.stage(relative_path)

    def write_json(self, relative_path: str, payload: Any) -> None:
        self.write_text(relative_path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")

    def remove(self, relative_path: str) -> bool:
        if not self.exists(relative_path):
            return False
        self.unstage_remove(relative_path)
        return True
