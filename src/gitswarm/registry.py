"""Task backlog persisted as ``tasks.json`` in the shared store."""

from __future__ import annotations

import json
from collections import Counter
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from gitswarm.state.base import SharedStore, SwarmStateError
from gitswarm.state.leases import PHASE_LOCKS

REGISTRY_FILE = "tasks.json"

TaskStatus = Literal["pending", "in_progress", "done", "failed"]
TASK_STATUSES: frozenset[str] = frozenset({"pending", "in_progress", "done", "failed"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"done", "failed"})
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"in_progress"}),
    "in_progress": frozenset({"done", "pending", "failed"}),
    "failed": frozenset({"pending"}),
    "done": frozenset(),
}
CORE_KEYS = ("id", "description", "steps", "status", "attempt_count")
LEGACY_ATTEMPT_KEY = "retry_count"


class RegistryError(SwarmStateError):
    """Raised when the task registry is malformed."""


class UnknownTaskError(RegistryError):
    """Raised when a task id is not present in the registry."""


class InvalidTransition(RegistryError):
    """Raised when a status change is not allowed by the task state machine."""


@dataclass(slots=True)
class Task:
    id: str
    description: str = ""
    steps: list[str] = field(default_factory=list)
    status: str = "pending"
    attempt_count: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, payload: Any) -> Task:
        if not isinstance(payload, dict):
            raise RegistryError(f"Task entry must be an object, got {type(payload).__name__}")
        task_id = payload.get("id")
        if not isinstance(task_id, str) or not task_id.strip():
            raise RegistryError(f"Task entry without a usable id: {payload!r}")
        if task_id.strip() in PHASE_LOCKS:
            raise RegistryError(f"Task id {task_id.strip()!r} is reserved for phase locks")
        status = str(payload.get("status") or "pending")
        if status not in TASK_STATUSES:
            raise RegistryError(f"Task {task_id} has unknown status {status!r}")
        raw_steps = payload.get("steps") or []
        if not isinstance(raw_steps, list):
            raise RegistryError(f"Task {task_id} steps must be a list")
        raw_attempts = payload.get("attempt_count", payload.get(LEGACY_ATTEMPT_KEY, 0))
        try:
            attempt_count = max(0, int(raw_attempts or 0))
        except (TypeError, ValueError) as exc:
            raise RegistryError(f"Task {task_id} has invalid attempt count") from exc
        extra = {
            key: value
            for key, value in payload.items()
            if key not in CORE_KEYS and key != LEGACY_ATTEMPT_KEY
        }
        return cls(
            id=task_id.strip(),
            description=str(payload.get("description") or ""),
            steps=[str(step) for step in raw_steps],
            status=status,
            attempt_count=attempt_count,
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "description": self.description,
            "steps": list(self.steps),
            "status": self.status,
            "attempt_count": self.attempt_count,
        }
        payload.update(self.extra)
        return payload


class TaskRegistry:
    def __init__(self, tasks: Iterable[Task] = ()) -> None:
        self._tasks: list[Task] = []
        self._index: dict[str, Task] = {}
        for task in tasks:
            self._add(task)

    def _add(self, task: Task) -> None:
        if task.id in self._index:
            raise RegistryError(f"Duplicate task id: {task.id}")
        self._tasks.append(task)
        self._index[task.id] = task

    @classmethod
    def from_payload(cls, payload: Any) -> TaskRegistry:
        if not isinstance(payload, list):
            raise RegistryError("Task registry must be a JSON array of task objects.")
        return cls(Task.from_dict(item) for item in payload)

    @classmethod
    def from_candidate(cls, candidate: Any) -> tuple[TaskRegistry, list[str]]:
        """Build a registry from untrusted output, dropping unusable entries.

        Returns the registry and one message per dropped entry.
        """
        registry = cls()
        dropped: list[str] = []
        if not isinstance(candidate, list):
            return registry, dropped
        for item in candidate:
            try:
                registry.append([Task.from_dict(item)])
            except RegistryError as exc:
                dropped.append(str(exc))
        return registry, dropped

    @staticmethod
    def exists(store: SharedStore) -> bool:
        return store.exists(REGISTRY_FILE)

    @classmethod
    def load(cls, store: SharedStore) -> TaskRegistry | None:
        content = store.read_text(REGISTRY_FILE)
        if content is None:
            return None
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise RegistryError(f"{REGISTRY_FILE} is not valid JSON: {exc}") from exc
        return cls.from_payload(payload)

    def to_payload(self) -> list[dict[str, Any]]:
        return [task.to_dict() for task in self._tasks]

    def save(self, store: SharedStore) -> None:
        store.write_json(REGISTRY_FILE, self.to_payload())

    def snapshot(self) -> TaskRegistry:
        return TaskRegistry(
            replace(task, steps=list(task.steps), extra=dict(task.extra)) for task in self._tasks
        )

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._index

    def get(self, task_id: str) -> Task | None:
        return self._index.get(task_id)

    def require(self, task_id: str) -> Task:
        task = self._index.get(task_id)
        if task is None:
            raise UnknownTaskError(f"Unknown task: {task_id}")
        return task

    def transition(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        attempt_count: int | None = None,
    ) -> Task:
        task = self.require(task_id)
        if status not in ALLOWED_TRANSITIONS[task.status]:
            raise InvalidTransition(f"Task {task_id}: {task.status} -> {status} is not allowed")
        if attempt_count is not None and attempt_count < task.attempt_count:
            raise InvalidTransition(f"Task {task_id}: attempt count cannot decrease")
        task.status = status
        if attempt_count is not None:
            task.attempt_count = attempt_count
        return task

    def append(self, tasks: Iterable[Task]) -> list[Task]:
        added: list[Task] = []
        for task in tasks:
            self._add(task)
            added.append(task)
        return added

    def all_terminal(self) -> bool:
        return all(task.terminal for task in self._tasks)

    def with_status(self, *statuses: str) -> list[Task]:
        return [task for task in self._tasks if task.status in statuses]

    def counts(self) -> dict[str, int]:
        counter = Counter(task.status for task in self._tasks)
        return {status: counter.get(status, 0) for status in ALLOWED_TRANSITIONS}

    @classmethod
    def merge_appended(
        cls, snapshot: TaskRegistry, candidate: Any
    ) -> tuple[TaskRegistry, list[str]]:
        """Keep every record from ``snapshot`` and append only new, valid tasks.

        Returns the merged registry and the ids that were appended.
        """
        merged = snapshot.snapshot()
        added: list[str] = []
        if not isinstance(candidate, list):
            return merged, added
        for item in candidate:
            try:
                task = Task.from_dict(item)
            except RegistryError:
                continue
            if task.id in merged:
                continue
            task.status = "pending"
            task.attempt_count = 0
            merged.append([task])
            added.append(task.id)
        return merged, added
