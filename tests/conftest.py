import json
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from itertools import count
from pathlib import Path

import pytest

from gitswarm.policy import RequeuePolicy
from gitswarm.protocol import ClaimProtocol
from gitswarm.reclaim import Reclaimer
from gitswarm.registry import TaskRegistry
from gitswarm.state import GitRemoteStore, LockManager, StalenessDetector, assume_alive
from gitswarm.workers.base import WorkerBackend, WorkResult

SPEC_TEXT = "# Demo project\n\nBuild a tiny calculator.\n"


def run_git(cwd: Path, *args: str) -> str:
    proc = subprocess.run(["git", *args], cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _configure_identity(repo: Path) -> None:
    run_git(repo, "config", "user.email", "test@example.com")
    run_git(repo, "config", "user.name", "Test User")
    run_git(repo, "config", "commit.gpgsign", "false")


def task_payload(task_id: str, status: str = "pending", **extra: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": task_id,
        "description": f"Implement {task_id}",
        "steps": [f"write {task_id}", f"test {task_id}"],
        "status": status,
    }
    payload.update(extra)
    return payload


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


class Publisher:
    """Pushes files to the remote the way an out-of-band collaborator would."""

    def __init__(self, remote: Path, root: Path) -> None:
        self.remote = remote
        self.root = root
        self._ids = count(1)

    def push(
        self,
        files: dict[str, str] | None = None,
        *,
        remove: tuple[str, ...] = (),
        message: str = "external change",
    ) -> None:
        clone = self.root / f"publisher-{next(self._ids)}"
        run_git(self.root, "clone", "--quiet", "--branch", "main", str(self.remote), str(clone))
        _configure_identity(clone)
        for relative, content in (files or {}).items():
            target = clone / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            run_git(clone, "add", "--", relative)
        for relative in remove:
            run_git(clone, "rm", "-q", "--", relative)
        run_git(clone, "commit", "-q", "-m", message)
        run_git(clone, "push", "-q", "origin", "HEAD:refs/heads/main")

    def push_tasks(self, tasks: list[dict[str, object]]) -> None:
        self.push({"tasks.json": json.dumps(tasks, indent=2) + "\n"}, message="seed tasks")

    def read(self, relative: str) -> str | None:
        clone = self.root / f"reader-{next(self._ids)}"
        run_git(self.root, "clone", "--quiet", "--branch", "main", str(self.remote), str(clone))
        target = clone / relative
        return target.read_text(encoding="utf-8") if target.exists() else None

    def read_tasks(self) -> dict[str, dict[str, object]]:
        content = self.read("tasks.json")
        assert content is not None
        return {item["id"]: item for item in json.loads(content)}


@dataclass
class AgentHarness:
    name: str
    store: GitRemoteStore
    detector: StalenessDetector
    locks: LockManager
    policy: RequeuePolicy
    protocol: ClaimProtocol
    reclaimer: Reclaimer

    def registry(self) -> TaskRegistry:
        registry = TaskRegistry.load(self.store)
        assert registry is not None
        return registry


class ScriptedWorker(WorkerBackend):
    """Worker double: runs the first action whose label prefix matches."""

    name = "scripted"

    def __init__(
        self,
        workdir: Path,
        actions: dict[str, Callable[[Path], bool]] | None = None,
    ) -> None:
        self.workdir = workdir
        self.actions = actions or {}
        self.calls: list[tuple[str, str]] = []

    @property
    def labels(self) -> list[str]:
        return [label for label, _ in self.calls]

    async def invoke(self, prompt: str, *, label: str) -> WorkResult:
        self.calls.append((label, prompt))
        for prefix, action in self.actions.items():
            if label.startswith(prefix):
                ok = action(self.workdir)
                return WorkResult(succeeded=ok, exit_code=0 if ok else 1)
        return WorkResult(succeeded=True, exit_code=0)


@pytest.fixture
def remote(tmp_path: Path) -> Path:
    remote_path = tmp_path / "remote.git"
    run_git(tmp_path, "init", "--bare", "--quiet", str(remote_path))
    run_git(remote_path, "symbolic-ref", "HEAD", "refs/heads/main")

    seed = tmp_path / "seed"
    seed.mkdir()
    run_git(seed, "init", "--quiet")
    run_git(seed, "checkout", "-q", "-b", "main")
    _configure_identity(seed)
    (seed / "PROJECT_SPEC.md").write_text(SPEC_TEXT, encoding="utf-8")
    run_git(seed, "add", "PROJECT_SPEC.md")
    run_git(seed, "commit", "-q", "-m", "seed")
    run_git(seed, "remote", "add", "origin", str(remote_path))
    run_git(seed, "push", "-q", "origin", "main")
    return remote_path


@pytest.fixture
def publisher(remote: Path, tmp_path: Path) -> Publisher:
    root = tmp_path / "publishers"
    root.mkdir()
    return Publisher(remote, root)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_agent(remote: Path, tmp_path: Path, clock: FakeClock) -> Callable[..., AgentHarness]:
    def _make(
        name: str,
        *,
        probe: Callable[[str], bool] = assume_alive,
        ttl: timedelta = timedelta(minutes=30),
        max_attempts: int = 2,
        store_cls: type[GitRemoteStore] = GitRemoteStore,
    ) -> AgentHarness:
        store = store_cls(
            tmp_path / "agents" / name,
            remote_url=str(remote),
            user_name=name,
            user_email=f"{name}@example.com",
        )
        store.ensure_clone()
        run_git(store.workdir, "config", "commit.gpgsign", "false")
        detector = StalenessDetector(probe, ttl=ttl, clock=clock)
        locks = LockManager(store, detector)
        policy = RequeuePolicy(max_attempts)
        return AgentHarness(
            name=name,
            store=store,
            detector=detector,
            locks=locks,
            policy=policy,
            protocol=ClaimProtocol(store, locks, policy, name),
            reclaimer=Reclaimer(store, locks, policy, name),
        )

    return _make
