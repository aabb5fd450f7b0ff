from gitswarm.workers.base import (
    CliWorkerBackend,
    WorkerBackend,
    WorkerExecutionError,
    WorkerProcessError,
    WorkResult,
)
from gitswarm.workers.claude import ClaudeCodeWorker
from gitswarm.workers.codex import CodexWorker

__all__ = [
    "ClaudeCodeWorker",
    "CliWorkerBackend",
    "CodexWorker",
    "WorkResult",
    "WorkerBackend",
    "WorkerExecutionError",
    "WorkerProcessError",
]
