from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from gitswarm.state.base import SharedStore, SwarmStateError, SyncResult

logger = logging.getLogger(__name__)

DISCARDED_REF_PREFIX = "refs/gitswarm/discarded"


class GitRemoteStore(SharedStore):
    """Shared store backed by a branch on a git remote.

    ``git push`` is the compare-and-swap append: a non-fast-forward push is
    rejected as a whole by the remote.
    """

    def __init__(
        self,
        workdir: Path,
        *,
        remote_url: str = "",
        branch: str = "main",
        remote_name: str = "origin",
        user_name: str = "",
        user_email: str = "",
    ) -> None:
        self.workdir = workdir.expanduser().resolve()
        self.remote_url = remote_url
        self.branch = branch
        self.remote_name = remote_name
        self.user_name = user_name
        self.user_email = user_email

    @property
    def remote_ref(self) -> str:
        return f"{self.remote_name}/{self.branch}"

    def _identity_args(self) -> list[str]:
        args: list[str] = []
        if self.user_name:
            args.extend(["-c", f"user.name={self.user_name}"])
        if self.user_email:
            args.extend(["-c", f"user.email={self.user_email}"])
        return args

    def _run_git(
        self,
        args: list[str],
        check: bool = True,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *self._identity_args(), *args],
            cwd=cwd or self.workdir,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise SwarmStateError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def ensure_clone(self) -> bool:
        if (self.workdir / ".git").exists():
            return False
        if not self.remote_url:
            raise SwarmStateError(
                f"{self.workdir} is not a clone and no shared store URL is configured."
            )
        self.workdir.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Cloning %s (branch: %s) into %s", self.remote_url, self.branch, self.workdir)
        self._run_git(
            ["clone", "--quiet", "--branch", self.branch, self.remote_url, str(self.workdir)],
            cwd=self.workdir.parent,
        )
        return True

    def _fetch(self) -> bool:
        proc = self._run_git(["fetch", "--quiet", self.remote_name], check=False)
        if proc.returncode != 0:
            logger.warning("Fetch from %s failed: %s", self.remote_name, proc.stderr.strip())
            return False
        return True

    def _rebase_onto_remote(self) -> bool:
        proc = self._run_git(["rebase", "--quiet", self.remote_ref], check=False)
        if proc.returncode == 0:
            return True
        logger.debug("Rebase onto %s failed: %s", self.remote_ref, proc.stderr.strip())
        self._run_git(["rebase", "--abort"], check=False)
        return False

    def sync_down(self) -> SyncResult:
        if not self._fetch():
            return SyncResult(ok=False)
        if self._rebase_onto_remote():
            return SyncResult()
        logger.warning("Rebase failed, resetting to %s", self.remote_ref)
        discarded = self.hard_reset()
        return SyncResult(reset=True, discarded_commits=discarded)

    def try_append(self) -> bool:
        proc = self._run_git(
            ["push", "--quiet", self.remote_name, f"HEAD:refs/heads/{self.branch}"],
            check=False,
        )
        if proc.returncode != 0:
            logger.debug("Push to %s rejected: %s", self.remote_ref, proc.stderr.strip())
            return False
        return True

    def replay(self) -> bool:
        if not self._fetch():
            return False
        return self._rebase_onto_remote()

    def unpublished_commits(self) -> int:
        proc = self._run_git(
            ["rev-list", "--count", f"{self.remote_ref}..HEAD"],
            check=False,
        )
        if proc.returncode != 0:
            return 0
        try:
            return int(proc.stdout.strip() or 0)
        except ValueError:
            return 0

    def hard_reset(self) -> int:
        self._run_git(["rebase", "--abort"], check=False)
        discarded = self.unpublished_commits()
        if discarded:
            stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%f")
            backup_ref = f"{DISCARDED_REF_PREFIX}/{stamp}"
            self._run_git(["update-ref", backup_ref, "HEAD"])
            logger.warning(
                "Discarding %d unpublished commit(s); kept under %s", discarded, backup_ref
            )
        self._run_git(["reset", "--hard", "--quiet", self.remote_ref])
        return discarded

    def rewind(self, revision: str) -> None:
        self._run_git(["rebase", "--abort"], check=False)
        self._run_git(["reset", "--hard", "--quiet", revision])
        if not self._rebase_onto_remote():
            logger.warning(
                "Local commits do not replay onto %s; keeping them unpublished", self.remote_ref
            )

    def discarded_refs(self) -> list[str]:
        proc = self._run_git(
            ["for-each-ref", "--format=%(refname)", DISCARDED_REF_PREFIX],
            check=False,
        )
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def stage(self, relative_path: str) -> None:
        self._run_git(["add", "--", relative_path])

    def unstage_remove(self, relative_path: str) -> None:
        tracked = self._run_git(
            ["ls-files", "--error-unmatch", "--", relative_path],
            check=False,
        )
        if tracked.returncode == 0:
            self._run_git(["rm", "-f", "--quiet", "--", relative_path])
            return
        self.path(relative_path).unlink(missing_ok=True)

    def restore_paths(self, revision: str, paths: Iterable[str]) -> None:
        for relative in paths:
            self._run_git(["rm", "-r", "-f", "--quiet", "--ignore-unmatch", "--", relative])
            target = self.path(relative)
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                target.unlink()
            listed = self._run_git(["ls-tree", "--name-only", revision, "--", relative])
            if listed.stdout.strip():
                self._run_git(["checkout", revision, "--", relative])

    def clean(self) -> None:
        self._run_git(["clean", "-fdq"])

    def _has_staged_changes(self) -> bool:
        proc = self._run_git(["diff", "--cached", "--quiet"], check=False)
        return proc.returncode != 0

    def commit(self, message: str) -> bool:
        if not self._has_staged_changes():
            return False
        self._run_git(["commit", "--quiet", "-m", message])
        return True

    def commit_all(self, message: str) -> bool:
        self._run_git(["add", "-A"])
        return self.commit(message)

    def head(self) -> str:
        proc = self._run_git(["rev-parse", "--short=8", "HEAD"], check=False)
        return proc.stdout.strip() if proc.returncode == 0 else "unknown"

    def revision(self) -> str:
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()
