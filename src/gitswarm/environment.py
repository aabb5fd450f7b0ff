"""Project environment setup driven by the ``init.sh`` script in the workspace."""

from __future__ import annotations

import hashlib
import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

SETUP_SCRIPT = "init.sh"


class ProjectSetup:
    def __init__(self, workdir: Path, *, script: str = SETUP_SCRIPT) -> None:
        self.workdir = workdir
        self.script = script
        self.last_digest: str | None = None
        self.last_ok = True

    @property
    def script_path(self) -> Path:
        return self.workdir / self.script

    def _digest(self) -> str | None:
        if not self.script_path.is_file():
            return None
        return hashlib.sha256(self.script_path.read_bytes()).hexdigest()

    def needs_run(self) -> bool:
        digest = self._digest()
        return digest is not None and digest != self.last_digest

    def ensure(self) -> bool:
        """Run the setup script when it is new or changed since the last run.

        Returns whether the environment is usable: ``True`` when no script
        exists or the last run succeeded.
        """
        digest = self._digest()
        if digest is None:
            return True
        if digest == self.last_digest:
            return self.last_ok

        if self.last_digest is None:
            logger.info("Running %s to set up project environment...", self.script)
        else:
            logger.info("%s changed, running it again", self.script)
        proc = subprocess.run(
            ["bash", self.script],
            cwd=self.workdir,
            text=True,
            capture_output=True,
        )
        self.last_digest = digest
        self.last_ok = proc.returncode == 0
        if self.last_ok:
            logger.info("%s completed successfully", self.script)
        else:
            output = (proc.stderr or proc.stdout).strip().splitlines()
            logger.warning(
                "%s exited with code %d%s",
                self.script,
                proc.returncode,
                f": {output[-1]}" if output else "",
            )
        return self.last_ok
