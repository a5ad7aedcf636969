"""
Artifact sourcing.

Fetches the template at an exact commit so every stage of an execution
sees the same bytes.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from .core.cancellation import NEVER_CANCELLED, CancellationToken
from .core.errors import ExecutionCancelled, SourceUnavailable, ToolInvocationError
from .core.models import Artifact, SourceRef
from .core.process import ToolRun, run_tool

logger = logging.getLogger(__name__)


class ArtifactSource(ABC):
    """Abstract base class for artifact sources."""

    @abstractmethod
    def fetch(
        self,
        source: SourceRef,
        template_path: str,
        cancel_token: CancellationToken = NEVER_CANCELLED,
    ) -> Artifact:
        """Return the template at ``source.commit_sha``.

        Raises:
            SourceUnavailable: if the template cannot be read at that commit
            ExecutionCancelled: if cancelled while fetching
        """
        pass


class LocalArtifactSource(ArtifactSource):
    """Reads templates from a working tree on disk.

    The commit SHA is recorded but not checked; used by the CLI and for
    local runs.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def fetch(
        self,
        source: SourceRef,
        template_path: str,
        cancel_token: CancellationToken = NEVER_CANCELLED,
    ) -> Artifact:
        path = self.root / template_path
        try:
            body = path.read_bytes()
        except OSError as e:
            raise SourceUnavailable(f"Cannot read {path}: {e}")
        return Artifact(body=body, path=template_path, source=source)


class GitArtifactSource(ArtifactSource):
    """Reads templates from local bare mirrors of remote repositories.

    Mirrors live under ``mirror_root`` and are created on first use. A
    commit missing from the mirror triggers one fetch before giving up.
    """

    def __init__(
        self,
        mirror_root: Path,
        remote_url_template: str = "https://github.com/{repository}.git",
        timeout_seconds: float = 300.0,
        git_executable: str = "git",
    ):
        self.mirror_root = Path(mirror_root)
        self.remote_url_template = remote_url_template
        self.timeout_seconds = timeout_seconds
        self.git_executable = git_executable
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def mirror_path(self, repository: str) -> Path:
        return self.mirror_root / (repository.replace("/", "__") + ".git")

    def fetch(
        self,
        source: SourceRef,
        template_path: str,
        cancel_token: CancellationToken = NEVER_CANCELLED,
    ) -> Artifact:
        mirror = self.mirror_path(source.repository)
        with self._repository_lock(source.repository):
            if not mirror.exists():
                self._clone(source.repository, mirror, cancel_token)
            if not self._has_commit(mirror, source.commit_sha, cancel_token):
                logger.info(f"Commit {source.commit_sha[:12]} not in mirror; fetching")
                self._git(["fetch", "--prune", "origin"], mirror, cancel_token)
                if not self._has_commit(mirror, source.commit_sha, cancel_token):
                    raise SourceUnavailable(
                        f"Commit {source.commit_sha} not found in {source.repository}"
                    )

            run = self._git(
                ["show", f"{source.commit_sha}:{template_path}"], mirror, cancel_token
            )
        if run.returncode != 0:
            raise SourceUnavailable(
                f"{template_path} not present at {source.commit_sha[:12]} in "
                f"{source.repository}: {run.stderr.strip()}"
            )
        return Artifact(body=run.stdout_bytes, path=template_path, source=source)

    def _clone(self, repository: str, mirror: Path, cancel_token: CancellationToken) -> None:
        self.mirror_root.mkdir(parents=True, exist_ok=True)
        url = self.remote_url_template.format(repository=repository)
        logger.info(f"Creating mirror of {repository} at {mirror}")
        run = self._git(
            ["clone", "--mirror", "--quiet", url, str(mirror)], self.mirror_root, cancel_token
        )
        if run.returncode != 0:
            raise SourceUnavailable(f"Cannot clone {repository}: {run.stderr.strip()}")

    def _has_commit(self, mirror: Path, sha: str, cancel_token: CancellationToken) -> bool:
        run = self._git(["cat-file", "-e", f"{sha}^{{commit}}"], mirror, cancel_token)
        return run.returncode == 0

    def _git(self, args: List[str], cwd: Path, cancel_token: CancellationToken) -> ToolRun:
        try:
            run = run_tool(
                [self.git_executable, *args], cwd, self.timeout_seconds, cancel_token
            )
        except ToolInvocationError as e:
            raise SourceUnavailable(e.message)
        if run.cancelled:
            raise ExecutionCancelled("Cancelled while fetching source")
        if run.timed_out:
            raise SourceUnavailable(
                f"git {args[0]} timed out after {self.timeout_seconds:.0f}s"
            )
        return run

    def _repository_lock(self, repository: str) -> threading.Lock:
        with self._locks_guard:
            lock: Optional[threading.Lock] = self._locks.get(repository)
            if lock is None:
                lock = self._locks[repository] = threading.Lock()
            return lock
