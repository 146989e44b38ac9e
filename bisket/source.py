"""Version source backed by a git repository."""
from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol
from urllib.parse import urlsplit, urlunsplit

from .errors import MaterializationFailed, SourceUnavailable

logger = logging.getLogger(__name__)

MIRROR_DIR = "_mirror"


class VersionSource(Protocol):
    def list_tags(self, repo_url: str) -> list[str]:
        """Return the tag names known to the remote, in listing order."""
        ...

    def materialize(self, repo_url: str, tag: str, dest: Path) -> None:
        """Make the tree of *tag* available at *dest* (clone if absent, pull if present)."""
        ...


def _run(cmd: list[str], cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, check=False)
    except OSError as e:
        # Missing git binary or cwd.
        return subprocess.CompletedProcess(cmd, 127, stdout="", stderr=str(e))


def _tail(proc: subprocess.CompletedProcess[str]) -> str:
    out = (proc.stderr or proc.stdout or "").strip()
    return out.splitlines()[-1] if out else f"exit code {proc.returncode}"


class GitVersionSource:
    """Lists tags from and checks out tags of a git remote using the ``git`` CLI.

    Tags are read from a full clone kept at ``<work_dir>/_mirror``; each
    materialized tag gets a shallow clone of its own.
    """

    def __init__(self, work_dir: Path, api_key: str = "", git_bin: str = "git"):
        self.work_dir = Path(work_dir)
        self.api_key = api_key
        self.git_bin = git_bin

    def _auth_url(self, repo_url: str) -> str:
        # Token goes into the URL only; never log the result.
        if not self.api_key:
            return repo_url
        parts = urlsplit(repo_url)
        if parts.scheme != "https" or "@" in parts.netloc:
            return repo_url
        return urlunsplit(parts._replace(netloc=f"x-access-token:{self.api_key}@{parts.netloc}"))

    @property
    def mirror_dir(self) -> Path:
        return self.work_dir / MIRROR_DIR

    def _ensure_mirror(self, repo_url: str) -> None:
        if (self.mirror_dir / ".git").exists():
            return
        logger.info("Tag mirror not found, cloning %s", repo_url)
        try:
            self.work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SourceUnavailable(f"Cannot create work dir {self.work_dir}: {e}") from e
        proc = _run([self.git_bin, "clone", "--no-checkout", self._auth_url(repo_url), str(self.mirror_dir)])
        if proc.returncode != 0:
            raise SourceUnavailable(f"Failed to clone {repo_url}: {_tail(proc)}")

    def list_tags(self, repo_url: str) -> list[str]:
        self._ensure_mirror(repo_url)
        logger.info("Fetching tags")
        proc = _run(
            [self.git_bin, "fetch", "--prune", self._auth_url(repo_url), "+refs/tags/*:refs/tags/*"],
            cwd=self.mirror_dir,
        )
        if proc.returncode != 0:
            logger.warning("Failed to fetch tags, continuing with the local list of tags: %s", _tail(proc))

        proc = _run([self.git_bin, "tag", "--list"], cwd=self.mirror_dir)
        if proc.returncode != 0:
            raise SourceUnavailable(f"Error reading tags: {_tail(proc)}")
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def materialize(self, repo_url: str, tag: str, dest: Path) -> None:
        dest = Path(dest)
        if (dest / ".git").exists():
            logger.info("Existing checkout found at %s, pulling", dest)
            proc = _run([self.git_bin, "pull"], cwd=dest)
            if proc.returncode != 0:
                logger.warning("Failed to pull %s, using the existing checkout: %s", tag, _tail(proc))
            return

        logger.info("Existing checkout not found, cloning %s into %s", tag, dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        proc = _run(
            [self.git_bin, "clone", "--depth", "1", "--branch", tag, self._auth_url(repo_url), str(dest)]
        )
        if proc.returncode != 0:
            raise MaterializationFailed(f"Failed to clone {tag}: {_tail(proc)}")
