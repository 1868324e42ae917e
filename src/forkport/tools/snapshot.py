"""Materialise commit trees into plain directories and track the pinned commit."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .fileops import write_atomic, write_bytes
from .vcs import GitRepository

LOGGER = logging.getLogger(__name__)

__all__ = ["CommitMarker", "SnapshotResult", "TreeExtractor"]


@dataclass(slots=True)
class SnapshotResult:
    """Outcome of a single tree extraction."""

    commit: str
    destination: Path
    files: int = 0


class TreeExtractor:
    """Write every blob of a commit into a destination directory.

    Only read-only git plumbing is used (``rev-parse``, ``ls-tree`` and
    ``cat-file``), so the working copy, index and current branch of the
    repository are never modified.  The destination is not cleared first;
    stale files from an earlier extraction survive unless the caller removes
    them.
    """

    def extract_snapshot(
        self,
        repo_location: Path | str,
        ref_or_commit_id: str,
        destination_dir: Path | str,
    ) -> str:
        """Extract ``ref_or_commit_id`` into ``destination_dir`` and return the commit id."""

        return self.extract(repo_location, ref_or_commit_id, destination_dir).commit

    def extract(
        self,
        repo_location: Path | str,
        ref_or_commit_id: str,
        destination_dir: Path | str,
    ) -> SnapshotResult:
        repo = GitRepository(repo_location)
        commit = repo.resolve_commit(ref_or_commit_id)
        destination = Path(destination_dir)
        destination.mkdir(parents=True, exist_ok=True)

        LOGGER.info("Pulling '%s' (%s) into %s", ref_or_commit_id, commit, destination)

        entries = repo.list_tree(commit)
        result = SnapshotResult(commit=commit, destination=destination)
        with repo.open_blob_reader() as reader:
            for entry in entries:
                target = destination / Path(*entry.path.split("/"))
                write_bytes(target, reader.read(entry.object_id))
                if entry.executable:
                    target.chmod(target.stat().st_mode | 0o111)
                result.files += 1

        LOGGER.debug("Extracted %d file(s) from %s", result.files, commit)
        return result


class CommitMarker:
    """Plain-text sidecar holding the last extracted commit id."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> str | None:
        """Return the recorded commit id, or ``None`` when absent or blank."""
        if not self.path.is_file():
            return None
        value = self.path.read_text(encoding="utf-8").strip()
        return value or None

    def write(self, commit_id: str) -> None:
        """Record ``commit_id``; the file is replaced atomically."""
        write_atomic(self.path, commit_id.strip())

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
