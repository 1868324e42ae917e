"""Minimal git helpers.

The helpers below provide just enough structure to resolve a reference,
enumerate the blobs of a commit tree, and stream their contents without
touching the checkout, index, or ``HEAD`` of the repository.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import IO, List, Sequence

_BLOB_MODES = {"100644", "100755", "120000"}
_CLOSE_TIMEOUT = 10.0


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class ReferenceNotFoundError(GitError):
    """Raised when a branch name or commit id does not resolve to a commit."""

    def __init__(self, reference: str, repo_root: Path) -> None:
        super().__init__(f"Unable to resolve '{reference}' to a commit in {repo_root}")
        self.reference = reference
        self.repo_root = repo_root


@dataclass(slots=True, frozen=True)
class TreeEntry:
    """Blob reachable from a commit's root tree."""

    mode: str
    object_id: str
    path: str

    @property
    def executable(self) -> bool:
        return self.mode == "100755"


class BlobReader:
    """Scoped ``git cat-file --batch`` process used to read raw blob bytes.

    The reader holds the only long-lived handle on the repository during an
    extraction.  It must be used as a context manager so the process is torn
    down on every exit path.
    """

    def __init__(self, repo: "GitRepository") -> None:
        self.repo = repo
        self._process: subprocess.Popen[bytes] | None = None

    def __enter__(self) -> "BlobReader":
        self._process = subprocess.Popen(
            ["git", "cat-file", "--batch"],
            cwd=self.repo.root,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
        )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._process is None

    def read(self, object_id: str) -> bytes:
        """Return the raw bytes of ``object_id``."""

        process = self._process
        if process is None or process.stdin is None or process.stdout is None:
            raise GitError("Blob reader is not open.")
        process.stdin.write(f"{object_id}\n".encode("ascii"))
        process.stdin.flush()

        header = process.stdout.readline().decode("ascii", errors="replace").strip()
        parts = header.split()
        if len(parts) != 3 or parts[1] == "missing":
            raise GitError(f"git cat-file could not read object {object_id}: {header or 'no output'}")
        size = int(parts[2])
        data = _read_exact(process.stdout, size)
        # Each payload is followed by a single LF separator.
        process.stdout.read(1)
        return data

    def close(self) -> None:
        process = self._process
        if process is None:
            return
        self._process = None
        # Closing stdout before waiting unblocks a writer stuck on a full pipe.
        if process.stdout is not None:
            process.stdout.close()
        if process.stdin is not None:
            process.stdin.close()
        try:
            process.wait(timeout=_CLOSE_TIMEOUT)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()


def _read_exact(stream: IO[bytes], size: int) -> bytes:
    chunks: list[bytes] = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            raise GitError(f"Unexpected end of git cat-file output ({remaining} bytes missing).")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        process = subprocess.run(
            command,
            cwd=self.root,
            capture_output=True,
            text=False,
            check=False,
        )
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # ------------------------------------------------------------- references
    def resolve_commit(self, reference: str) -> str:
        """Resolve a branch name or commit id to a full commit id.

        A complete commit id resolves to itself.  Anything git cannot peel to
        a commit raises :class:`ReferenceNotFoundError`.
        """

        candidate = (reference or "").strip()
        if not candidate or candidate.startswith("-"):
            raise ReferenceNotFoundError(reference, self.root)
        result = self._run_git(
            ["rev-parse", "--verify", "--quiet", f"{candidate}^{{commit}}"],
            check=False,
        )
        commit = result.stdout.strip()
        if result.returncode != 0 or not commit:
            raise ReferenceNotFoundError(reference, self.root)
        return commit

    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    # ------------------------------------------------------------------ trees
    def list_tree(self, commit: str) -> List[TreeEntry]:
        """Return every blob reachable from ``commit``'s root tree."""

        result = self._run_git(["ls-tree", "-r", "-z", "--full-tree", commit], check=False)
        if result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unable to list tree"
            raise GitError(f"git ls-tree failed: {message}")

        entries: List[TreeEntry] = []
        for record in result.stdout.split("\0"):
            if not record:
                continue
            meta, _, path = record.partition("\t")
            fields = meta.split()
            if len(fields) != 3:
                continue
            mode, kind, object_id = fields
            # Submodule gitlinks carry type "commit" and have no blob content.
            if kind != "blob" or mode not in _BLOB_MODES:
                continue
            entries.append(TreeEntry(mode=mode, object_id=object_id, path=path))
        return entries

    def open_blob_reader(self) -> BlobReader:
        """Return an unopened :class:`BlobReader`; use it with ``with``."""

        return BlobReader(self)


__all__ = ["BlobReader", "GitError", "GitRepository", "ReferenceNotFoundError", "TreeEntry"]
