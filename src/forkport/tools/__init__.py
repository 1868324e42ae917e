"""Engines behind the porting workflow: extraction, diffing and patching."""

from .codec import DEFAULT_IGNORE_PREFIXES, DEFAULT_PRUNE_NAMES, DiffEngineError, DiffSummary, PatchCodec
from .patch import FileOutcome, FileStatus, PatchApplier, PatchEngineError, PatchesRejectedError, PatchSummary
from .snapshot import CommitMarker, SnapshotResult, TreeExtractor
from .unified import FilePatch, Hunk, PatchError, PatchMode, apply_hunks, parse_patch, render_file_patch
from .vcs import GitError, GitRepository, ReferenceNotFoundError

__all__ = [
    "CommitMarker",
    "DEFAULT_IGNORE_PREFIXES",
    "DEFAULT_PRUNE_NAMES",
    "DiffEngineError",
    "DiffSummary",
    "FileOutcome",
    "FilePatch",
    "FileStatus",
    "GitError",
    "GitRepository",
    "Hunk",
    "PatchApplier",
    "PatchCodec",
    "PatchEngineError",
    "PatchError",
    "PatchMode",
    "PatchSummary",
    "PatchesRejectedError",
    "ReferenceNotFoundError",
    "SnapshotResult",
    "TreeExtractor",
    "apply_hunks",
    "parse_patch",
    "render_file_patch",
]
