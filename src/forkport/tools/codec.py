"""Derive a patch set from the differences between two directory trees."""

from __future__ import annotations

import logging
import stat
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, List, Sequence, Tuple

from .fileops import iter_files, normalise_prefixes, prune_tree, remove_path, write_bytes
from .unified import DEFAULT_CONTEXT, PatchError, render_file_patch

LOGGER = logging.getLogger(__name__)

DEFAULT_IGNORE_PREFIXES: tuple[str, ...] = (".git", ".idea", ".gradle")
DEFAULT_PRUNE_NAMES: tuple[str, ...] = (".idea", ".gradle", "build", "artifacts")


class DiffEngineError(PatchError):
    """Raised when the diff pass ends with a hard failure status."""

    def __init__(self, exit_status: int, errors: Sequence[str] = ()) -> None:
        detail = "; ".join(errors) if errors else "unknown error"
        super().__init__(
            f"Diff failed with exit code {exit_status}: {detail}",
            details={"exit_status": exit_status, "errors": list(errors)},
        )
        self.exit_status = exit_status
        self.errors = tuple(errors)


@dataclass(slots=True)
class DiffSummary:
    """Counts of each classification produced by a diff pass."""

    changed: int = 0
    added: int = 0
    removed: int = 0
    unchanged: int = 0
    patches: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def differences(self) -> int:
        return self.changed + self.added + self.removed

    @property
    def exit_code(self) -> int:
        """``0`` identical trees, ``1`` differences found, ``2`` hard failure."""
        if self.errors:
            return 2
        return 1 if self.differences else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "changed": self.changed,
            "added": self.added,
            "removed": self.removed,
            "unchanged": self.unchanged,
            "patches": list(self.patches),
            "errors": list(self.errors),
            "exit_code": self.exit_code,
        }


def _file_mode(path: Path) -> str:
    return "100755" if path.stat().st_mode & stat.S_IXUSR else "100644"


class PatchCodec:
    """Write one unified diff per added, removed or changed file."""

    def __init__(
        self,
        *,
        prune_names: Iterable[str] = DEFAULT_PRUNE_NAMES,
        context: int = DEFAULT_CONTEXT,
    ) -> None:
        self.prune_names = tuple(prune_names)
        self.context = context

    def generate_patches(
        self,
        base_dir: Path | str,
        working_dir: Path | str,
        output_dir: Path | str,
        ignore_prefixes: Iterable[str] = DEFAULT_IGNORE_PREFIXES,
    ) -> DiffSummary:
        """Diff ``working_dir`` against ``base_dir`` into ``output_dir``.

        Paths with a segment named in ``prune_names`` are skipped like ignore
        prefixes.  The new set is written to a staging directory beside
        ``output_dir`` and replaces it only when the pass succeeds, so patches
        for files that no longer differ do not linger and a failed pass keeps
        the previous set.  A summary with exit code ``1`` (differences found)
        is a normal result; exit codes above ``1`` raise
        :class:`DiffEngineError`.
        """

        base = Path(base_dir)
        working = Path(working_dir)
        output = Path(output_dir)
        prefixes = normalise_prefixes([*ignore_prefixes, *self.prune_names])

        output.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(dir=output.parent, prefix=f".{output.name}."))
        try:
            summary = self._diff_trees(base, working, staging, prefixes)
            if summary.exit_code > 1:
                raise DiffEngineError(summary.exit_code, summary.errors)
            prune_tree(staging)
            remove_path(output)
            staging.replace(output)
        finally:
            remove_path(staging)

        LOGGER.info(
            "Diffed %s against %s: %d changed, %d added, %d removed, %d unchanged",
            working,
            base,
            summary.changed,
            summary.added,
            summary.removed,
            summary.unchanged,
        )
        return summary

    def _diff_trees(
        self,
        base: Path,
        working: Path,
        output: Path,
        prefixes: Sequence[Tuple[str, ...]],
    ) -> DiffSummary:
        base_files = set(iter_files(base, prefixes))
        working_files = set(iter_files(working, prefixes))
        summary = DiffSummary()

        for relative in sorted(base_files | working_files):
            old_path = base / relative
            new_path = working / relative
            in_base = relative in base_files
            in_working = relative in working_files
            try:
                old = old_path.read_bytes() if in_base else None
                new = new_path.read_bytes() if in_working else None
                if old is not None and new is not None and old == new:
                    summary.unchanged += 1
                    continue
                text = render_file_patch(
                    relative,
                    old,
                    new,
                    old_mode=_file_mode(old_path) if in_base else "100644",
                    new_mode=_file_mode(new_path) if in_working else "100644",
                    context=self.context,
                )
            except (OSError, UnicodeError, PatchError) as error:
                LOGGER.error("Failed to diff %s: %s", relative, error)
                summary.errors.append(f"{relative}: {error}")
                continue

            write_bytes(output / Path(*relative.split("/")), text.encode("utf-8"))
            summary.patches.append(relative)
            if old is None:
                summary.added += 1
            elif new is None:
                summary.removed += 1
            else:
                summary.changed += 1
        return summary


__all__ = [
    "DEFAULT_IGNORE_PREFIXES",
    "DEFAULT_PRUNE_NAMES",
    "DiffEngineError",
    "DiffSummary",
    "PatchCodec",
]
