"""Reconstruct a working tree by applying a patch set onto a base tree."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, List, Sequence, Tuple

from .fileops import copy_tree, has_entries, iter_files, remove_path, write_bytes
from .unified import (
    BinaryPatch,
    FilePatch,
    Hunk,
    PatchError,
    PatchMode,
    apply_hunks,
    parse_patch,
    render_reject,
    split_lines,
)

LOGGER = logging.getLogger(__name__)

REJECT_SUFFIX = ".rej"


class PatchEngineError(PatchError):
    """Raised when the apply pass ends with a hard failure status."""

    def __init__(self, exit_status: int, errors: Sequence[str] = ()) -> None:
        detail = "; ".join(errors) if errors else "unknown error"
        super().__init__(
            f"Patching failed with exit code {exit_status}: {detail}",
            details={"exit_status": exit_status, "errors": list(errors)},
        )
        self.exit_status = exit_status
        self.errors = tuple(errors)


class PatchesRejectedError(PatchError):
    """Raised when some patches could not be applied; see the ``.rej`` files."""

    def __init__(self, rejected: Sequence[str], summary: "PatchSummary | None" = None) -> None:
        listing = ", ".join(rejected)
        super().__init__(
            f"{len(rejected)} patch(es) rejected: {listing}",
            details={"rejected": list(rejected)},
        )
        self.rejected = tuple(rejected)
        self.summary = summary


class FileStatus(str, Enum):
    """Per-file result of an apply pass."""

    APPLIED = "applied"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(slots=True)
class FileOutcome:
    """What happened to one patch file."""

    path: str
    status: FileStatus
    reject_path: Path | None = None
    failed_hunks: int = 0
    offsets: Tuple[Tuple[int, int], ...] = ()
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "status": self.status.value,
            "reject_path": self.reject_path.as_posix() if self.reject_path else None,
            "failed_hunks": self.failed_hunks,
            "offsets": [list(item) for item in self.offsets],
            "message": self.message,
        }


@dataclass(slots=True)
class PatchSummary:
    """Per-file outcomes of an apply pass, aggregated after the full pass."""

    outcomes: List[FileOutcome] = field(default_factory=list)
    copied: bool = False

    def _count(self, status: FileStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    @property
    def applied(self) -> int:
        return self._count(FileStatus.APPLIED)

    @property
    def failed(self) -> int:
        return self._count(FileStatus.REJECTED)

    @property
    def rejected(self) -> List[str]:
        return [outcome.path for outcome in self.outcomes if outcome.status is FileStatus.REJECTED]

    @property
    def errors(self) -> List[str]:
        return [
            f"{outcome.path}: {outcome.message}"
            for outcome in self.outcomes
            if outcome.status is FileStatus.ERROR
        ]

    @property
    def exit_code(self) -> int:
        """``0`` clean, ``1`` some files rejected, ``2`` hard failure."""
        if self.errors:
            return 2
        return 1 if self.failed else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": self.applied,
            "failed": self.failed,
            "copied": self.copied,
            "exit_code": self.exit_code,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


class PatchApplier:
    """Apply every patch file under a patch directory onto a base tree."""

    def __init__(self, mode: PatchMode | str = PatchMode.OFFSET, fuzz: int = 2) -> None:
        self.mode = PatchMode(mode)
        self.fuzz = fuzz

    def apply_patches(
        self,
        base_dir: Path | str,
        patches_dir: Path | str,
        output_dir: Path | str,
        rejects_dir: Path | str,
        *,
        strict: bool = True,
    ) -> PatchSummary:
        """Write ``base_dir`` plus the patches in ``patches_dir`` to ``output_dir``.

        Without any patches the base tree is copied verbatim.  Otherwise each
        patch is applied independently; failures are recorded as ``.rej``
        files below ``rejects_dir`` and the pass continues.  ``rejects_dir``
        is not cleared here, callers remove stale rejects beforehand.

        Raises :class:`PatchEngineError` on a hard failure and, when
        ``strict`` is set, :class:`PatchesRejectedError` if any file was
        rejected.
        """

        base = Path(base_dir)
        patches = Path(patches_dir)
        output = Path(output_dir)
        rejects = Path(rejects_dir)

        if not has_entries(patches):
            LOGGER.info("No patches in %s; copying %s into %s", patches, base, output)
            copy_tree(base, output)
            return PatchSummary(copied=True)

        LOGGER.info("Patching %s from %s", output, patches)
        if base.is_dir():
            copy_tree(base, output)
        else:
            output.mkdir(parents=True, exist_ok=True)

        summary = PatchSummary()
        for relative in iter_files(patches):
            outcome = self._apply_file(relative, patches, base, output, rejects)
            summary.outcomes.append(outcome)
            if outcome.status is FileStatus.REJECTED:
                LOGGER.error(
                    "Patch failed to apply for %s (%d hunk(s) rejected)", relative, outcome.failed_hunks
                )
            elif outcome.status is FileStatus.ERROR:
                LOGGER.error("Unable to process patch %s: %s", relative, outcome.message)
            for number, offset in outcome.offsets:
                LOGGER.info("%s: hunk #%d applied at offset %d", relative, number, offset)

        if summary.exit_code > 1:
            raise PatchEngineError(summary.exit_code, summary.errors)
        if summary.failed:
            if strict:
                raise PatchesRejectedError(summary.rejected, summary)
        else:
            LOGGER.info("Applied %d patch(es) cleanly", summary.applied)
        return summary

    # ----------------------------------------------------------- per file
    def _apply_file(self, relative: str, patches: Path, base: Path, output: Path, rejects: Path) -> FileOutcome:
        native = Path(*relative.split("/"))
        patch_file = patches / native
        base_file = base / native
        out_file = output / native
        reject_file = rejects / native.with_name(native.name + REJECT_SUFFIX)

        try:
            sections = parse_patch(patch_file.read_bytes().decode("utf-8"), location=relative)
            base_bytes = base_file.read_bytes() if base_file.is_file() else None
        except (OSError, UnicodeDecodeError, PatchError) as error:
            return FileOutcome(relative, FileStatus.ERROR, message=str(error))

        if not sections:
            return FileOutcome(relative, FileStatus.SKIPPED, message="patch file describes no changes")
        if len(sections) > 1:
            return FileOutcome(
                relative,
                FileStatus.ERROR,
                message=f"expected one file section, found {len(sections)}",
            )

        patch = sections[0]
        if patch.binary is not None:
            return self._apply_binary(relative, patch, patch.binary, base_bytes, out_file, reject_file, patch_file)
        return self._apply_text(relative, patch, base_bytes, out_file, reject_file)

    def _reject(self, relative: str, reject_file: Path, text: str, failed_hunks: int, message: str) -> FileOutcome:
        write_bytes(reject_file, text.encode("utf-8"))
        return FileOutcome(
            relative,
            FileStatus.REJECTED,
            reject_path=reject_file,
            failed_hunks=failed_hunks,
            message=message,
        )

    def _apply_binary(
        self,
        relative: str,
        patch: FilePatch,
        binary: BinaryPatch,
        base_bytes: bytes | None,
        out_file: Path,
        reject_file: Path,
        patch_file: Path,
    ) -> FileOutcome:
        expected = binary.reverse
        current = base_bytes if base_bytes is not None else b""
        missing_target = base_bytes is None and patch.change_type != "add"
        if missing_target or (expected is not None and current != expected):
            return self._reject(
                relative,
                reject_file,
                patch_file.read_bytes().decode("utf-8"),
                1,
                "binary content does not match the base file",
            )
        if patch.change_type == "delete":
            remove_path(out_file)
        else:
            write_bytes(out_file, binary.forward)
        return FileOutcome(relative, FileStatus.APPLIED)

    def _apply_text(
        self,
        relative: str,
        patch: FilePatch,
        base_bytes: bytes | None,
        out_file: Path,
        reject_file: Path,
    ) -> FileOutcome:
        hunks: List[Hunk] = patch.hunks

        if patch.change_type == "add" and base_bytes is not None:
            created = "".join(apply_hunks([], hunks, mode=PatchMode.EXACT).lines)
            if base_bytes == created.encode("utf-8"):
                return FileOutcome(relative, FileStatus.APPLIED, message="file already present")
            return self._reject(
                relative, reject_file, render_reject(patch, hunks), len(hunks), "file to add already exists"
            )
        if patch.change_type != "add" and base_bytes is None:
            return self._reject(
                relative, reject_file, render_reject(patch, hunks), len(hunks), "file to patch does not exist"
            )

        try:
            base_text = (base_bytes or b"").decode("utf-8")
        except UnicodeDecodeError:
            return self._reject(
                relative, reject_file, render_reject(patch, hunks), len(hunks), "base file is not text"
            )

        application = apply_hunks(split_lines(base_text), hunks, mode=self.mode, fuzz=self.fuzz)
        offsets = tuple(application.offsets)
        result_text = "".join(application.lines)

        if patch.change_type == "delete":
            if application.ok and not result_text:
                remove_path(out_file)
                return FileOutcome(relative, FileStatus.APPLIED, offsets=offsets)
            failed = application.failed or hunks
            return self._reject(
                relative, reject_file, render_reject(patch, failed), len(failed), "file to delete has other content"
            )

        write_bytes(out_file, result_text.encode("utf-8"))
        if application.failed:
            outcome = self._reject(
                relative,
                reject_file,
                render_reject(patch, application.failed),
                len(application.failed),
                f"{len(application.failed)} of {len(hunks)} hunk(s) failed",
            )
            outcome.offsets = offsets
            return outcome
        return FileOutcome(relative, FileStatus.APPLIED, offsets=offsets)


__all__ = [
    "FileOutcome",
    "FileStatus",
    "PatchApplier",
    "PatchEngineError",
    "PatchMode",
    "PatchSummary",
    "PatchesRejectedError",
    "REJECT_SUFFIX",
]
