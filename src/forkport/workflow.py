"""Porting workflow: upstream snapshot, patched working trees, patch refresh."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping

from .config import ConfigurationError, PortingConfig
from .tools.codec import DiffSummary, PatchCodec
from .tools.fileops import copy_tree, iter_files, remove_path
from .tools.patch import REJECT_SUFFIX, PatchApplier, PatchesRejectedError, PatchSummary
from .tools.snapshot import CommitMarker, TreeExtractor
from .tools.vcs import GitError

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("forkport.telemetry")


class TargetState(str, Enum):
    """Lifecycle of a single porting target."""

    UNINITIALIZED = "UNINITIALIZED"
    UPSTREAM_FETCHED = "UPSTREAM_FETCHED"
    WORKING_TREE_READY = "WORKING_TREE_READY"
    PATCHES_REGENERATED = "PATCHES_REGENERATED"


@dataclass(slots=True, frozen=True)
class WorkspaceLayout:
    """Resolved directory locations for a configuration."""

    root: Path
    repository: Path
    upstream: Path
    workspace: Path
    patches: Path
    rejects: Path
    scratch: Path
    commit_marker: Path

    @classmethod
    def from_config(cls, config: PortingConfig) -> "WorkspaceLayout":
        root = config.project.root

        def resolve(value: Path) -> Path:
            return value if value.is_absolute() else root / value

        paths = config.paths
        return cls(
            root=root,
            repository=config.project.repository,
            upstream=resolve(paths.upstream),
            workspace=resolve(paths.workspace),
            patches=resolve(paths.patches),
            rejects=resolve(paths.rejects),
            scratch=resolve(paths.scratch),
            commit_marker=resolve(paths.commit_marker),
        )

    def work_dir(self, target: str) -> Path:
        return self.workspace / target

    def patches_dir(self, target: str) -> Path:
        return self.patches / target

    def rejects_dir(self, target: str) -> Path:
        return self.rejects / target

    def source_dir(self, target: str) -> Path:
        return self.root / target


@dataclass(slots=True)
class SetupReport:
    """Commit extracted by ``setup_workspace`` and the per-target apply results."""

    commit: str
    previous_commit: str | None = None
    targets: Dict[str, PatchSummary] = field(default_factory=dict)

    @property
    def rejected(self) -> List[str]:
        return [
            f"{name}/{path}"
            for name, summary in self.targets.items()
            for path in summary.rejected
        ]


@dataclass(slots=True)
class TargetStatus:
    """Filesystem view of a porting target, for status reporting."""

    name: str
    state: TargetState
    working_tree: bool
    patches: int
    rejects: int
    source: bool
    commit: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "working_tree": self.working_tree,
            "patches": self.patches,
            "rejects": self.rejects,
            "source": self.source,
            "commit": self.commit,
        }


def _serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def _emit_event(event: str, **fields: Any) -> None:
    """Log a structured workflow event as a single JSON line."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


class PortingWorkflow:
    """Drive the extract -> apply -> edit -> diff cycle for every porting target.

    The configuration is fixed at construction time.  Engines default to
    fresh instances but can be supplied by the caller.  Operations on the
    same target must not run concurrently.
    """

    def __init__(
        self,
        config: PortingConfig,
        *,
        extractor: TreeExtractor | None = None,
        codec: PatchCodec | None = None,
        applier: PatchApplier | None = None,
    ) -> None:
        self.config = config
        self.layout = WorkspaceLayout.from_config(config)
        self.extractor = extractor or TreeExtractor()
        self.codec = codec or PatchCodec(prune_names=config.prune_names)
        self.applier = applier or PatchApplier(mode=config.patch_mode, fuzz=config.fuzz)
        self.marker = CommitMarker(self.layout.commit_marker)
        self.states: Dict[str, TargetState] = {
            name: TargetState.UNINITIALIZED for name in config.porting_branches
        }

    # ------------------------------------------------------------- helpers
    def _transition(self, state: TargetState, targets: Any = None) -> None:
        names = self.config.porting_branches if targets is None else targets
        for name in names:
            self.states[name] = state

    # ---------------------------------------------------------- operations
    def clean_workspace(self) -> None:
        """Delete the upstream snapshot, working trees and scratch directory."""
        for path in (self.layout.workspace, self.layout.upstream, self.layout.scratch):
            remove_path(path)
        self._transition(TargetState.UNINITIALIZED)
        LOGGER.info("Cleaned up working directories")
        _emit_event("workspace_cleaned", root=self.layout.root)

    def setup_workspace(self) -> SetupReport:
        """Pull upstream and materialise each target's working tree.

        Every target is processed even when an earlier one has rejects; the
        rejections are raised together afterwards as
        :class:`PatchesRejectedError`.
        """
        branch = self.config.require_upstream()
        targets = self.config.require_targets()

        LOGGER.info("Setting up workspace")
        remove_path(self.layout.workspace)
        remove_path(self.layout.upstream)

        previous = self.marker.read()
        reference = previous if (self.config.pin_commit and previous) else branch
        commit = self.extractor.extract_snapshot(self.layout.repository, reference, self.layout.upstream)
        self._transition(TargetState.UPSTREAM_FETCHED)

        if previous is None:
            self.marker.write(commit)
        elif previous != commit:
            LOGGER.warning(
                "Upstream '%s' is at %s but the recorded commit is %s; run update-commit-ref to move it",
                branch,
                commit,
                previous,
            )
        _emit_event("upstream_extracted", branch=branch, reference=reference, commit=commit, previous=previous)

        report = SetupReport(commit=commit, previous_commit=previous)
        for name in targets:
            rejects = self.layout.rejects_dir(name)
            remove_path(rejects)
            summary = self.applier.apply_patches(
                self.layout.upstream,
                self.layout.patches_dir(name),
                self.layout.work_dir(name),
                rejects,
                strict=False,
            )
            report.targets[name] = summary
            self._transition(TargetState.WORKING_TREE_READY, [name])
            _emit_event("patches_applied", target=name, summary=summary.to_dict())

        if report.rejected:
            raise PatchesRejectedError(report.rejected)
        LOGGER.info("Workspace ready at commit %s", commit)
        return report

    def update_commit_ref(self) -> str | None:
        """Re-pull upstream and record its commit; failures are only logged.

        Working trees are left untouched.  Returns the new commit id, or
        ``None`` when the pull failed.
        """
        branch = self.config.require_upstream()
        LOGGER.info("Updating commit reference")
        try:
            remove_path(self.layout.upstream)
            commit = self.extractor.extract_snapshot(self.layout.repository, branch, self.layout.upstream)
            self.marker.write(commit)
        except (GitError, OSError) as error:
            LOGGER.error("Failed to update commit ref: %s", error, exc_info=True)
            _emit_event("commit_ref_failed", branch=branch, error=str(error))
            return None
        _emit_event("commit_ref_updated", branch=branch, commit=commit)
        return commit

    def generate_patches(self) -> Dict[str, DiffSummary]:
        """Diff every target's working tree against upstream into its patch directory."""
        targets = self.config.require_targets()
        if not self.layout.upstream.is_dir():
            raise ConfigurationError(
                f"Upstream snapshot {self.layout.upstream} does not exist; run setup-workspace first."
            )
        for name in targets:
            if not self.layout.work_dir(name).is_dir():
                raise ConfigurationError(f"Working directory for '{name}' does not exist.")

        LOGGER.info("Generating patches")
        results: Dict[str, DiffSummary] = {}
        for name in targets:
            summary = self.codec.generate_patches(
                self.layout.upstream,
                self.layout.work_dir(name),
                self.layout.patches_dir(name),
                self.config.ignore_prefixes,
            )
            results[name] = summary
            self._transition(TargetState.PATCHES_REGENERATED, [name])
            _emit_event("patches_generated", target=name, summary=summary.to_dict())
        LOGGER.info("Generated patches successfully")
        return results

    def rebuild_patches(self) -> Dict[str, DiffSummary]:
        """Discard the patch set and derive it again from the source directories."""
        self.config.require_upstream()
        targets = self.config.require_targets()
        for name in targets:
            if not self.layout.source_dir(name).is_dir():
                raise ConfigurationError(f"Source directory {self.layout.source_dir(name)} does not exist.")

        remove_path(self.layout.patches)
        self.clean_workspace()
        self.update_commit_ref()
        self.setup_workspace()

        LOGGER.info("Rebuilding patches")
        for name in targets:
            work_dir = self.layout.work_dir(name)
            remove_path(work_dir)
            copy_tree(self.layout.source_dir(name), work_dir)

        results = self.generate_patches()
        self.clean_workspace()
        _emit_event("patches_rebuilt", targets=list(targets))
        return results

    def split_sources(self) -> List[Path]:
        """Copy each working tree out to its standalone source directory."""
        targets = self.config.require_targets()
        if not self.layout.workspace.is_dir():
            raise ConfigurationError("Working directory does not exist")

        LOGGER.info("Splitting sources into individual directories")
        written: List[Path] = []
        for name in targets:
            work_dir = self.layout.work_dir(name)
            if not work_dir.is_dir():
                raise ConfigurationError(f"Working directory for '{name}' does not exist.")
            destination = self.layout.source_dir(name)
            remove_path(destination)
            copy_tree(work_dir, destination)
            written.append(destination)
        _emit_event("sources_split", targets=list(targets))
        return written

    # ---------------------------------------------------------------- status
    def describe(self) -> List[TargetStatus]:
        """Report each target's state as inferred from the filesystem."""
        upstream = self.layout.upstream.is_dir()
        commit = self.marker.read()
        statuses: List[TargetStatus] = []
        for name in self.config.porting_branches:
            working = self.layout.work_dir(name).is_dir()
            patches = sum(1 for _ in iter_files(self.layout.patches_dir(name)))
            rejects = sum(
                1 for path in iter_files(self.layout.rejects_dir(name)) if path.endswith(REJECT_SUFFIX)
            )
            if working and upstream:
                state = TargetState.WORKING_TREE_READY
            elif upstream:
                state = TargetState.UPSTREAM_FETCHED
            else:
                state = TargetState.UNINITIALIZED
            statuses.append(
                TargetStatus(
                    name=name,
                    state=state,
                    working_tree=working,
                    patches=patches,
                    rejects=rejects,
                    source=self.layout.source_dir(name).is_dir(),
                    commit=commit,
                )
            )
        return statuses


__all__ = [
    "PortingWorkflow",
    "SetupReport",
    "TargetState",
    "TargetStatus",
    "WorkspaceLayout",
]
