"""Typed porting configuration loaded from ``porting.yaml``."""

from __future__ import annotations

import copy
import os
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Mapping, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .tools.codec import DEFAULT_IGNORE_PREFIXES, DEFAULT_PRUNE_NAMES
from .tools.unified import PatchMode

DEFAULT_CONFIG_NAME = "porting.yaml"
PLACEHOLDER_BRANCH = "INVALID"
ENV_PREFIX = "FORKPORT_"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "root": ".",
        "repository": ".",
    },
    "upstream_branch": PLACEHOLDER_BRANCH,
    "porting_branches": [],
    "patch_mode": PatchMode.OFFSET.value,
    "fuzz": 2,
    "pin_commit": False,
    "ignore_prefixes": list(DEFAULT_IGNORE_PREFIXES),
    "prune_names": list(DEFAULT_PRUNE_NAMES),
    "paths": {
        "upstream": "upstream",
        "workspace": "workspace",
        "patches": "patches",
        "rejects": "rejects",
        "scratch": "tmp",
        "commit_marker": "commit.sha",
    },
}


class ConfigurationError(ValueError):
    """Raised when a required setting is missing or invalid."""


class FrozenModel(BaseModel):
    """Base Pydantic model: unknown keys rejected, instances immutable."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class ProjectSettings(FrozenModel):
    """Where the fork lives and which git repository holds the upstream."""

    root: Path = Path(".")
    repository: Path = Path(".")


class PathSettings(FrozenModel):
    """Workspace layout, relative to the project root unless absolute."""

    upstream: Path = Path("upstream")
    workspace: Path = Path("workspace")
    patches: Path = Path("patches")
    rejects: Path = Path("rejects")
    scratch: Path = Path("tmp")
    commit_marker: Path = Path("commit.sha")


class PortingConfig(FrozenModel):
    """Complete, immutable configuration for a porting workflow."""

    project: ProjectSettings = Field(default_factory=ProjectSettings)
    upstream_branch: str = PLACEHOLDER_BRANCH
    porting_branches: Tuple[str, ...] = ()
    patch_mode: PatchMode = PatchMode.OFFSET
    fuzz: int = Field(default=2, ge=0)
    pin_commit: bool = False
    ignore_prefixes: Tuple[str, ...] = DEFAULT_IGNORE_PREFIXES
    prune_names: Tuple[str, ...] = DEFAULT_PRUNE_NAMES
    paths: PathSettings = Field(default_factory=PathSettings)

    @field_validator("porting_branches")
    @classmethod
    def _validate_targets(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        seen: set[str] = set()
        cleaned: list[str] = []
        for raw in value:
            name = raw.strip().rstrip("/")
            if not name:
                raise ValueError("porting branch names must not be empty")
            path = PurePosixPath(name)
            if path.is_absolute() or ".." in path.parts or "\\" in name:
                raise ValueError(f"porting branch must be a relative directory name: {raw!r}")
            if name in seen:
                continue
            seen.add(name)
            cleaned.append(name)
        return tuple(cleaned)

    @field_validator("patch_mode", mode="before")
    @classmethod
    def _normalise_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def has_upstream(self) -> bool:
        branch = (self.upstream_branch or "").strip()
        return bool(branch) and branch.upper() != PLACEHOLDER_BRANCH

    def require_upstream(self) -> str:
        """Return the upstream branch or raise :class:`ConfigurationError`."""
        if not self.has_upstream:
            raise ConfigurationError("No upstream branch specified.")
        return self.upstream_branch.strip()

    def require_targets(self) -> Tuple[str, ...]:
        """Return the porting targets or raise :class:`ConfigurationError`."""
        if not self.porting_branches:
            raise ConfigurationError("No porting branch specified.")
        return self.porting_branches


def default_config_data() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def _apply_env_overrides(data: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    """Overlay ``FORKPORT_*`` values onto raw configuration data."""
    branch = env.get(f"{ENV_PREFIX}UPSTREAM_BRANCH")
    if branch is not None and branch.strip():
        data["upstream_branch"] = branch.strip()

    targets = env.get(f"{ENV_PREFIX}PORTING_BRANCHES")
    if targets is not None and targets.strip():
        data["porting_branches"] = [entry.strip() for entry in targets.split(",") if entry.strip()]

    mode = env.get(f"{ENV_PREFIX}PATCH_MODE")
    if mode is not None and mode.strip():
        data["patch_mode"] = mode.strip()

    repository = env.get(f"{ENV_PREFIX}REPOSITORY")
    if repository is not None and repository.strip():
        project = dict(data.get("project") or {})
        project["repository"] = repository.strip()
        data["project"] = project
    return data


def build_config(
    data: Mapping[str, Any] | None = None,
    *,
    base_dir: Path | str | None = None,
    env: Mapping[str, str] | None = None,
) -> PortingConfig:
    """Validate raw settings, apply environment overrides, resolve paths.

    ``project.root`` is resolved against ``base_dir`` (the directory holding
    the config file, or the current directory).  ``env`` defaults to
    ``os.environ`` and is consulted only here.
    """
    env_mapping = os.environ if env is None else env
    raw = _apply_env_overrides(copy.deepcopy(dict(data or {})), env_mapping)
    try:
        config = PortingConfig.model_validate(raw)
    except ValidationError as error:
        raise ConfigurationError(f"Invalid porting configuration: {error}") from error

    anchor = Path(base_dir) if base_dir is not None else Path.cwd()
    root = config.project.root
    if not root.is_absolute():
        root = (anchor / root).resolve()
    repository = config.project.repository
    if not repository.is_absolute():
        repository = (root / repository).resolve()
    project = config.project.model_copy(update={"root": root, "repository": repository})
    return config.model_copy(update={"project": project})


def load_config(config_path: Path | str, *, env: Mapping[str, str] | None = None) -> PortingConfig:
    """Load YAML configuration from disk and return a validated config."""
    path = Path(config_path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigurationError(f"Failed to parse config: {error}") from error

    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a mapping at the top level.")

    return build_config(data, base_dir=path.resolve().parent, env=env)


__all__ = [
    "ConfigurationError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "PLACEHOLDER_BRANCH",
    "PathSettings",
    "PortingConfig",
    "ProjectSettings",
    "build_config",
    "default_config_data",
    "load_config",
    "write_config",
]
