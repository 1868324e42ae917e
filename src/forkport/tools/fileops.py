"""Filesystem helpers shared by the snapshot, diff and patch engines."""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, Sequence, Tuple


def normalise_prefixes(prefixes: Iterable[str]) -> Tuple[Tuple[str, ...], ...]:
    """Split ignore prefixes into path segments, dropping blanks."""
    normalised: list[Tuple[str, ...]] = []
    for raw in prefixes:
        cleaned = str(raw).replace("\\", "/").strip().strip("/")
        if not cleaned:
            continue
        parts = tuple(part for part in PurePosixPath(cleaned).parts if part not in {"", "."})
        if parts:
            normalised.append(parts)
    return tuple(normalised)


def is_ignored(parts: Sequence[str], prefixes: Sequence[Tuple[str, ...]]) -> bool:
    """Return True when a contiguous run of ``parts`` equals an ignore prefix."""
    for prefix in prefixes:
        width = len(prefix)
        if width > len(parts):
            continue
        for start in range(len(parts) - width + 1):
            if tuple(parts[start : start + width]) == prefix:
                return True
    return False


def iter_files(root: Path, prefixes: Sequence[Tuple[str, ...]] = ()) -> Iterator[str]:
    """Yield POSIX relative paths of files below ``root`` in sorted order.

    Directories matching an ignore prefix are not descended into.  A missing
    ``root`` yields nothing.
    """
    if not root.is_dir():
        return
    for current, dirnames, filenames in os.walk(root):
        relative_dir = Path(current).relative_to(root)
        base_parts = () if relative_dir == Path(".") else relative_dir.parts
        dirnames[:] = sorted(name for name in dirnames if not is_ignored((*base_parts, name), prefixes))
        for name in sorted(filenames):
            parts = (*base_parts, name)
            if is_ignored(parts, prefixes):
                continue
            yield "/".join(parts)


def has_entries(directory: Path) -> bool:
    """Return True when ``directory`` exists and contains at least one entry."""
    if not directory.is_dir():
        return False
    with os.scandir(directory) as entries:
        return any(True for _ in entries)


def remove_path(path: Path) -> None:
    """Delete a file or directory tree; missing paths are ignored."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def copy_tree(source: Path, destination: Path) -> None:
    """Copy ``source`` into ``destination``, overwriting files that exist."""
    destination.mkdir(parents=True, exist_ok=True)
    shutil.copytree(source, destination, dirs_exist_ok=True)


def write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` creating parents and replacing any file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.is_symlink():
        path.unlink()
    with path.open("wb") as handle:
        handle.write(data)


def write_atomic(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` via a temporary file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def prune_tree(root: Path) -> list[Path]:
    """Remove empty directories below ``root``.

    ``root`` itself is kept.  Returns the removed paths, deepest first.
    """
    if not root.is_dir():
        return []
    removed: list[Path] = []
    for current, dirnames, _filenames in os.walk(root, topdown=False):
        for name in dirnames:
            target = Path(current) / name
            if target.is_dir() and not target.is_symlink() and not any(target.iterdir()):
                target.rmdir()
                removed.append(target)
    return removed


__all__ = [
    "copy_tree",
    "has_entries",
    "is_ignored",
    "iter_files",
    "normalise_prefixes",
    "prune_tree",
    "remove_path",
    "write_atomic",
    "write_bytes",
]
