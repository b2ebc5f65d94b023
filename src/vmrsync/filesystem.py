"""Filesystem helpers for vmrsync."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Iterable

from .filters import is_included


def ensure_parent(path: Path) -> None:
    """Ensure the parent directory exists."""

    path.parent.mkdir(parents=True, exist_ok=True)


def copy_file(source: Path, destination: Path) -> None:
    """Copy a single file or symlink from ``source`` into ``destination`` preserving metadata."""

    ensure_parent(destination)
    if destination.exists() or destination.is_symlink():
        remove_path(destination)

    if source.is_symlink():
        destination.symlink_to(os.readlink(source))
    else:
        shutil.copy2(source, destination)


def replace_tree(
    source_root: Path,
    files: Iterable[str],
    destination_root: Path,
    *,
    include: Iterable[str] = (),
    exclude: Iterable[str] = (),
) -> list[str]:
    """Replace ``destination_root`` with the subset of ``files`` passing the cloaking rules.

    ``files`` are posix paths relative to ``source_root``. Returns the copied paths, sorted.
    """

    include = tuple(include)
    exclude = tuple(exclude)
    selected = sorted(path for path in files if is_included(path, include, exclude))

    remove_path(destination_root)
    destination_root.mkdir(parents=True, exist_ok=True)
    for relative in selected:
        copy_file(source_root / relative, destination_root / relative)
    return selected


def remove_path(path: Path) -> None:
    """Delete ``path`` whether it is a file, directory, or symlink."""

    if not path.exists() and not path.is_symlink():
        return
    if path.is_symlink() or path.is_file():
        path.unlink()
        return
    shutil.rmtree(path)
