"""Filesystem helpers: atomic state writes and deletes confined to a root."""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]


def atomic_write(path: PathLike, data: str, *, encoding: str = "utf-8") -> None:
    """
    Write ``data`` to ``path`` so readers never observe a partial file.

    The temp file lives in the destination directory and is fsynced before
    ``os.replace`` swaps it in.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        with os.fdopen(fd, "w", encoding=encoding) as file_handle:
            file_handle.write(data)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def safe_delete(path: PathLike, root: PathLike) -> None:
    """Delete ``path`` only when it sits inside ``root``; symlinks are unlinked, not followed."""

    resolved_root = Path(root).resolve(strict=True)
    if not resolved_root.is_dir():
        raise NotADirectoryError(f"{resolved_root!s} is not a directory")

    target = Path(path)
    candidate = target.parent.resolve(strict=True) / target.name
    if not is_relative_to(candidate, resolved_root):
        raise ValueError(f"refusing to delete path outside {resolved_root!s}: {target!s}")

    if target.is_symlink():
        target.unlink()
        return

    if not is_relative_to(target.resolve(strict=True), resolved_root):
        raise ValueError(f"refusing to delete path outside {resolved_root!s}: {target!s}")

    if target.is_dir():
        shutil.rmtree(target)
        return
    target.unlink()


def is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def _fsync_directory(path: Path) -> None:
    # Some platforms/filesystems do not support fsync on directories.
    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)


__all__ = ["atomic_write", "is_relative_to", "safe_delete"]
