"""
Durable file writes.

Config, descriptor and PID files are replaced atomically: the new content is
written to a temp file in the destination directory, fsynced, then renamed
over the target, so a crash can never leave a half-written file behind.
"""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path
from typing import Union

from guestvm.core.logging_utils import get_module_logger

logger = get_module_logger("FileSync")

_msvcrt = None
if sys.platform == "win32":
    import msvcrt as _msvcrt


def safe_fsync(fd: int) -> bool:
    """Sync a file descriptor to disk. Failures are logged and reported, not raised."""
    try:
        if _msvcrt is not None:
            _msvcrt._commit(fd)
        else:
            os.fsync(fd)
        return True
    except OSError as e:
        logger.debug("fsync failed for fd %d: %s", fd, e)
        return False


def fsync_file(file_obj) -> bool:
    """Flush and sync an open file object."""
    try:
        file_obj.flush()
        return safe_fsync(file_obj.fileno())
    except (OSError, AttributeError, ValueError) as e:
        logger.debug("fsync_file failed: %s", e)
        return False


def atomic_write_text(path: Union[str, Path], content: str, encoding: str = "utf-8") -> Path:
    """Replace ``path`` with ``content`` using write-then-rename.

    Raises:
        OSError: if the temp file cannot be written or renamed.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            dir=str(target.parent),
            prefix=f".{target.name}.",
            suffix=".tmp",
            delete=False,
            encoding=encoding,
        ) as tmp:
            tmp_path = Path(tmp.name)
            tmp.write(content)
            fsync_file(tmp)

        os.replace(tmp_path, target)
        tmp_path = None
    finally:
        if tmp_path is not None:
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass

    return target


__all__ = ["safe_fsync", "fsync_file", "atomic_write_text"]
