"""Backup and atomic replacement of the local kubeconfig."""

import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path

from loguru import logger


def backup_file(path: Path) -> Path | None:
    """Copy ``path`` to a timestamped sibling (``config.backup.YYYYmmdd_HHMMSS``).

    Returns:
        The backup path, or ``None`` if ``path`` does not exist.
    """
    if not path.exists():
        return None
    backup_path = path.with_name(f"{path.name}.backup.{datetime.now().strftime('%Y%m%d_%H%M%S')}")
    n = 1
    while backup_path.exists():
        backup_path = path.with_name(f"{path.name}.backup.{datetime.now().strftime('%Y%m%d_%H%M%S')}.{n}")
        n += 1
    shutil.copy2(path, backup_path)
    logger.warning(f"Created backup at {backup_path}")
    return backup_path


def atomic_write(path: Path, text: str, mode: int = 0o600) -> None:
    """Write ``text`` to a temp file next to ``path`` and rename it into place.

    The parent directory is created (``0700``) if needed.  On any error the
    temp file is removed and ``path`` is left untouched.
    """
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
