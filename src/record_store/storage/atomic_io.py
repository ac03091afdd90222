"""Atomic file writes and orphaned temp-file cleanup.

Writers build the full payload in a sibling ``.tmp`` file and swap it over
the target with ``os.replace``, which is atomic within one filesystem.
A concurrent reader therefore sees either the old file or the new one,
never a partially written file. A crash before the swap leaves only an
orphaned ``.tmp`` sibling, which listings ignore and start-up removes.
"""

import json
import logging
import os
import shutil
import threading
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"


def temp_path_for(path: Path) -> Path:
    """Unique temp sibling so concurrent writers never share a temp file."""
    return path.with_name(
        f"{path.name}.{os.getpid()}.{threading.get_ident()}{TEMP_SUFFIX}"
    )


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Atomically write *data* into *path*.

    Raises:
        OSError: If the temp file cannot be written or swapped. The temp file
            is removed and the previous content of *path* is left untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = temp_path_for(path)
    try:
        with open(tmp_path, "wb") as handle:
            handle.write(data)
            handle.flush()
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def atomic_write_json(path: Path, data: Any) -> None:
    """Serialize *data* with indentation and write it atomically."""
    payload = json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True)
    atomic_write_bytes(path, payload.encode("utf-8"))


def read_json_file(path: Path, default: Any = None) -> Any:
    """Read JSON from *path*, returning *default* when the file is absent."""
    if not path.exists():
        return default
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def cleanup_orphaned_temp_files(root: Path, age_threshold_seconds: int = 3600) -> int:
    """Remove ``*.tmp`` files under *root* older than the threshold.

    Recent temp files belong to in-flight writes and are preserved.

    Returns:
        Number of temp files removed
    """
    if not root.exists():
        return 0

    removed_count = 0
    current_time = time.time()

    for temp_path in root.rglob(f"*{TEMP_SUFFIX}"):
        try:
            file_age_seconds = current_time - temp_path.stat().st_mtime
        except FileNotFoundError:
            continue

        if file_age_seconds <= age_threshold_seconds:
            continue

        try:
            if temp_path.is_dir():
                shutil.rmtree(temp_path)
            else:
                temp_path.unlink()
            removed_count += 1
            logger.info(
                f"Removed orphaned temp file (age: {file_age_seconds:.0f}s): {temp_path}"
            )
        except OSError as e:
            logger.warning(f"Failed to remove orphaned temp path {temp_path}: {e}")

    return removed_count
