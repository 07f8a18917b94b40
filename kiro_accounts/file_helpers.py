"""Atomic, owner-only JSON file writes shared by every module that
persists credentials or machine ids outside the database.
"""

import json
import logging
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def _safe_replace(src: str, dst: str, *, retries: int = 3, delay: float = 0.1):
    """os.replace() with retry for Windows PermissionError.

    On Windows, os.replace() can fail if the target file is held open
    by another process (the IDE keeps its token file open while it runs).
    Retries with exponential backoff.
    On macOS/Linux, this is equivalent to a single os.replace() call.
    """
    for attempt in range(retries):
        try:
            os.replace(src, dst)
            return
        except PermissionError:
            if sys.platform != "win32" or attempt == retries - 1:
                raise
            time.sleep(delay * (2 ** attempt))


def write_json_atomic(path: Path, data, *, prefix: str = ".tmp_") -> float:
    """Write JSON to ``path`` atomically with 0o600 permissions.

    Refuses to write through symlinks. Returns the mtime of the written
    file. Raises OSError on failure; a failed write leaves the previous
    file untouched.

    >>> import tempfile; from pathlib import Path
    >>> p = Path(tempfile.mkdtemp()) / "x.json"
    >>> _ = write_json_atomic(p, {"a": 1})
    >>> read_json(p)
    {'a': 1}
    """
    path = Path(path)
    if path.is_symlink():
        raise OSError(f"Refusing to write through symlink: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=prefix, suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        try:
            os.chmod(tmp, 0o600)
        except OSError:
            pass
        _safe_replace(tmp, str(path))
    except Exception:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise
    return path.stat().st_mtime


def read_json(path: Path) -> Optional[dict]:
    """Read a JSON object from ``path``.

    Returns None when the file is missing, is a symlink, or does not hold
    a JSON object.

    >>> read_json(Path("/nonexistent/file.json")) is None
    True
    """
    path = Path(path)
    if not path.exists() or path.is_symlink():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as exc:
        logger.warning("Cannot read %s: %s", path, exc)
        return None
    return data if isinstance(data, dict) else None


def safe_remove(path: Path) -> bool:
    """Remove a file, ignoring errors. Returns True if it was removed."""
    try:
        Path(path).unlink()
        return True
    except OSError:
        return False
