from __future__ import annotations

import hashlib
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Optional

import yaml

from .constants import (
    DEFAULT_LOCK_FACTOR,
    DEFAULT_LOCK_MAX_TIMEOUT,
    DEFAULT_LOCK_MIN_TIMEOUT,
    DEFAULT_LOCK_RETRIES,
    DEFAULT_LOCK_STALE_SECONDS,
    FIX_LOCK_NAME,
    LOCK_DIR_NAME,
)
from .errors import LockTimeout
from .utils import _now_iso


class FileLock:
    """Exclusive lock backed by an ``O_EXCL`` marker file.

    Acquisition is retried with exponential backoff.  A marker whose mtime is
    older than ``stale`` seconds is treated as abandoned and reclaimed.
    """

    def __init__(
        self,
        lock_path: Path,
        *,
        retries: int = DEFAULT_LOCK_RETRIES,
        factor: float = DEFAULT_LOCK_FACTOR,
        min_timeout: float = DEFAULT_LOCK_MIN_TIMEOUT,
        max_timeout: float = DEFAULT_LOCK_MAX_TIMEOUT,
        stale: float = DEFAULT_LOCK_STALE_SECONDS,
    ):
        self.lock_path = lock_path
        self.retries = max(0, int(retries))
        self.factor = factor
        self.min_timeout = min_timeout
        self.max_timeout = max_timeout
        self.stale = stale
        self.handle: Optional[int] = None

    def _delay(self, attempt: int) -> float:
        return min(self.max_timeout, self.min_timeout * (self.factor ** attempt))

    def _is_stale(self) -> bool:
        try:
            mtime = self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        return (time.time() - mtime) > self.stale

    def _try_acquire(self) -> bool:
        try:
            fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        os.write(fd, f"{os.getpid()} {_now_iso()}\n".encode("utf-8"))
        self.handle = fd
        return True

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(self.retries + 1):
            if self._try_acquire():
                return
            if self._is_stale():
                self.lock_path.unlink(missing_ok=True)
                if self._try_acquire():
                    return
            if attempt < self.retries:
                time.sleep(self._delay(attempt))
        raise LockTimeout(f"Lock file is already being held: {self.lock_path}")

    def release(self) -> None:
        if self.handle is None:
            return
        os.close(self.handle)
        self.handle = None
        self.lock_path.unlink(missing_ok=True)

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _named_lock_path(identity: Path, name: str = FIX_LOCK_NAME) -> Path:
    """Lock path derived from *identity* under the system temp directory."""
    digest = hashlib.sha256(str(identity).encode("utf-8")).hexdigest()[:16]
    return Path(tempfile.gettempdir()) / LOCK_DIR_NAME / f"{digest}-{name}"


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load a YAML mapping and return (data, error_message).

    Parse and IO failures are reported instead of raised so callers can fall
    back to defaults while still surfacing the problem.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
    if data is None:
        return default, None
    if not isinstance(data, dict):
        return default, f"{path.name}: expected object, got {type(data).__name__}"
    return data, None
