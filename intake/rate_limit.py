"""Sliding-window rate limiting with one JSON file per caller.

The store is shared between worker processes. Writes go through an atomic
rename so a record is never half-written; concurrent writers for the same
caller may still lose an update, which only ever under-counts.
"""

from hashlib import sha256
from pathlib import Path
from threading import Lock
import json
import logging
import os
import random
import tempfile
import time
from typing import Callable

logger = logging.getLogger("intake.rate_limit")

FILE_PREFIX = "rl_"


class RateLimiter:
    def __init__(
        self,
        storage_dir: str | Path,
        max_requests: int = 10,
        window_seconds: int = 60,
        cleanup_probability: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.storage_dir = Path(storage_dir)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.cleanup_probability = cleanup_probability
        self._clock = clock
        self._lock = Lock()
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def _now(self) -> int:
        return int(self._clock())

    def _path(self, identifier: str) -> Path:
        # Hash so that no caller-controlled characters reach the filesystem.
        digest = sha256(identifier.encode("utf-8")).hexdigest()
        return self.storage_dir / f"{FILE_PREFIX}{digest}.json"

    def _load(self, path: Path, now: int) -> list[int]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable rate limit record %s: %s", path.name, exc)
            return []
        if not isinstance(data, list):
            return []
        cutoff = now - self.window_seconds
        return sorted(
            ts for ts in data
            if isinstance(ts, int) and not isinstance(ts, bool) and ts > cutoff
        )

    def _save(self, path: Path, timestamps: list[int]) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.storage_dir, prefix=".tmp_", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(timestamps, fh)
            os.replace(tmp_name, path)
        except OSError:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def is_allowed(self, identifier: str) -> bool:
        path = self._path(identifier)
        with self._lock:
            now = self._now()
            timestamps = self._load(path, now)
            if len(timestamps) >= self.max_requests:
                return False
            timestamps.append(now)
            try:
                self._save(path, timestamps)
            except OSError as exc:
                # Losing one record under-counts; it must not fail the request.
                logger.warning("Failed to persist rate limit record %s: %s", path.name, exc)
        self._maybe_cleanup()
        return True

    def remaining(self, identifier: str) -> int:
        timestamps = self._load(self._path(identifier), self._now())
        return max(0, self.max_requests - len(timestamps))

    def retry_after(self, identifier: str) -> int:
        """Seconds until the next request is allowed, 0 if not limited."""
        now = self._now()
        timestamps = self._load(self._path(identifier), now)
        if len(timestamps) < self.max_requests:
            return 0
        return max(0, timestamps[0] + self.window_seconds - now)

    def reset(self, identifier: str) -> None:
        try:
            self._path(identifier).unlink()
        except FileNotFoundError:
            pass

    def _maybe_cleanup(self) -> None:
        if self.cleanup_probability <= 0 or random.randint(1, 100) > self.cleanup_probability:
            return
        self.cleanup()

    def cleanup(self) -> int:
        """Delete records untouched for longer than the window. Returns the count removed."""
        cutoff = self._now() - self.window_seconds
        removed = 0
        for path in self.storage_dir.glob(f"{FILE_PREFIX}*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Rate limit cleanup skipped %s: %s", path.name, exc)
        if removed:
            logger.debug("Rate limit cleanup removed %d stale records", removed)
        return removed
