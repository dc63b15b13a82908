"""Dead-letter sinks for work requests that exhausted their retries."""

import json
import logging
import threading
import time
from collections import deque
from pathlib import Path

from core.events import WorkRequest

logger: logging.Logger = logging.getLogger(__name__)


class JsonlDeadLetterSink:
    """Appends one JSON object per dead-lettered request to a file.

    Each line holds the request, the final attempt count and the wall
    clock time it was recorded at. Writes are serialized by a lock and
    flushed per record, so a crash loses at most the record in flight.

    Args:
        path: Output file. Parent directories are created.
    """

    def __init__(self, path: str | Path) -> None:
        self._path: Path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock: threading.Lock = threading.Lock()
        self._records: int = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def records(self) -> int:
        """Records written by this instance."""
        with self._lock:
            return self._records

    def record(self, work_request: WorkRequest, final_attempt_count: int) -> None:
        line: str = json.dumps(
            {
                "recorded_at": time.time(),
                "final_attempt_count": final_attempt_count,
                "work_request": work_request.model_dump(mode="json"),
            },
            separators=(",", ":"),
        )
        with self._lock:
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
            self._records += 1
        logger.info(
            "Dead-lettered target=%d pool=%s sequence=%d to %s",
            work_request.target_id,
            work_request.pool_id,
            work_request.sequence,
            self._path,
        )


class LoggingDeadLetterSink:
    """Logs dead-lettered requests at ERROR level and keeps the latest in memory.

    Args:
        max_entries: Entries kept for :meth:`entries`; older ones are
            dropped first. Every record is logged regardless.
    """

    def __init__(self, max_entries: int = 1_000) -> None:
        if max_entries <= 0:
            raise ValueError(f"max_entries must be > 0, got {max_entries}")
        self._lock: threading.Lock = threading.Lock()
        self._entries: deque[tuple[WorkRequest, int]] = deque(maxlen=max_entries)

    def record(self, work_request: WorkRequest, final_attempt_count: int) -> None:
        with self._lock:
            self._entries.append((work_request, final_attempt_count))
        logger.error(
            "Dead letter: target=%d pool=%s sequence=%d attempts=%d",
            work_request.target_id,
            work_request.pool_id,
            work_request.sequence,
            final_attempt_count,
        )

    def entries(self) -> list[tuple[WorkRequest, int]]:
        with self._lock:
            return list(self._entries)
