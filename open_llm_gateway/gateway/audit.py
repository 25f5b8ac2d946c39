from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

logger = logging.getLogger("uvicorn.error")

REDACTED_FIELDS = frozenset({"authorization", "x-auth-token", "api_key"})


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class JsonlAuditLogger:
    """Appends upstream attempt events to a JSONL file off the request path.

    Records go through a bounded queue to a single writer thread; when the
    queue is full the record is counted as dropped instead of blocking.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 4096,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._dropped = 0
        self._dropped_lock = Lock()
        self._queue: Queue[str | None] = Queue(maxsize=max_queue_size)
        self._writer: Thread | None = None
        if not self.enabled:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._writer = Thread(
            target=self._write_loop, name="gateway-audit-writer", daemon=True
        )
        self._writer.start()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def log(self, event: dict[str, Any]) -> None:
        if self._writer is None:
            return
        record = {
            key: ("[redacted]" if key.lower() in REDACTED_FIELDS else value)
            for key, value in event.items()
        }
        try:
            self._queue.put_nowait(_encode({"ts": int(time.time()), **record}))
        except Full:
            with self._dropped_lock:
                self._dropped += 1

    def close(self) -> None:
        writer = self._writer
        if writer is None:
            return
        self._queue.put(None)
        writer.join(timeout=2.0)
        self._writer = None

    def _write_loop(self) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            while (line := self._queue.get()) is not None:
                handle.write(line + "\n")
                handle.flush()
            with self._dropped_lock:
                dropped, self._dropped = self._dropped, 0
            if dropped:
                logger.warning("audit_records_dropped count=%d", dropped)
                handle.write(
                    _encode(
                        {
                            "ts": int(time.time()),
                            "event": "audit_records_dropped",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
