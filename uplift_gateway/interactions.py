"""Best-effort interaction log.

Completed AI interactions are recorded for audit and analytics. Writes are
detached from the request: ``InteractionLogger.log`` schedules the write and
returns immediately, and any failure is reported on the operational logger
and then dropped. A failed write never fails or rolls back the request that
produced it.
"""

import asyncio
import json
import logging
import os
import threading
from pathlib import Path
from typing import List, Optional, Protocol, Set

from google.cloud import firestore

from uplift_gateway.models import InteractionLogEntry

_logger = logging.getLogger("gateway")


class InteractionSink(Protocol):
    async def write(self, entry: InteractionLogEntry) -> None:
        ...


class InMemoryInteractionSink:
    """Keeps entries in a list."""

    def __init__(self) -> None:
        self.entries: List[InteractionLogEntry] = []

    async def write(self, entry: InteractionLogEntry) -> None:
        self.entries.append(entry)


class JsonlInteractionSink:
    """Append-only JSONL file, one entry per line.

    Thread-safe. File I/O runs in a worker thread so the event loop is never
    blocked on disk.
    """

    def __init__(self, log_path: str) -> None:
        self._log_path = Path(log_path)
        self._lock = threading.Lock()
        os.makedirs(self._log_path.parent, exist_ok=True)

    def _append(self, line: str) -> None:
        with self._lock:
            with open(self._log_path, "a") as f:
                f.write(line + "\n")

    async def write(self, entry: InteractionLogEntry) -> None:
        line = json.dumps(entry.model_dump(), sort_keys=True)
        await asyncio.to_thread(self._append, line)

    def read_entries(self) -> List[InteractionLogEntry]:
        """Read all entries back from disk, skipping corrupt lines."""
        entries: List[InteractionLogEntry] = []
        if not self._log_path.exists():
            return entries
        with open(self._log_path, "r") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(InteractionLogEntry(**json.loads(line)))
                except (json.JSONDecodeError, TypeError, ValueError) as e:
                    _logger.warning("Corrupt interaction entry at line %d: %s", line_no, e)
        return entries


class FirestoreInteractionSink:
    """Adds one document per interaction to a Firestore collection."""

    def __init__(self, client: firestore.AsyncClient, collection: str = "aiInteractions") -> None:
        self._client = client
        self._collection = collection

    async def write(self, entry: InteractionLogEntry) -> None:
        data = entry.model_dump()
        data["userId"] = data.pop("user_id")
        await self._client.collection(self._collection).add(data)


class InteractionLogger:
    """Fire-and-forget writer with its own error boundary.

    Each write is bounded by ``timeout`` seconds. ``drain`` gives outstanding
    writes a last bounded chance to finish before the process exits.
    """

    def __init__(self, sink: InteractionSink, timeout: float = 5.0) -> None:
        self.sink = sink
        self._timeout = timeout
        self._pending: Set["asyncio.Task[None]"] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def log(self, entry: InteractionLogEntry) -> None:
        """Schedule a write and return without waiting for it."""
        try:
            task = asyncio.get_running_loop().create_task(self._write(entry))
        except RuntimeError:
            _logger.exception("No running event loop; interaction for %s dropped", entry.user_id)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, entry: InteractionLogEntry) -> None:
        try:
            await asyncio.wait_for(self.sink.write(entry), timeout=self._timeout)
        except asyncio.CancelledError:
            raise
        except Exception:
            _logger.exception(
                "Failed to record interaction for user %s (provider %s)",
                entry.user_id,
                entry.provider,
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait up to ``timeout`` seconds for outstanding writes."""
        if not self._pending:
            return
        _, still_pending = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            _logger.warning("Dropped %d interaction writes on shutdown", len(still_pending))
