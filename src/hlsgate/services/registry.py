"""In-memory registry of active streams.

The only shared mutable state in the service. Every mutation goes through
an asyncio.Lock so check-then-act sequences are atomic with respect to
other coroutines:

- reserve(): uniqueness + capacity check and slot reservation in one step
- insert():  promote a reservation to a live record
- remove():  atomic removal returning the removed record, so only one
             caller ever performs a stream's teardown

Readers get immutable StreamSnapshot copies, never live records.
Counts are always derived from the dict sizes.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from .errors import AlreadyActiveError, CapacityExceededError, LaunchFailureError

if TYPE_CHECKING:
    from .launcher import WorkerHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamSnapshot:
    """Read-only view of a stream record."""

    stream_id: str
    source_url: str
    start_time: datetime
    output_url: str
    pid: int | None


@dataclass(eq=False)
class StreamRecord:
    """Live state for one active stream.

    Owned by the registry; only the supervisor touches the worker handle
    and the timer handles. `token` identifies this incarnation of the
    stream ID so stale callbacks can recognise a reused identifier.
    """

    stream_id: str
    source_url: str
    redacted_url: str
    worker: WorkerHandle
    start_time: datetime
    output_dir: Path
    output_url: str
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    hard_timeout: asyncio.TimerHandle | None = None
    health_task: asyncio.Task | None = None
    exit_watcher: asyncio.Task | None = None

    def snapshot(self) -> StreamSnapshot:
        return StreamSnapshot(
            stream_id=self.stream_id,
            source_url=self.redacted_url,
            start_time=self.start_time,
            output_url=self.output_url,
            pid=self.worker.pid,
        )

    def cancel_timers(self) -> None:
        """Cancel the hard timeout and the health poll together."""
        if self.hard_timeout is not None:
            self.hard_timeout.cancel()
        if self.health_task is not None and not self.health_task.done():
            self.health_task.cancel()


class StreamRegistry:
    """Concurrency-safe stream_id → StreamRecord map with start reservations."""

    def __init__(self) -> None:
        self._records: dict[str, StreamRecord] = {}
        self._reserved: set[str] = set()
        self._lock = asyncio.Lock()
        self._closed = False

    # ========================================================================
    # Counts
    # ========================================================================

    @property
    def size(self) -> int:
        """Active records."""
        return len(self._records)

    @property
    def pending(self) -> int:
        """Starts admitted but not yet active."""
        return len(self._reserved)

    @property
    def occupancy(self) -> int:
        return len(self._records) + len(self._reserved)

    @property
    def closed(self) -> bool:
        return self._closed

    # ========================================================================
    # Mutations
    # ========================================================================

    async def reserve(self, stream_id: str, admit: Callable[[int], None]) -> int:
        """Reserve a slot for a starting stream.

        Args:
            stream_id: Stream about to start
            admit: Admission decision, called with the current occupancy
                while the lock is held; raises to refuse

        Returns:
            Occupancy before this reservation (streams already active or
            starting).

        Raises:
            AlreadyActiveError: ID is active or already starting
            CapacityExceededError: Refused by admission or shutting down
        """
        async with self._lock:
            if stream_id in self._records or stream_id in self._reserved:
                raise AlreadyActiveError("Stream already active", stream_id)

            if self._closed:
                raise CapacityExceededError("Service is shutting down", stream_id)

            occupied = self.occupancy
            admit(occupied)

            self._reserved.add(stream_id)
            logger.debug(f"Reserved slot for {stream_id} (occupancy {occupied + 1})")
            return occupied

    async def release(self, stream_id: str) -> None:
        """Drop a reservation after a failed start."""
        async with self._lock:
            self._reserved.discard(stream_id)

    async def insert(self, record: StreamRecord) -> None:
        """Promote a reservation (or a free ID) to a live record.

        Raises:
            AlreadyActiveError: Another record holds the ID
            LaunchFailureError: Registry was closed for shutdown
        """
        async with self._lock:
            if self._closed:
                self._reserved.discard(record.stream_id)
                raise LaunchFailureError("Service is shutting down", record.stream_id)

            existing = self._records.get(record.stream_id)
            if existing is not None and existing is not record:
                raise AlreadyActiveError("Stream already active", record.stream_id)

            self._reserved.discard(record.stream_id)
            self._records[record.stream_id] = record

    async def remove(self, stream_id: str, token: str | None = None) -> StreamRecord | None:
        """Atomically remove a record.

        Args:
            stream_id: Stream to remove
            token: If given, only remove the record of that incarnation

        Returns:
            The removed record, or None if nothing (matching) was present
        """
        async with self._lock:
            record = self._records.get(stream_id)
            if record is None:
                return None
            if token is not None and record.token != token:
                return None
            return self._records.pop(stream_id)

    async def drain(self, close: bool = False) -> list[StreamRecord]:
        """Remove every record.

        Args:
            close: Also refuse every later reserve/insert (process shutdown)
        """
        async with self._lock:
            if close:
                self._closed = True
            records = list(self._records.values())
            self._records.clear()
            return records

    # ========================================================================
    # Reads
    # ========================================================================

    def get(self, stream_id: str) -> StreamSnapshot | None:
        record = self._records.get(stream_id)
        return record.snapshot() if record is not None else None

    def snapshots(self) -> list[StreamSnapshot]:
        return [record.snapshot() for record in self._records.values()]

    def lookup(self, stream_id: str) -> StreamRecord | None:
        """Live record access, supervisor use only."""
        return self._records.get(stream_id)

    def is_reserved(self, stream_id: str) -> bool:
        return stream_id in self._reserved
