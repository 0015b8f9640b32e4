"""
The work queue: which primary objects need reconciling, and when.

The queue holds the object keys only, not the events or the bodies:
the reconciles are level-triggered, so it does not matter which event and
how many of them have caused the reconcile -- the object is re-fetched anyway.
This allows coalescing the repeated requests for the same key into one.

Every key has a record in the arena of records with its scheduled time
(if pending), an in-flight flag (if dequeued and being reconciled now),
and a dirty time (if re-enqueued while being reconciled). The records
are garbage-collected once the key is neither pending nor in flight.

The keys being reconciled are never given out again until marked as done.
If they were re-enqueued in the meanwhile, they become pending again
once done -- so that the changes that happened during a reconcile are not
lost, but are also not reconciled concurrently with the ongoing reconcile.

The time-ordering is done via a heap with lazy deletion: rescheduling
a key to an earlier time pushes a new heap entry and invalidates the old one,
which is then skipped when it reaches the top of the heap.
"""
import asyncio
import dataclasses
import heapq
import itertools
import logging
import time
from collections.abc import Callable, Collection, Hashable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

_K = TypeVar('_K', bound=Hashable)


@dataclasses.dataclass
class _Record:
    ready_at: float | None = None  # when pending; None if not pending.
    seq: int | None = None  # the only valid heap entry of this key; others are stale.
    in_flight: bool = False
    dirty_at: float | None = None  # when re-enqueued while in flight; None if not.


class WorkQueue(Generic[_K]):
    """
    A deduplicating, delay-aware queue of keys with in-flight tracking.

    Only one pending entry exists per key at any time. Repeated requests
    for the same key are coalesced into that entry, with the earliest
    requested time winning: already imminent work is never postponed.

    All operations except the dequeueing are synchronous and do not suspend,
    so they are atomic within the event loop: no locks are needed.
    """

    def __init__(
            self,
            *,
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self._clock = clock
        self._records: dict[_K, _Record] = {}
        self._heap: list[tuple[float, int, _K]] = []
        self._counter = itertools.count()
        self._changed = asyncio.Event()

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {len(self)} pending, {len(self.in_flight)} in flight>'

    def __len__(self) -> int:
        return sum(1 for record in self._records.values() if record.ready_at is not None)

    def __contains__(self, key: object) -> bool:
        record = self._records.get(key)  # type: ignore
        return record is not None and record.ready_at is not None

    @property
    def in_flight(self) -> Collection[_K]:
        return frozenset(key for key, record in self._records.items() if record.in_flight)

    def enqueue(self, key: _K) -> None:
        """ Request the key to be processed as soon as possible. """
        self.enqueue_after(key, 0)

    def enqueue_after(self, key: _K, delay: float) -> None:
        """
        Request the key to be processed no earlier than in ``delay`` seconds.

        If the key is already pending with an earlier time, nothing changes.
        If the key is in flight, it is remembered as dirty and is re-admitted
        when done; the earliest of all such requested times is remembered.
        """
        when = self._clock() + max(0.0, delay)
        record = self._records.setdefault(key, _Record())
        if record.in_flight:
            record.dirty_at = when if record.dirty_at is None else min(record.dirty_at, when)
        elif record.ready_at is None or when < record.ready_at:
            self._schedule(key, record, when)

    async def dequeue(self) -> _K:
        """
        Wait until some key is ready, and take it for processing.

        The taken key is in flight until :meth:`done` is called for it.
        Multiple concurrent dequeuers never get the same key.
        """
        while True:
            now = self._clock()
            key = self._pop_ready(now)
            if key is not None:
                return key

            # Sleep until either the earliest scheduled time, or a change in the schedule.
            timeout = max(0.0, self._heap[0][0] - now) if self._heap else None
            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    def done(self, key: _K) -> None:
        """
        Mark the key as processed; re-admit it if it was re-enqueued meanwhile.
        """
        record = self._records.get(key)
        if record is None or not record.in_flight:
            raise ValueError(f"The key is not in flight: {key!r}")

        record.in_flight = False
        if record.dirty_at is not None:
            when, record.dirty_at = record.dirty_at, None
            self._schedule(key, record, when)
        elif record.ready_at is None:
            del self._records[key]

    def _schedule(self, key: _K, record: _Record, when: float) -> None:
        record.ready_at = when
        record.seq = next(self._counter)
        heapq.heappush(self._heap, (when, record.seq, key))
        self._changed.set()

    def _pop_ready(self, now: float) -> _K | None:
        while self._heap:
            when, seq, key = self._heap[0]
            record = self._records.get(key)
            if record is None or record.seq != seq:
                heapq.heappop(self._heap)  # stale: rescheduled or already taken.
            elif when > now:
                return None
            else:
                heapq.heappop(self._heap)
                record.ready_at = None
                record.seq = None
                record.in_flight = True
                return key
        return None
