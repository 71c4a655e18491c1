"""
Progress Actor — the authoritative live state of one job.

Every job gets an addressable actor (``ProgressHub.actor(job_id)``) that owns a
``ProgressSnapshot``. Mutations are serialized per job by the backend and
fanned out to subscribers as events. Subscribers always receive a ``ready``
event with the current snapshot first, so a late or reconnecting observer
never misses the state it attaches to. Each event carries ``seq`` so replays
can be de-duplicated.

Backends:
    - RedisProgressBackend: WATCH/MULTI transactions on a state key, pub/sub channel per job.
    - MemoryProgressBackend: per-job asyncio.Lock and in-process queues (dev/tests).
"""
from __future__ import annotations

import abc
import asyncio
import json
import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional

from redis.exceptions import WatchError

from leadscore.core.config import settings
from leadscore.core.errors import (
    AlreadyInitializedError,
    InternalError,
    JobCancelledError,
    NotFoundError,
    NotInitializedError,
)
from leadscore.services.job_store import JobStatus

logger = logging.getLogger(__name__)

SUBSCRIBER_BUFFER = 100
MAX_TRANSACTION_ATTEMPTS = 10

EVENT_FOR_STATUS = {
    JobStatus.PENDING: "progress",
    JobStatus.PROCESSING: "progress",
    JobStatus.COMPLETE: "complete",
    JobStatus.FAILED: "failed",
    JobStatus.CANCELLED: "cancelled",
}
TERMINAL_EVENTS = frozenset({"complete", "failed", "cancelled"})


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class ProgressSnapshot:
    job_id: str
    account_id: str
    subject_id: str
    job_type: str
    status: JobStatus
    progress: int
    current_step: str
    seq: int
    started_at: float
    updated_at: float
    expires_at: float
    completed_at: Optional[float] = None
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProgressSnapshot":
        return cls(**{**data, "status": JobStatus(data["status"])})

    def to_event(self, event_type: Optional[str] = None) -> dict[str, Any]:
        return {"type": event_type or EVENT_FOR_STATUS[self.status], **self.to_dict()}


Mutator = Callable[[Optional[dict[str, Any]]], Optional[dict[str, Any]]]


# ─── Backends ────────────────────────────────────────────────────────────────

class Subscription(abc.ABC):

    @abc.abstractmethod
    async def get(self, timeout: float) -> Optional[dict[str, Any]]:
        """Next published event, or None if nothing arrived within ``timeout``."""


class ProgressBackend(abc.ABC):

    @abc.abstractmethod
    async def load(self, job_id: str) -> Optional[dict[str, Any]]:
        pass

    @abc.abstractmethod
    async def transact(self, job_id: str, mutator: Mutator) -> tuple[Optional[dict[str, Any]], bool]:
        """
        Apply ``mutator`` to the current state atomically.

        The mutator returns the new state, or None to leave the state unchanged.
        It may run more than once under contention and may raise to abort.
        Returns ``(state, changed)``.
        """

    @abc.abstractmethod
    async def publish(self, job_id: str, event: dict[str, Any]) -> None:
        pass

    @abc.abstractmethod
    def subscribe(self, job_id: str):
        """Async context manager yielding a ``Subscription``."""


class _QueueSubscription(Subscription):
    def __init__(self, queue: asyncio.Queue):
        self.queue = queue

    async def get(self, timeout: float) -> Optional[dict[str, Any]]:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class MemoryProgressBackend(ProgressBackend):
    """
    In-process state and fan-out. Only observers in the same process see events,
    so this is for development and tests.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._states: dict[str, str] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._subscribers: defaultdict[str, set[asyncio.Queue]] = defaultdict(set)

    def _read(self, job_id: str) -> Optional[dict[str, Any]]:
        raw = self._states.get(job_id)
        if raw is None:
            return None
        state = json.loads(raw)
        if state["expires_at"] <= self.clock():
            del self._states[job_id]
            return None
        return state

    async def load(self, job_id: str) -> Optional[dict[str, Any]]:
        return self._read(job_id)

    async def transact(self, job_id: str, mutator: Mutator) -> tuple[Optional[dict[str, Any]], bool]:
        async with self._locks[job_id]:
            current = self._read(job_id)
            new = mutator(current)
            if new is None:
                return current, False
            self._states[job_id] = json.dumps(new, default=str)
            return new, True

    async def publish(self, job_id: str, event: dict[str, Any]) -> None:
        for queue in list(self._subscribers.get(job_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"[{job_id}] Subscriber buffer full, dropping seq {event.get('seq')}")

    @asynccontextmanager
    async def subscribe(self, job_id: str):
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_BUFFER)
        self._subscribers[job_id].add(queue)
        try:
            yield _QueueSubscription(queue)
        finally:
            self._subscribers[job_id].discard(queue)
            if not self._subscribers[job_id]:
                del self._subscribers[job_id]


class _PubSubSubscription(Subscription):
    def __init__(self, pubsub):
        self.pubsub = pubsub

    async def get(self, timeout: float) -> Optional[dict[str, Any]]:
        message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if not message or message["type"] != "message":
            return None
        return json.loads(message["data"])


class RedisProgressBackend(ProgressBackend):
    """
    Shared state in Redis. The state key expires with the snapshot, and every
    mutation is an optimistic WATCH/MULTI transaction retried on conflict.
    """

    def __init__(self, client, clock: Callable[[], float] = time.time):
        self.client = client
        self.clock = clock

    @staticmethod
    def state_key(job_id: str) -> str:
        return f"progress:{job_id}:state"

    @staticmethod
    def channel(job_id: str) -> str:
        return f"progress:{job_id}"

    async def load(self, job_id: str) -> Optional[dict[str, Any]]:
        raw = await self.client.get(self.state_key(job_id))
        return json.loads(raw) if raw else None

    async def transact(self, job_id: str, mutator: Mutator) -> tuple[Optional[dict[str, Any]], bool]:
        key = self.state_key(job_id)
        async with self.client.pipeline(transaction=True) as pipe:
            for _ in range(MAX_TRANSACTION_ATTEMPTS):
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    current = json.loads(raw) if raw else None
                    new = mutator(current)
                    if new is None:
                        await pipe.unwatch()
                        return current, False
                    ttl = max(1, int(new["expires_at"] - self.clock()))
                    pipe.multi()
                    pipe.set(key, json.dumps(new, default=str), ex=ttl)
                    await pipe.execute()
                    return new, True
                except WatchError:
                    logger.debug(f"[{job_id}] Progress state changed concurrently, retrying")
                    continue
        raise InternalError(f"Progress update for {job_id} kept conflicting")

    async def publish(self, job_id: str, event: dict[str, Any]) -> None:
        await self.client.publish(self.channel(job_id), json.dumps(event, default=str))

    @asynccontextmanager
    async def subscribe(self, job_id: str):
        pubsub = self.client.pubsub()
        await pubsub.subscribe(self.channel(job_id))
        try:
            yield _PubSubSubscription(pubsub)
        finally:
            await pubsub.unsubscribe(self.channel(job_id))
            await pubsub.aclose()


# ─── Actor ───────────────────────────────────────────────────────────────────

class ProgressActor:

    def __init__(
        self,
        job_id: str,
        backend: ProgressBackend,
        clock: Callable[[], float] = time.time,
        retention_sec: int = settings.PROGRESS_RETENTION_SEC,
    ):
        self.job_id = job_id
        self.backend = backend
        self.clock = clock
        self.retention_sec = retention_sec

    def _live(self, state: Optional[dict[str, Any]]) -> Optional[ProgressSnapshot]:
        if state is None:
            return None
        snapshot = ProgressSnapshot.from_dict(state)
        if snapshot.expires_at <= self.clock():
            return None
        return snapshot

    def _require(self, state: Optional[dict[str, Any]]) -> ProgressSnapshot:
        snapshot = self._live(state)
        if snapshot is None:
            raise NotInitializedError(f"Progress for {self.job_id} is not initialized")
        return snapshot

    def _advance(self, snapshot: ProgressSnapshot, **changes: Any) -> dict[str, Any]:
        now = self.clock()
        data = snapshot.to_dict()
        data.update(changes)
        data["seq"] = snapshot.seq + 1
        data["updated_at"] = now
        if isinstance(data["status"], JobStatus):
            data["status"] = data["status"].value
        return data

    async def _apply(self, mutator: Mutator, event_type: Optional[str] = None) -> ProgressSnapshot:
        state, changed = await self.backend.transact(self.job_id, mutator)
        snapshot = ProgressSnapshot.from_dict(state)
        if changed:
            try:
                await self.backend.publish(self.job_id, snapshot.to_event(event_type))
            except Exception as e:
                logger.error(f"[{self.job_id}] Failed to publish seq {snapshot.seq}: {e}")
        return snapshot

    async def initialize(self, account_id: str, subject_id: str, job_type: str) -> ProgressSnapshot:
        def mutate(state):
            if self._live(state) is not None:
                raise AlreadyInitializedError(f"Progress for {self.job_id} already initialized")
            now = self.clock()
            return ProgressSnapshot(
                job_id=self.job_id,
                account_id=account_id,
                subject_id=subject_id,
                job_type=str(job_type),
                status=JobStatus.PENDING,
                progress=0,
                current_step="Queued",
                seq=1,
                started_at=now,
                updated_at=now,
                expires_at=now + self.retention_sec,
            ).to_dict()

        snapshot = await self._apply(mutate)
        logger.info(f"[{self.job_id}] Progress initialized.")
        return snapshot

    async def update(self, progress: int, label: str, status: JobStatus | str = JobStatus.PROCESSING) -> ProgressSnapshot:
        """
        Record a step. Progress never moves backwards.

        Raises:
            NotInitializedError: no live state for this job.
            JobCancelledError: the job was cancelled; the caller should stop.
        """
        status = JobStatus(status)

        def mutate(state):
            snapshot = self._require(state)
            if snapshot.status == JobStatus.CANCELLED:
                raise JobCancelledError(f"Job {self.job_id} was cancelled")
            if snapshot.is_terminal:
                logger.warning(f"[{self.job_id}] Ignoring update '{label}' after {snapshot.status.value}")
                return None
            clamped = max(snapshot.progress, min(100, max(0, int(progress))))
            return self._advance(snapshot, progress=clamped, current_step=label, status=status)

        return await self._apply(mutate)

    async def complete(self, result: dict[str, Any]) -> ProgressSnapshot:
        def mutate(state):
            snapshot = self._require(state)
            if snapshot.is_terminal:
                logger.warning(f"[{self.job_id}] Ignoring complete after {snapshot.status.value}")
                return None
            return self._advance(
                snapshot, status=JobStatus.COMPLETE, progress=100, current_step="Complete",
                result=result, completed_at=self.clock(),
            )

        snapshot = await self._apply(mutate)
        logger.info(f"[{self.job_id}] Progress complete.")
        return snapshot

    async def fail(self, error_message: str) -> ProgressSnapshot:
        """Mark failed. Progress stays where it was."""
        def mutate(state):
            snapshot = self._require(state)
            if snapshot.is_terminal:
                logger.warning(f"[{self.job_id}] Ignoring fail after {snapshot.status.value}")
                return None
            return self._advance(
                snapshot, status=JobStatus.FAILED, current_step="Failed",
                error_message=error_message, completed_at=self.clock(),
            )

        return await self._apply(mutate)

    async def cancel(self) -> ProgressSnapshot:
        """Request cancellation. A job that already finished keeps its state."""
        def mutate(state):
            snapshot = self._require(state)
            if snapshot.is_terminal:
                logger.info(f"[{self.job_id}] Cancel ignored, job already {snapshot.status.value}")
                return None
            return self._advance(
                snapshot, status=JobStatus.CANCELLED, current_step="Cancelled",
                completed_at=self.clock(),
            )

        return await self._apply(mutate)

    async def read(self) -> Optional[ProgressSnapshot]:
        return self._live(await self.backend.load(self.job_id))

    async def subscribe(self, poll_interval: float = 1.0) -> AsyncIterator[dict[str, Any]]:
        """
        Yield ``ready`` with the current snapshot, then live events until the
        job reaches a terminal state or the snapshot expires.

        The channel is joined before the snapshot is read, so nothing published
        in between is lost. When no event arrives for ``poll_interval`` the state
        is re-read, which recovers events dropped by best-effort fan-out.

        Raises:
            NotFoundError: no live state for this job.
        """
        async with self.backend.subscribe(self.job_id) as subscription:
            snapshot = await self.read()
            if snapshot is None:
                raise NotFoundError(f"No progress for job {self.job_id}")

            yield snapshot.to_event("ready")
            if snapshot.is_terminal:
                yield snapshot.to_event()
                return

            last_seq = snapshot.seq
            expires_at = snapshot.expires_at
            while self.clock() < expires_at:
                event = await subscription.get(timeout=poll_interval)
                if event is None:
                    current = await self.read()
                    if current is None:
                        return
                    if current.seq <= last_seq:
                        continue
                    event = current.to_event()
                if event["seq"] <= last_seq:
                    continue
                last_seq = event["seq"]
                yield event
                if event["type"] in TERMINAL_EVENTS:
                    return


class ProgressHub:
    """Hands out actors bound to one backend."""

    def __init__(
        self,
        backend: ProgressBackend,
        clock: Callable[[], float] = time.time,
        retention_sec: int = settings.PROGRESS_RETENTION_SEC,
    ):
        self.backend = backend
        self.clock = clock
        self.retention_sec = retention_sec

    def actor(self, job_id: str) -> ProgressActor:
        return ProgressActor(job_id, self.backend, clock=self.clock, retention_sec=self.retention_sec)


def snapshot_view(snapshot: ProgressSnapshot) -> dict[str, Any]:
    """Snapshot with ISO timestamps, for API responses."""
    data = snapshot.to_dict()
    for key in ("started_at", "updated_at", "expires_at", "completed_at"):
        if data[key] is not None:
            data[key] = _iso(data[key])
    return data
