"""Background job tracking with per-collection exclusivity and progress events."""

import asyncio
import os
import socket
import uuid
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from collectarr.core.exceptions import JobConflictError
from collectarr.models.sync import JobProgress, JobState
from collectarr.services.store import Store

Reporter = Callable[..., None]
# A job may return final progress fields, applied together with COMPLETED
Job = Callable[[Reporter], Awaitable[Optional[dict[str, Any]]]]


class JobTracker:
    """
    Run at most one job per collection and publish its progress.

    Within a process an asyncio lock guards each collection. With a store,
    a lease row in the database extends the guard to every process sharing
    it (the CLI and the scheduler daemon); the lease is renewed while the job
    runs and expires if its holder dies.

    Progress can be read as a snapshot (`get_progress`), pushed to
    subscribers (`subscribe`), or polled (`poller.poll_until_settled`).
    """

    QUEUE_SIZE = 100

    def __init__(self, store: Optional[Store] = None, lease_ttl: float = 600.0) -> None:
        """
        Initialize tracker.

        Args:
            store: Store holding cross-process job leases (None: this process only)
            lease_ttl: Seconds a lease lives without renewal
        """
        self.store = store
        self.lease_ttl = lease_ttl
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._locks: dict[str, asyncio.Lock] = {}
        self._progress: dict[str, JobProgress] = {}
        self._subscribers: dict[str, set[asyncio.Queue[JobProgress]]] = {}
        self._tasks: set[asyncio.Task] = set()

    def is_running(self, collection_id: str) -> bool:
        lock = self._locks.get(collection_id)
        return bool(lock and lock.locked())

    def get_progress(self, collection_id: str) -> Optional[JobProgress]:
        """Get the latest progress snapshot of a collection's job."""
        progress = self._progress.get(collection_id)
        return progress.model_copy() if progress else None

    async def _acquire(self, collection_id: str) -> JobProgress:
        lock = self._locks.setdefault(collection_id, asyncio.Lock())
        if lock.locked():
            raise JobConflictError(collection_id)

        # An unlocked lock is acquired without yielding to the event loop
        await lock.acquire()

        if self.store:
            try:
                leased = await self.store.acquire_job_lease(collection_id, self.owner, self.lease_ttl)
            except BaseException:
                lock.release()
                raise
            if not leased:
                lock.release()
                logger.info(f"Collection {collection_id} is being refreshed by another process")
                raise JobConflictError(collection_id)

        progress = JobProgress(collection_id=collection_id)
        self._progress[collection_id] = progress
        self._publish(collection_id)
        return progress

    async def start(self, collection_id: str, job: Job) -> JobProgress:
        """
        Start a job in the background.

        Args:
            collection_id: Collection the job works on
            job: Coroutine function receiving a progress reporter

        Returns:
            Initial progress snapshot

        Raises:
            JobConflictError: A job is already running for this collection
        """
        progress = await self._acquire(collection_id)

        task = asyncio.create_task(self._execute(collection_id, job), name=f"job-{collection_id}")
        # Strong reference until done
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        return progress.model_copy()

    async def run(self, collection_id: str, job: Job) -> JobProgress:
        """Run a job and wait for it (scheduler and CLI use)."""
        await self._acquire(collection_id)
        return await self._execute(collection_id, job)

    async def _execute(self, collection_id: str, job: Job) -> JobProgress:
        def report(**changes: Any) -> None:
            self._update(collection_id, **changes)

        heartbeat = asyncio.create_task(self._heartbeat(collection_id)) if self.store else None
        try:
            final = await job(report)
        except asyncio.CancelledError:
            self._update(collection_id, state=JobState.FAILED, error="cancelled", completed_at=datetime.now())
            raise
        except Exception as e:
            logger.error(f"Job for collection {collection_id} failed: {e}")
            self._update(collection_id, state=JobState.FAILED, error=str(e), completed_at=datetime.now())
        else:
            self._update(collection_id, **(final or {}), state=JobState.COMPLETED, completed_at=datetime.now())
        finally:
            try:
                if heartbeat:
                    heartbeat.cancel()
                if self.store:
                    await self._release_lease(collection_id)
            finally:
                self._locks[collection_id].release()

        return self._progress[collection_id].model_copy()

    async def _heartbeat(self, collection_id: str) -> None:
        """Renew the lease every third of its lifetime while the job runs."""
        while True:
            await asyncio.sleep(self.lease_ttl / 3)
            try:
                renewed = await self.store.renew_job_lease(collection_id, self.owner, self.lease_ttl)
            except SQLAlchemyError as e:
                logger.warning(f"Could not renew job lease of collection {collection_id}: {e}")
                continue
            if not renewed:
                logger.warning(f"Job lease of collection {collection_id} expired and was taken over")
                return

    async def _release_lease(self, collection_id: str) -> None:
        try:
            await self.store.release_job_lease(collection_id, self.owner)
        except SQLAlchemyError as e:
            logger.warning(
                f"Could not release job lease of collection {collection_id} "
                f"(expires in {self.lease_ttl:.0f}s): {e}"
            )

    async def wait(self) -> None:
        """Wait for every background job to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # =========================================================================
    # Progress events
    # =========================================================================

    def _update(self, collection_id: str, **changes: Any) -> None:
        progress = self._progress[collection_id]
        self._progress[collection_id] = progress.model_copy(update=changes)
        self._publish(collection_id)

    def _publish(self, collection_id: str) -> None:
        snapshot = self._progress[collection_id]
        for queue in self._subscribers.get(collection_id, set()):
            if queue.full():
                # Slow subscribers only miss intermediate snapshots
                queue.get_nowait()
            queue.put_nowait(snapshot.model_copy())

    async def subscribe(self, collection_id: str) -> AsyncIterator[JobProgress]:
        """
        Yield progress snapshots of a collection's job until it settles.

        The current snapshot (if any) is yielded first. Closing or
        cancelling the iterator never affects the job itself.
        """
        queue: asyncio.Queue[JobProgress] = asyncio.Queue(maxsize=self.QUEUE_SIZE)
        self._subscribers.setdefault(collection_id, set()).add(queue)

        try:
            current = self._progress.get(collection_id)
            if current:
                yield current.model_copy()
                if current.is_terminal and not self.is_running(collection_id):
                    return

            while True:
                snapshot = await queue.get()
                yield snapshot
                if snapshot.is_terminal:
                    return
        finally:
            self._subscribers[collection_id].discard(queue)
