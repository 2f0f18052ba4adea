from __future__ import annotations

import asyncio
import collections
import logging
import typing as T

LOG = logging.getLogger(__name__)


class PartScheduler:
    """
    Dispatch the pending parts of one session with at most max_concurrency in flight.

    When a part finishes the next pending part is dispatched right away.
    Dispatching stops as soon as the session is no longer current, i.e. paused,
    cancelled or failed. Parts still in flight at that point keep running
    and are responsible for discarding their own results.

    The slots outlive a run: a part orphaned by a pause holds its slot until
    its request returns, so the parts of the resumed run and the orphans
    together never exceed max_concurrency.
    """

    def __init__(self, max_concurrency: int):
        if max_concurrency <= 0:
            raise ValueError(
                f"Expect positive max_concurrency but got {max_concurrency}"
            )
        self.max_concurrency = max_concurrency
        # Strong references to running part tasks, including orphaned ones
        self._tasks: set[asyncio.Task] = set()
        # Created lazily so it binds to the running event loop
        self._slots: asyncio.Semaphore | None = None

    @property
    def running_tasks(self) -> int:
        return len(self._tasks)

    async def run(
        self,
        pending: T.Iterable[int],
        upload_part: T.Callable[[int], T.Awaitable[None]],
        is_current: T.Callable[[], bool],
        stop_event: asyncio.Event | None = None,
    ) -> bool:
        """
        Return True when every pending part has been uploaded, or False when
        the session stopped being current before that.
        Raise the error of the first failed part.
        """
        queue = collections.deque(pending)
        in_flight: set[asyncio.Future] = set()

        stop_waiter: asyncio.Future | None = None
        if stop_event is not None:
            stop_waiter = asyncio.ensure_future(stop_event.wait())

        try:
            while queue or in_flight:
                while queue and len(in_flight) < self.max_concurrency:
                    if not await self._acquire(stop_waiter):
                        LOG.debug(
                            f"Stopped waiting for a slot with {len(queue)} parts pending"
                        )
                        return False

                    # Re-check right before consuming the slot
                    if not is_current():
                        self._release()
                        LOG.debug(
                            f"Stopped dispatching with {len(queue)} parts pending"
                        )
                        return False

                    # A part of this run may have failed while waiting for the slot
                    try:
                        _reap(in_flight)
                    except Exception:
                        self._release()
                        raise

                    part_number = queue.popleft()
                    in_flight.add(self._spawn(upload_part, part_number))

                wait_for = set(in_flight)
                if stop_waiter is not None:
                    wait_for.add(stop_waiter)

                done, _ = await asyncio.wait(
                    wait_for, return_when=asyncio.FIRST_COMPLETED
                )

                _reap(in_flight)

                stopped = stop_waiter is not None and stop_waiter.done()
                if stopped or not is_current():
                    LOG.debug(
                        f"Stopped with {len(in_flight)} parts in flight and {len(queue)} pending"
                    )
                    return False

            return True
        finally:
            if stop_waiter is not None:
                stop_waiter.cancel()

    def _semaphore(self) -> asyncio.Semaphore:
        if self._slots is None:
            self._slots = asyncio.Semaphore(self.max_concurrency)
        return self._slots

    async def _acquire(self, stop_waiter: asyncio.Future | None) -> bool:
        """
        Take a slot, or return False if the run is stopped first
        """
        semaphore = self._semaphore()
        if stop_waiter is None:
            await semaphore.acquire()
            return True

        if stop_waiter.done():
            return False

        acquiring = asyncio.ensure_future(semaphore.acquire())
        await asyncio.wait(
            {acquiring, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
        )
        if acquiring.done():
            return True

        acquiring.cancel()
        return False

    def _release(self) -> None:
        self._semaphore().release()

    def _spawn(
        self, upload_part: T.Callable[[int], T.Awaitable[None]], part_number: int
    ) -> asyncio.Task:
        async def _upload():
            try:
                await upload_part(part_number)
            finally:
                self._release()

        task = asyncio.create_task(_upload())
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            LOG.debug(f"Part task failed: {task.exception()!r}")


def _reap(in_flight: set[asyncio.Future]) -> None:
    """
    Drop the finished parts and raise the error of the first failed one
    """
    for task in [task for task in in_flight if task.done()]:
        in_flight.discard(task)
        ex = task.exception()
        if ex is not None:
            raise ex
