import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Hashable, Optional, TypeVar

from .errors import FetchCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Pacer:
    """Keeps successive calls at least ``interval`` seconds apart."""

    def __init__(
        self,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.interval = max(0.0, float(interval))
        self._clock = clock
        self._sleep = sleep
        self._last: Optional[float] = None

    async def wait(self) -> None:
        if self._last is not None and self.interval > 0:
            delay = self._last + self.interval - self._clock()
            if delay > 0:
                await self._sleep(delay)
        self._last = self._clock()


class FetchHandle:
    def __init__(self, key: Hashable, pacer: Pacer):
        self.key = key
        self.pacer = pacer
        self.task: Optional[asyncio.Future] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise FetchCancelled(f"fetch for {self.key!r} was superseded")

    async def pace(self) -> None:
        self.raise_if_cancelled()
        await self.pacer.wait()
        self.raise_if_cancelled()


class FetchScheduler:
    """Single-flight, latest-wins execution of fetch jobs per cache key.

    Each submitted job receives a :class:`FetchHandle` carrying its own pacer,
    so dependent calls inside one logical fetch are spaced by
    ``request_interval`` while fetches for different keys never wait on each
    other.
    """

    def __init__(
        self,
        request_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.request_interval = request_interval
        self._clock = clock
        self._sleep = sleep
        self._inflight: Dict[Hashable, FetchHandle] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    def is_current(self, handle: FetchHandle) -> bool:
        return self._inflight.get(handle.key) is handle and not handle.cancelled

    def cancel(self, key: Hashable) -> bool:
        handle = self._inflight.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._inflight):
            self.cancel(key)

    async def submit(self, key: Hashable, job: Callable[[FetchHandle], Awaitable[T]]) -> T:
        previous = self._inflight.get(key)
        if previous is not None:
            logger.debug("superseding in-flight fetch for %s", key)
            previous.cancel()

        handle = FetchHandle(key, Pacer(self.request_interval, clock=self._clock, sleep=self._sleep))
        self._inflight[key] = handle
        handle.task = asyncio.ensure_future(job(handle))
        try:
            result = await handle.task
        except asyncio.CancelledError:
            if handle.cancelled:
                raise FetchCancelled(f"fetch for {key!r} was superseded") from None
            handle.cancel()
            raise
        finally:
            if self._inflight.get(key) is handle:
                del self._inflight[key]
        # Completed, but a newer fetch took over before we got to report it.
        handle.raise_if_cancelled()
        return result
