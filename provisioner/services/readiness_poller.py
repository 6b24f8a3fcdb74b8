from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from provisioner.services.record_store_client import RecordStoreError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(eq=False)
class PollHandle(Generic[T]):
    key: str
    interval_seconds: float
    task: Optional["asyncio.Task[None]"] = None
    active: bool = True
    fired: bool = False
    reads: int = 0
    started_at: float = field(default_factory=time.monotonic)


class ReadinessPoller(Generic[T]):
    """Cancellable predicate polling against one store read function.

    At most one loop runs per key; starting a new loop for a key cancels the
    previous one. Each tick performs exactly one ``read(key)``. When the
    predicate holds the loop ends and ``on_ready`` fires once for that handle.
    Store read failures are recoverable: they are reported and the loop keeps
    going. ``stop`` cancels the task itself, so no read starts after it
    returns.
    """

    def __init__(
        self,
        read: Callable[[str], Awaitable[T]],
        *,
        name: str,
        floor_seconds: float,
    ) -> None:
        if floor_seconds <= 0:
            raise ValueError("floor_seconds must be positive")
        self._read = read
        self._name = name
        self._floor_seconds = floor_seconds
        self._handles: dict[str, PollHandle[T]] = {}

    def effective_interval(
        self,
        *,
        interval_seconds: Optional[float] = None,
        eta_seconds: Optional[float] = None,
    ) -> float:
        requested = interval_seconds or eta_seconds or 0.0
        return max(self._floor_seconds, float(requested))

    def is_polling(self, key: str) -> bool:
        handle = self._handles.get(key)
        return handle is not None and handle.active

    def handle_for(self, key: str) -> Optional[PollHandle[T]]:
        return self._handles.get(key)

    def start(
        self,
        key: str,
        predicate: Callable[[T], bool],
        on_ready: Callable[[T], Any],
        *,
        interval_seconds: Optional[float] = None,
        eta_seconds: Optional[float] = None,
        deadline_seconds: Optional[float] = None,
        on_expired: Optional[Callable[[], Any]] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
    ) -> PollHandle[T]:
        previous = self._handles.get(key)
        if previous is not None:
            self.stop(previous)

        handle: PollHandle[T] = PollHandle(
            key=key,
            interval_seconds=self.effective_interval(interval_seconds=interval_seconds, eta_seconds=eta_seconds),
        )
        handle.task = asyncio.create_task(
            self._run(handle, predicate, on_ready, deadline_seconds, on_expired, on_error),
            name=f"{self._name}-poll-{key}",
        )
        self._handles[key] = handle

        logger.info("%s poll started (key=%s interval=%.1fs)", self._name, key, handle.interval_seconds)
        return handle

    def stop(self, handle: PollHandle[T]) -> None:
        handle.active = False
        # From inside the loop itself (a callback run by the read) the inactive
        # flag is enough: the loop checks it before doing anything else.
        if handle.task is not None and not handle.task.done() and handle.task is not asyncio.current_task():
            handle.task.cancel()
        if self._handles.get(handle.key) is handle:
            del self._handles[handle.key]

    def stop_key(self, key: str) -> None:
        handle = self._handles.get(key)
        if handle is not None:
            self.stop(handle)

    async def aclose(self) -> None:
        """Cancel every loop and wait until all of them have unwound."""

        handles = list(self._handles.values())
        for handle in handles:
            self.stop(handle)

        tasks = [h.task for h in handles if h.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _finish(self, handle: PollHandle[T]) -> None:
        handle.active = False
        if self._handles.get(handle.key) is handle:
            del self._handles[handle.key]

    async def _run(
        self,
        handle: PollHandle[T],
        predicate: Callable[[T], bool],
        on_ready: Callable[[T], Any],
        deadline_seconds: Optional[float],
        on_expired: Optional[Callable[[], Any]],
        on_error: Optional[Callable[[Exception], Any]],
    ) -> None:
        deadline = None if deadline_seconds is None else handle.started_at + deadline_seconds

        try:
            while handle.active:
                handle.reads += 1
                try:
                    value = await self._read(handle.key)
                except RecordStoreError as exc:
                    logger.warning("%s poll read failed (key=%s), will retry: %s", self._name, handle.key, exc)
                    if on_error is not None:
                        on_error(exc)
                else:
                    if handle.active and predicate(value):
                        self._finish(handle)
                        if not handle.fired:
                            handle.fired = True
                            logger.info(
                                "%s poll satisfied (key=%s reads=%d)", self._name, handle.key, handle.reads
                            )
                            on_ready(value)
                        return

                if not handle.active:
                    logger.info("%s poll stopped (key=%s reads=%d)", self._name, handle.key, handle.reads)
                    return

                if deadline is not None and time.monotonic() + handle.interval_seconds > deadline:
                    self._finish(handle)
                    logger.info("%s poll expired (key=%s reads=%d)", self._name, handle.key, handle.reads)
                    if on_expired is not None:
                        on_expired()
                    return

                await asyncio.sleep(handle.interval_seconds)
        except asyncio.CancelledError:
            logger.info("%s poll stopped (key=%s reads=%d)", self._name, handle.key, handle.reads)
            raise
        except Exception:
            self._finish(handle)
            logger.exception("%s poll loop crashed (key=%s)", self._name, handle.key)
            raise
