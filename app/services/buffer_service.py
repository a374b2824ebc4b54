"""Debounce buffer: coalesce bursts of inbound messages into one drain per chat.

enqueue() appends the message ref to the chat's buffer and tries to take the
"scheduled" guard with SET NX. Only the caller that takes the guard starts the
deferred drain, so at most one drain timer is pending per chat. The drain takes
the buffer and clears the guard in one atomic step, and only then runs the
handler. A ref appended while the drain is in flight either lands in this batch
or finds the guard free and schedules its own drain. If the handler fails, the
next inbound message starts a fresh cycle. The failed cycle's reply is not
retried (its messages stay in the conversation store).
"""

import asyncio
from functools import partial
from typing import Awaitable, Callable, Optional

from app.logging_config import get_logger
from app.services.cache_store import CacheStore

logger = get_logger("buffer_service")

BUFFER_KEY = "outreach:buffer:{chat_id}"
SCHEDULED_KEY = "outreach:scheduled:{chat_id}"

DrainHandler = Callable[[str, list[str]], Awaitable[None]]


def buffer_key(chat_id: str) -> str:
    return BUFFER_KEY.format(chat_id=chat_id)


def scheduled_key(chat_id: str) -> str:
    return SCHEDULED_KEY.format(chat_id=chat_id)


class MessageBufferScheduler:
    def __init__(
        self,
        store: CacheStore,
        handler: Optional[DrainHandler] = None,
        *,
        delay_seconds: float = 8.0,
        buffer_ttl_seconds: float = 60.0,
        sleep_func=asyncio.sleep,
    ):
        self.store = store
        self.handler = handler
        self.delay_seconds = delay_seconds
        self.buffer_ttl_seconds = max(buffer_ttl_seconds, delay_seconds)
        self.sleep_func = sleep_func
        self._tasks: set[asyncio.Task] = set()
        # Drains still waiting out the delay, one per chat.
        self._timers: dict[str, asyncio.Task] = {}

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def has_timer(self, chat_id: str) -> bool:
        timer = self._timers.get(chat_id)
        return timer is not None and not timer.done()

    async def enqueue(self, chat_id: str, message_ref) -> bool:
        """Buffer a message ref. Returns True if this call scheduled the drain."""
        size = await self.store.append(buffer_key(chat_id), str(message_ref), self.buffer_ttl_seconds)
        scheduled = await self.store.set_if_absent(scheduled_key(chat_id), "1", self.delay_seconds)
        if not scheduled:
            logger.debug(
                "Message buffered, drain already scheduled",
                extra={"context": {"chat_id": chat_id, "buffer_size": size}},
            )
            return False

        if self.has_timer(chat_id):
            # Guard expired under a timer that has not fired yet; that timer takes this ref.
            logger.debug(
                "Message buffered, local timer still pending",
                extra={"context": {"chat_id": chat_id, "buffer_size": size}},
            )
            return False

        task = asyncio.create_task(self._drain_later(chat_id))
        self._tasks.add(task)
        self._timers[chat_id] = task
        task.add_done_callback(partial(self._forget, chat_id))
        logger.info(
            "Drain scheduled",
            extra={"context": {"chat_id": chat_id, "delay_seconds": self.delay_seconds, "buffer_size": size}},
        )
        return True

    def _forget(self, chat_id: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._timers.get(chat_id) is task:
            del self._timers[chat_id]

    async def _drain_later(self, chat_id: str) -> None:
        try:
            await self.sleep_func(self.delay_seconds)
        except asyncio.CancelledError:
            logger.info("Scheduled drain cancelled", extra={"context": {"chat_id": chat_id}})
            raise
        if self._timers.get(chat_id) is asyncio.current_task():
            del self._timers[chat_id]
        await self.drain(chat_id)

    async def drain(self, chat_id: str) -> int:
        """Take the buffer and clear the guard atomically, then run the handler. Returns refs drained."""
        try:
            refs = await self.store.pop_all(buffer_key(chat_id), also_delete=(scheduled_key(chat_id),))
        except Exception as exc:
            logger.error(
                "Buffer drain failed",
                extra={"context": {"chat_id": chat_id, "error": str(exc)}},
            )
            return 0

        if not refs:
            logger.info("Buffer empty on drain", extra={"context": {"chat_id": chat_id}})
            return 0

        if self.handler is None:
            logger.error("No drain handler bound", extra={"context": {"chat_id": chat_id, "refs": refs}})
            return len(refs)

        try:
            await self.handler(chat_id, refs)
        except Exception as exc:
            # Guard is already clear: the next message starts a new cycle.
            logger.error(
                "Drain handler failed, reply for this cycle is lost",
                extra={"context": {"chat_id": chat_id, "refs": refs, "error": str(exc)}},
                exc_info=True,
            )
        return len(refs)

    async def purge(self, chat_id: str) -> None:
        """Drop the chat's buffer and guard, and cancel its timer if it has not fired."""
        timer = self._timers.pop(chat_id, None)
        if timer is not None and not timer.done():
            timer.cancel()
        await self.store.delete(buffer_key(chat_id), scheduled_key(chat_id))
        if timer is not None:
            await asyncio.gather(timer, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel pending drains. Buffered refs are left to expire."""
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Pending drains cancelled", extra={"context": {"count": len(tasks)}})
