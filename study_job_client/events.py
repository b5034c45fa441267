import asyncio
import inspect
from typing import Any, Callable, List, Set

from loguru import logger

from study_job_client.models import JobEvent

EventCallback = Callable[[JobEvent], Any]


class EventEmitter:
    """Fans lifecycle events out to subscribers.

    Subscribers may be plain callables or coroutine functions; coroutines are
    scheduled on the running loop so ``emit`` never blocks the polling loop.
    """

    def __init__(self) -> None:
        self._subscribers: List[EventCallback] = []
        self._pending: Set[asyncio.Task] = set()
        self.logger = logger

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: JobEvent) -> None:
        self.logger.info(
            f"[{event.kind.value}] {event.type.value} job={event.handle_id} "
            f"status={event.status.value if event.status else None} {event.detail}"
        )
        for callback in list(self._subscribers):
            try:
                outcome = callback(event)
            except Exception as e:
                self.logger.error(f"Event subscriber {callback!r} raised: {e}")
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._pending.add(task)
                task.add_done_callback(self._on_subscriber_done)

    def _on_subscriber_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Event subscriber raised: {task.exception()}")

    async def drain(self) -> None:
        """Wait for scheduled coroutine subscribers to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
