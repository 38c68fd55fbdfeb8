# --------------------------------------------------------------------
# utils/event_bus.py
# --------------------------------------------------------------------
"""A super-light, asyncio-based pub/sub that the whole bot can import.
Used to hand closed trades to the reconciliation worker without making the
webhook response wait for it."""
from __future__ import annotations
import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Union

_Handler = Callable[[object], Union[Awaitable[None], None]]

logger = logging.getLogger(__name__)


class _EventBus:
    def __init__(self) -> None:
        self._subs: Dict[str, List[_Handler]] = defaultdict(list)
        self._q: asyncio.Queue[tuple[str, object]] | None = None
        # background task started lazily on first publish
        self._task: asyncio.Task | None = None

    # -------------------------------------------------------------- #
    def subscribe(self, topic: str, fn: _Handler) -> None:
        self._subs[topic].append(fn)

    def unsubscribe_all(self) -> None:
        self._subs.clear()

    def publish(self, topic: str, payload: object) -> None:
        loop = asyncio.get_running_loop()
        # queue + worker are bound to the loop that first publishes
        if self._task is None or self._task.done() or self._task.get_loop() is not loop:
            self._q = asyncio.Queue()
            self._task = loop.create_task(self._worker())
        self._q.put_nowait((topic, payload))

    async def join(self) -> None:
        """Wait until every published event has been handled."""
        # a queue left behind by another loop has no worker to drain it
        if self._q is None or self._task is None or self._task.done():
            return
        if self._task.get_loop() is asyncio.get_running_loop():
            await self._q.join()

    # -------------------------------------------------------------- #
    async def _worker(self) -> None:
        q = self._q
        while True:
            topic, payload = await q.get()
            try:
                for fn in self._subs.get(topic, []):
                    try:
                        res = fn(payload)
                        if asyncio.iscoroutine(res):
                            await res
                    except Exception:  # keep bus alive
                        logger.exception("[event_bus] handler error on %s", topic)
            finally:
                q.task_done()

# singleton – import this everywhere
BUS = _EventBus()

# convenience shims so callers don't care about the BUS name
subscribe = BUS.subscribe
publish = BUS.publish
