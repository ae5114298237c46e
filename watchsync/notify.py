import asyncio
import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

HISTORY = "history"

Listener = Callable[[str], None]


class RefreshNotifier:
    """
    Fans out refresh events to listeners. When bound to an event loop,
    listeners run on that loop's thread regardless of which thread posts.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop]):
        self._loop = loop

    def subscribe(self, listener: Listener):
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def post(self, event: str):
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._dispatch, event)
        else:
            self._dispatch(event)

    def post_history_refresh(self):
        self.post(HISTORY)

    def _dispatch(self, event: str):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Refresh listener failed for {event}: {e}", exc_info=True)
