"""Message router: best-effort delivery of agent updates to presentation panes."""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Set

from .models import AgentUpdate

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], Any]


class MessageRouter:
    """
    Fans AGENT_UPDATE messages out to listeners subscribed for a pane, plus any
    listener subscribed to all panes. Delivery is fire-and-forget: a missing or
    failing listener never affects the sender.
    """

    def __init__(self):
        self._listeners: Dict[Optional[str], List[Listener]] = defaultdict(list)
        self._pending: Set[asyncio.Future] = set()

    def subscribe(self, listener: Listener, pane: Optional[str] = None) -> Callable[[], None]:
        """Register ``listener`` for ``pane`` (None = every pane); returns an unsubscribe callable."""
        self._listeners[pane].append(listener)

        def unsubscribe():
            if listener in self._listeners[pane]:
                self._listeners[pane].remove(listener)

        return unsubscribe

    def emit(self, pane: str, event: str, **payload) -> AgentUpdate:
        update = AgentUpdate(target_pane=pane, event=event, payload=payload)
        listeners = self._listeners.get(pane, []) + self._listeners.get(None, [])
        if not listeners:
            logger.debug("No listener on pane %s, dropped %s", pane, event)
        for listener in listeners:
            self._deliver(listener, update)
        return update

    def _deliver(self, listener: Listener, update: AgentUpdate) -> None:
        try:
            result = listener(update.to_message())
        except Exception as e:
            logger.warning("Listener for pane %s failed on %s: %s", update.target_pane, update.event, e)
            return
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending.add(future)
            future.add_done_callback(self._settle)

    def _settle(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.warning("Async listener failed: %s", future.exception())
