"""Coordinator: the privileged message hub that owns running agent invocations."""

import asyncio
import logging
from functools import partial
from typing import Any, Dict, Optional, Union

from .channels import (
    ClearHistory,
    ExecuteAction,
    GetPageContext,
    Message,
    RunAgent,
    StopAgent,
    TabRegistry,
    parse_message,
)
from .core import AgentOrchestrator
from .memory import SessionMemory

logger = logging.getLogger(__name__)


class Coordinator:
    """
    Handles RUN_AGENT, STOP_AGENT, CLEAR_HISTORY, GET_PAGE_CONTEXT and
    EXECUTE_ACTION messages. RUN_AGENT acknowledges immediately and runs the
    invocation as a task; progress arrives through the MessageRouter.

    A pane runs at most one invocation: a new RUN_AGENT for a busy pane
    cancels the previous one first.
    """

    def __init__(self, orchestrator: AgentOrchestrator, tabs: TabRegistry, memory: SessionMemory):
        self.orchestrator = orchestrator
        self.tabs = tabs
        self.memory = memory
        self._tasks: Dict[str, asyncio.Task] = {}
        self._handlers = {
            RunAgent: self._run_agent,
            StopAgent: self._stop_agent,
            ClearHistory: self._clear_history,
            GetPageContext: self._get_page_context,
            ExecuteAction: self._execute_action,
        }

    async def handle(self, message: Union[Message, Dict[str, Any]]) -> Dict[str, Any]:
        if isinstance(message, dict):
            message = parse_message(message)
        return await self._handlers[type(message)](message)

    def running(self, pane: str) -> bool:
        task = self._tasks.get(pane)
        return task is not None and not task.done()

    async def _run_agent(self, message: RunAgent) -> Dict[str, Any]:
        tab = self.tabs.get(message.tab_id)
        pane = message.target_pane
        previous = self._tasks.get(pane)
        if previous is not None and not previous.done():
            logger.info("Pane %s: superseding running invocation", pane)
            previous.cancel()
            await asyncio.gather(previous, return_exceptions=True)

        task = asyncio.create_task(
            self.orchestrator.run(tab, message.user_message, pane=pane, override_model=message.override_model),
            name=f"agent-pane-{pane}",
        )
        self._tasks[pane] = task
        task.add_done_callback(partial(self._forget, pane))
        logger.info("Pane %s: agent started on tab %d", pane, tab.tab_id)
        return {"started": True}

    def _forget(self, pane: str, task: asyncio.Task) -> None:
        if self._tasks.get(pane) is task:
            del self._tasks[pane]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Pane %s: agent task crashed: %s", pane, task.exception())

    async def _stop_agent(self, message: StopAgent) -> Dict[str, Any]:
        task = self._tasks.get(message.target_pane)
        if task is None or task.done():
            return {"stopped": False}
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return {"stopped": True}

    async def _clear_history(self, message: ClearHistory) -> Dict[str, Any]:
        tab = self.tabs.get(message.tab_id)
        removed = self.memory.clear_history(tab.tab_id, message.target_pane)
        logger.info("Cleared %d history list(s) for tab %d", removed, tab.tab_id)
        return {"cleared": True}

    async def _get_page_context(self, message: GetPageContext) -> Dict[str, Any]:
        tab = self.tabs.get(message.tab_id)
        cached = self.memory.get_cached_tab_context(tab.tab_id, self.orchestrator.settings.context_max_age_ms)
        if cached is not None:
            return {"context": cached}
        response = await tab.channel.request(message)
        self.memory.cache_tab_context(tab.tab_id, response["context"])
        return {"context": response["context"]}

    async def _execute_action(self, message: ExecuteAction) -> Dict[str, Any]:
        tab = self.tabs.get(message.tab_id)
        return await tab.channel.request(message)

    async def wait(self, pane: Optional[str] = None) -> None:
        """Wait for one pane's invocation, or all of them."""
        tasks = [self._tasks[pane]] if pane in self._tasks else ([] if pane else list(self._tasks.values()))
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
