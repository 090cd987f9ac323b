"""Shared fakes for agent tests."""

from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from browser_agent.channels import ExecuteAction, GetPageContext, TabHandle
from browser_agent.config import AgentSettings
from browser_agent.memory import Preferences, SessionMemory
from browser_agent.models import CompletionResult, ToolCall
from browser_agent.router import MessageRouter

PAGE_CONTEXT = {
    "url": "https://shop.example/cart",
    "title": "Cart",
    "headings": [{"tag": "H1", "text": "Your cart"}],
    "interactableElements": [],
    "forms": [],
    "mainText": "Two items",
    "pageHeight": 1200,
    "scrollY": 0,
}


class FakeChannel:
    """Records requests; answers page reads and actions with canned data."""

    def __init__(self, action_result: Optional[Dict[str, Any]] = None, page_error: Optional[Exception] = None):
        self.requests: List[Any] = []
        self.action_result = action_result or {"success": True}
        self.page_error = page_error

    async def request(self, message):
        self.requests.append(message)
        if isinstance(message, GetPageContext):
            if self.page_error:
                raise self.page_error
            return {"success": True, "context": dict(PAGE_CONTEXT)}
        if isinstance(message, ExecuteAction):
            if isinstance(self.action_result, Exception):
                raise self.action_result
            return dict(self.action_result)
        raise TypeError(message)

    @property
    def actions(self):
        return [m.action for m in self.requests if isinstance(m, ExecuteAction)]


class ScriptedClient:
    """Completion client returning scripted results; the last one repeats."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, **kwargs):
        self.calls.append(kwargs)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        if result.text and kwargs.get("on_text"):
            kwargs["on_text"](result.text)
        return result


class FakePreferenceStore:
    def __init__(self, **overrides):
        self.preferences = Preferences(api_key="nvapi-test", **overrides)

    def load(self):
        return self.preferences


def reply(text: str = "", *calls: ToolCall) -> CompletionResult:
    return CompletionResult(text=text, tool_calls=list(calls), finish_reason="tool_calls" if calls else "stop")


def call(name: str, call_id: str = "call_0", **arguments) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def tab(channel):
    page = MagicMock()
    page.goto = AsyncMock()
    return TabHandle(tab_id=7, page=page, channel=channel)


@pytest.fixture
def memory():
    return SessionMemory()


@pytest.fixture
def events():
    return []


@pytest.fixture
def router(events):
    router = MessageRouter()
    router.subscribe(events.append)
    return router


@pytest.fixture
def fast_settings():
    return AgentSettings(click_settle_ms=0, navigate_settle_ms=0)
