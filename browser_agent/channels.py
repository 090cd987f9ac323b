"""Typed messages and the request/response channel to the in-page actuator.

Payloads crossing the channel are turned into plain dicts and deep-copied,
so the coordinator never holds a reference into actuator state.
"""

import copy
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Union

from playwright.async_api import Page

from .controller import PageInterface
from .models import ActionRequest, ActionResult, action_from_dict, action_to_dict

logger = logging.getLogger(__name__)


@dataclass
class GetPageContext:
    kind: ClassVar[str] = "GET_PAGE_CONTEXT"
    tab_id: Optional[int] = None


@dataclass
class ExecuteAction:
    kind: ClassVar[str] = "EXECUTE_ACTION"
    action: ActionRequest = None
    tab_id: Optional[int] = None


@dataclass
class RunAgent:
    kind: ClassVar[str] = "RUN_AGENT"
    user_message: str = ""
    target_pane: str = "1"
    override_model: Optional[str] = None
    tab_id: Optional[int] = None


@dataclass
class StopAgent:
    kind: ClassVar[str] = "STOP_AGENT"
    target_pane: str = "1"


@dataclass
class ClearHistory:
    kind: ClassVar[str] = "CLEAR_HISTORY"
    tab_id: Optional[int] = None
    target_pane: Optional[str] = None


Message = Union[GetPageContext, ExecuteAction, RunAgent, StopAgent, ClearHistory]

MESSAGE_TYPES = {cls.kind: cls for cls in (GetPageContext, ExecuteAction, RunAgent, StopAgent, ClearHistory)}

_WIRE_NAMES = {
    "userMessage": "user_message",
    "targetPane": "target_pane",
    "overrideModel": "override_model",
    "tabId": "tab_id",
}


def parse_message(data: Dict[str, Any]) -> Message:
    """Build a typed message from its ``{"type": ..., camelCase fields}`` wire form."""
    fields = {_WIRE_NAMES.get(k, k): v for k, v in data.items() if k != "type"}
    cls = MESSAGE_TYPES.get(data.get("type"))
    if cls is None:
        raise ValueError(f"Unknown message type: {data.get('type')}")
    if cls is ExecuteAction and isinstance(fields.get("action"), dict):
        fields["action"] = action_from_dict(fields["action"])
    if "target_pane" in fields and fields["target_pane"] is not None:
        fields["target_pane"] = str(fields["target_pane"])
    return cls(**fields)


class ActuatorChannel:
    """Request/response RPC to the actuator of one page."""

    def __init__(self, actuator: PageInterface):
        self._actuator = actuator

    async def request(self, message: Union[GetPageContext, ExecuteAction]) -> Dict[str, Any]:
        if isinstance(message, GetPageContext):
            model = await self._actuator.read_page()
            return {"success": True, "context": copy.deepcopy(model.to_dict())}
        if isinstance(message, ExecuteAction):
            try:
                action = action_from_dict(action_to_dict(message.action))
            except (TypeError, ValueError, AttributeError) as e:
                return ActionResult.fail(f"Malformed action: {e}").to_dict()
            result = await self._actuator.execute(action)
            return copy.deepcopy(result.to_dict())
        raise TypeError(f"Actuator cannot handle {type(message).__name__}")


@dataclass
class TabHandle:
    """A browser tab: its page and the channel to its actuator."""
    tab_id: int
    page: Page
    channel: ActuatorChannel = field(repr=False)

    async def load(self, url: str) -> None:
        await self.page.goto(url, wait_until="commit")


class TabRegistry:
    """Open tabs, with one of them active."""

    def __init__(self):
        self._tabs: Dict[int, TabHandle] = {}
        self._ids = itertools.count(1)
        self._active: Optional[int] = None

    def register(self, page: Page, activate: bool = True, **actuator_options) -> TabHandle:
        tab = TabHandle(
            tab_id=next(self._ids),
            page=page,
            channel=ActuatorChannel(PageInterface(page, **actuator_options)),
        )
        self._tabs[tab.tab_id] = tab
        if activate or self._active is None:
            self._active = tab.tab_id
        logger.debug("Registered tab %d", tab.tab_id)
        return tab

    def activate(self, tab_id: int) -> None:
        if tab_id not in self._tabs:
            raise LookupError(f"No tab with id {tab_id}")
        self._active = tab_id

    def remove(self, tab_id: int) -> None:
        self._tabs.pop(tab_id, None)
        if self._active == tab_id:
            self._active = next(iter(self._tabs), None)

    def get(self, tab_id: Optional[int] = None) -> TabHandle:
        """Return the tab with ``tab_id``, or the active tab when omitted."""
        key = self._active if tab_id is None else tab_id
        if key is None or key not in self._tabs:
            raise LookupError(f"No tab with id {key}")
        return self._tabs[key]
