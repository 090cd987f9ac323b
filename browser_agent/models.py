"""Data models shared by the agent components."""

import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

MAX_HEADINGS = 15
MAX_INTERACTABLE = 40
MAX_FORMS = 5
MAX_MAIN_TEXT = 4000


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


@dataclass
class ConversationTurn:
    """One entry of the conversation transcript."""
    role: str  # user|assistant|tool
    content: Optional[str]
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, Any]:
        """Render the turn in chat-completions message format."""
        message: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.role == "assistant" and self.tool_calls:
            message["tool_calls"] = [call.to_message() for call in self.tool_calls]
        if self.role == "tool":
            message["tool_call_id"] = self.tool_call_id
        return message


@dataclass
class CompletionResult:
    """Text and tool calls reconstructed from one completion."""
    text: str
    tool_calls: List[ToolCall]
    finish_reason: Optional[str] = None


@dataclass
class Heading:
    tag: str
    text: str


@dataclass
class InteractableElement:
    """An element the model can address by its enumeration index."""
    index: int
    tag: str
    input_type: Optional[str]
    role: Optional[str]
    label: Optional[str]
    name: Optional[str]
    href: Optional[str]
    value: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "tag": self.tag,
            "inputType": self.input_type,
            "role": self.role,
            "label": self.label,
            "name": self.name,
            "href": self.href,
            "value": self.value,
        }


@dataclass
class FormField:
    name: Optional[str]
    type: Optional[str]
    placeholder: Optional[str]
    required: bool


@dataclass
class FormSummary:
    id: Optional[str]
    action: Optional[str]
    fields: List[FormField] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "fields": [
                {"name": f.name, "type": f.type, "placeholder": f.placeholder, "required": f.required}
                for f in self.fields
            ],
        }


@dataclass
class PageModel:
    """Token-bounded summary of a document."""
    url: str
    title: str
    headings: List[Heading] = field(default_factory=list)
    interactable: List[InteractableElement] = field(default_factory=list)
    forms: List[FormSummary] = field(default_factory=list)
    main_text: str = ""
    page_height: int = 0
    scroll_y: int = 0
    error: Optional[str] = None

    @classmethod
    def placeholder(cls, error: str = "Could not read page") -> "PageModel":
        """Degraded context used when the page cannot be read."""
        return cls(url="unknown", title="unknown", error=error)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "url": self.url,
            "title": self.title,
            "headings": [{"tag": h.tag, "text": h.text} for h in self.headings],
            "interactableElements": [el.to_dict() for el in self.interactable],
            "forms": [form.to_dict() for form in self.forms],
            "mainText": self.main_text,
            "pageHeight": self.page_height,
            "scrollY": self.scroll_y,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class TargetHints:
    """Ways of pointing at an element, tried in field order."""
    selector: Optional[str] = None
    index: Optional[int] = None
    text: Optional[str] = None
    aria_label: Optional[str] = None
    x: Optional[int] = None
    y: Optional[int] = None

    def has_element_hint(self) -> bool:
        return bool(self.selector or self.index is not None or self.text or self.aria_label)

    def describe(self) -> str:
        if self.selector:
            return self.selector
        if self.index is not None:
            return f"element #{self.index}"
        if self.text:
            return f'"{self.text}"'
        if self.aria_label:
            return f"[aria-label={self.aria_label}]"
        if self.x is not None and self.y is not None:
            return f"point ({self.x}, {self.y})"
        return "(no target)"

    def to_js(self) -> Dict[str, Any]:
        return {
            "selector": self.selector,
            "index": self.index,
            "text": self.text,
            "ariaLabel": self.aria_label,
            "x": self.x,
            "y": self.y,
        }


@dataclass
class ClickAction:
    kind: ClassVar[str] = "click"
    target: TargetHints = field(default_factory=TargetHints)


@dataclass
class FillFormAction:
    kind: ClassVar[str] = "fill_form"
    value: str = ""
    selector: Optional[str] = None
    field_name: Optional[str] = None


@dataclass
class ScrollAction:
    kind: ClassVar[str] = "scroll"
    delta: int = 600


@dataclass
class NavigateAction:
    kind: ClassVar[str] = "navigate"
    url: str = ""


@dataclass
class GetTextAction:
    kind: ClassVar[str] = "get_text"
    target: TargetHints = field(default_factory=TargetHints)


@dataclass
class SubmitFormAction:
    kind: ClassVar[str] = "submit_form"
    selector: Optional[str] = None


ActionRequest = Union[ClickAction, FillFormAction, ScrollAction, NavigateAction, GetTextAction, SubmitFormAction]

ACTION_TYPES = {
    cls.kind: cls
    for cls in (ClickAction, FillFormAction, ScrollAction, NavigateAction, GetTextAction, SubmitFormAction)
}


def action_to_dict(action: ActionRequest) -> Dict[str, Any]:
    return {"type": action.kind, **asdict(action)}


def action_from_dict(data: Dict[str, Any]) -> ActionRequest:
    """Rebuild a typed action from its wire form; raises ValueError/TypeError when malformed."""
    fields = dict(data)
    kind = fields.pop("type", None)
    cls = ACTION_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown action type: {kind}")
    if isinstance(fields.get("target"), dict):
        fields["target"] = TargetHints(**fields["target"])
    return cls(**fields)


@dataclass
class ActionResult:
    """Structured outcome of an action; produced for every dispatched action."""
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ok(cls, **data) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "ActionResult":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, **self.data}
        return {"success": False, "error": self.error}


class AgentState(Enum):
    """States of one agent invocation."""
    INIT = "init"
    THINKING = "thinking"
    TOOL_DISPATCH = "tool_dispatch"
    DONE = "done"
    ERROR = "error"
    ITERATION_LIMIT = "iteration_limit"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (
            AgentState.DONE,
            AgentState.ERROR,
            AgentState.ITERATION_LIMIT,
            AgentState.CANCELLED,
        )


@dataclass
class AgentUpdate:
    """Lifecycle event addressed to one presentation pane."""
    target_pane: str
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        return {"type": "AGENT_UPDATE", "targetPane": self.target_pane, "event": self.event, **self.payload}
