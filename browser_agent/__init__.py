"""Browser Agent package

Modules:
- models: data models (turns, tool calls, page model, actions, results)
- tools: browser tool schemas and the tool vocabulary
- completion: streaming completion client and tool-call reconstruction
- perception: page model extraction
- controller: in-page actuator (element resolution and actions)
- channels: typed messages, actuator channel, tabs
- memory: session history, tab-context cache, preferences
- router: agent update delivery to panes
- confirmation: user confirmation gate
- search: web search
- core: the agent orchestrator
- coordinator: message hub owning running invocations
"""

from .channels import ActuatorChannel, TabHandle, TabRegistry, parse_message
from .completion import StreamingCompletionClient, extract_tool_calls_from_text
from .config import AgentSettings
from .confirmation import ConfirmationGate, ConsoleConfirmation, StaticConfirmation
from .controller import PageInterface
from .coordinator import Coordinator
from .core import AgentOrchestrator, InvocationContext
from .errors import AgentError, CredentialMissing, TransportError
from .memory import PreferenceStore, Preferences, SessionMemory
from .models import ActionResult, AgentState, ConversationTurn, PageModel, ToolCall
from .perception import Perception
from .router import MessageRouter
from .search import WebSearch

__all__ = [
    "ActionResult",
    "ActuatorChannel",
    "AgentError",
    "AgentOrchestrator",
    "AgentSettings",
    "AgentState",
    "ConfirmationGate",
    "ConsoleConfirmation",
    "ConversationTurn",
    "Coordinator",
    "CredentialMissing",
    "InvocationContext",
    "MessageRouter",
    "PageInterface",
    "PageModel",
    "Perception",
    "PreferenceStore",
    "Preferences",
    "SessionMemory",
    "StaticConfirmation",
    "StreamingCompletionClient",
    "TabHandle",
    "TabRegistry",
    "ToolCall",
    "TransportError",
    "WebSearch",
    "extract_tool_calls_from_text",
    "parse_message",
]
