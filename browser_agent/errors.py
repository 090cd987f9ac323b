"""Error taxonomy for the agent.

Provider failures (``CredentialMissing``, ``TransportError``) are raised and
end the current invocation. The remaining classes describe per-tool failures;
they are raised inside the actuator and the tool handlers and converted to
structured ``{"success": False, "error": ...}`` results before they reach the
model.
"""


class AgentError(Exception):
    """Base class for every error raised by this package."""


class CredentialMissing(AgentError):
    """No credential configured for a hosted completion model."""


class TransportError(AgentError):
    """The completion endpoint answered with a non-success status."""

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"API error {status}: {body}")


class ElementNotFound(AgentError):
    """No targeting strategy resolved an element."""


class PermissionDenied(AgentError):
    """The user declined a gated action."""


class UnknownTool(AgentError):
    """The model asked for a tool outside the known vocabulary."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class IterationLimitExceeded(AgentError):
    """The agent loop reached its iteration ceiling."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Maximum iterations ({limit}) reached. Task may be incomplete.")
