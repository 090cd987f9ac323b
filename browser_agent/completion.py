"""Completion client: calls an OpenAI-compatible endpoint and rebuilds tool calls.

Streaming responses are read frame by frame so that one corrupt ``data:``
line does not cost the whole turn. Tool-call fragments are merged by their
position index because ids and argument strings may be split across frames.
When the model writes its tool call into the text instead of the native
channel, ``extract_tool_calls_from_text`` recovers it.
"""

import inspect
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional

import httpx
import openai
from openai import AsyncOpenAI

from .errors import CredentialMissing, TransportError
from .models import CompletionResult, ToolCall
from .tools import TOOL_NAMES

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://integrate.api.nvidia.com/v1"
LOCAL_BASE_URL = "http://localhost:11434/v1"
LOCAL_MODEL_PREFIX = "ollama/"
LOCAL_API_KEY = "proxy"
DONE_SENTINEL = "[DONE]"

_NAME_FIELD = re.compile(r'"name"\s*:\s*"(\w+)"')


def parse_arguments(raw: Any) -> Dict[str, Any]:
    """Parse a serialized argument object; anything unparsable becomes ``{}``."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.debug("Tool arguments are not valid JSON: %.120s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index just past the ``}`` closing the ``{`` at ``start``, string-aware."""
    depth = 0
    in_string = False
    escaped = False
    for pos in range(start, len(text)):
        ch = text[pos]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return pos + 1
    return None


def _extract_json_calls(text: str, known_tools: List[str]) -> List[ToolCall]:
    calls: List[ToolCall] = []
    pos = text.find("{")
    while pos != -1:
        end = _balanced_end(text, pos)
        if end is None:
            pos = text.find("{", pos + 1)
            continue
        fragment = text[pos:end]
        match = _NAME_FIELD.search(fragment)
        if not match or match.group(1) not in known_tools:
            pos = text.find("{", pos + 1)
            continue
        name = match.group(1)
        arguments: Dict[str, Any] = {}
        try:
            parsed = json.loads(fragment)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict) and parsed.get("name") in known_tools:
            name = parsed["name"]
            arguments = parse_arguments(parsed.get("arguments", parsed.get("parameters")))
        calls.append(ToolCall(id=f"extracted_{len(calls)}", name=name, arguments=arguments))
        pos = text.find("{", end)
    return calls


def _extract_call_syntax(text: str, known_tools: List[str]) -> List[ToolCall]:
    calls: List[ToolCall] = []
    for tool in known_tools:
        for match in re.finditer(rf"\b{re.escape(tool)}\s*\(([^)]*)\)", text):
            calls.append(
                ToolCall(id=f"extracted_{len(calls)}", name=tool, arguments=parse_arguments(match.group(1)))
            )
    return calls


def extract_tool_calls_from_text(text: str, known_tools: List[str] = TOOL_NAMES) -> List[ToolCall]:
    """Recover tool calls a model wrote into plain text.

    Two passes, the first one that finds anything wins:
      1. ``{...}`` fragments with a ``"name"`` naming a known tool.
      2. ``tool_name(...)`` call syntax.
    """
    if not text:
        return []
    return _extract_json_calls(text, known_tools) or _extract_call_syntax(text, known_tools)


class StreamAssembler:
    """Accumulates text and indexed tool-call fragments from SSE lines."""

    def __init__(self):
        self.text = ""
        self.finish_reason: Optional[str] = None
        self.done = False
        self._partials: Dict[int, Dict[str, str]] = {}

    def feed_line(self, line: str) -> Optional[str]:
        """Consume one line; returns the text delta it carried, if any."""
        line = line.strip()
        if not line.startswith("data:"):
            return None
        data = line[len("data:"):].strip()
        if data == DONE_SENTINEL:
            self.done = True
            return None
        try:
            frame = json.loads(data)
            choice = frame["choices"][0]
            delta = choice.get("delta") or {}
            content = delta.get("content")
            fragments = [
                (tc.get("index", position), tc.get("id"), tc.get("function") or {})
                for position, tc in enumerate(delta.get("tool_calls") or [])
            ]
        except (ValueError, KeyError, IndexError, TypeError, AttributeError):
            logger.debug("Skipping malformed stream frame: %.120s", data)
            return None

        self.finish_reason = choice.get("finish_reason") or self.finish_reason
        for index, call_id, function in fragments:
            partial = self._partials.setdefault(index, {"id": "", "name": "", "arguments": ""})
            if call_id and not partial["id"]:
                partial["id"] = call_id
            partial["name"] += function.get("name") or ""
            partial["arguments"] += function.get("arguments") or ""
        if content:
            self.text += content
            return content
        return None

    def tool_calls(self) -> List[ToolCall]:
        calls: List[ToolCall] = []
        seen = set()
        for index in sorted(self._partials):
            partial = self._partials[index]
            call_id = partial["id"]
            if not call_id or call_id in seen:
                call_id = f"call_{index}"
            seen.add(call_id)
            calls.append(ToolCall(id=call_id, name=partial["name"], arguments=parse_arguments(partial["arguments"])))
        return calls


class StreamingCompletionClient:
    """Chat-completions client with streaming tool-call reconstruction."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None,
        known_tools: List[str] = TOOL_NAMES,
    ):
        self.base_url = base_url or DEFAULT_BASE_URL
        self.timeout = timeout
        self.http_client = http_client
        self.known_tools = known_tools

    def _make_client(self, model: str, credential: Optional[str]):
        if model.startswith(LOCAL_MODEL_PREFIX):
            return (
                AsyncOpenAI(api_key=LOCAL_API_KEY, base_url=LOCAL_BASE_URL, max_retries=0,
                            timeout=self.timeout, http_client=self.http_client),
                model[len(LOCAL_MODEL_PREFIX):],
            )
        if not credential:
            raise CredentialMissing("Completion API key not set. Configure it in the preferences file or .env.")
        return (
            AsyncOpenAI(api_key=credential, base_url=self.base_url, max_retries=0,
                        timeout=self.timeout, http_client=self.http_client),
            model,
        )

    async def complete(
        self,
        credential: Optional[str],
        model: str,
        messages: List[Dict[str, Any]],
        tool_schemas: Optional[List[Dict[str, Any]]] = None,
        system_preamble: Optional[str] = None,
        token_budget: int = 1024,
        temperature: float = 0.2,
        on_text: Optional[Callable[[str], Any]] = None,
    ) -> CompletionResult:
        """
        Run one completion. Streams when ``on_text`` is given, forwarding each
        text delta to it; otherwise performs a single request/response.
        """
        client, resolved_model = self._make_client(model, credential)
        if system_preamble:
            messages = [{"role": "system", "content": system_preamble}, *messages]
        body: Dict[str, Any] = {"model": resolved_model, "messages": messages}
        if tool_schemas:
            body["tools"] = tool_schemas
            body["tool_choice"] = "auto"
        body["max_tokens"] = token_budget
        body["temperature"] = temperature
        body["stream"] = on_text is not None

        try:
            if on_text is None:
                return await self._complete_once(client, body)
            return await self._complete_streaming(client, body, on_text)
        except openai.APIStatusError as e:
            raise TransportError(e.status_code, _error_body(e)) from e
        except openai.APIConnectionError as e:
            raise TransportError(0, str(e)) from e
        finally:
            # http_client is owned by the caller when injected
            if self.http_client is None:
                await client.close()

    async def _complete_streaming(self, client: AsyncOpenAI, body: Dict[str, Any], on_text) -> CompletionResult:
        assembler = StreamAssembler()
        async with client.chat.completions.with_streaming_response.create(**body) as response:
            async for line in response.iter_lines():
                delta = assembler.feed_line(line)
                if delta:
                    notified = on_text(delta)
                    if inspect.isawaitable(notified):
                        await notified
                if assembler.done:
                    break

        tool_calls = assembler.tool_calls()
        if not tool_calls and assembler.text:
            tool_calls = extract_tool_calls_from_text(assembler.text, self.known_tools)
            if tool_calls:
                logger.info("Extracted tool calls from text fallback: %s", [c.name for c in tool_calls])
        return CompletionResult(text=assembler.text, tool_calls=tool_calls, finish_reason=assembler.finish_reason)

    async def _complete_once(self, client: AsyncOpenAI, body: Dict[str, Any]) -> CompletionResult:
        completion = await client.chat.completions.create(**body)
        if not completion.choices:
            return CompletionResult(text="", tool_calls=[], finish_reason=None)
        choice = completion.choices[0]
        tool_calls = []
        for position, call in enumerate(choice.message.tool_calls or []):
            function = getattr(call, "function", None)
            if function is None:
                continue
            tool_calls.append(
                ToolCall(
                    id=call.id or f"call_{position}",
                    name=function.name,
                    arguments=parse_arguments(function.arguments),
                )
            )
        return CompletionResult(
            text=choice.message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason,
        )


def _error_body(error: openai.APIStatusError) -> str:
    try:
        return error.response.text
    except httpx.ResponseNotRead:
        return error.message
