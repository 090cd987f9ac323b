"""
Browser tool definitions.

The schemas are sent to the completion endpoint in OpenAI's function-tool
format. ``TOOL_NAMES`` is the closed vocabulary used both by the orchestrator
dispatch table and by the text fallback extractor of the completion client.
"""

from typing import Any, Dict, List

_TARGET_PROPERTIES: Dict[str, Any] = {
    "element_index": {
        "type": "integer",
        "description": "Index from the interactable elements list returned by read_page",
    },
    "selector": {"type": "string", "description": "CSS selector as fallback"},
    "text": {"type": "string", "description": "Visible text of the element (case-insensitive substring)"},
    "aria_label": {"type": "string", "description": "Exact aria-label of the element"},
}


def _function(name: str, description: str, properties: Dict[str, Any], required: List[str] = None) -> Dict[str, Any]:
    parameters: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        parameters["required"] = required
    return {
        "type": "function",
        "function": {"name": name, "description": description, "parameters": parameters},
    }


BROWSER_TOOLS: List[Dict[str, Any]] = [
    _function(
        "read_page",
        "Read the current page. Always call this first before any other action to understand what is on the page.",
        {},
    ),
    _function(
        "click_element",
        "Click a button, link, or interactive element. Prefer element_index from read_page results; "
        "selector, text or aria_label may be used instead.",
        {
            **_TARGET_PROPERTIES,
            "x": {"type": "integer", "description": "Viewport x coordinate (used only with another hint)"},
            "y": {"type": "integer", "description": "Viewport y coordinate (used only with another hint)"},
            "description": {"type": "string", "description": "Describe what you are clicking (for user display)"},
        },
    ),
    _function(
        "fill_form",
        "Fill in a form field (input, textarea, select). Use field_name (name/id attribute) or selector.",
        {
            "field_name": {"type": "string", "description": "The name or id attribute of the field"},
            "selector": {"type": "string", "description": "CSS selector as fallback"},
            "value": {"type": "string", "description": "The value to fill in"},
        },
        ["value"],
    ),
    _function(
        "navigate",
        "Navigate the browser to a new URL.",
        {"url": {"type": "string", "description": "Full URL including https://"}},
        ["url"],
    ),
    _function(
        "scroll",
        "Scroll the page up or down to reveal more content.",
        {
            "direction": {"type": "string", "enum": ["up", "down"]},
            "pixels": {"type": "integer", "description": "How many pixels to scroll. Default 600."},
        },
        ["direction"],
    ),
    _function(
        "get_text",
        "Extract the visible text of a specific element.",
        dict(_TARGET_PROPERTIES),
    ),
    _function(
        "wait",
        "Wait for a specified number of milliseconds (useful after navigation or clicking async elements).",
        {"ms": {"type": "integer", "description": "Milliseconds to wait (max 5000)"}},
        ["ms"],
    ),
    _function(
        "submit_form",
        "Submit a form on the page. The user may be asked to confirm first.",
        {"selector": {"type": "string", "description": "CSS selector of the form; defaults to the first form"}},
    ),
    _function(
        "web_search",
        "Search the web and return the top result.",
        {"query": {"type": "string", "description": "The search query to look up on the web"}},
        ["query"],
    ),
]

TOOL_NAMES: List[str] = [tool["function"]["name"] for tool in BROWSER_TOOLS]
