"""Memory: bounded conversation history, tab-context cache and durable preferences."""

import copy
import logging
import os
import time
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from .config import DEFAULT_MODEL, get_preferences_path
from .models import ConversationTurn

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20
CONTEXT_MAX_AGE_MS = 30000

# History is keyed by (tab id, pane) so two panes on one tab never share a transcript.
HistoryKey = Tuple[int, str]


class SessionMemory:
    """Process-scoped storage; everything here is gone when the process exits."""

    def __init__(self, history_limit: int = HISTORY_LIMIT, clock: Callable[[], float] = time.monotonic):
        self.history_limit = history_limit
        self._clock = clock
        self._history: Dict[HistoryKey, List[ConversationTurn]] = {}
        self._contexts: Dict[int, Tuple[float, Dict[str, Any]]] = {}

    def append(self, key: HistoryKey, turn: ConversationTurn) -> None:
        """Store a timestamped copy of ``turn``, keeping only the newest entries."""
        history = self._history.setdefault(key, [])
        history.append(replace(turn, timestamp=time.time(), tool_calls=list(turn.tool_calls)))
        del history[:-self.history_limit]

    def get_history(self, key: HistoryKey) -> List[ConversationTurn]:
        return list(self._history.get(key, []))

    def clear_history(self, tab_id: int, pane: Optional[str] = None) -> int:
        """Drop the history of one pane, or of every pane on the tab."""
        keys = [k for k in self._history if k[0] == tab_id and (pane is None or k[1] == pane)]
        for key in keys:
            del self._history[key]
        return len(keys)

    def cache_tab_context(self, tab_id: int, context: Dict[str, Any]) -> None:
        self._contexts[tab_id] = (self._clock(), copy.deepcopy(context))

    def get_cached_tab_context(self, tab_id: int, max_age_ms: int = CONTEXT_MAX_AGE_MS) -> Optional[Dict[str, Any]]:
        cached = self._contexts.get(tab_id)
        if cached is None:
            return None
        cached_at, context = cached
        if (self._clock() - cached_at) * 1000 > max_age_ms:
            return None
        return copy.deepcopy(context)

    def all_tab_contexts(self, max_age_ms: int = CONTEXT_MAX_AGE_MS) -> Dict[int, Dict[str, Any]]:
        """Fresh cached contexts of every tab, for reasoning across tabs."""
        contexts = {}
        for tab_id in list(self._contexts):
            context = self.get_cached_tab_context(tab_id, max_age_ms)
            if context is not None:
                contexts[tab_id] = context
        return contexts


@dataclass
class Preferences:
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    max_tokens: int = 1024
    confirm_navigation: bool = False
    confirm_form_submission: bool = True
    search_api_key: Optional[str] = None


# Environment variables win over the preferences file.
_ENV_OVERRIDES = {
    "api_key": "NIM_API_KEY",
    "model": "BROWSER_AGENT_MODEL",
    "search_api_key": "FIRECRAWL_API_KEY",
}


class PreferenceStore:
    """Durable preferences kept in a YAML file."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else get_preferences_path()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with open(self.path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed preferences file %s", self.path)
            return {}
        return data

    def load(self) -> Preferences:
        data = self._read()
        known = {f.name for f in fields(Preferences)}
        values = {k: v for k, v in data.items() if k in known}
        for name, env_var in _ENV_OVERRIDES.items():
            if os.getenv(env_var):
                values[name] = os.getenv(env_var)
        return Preferences(**values)

    def save(self, key: str, value: Any) -> None:
        if key not in {f.name for f in fields(Preferences)}:
            raise KeyError(f"Unknown preference: {key}")
        data = self._read()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        logger.info("Saved preference %s", key)
