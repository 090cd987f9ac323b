"""
Configuration for the browser agent.

Files live in ~/.browser-agent/ (override with BROWSER_AGENT_HOME):
- preferences.yaml  - durable preferences (model, confirmation toggles, keys)
- .env              - API keys, loaded into the environment
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .completion import DEFAULT_BASE_URL

DEFAULT_MODEL = "meta/llama-3.3-70b-instruct"

# Known-good model ids; "ollama/" models run against a local server.
NIM_MODELS = {
    "fast": "meta/llama-3.1-8b-instruct",
    "smart": DEFAULT_MODEL,
    "large": "meta/llama-4-maverick-17b-128e-instruct",
    "coder": "qwen/qwen2.5-coder-32b-instruct",
    "reason": "nvidia/llama-3.1-nemotron-70b-instruct",
    "local-llama3": "ollama/llama3",
    "local-mistral": "ollama/mistral",
}


def get_agent_home() -> Path:
    return Path(os.getenv("BROWSER_AGENT_HOME", Path.home() / ".browser-agent"))


def get_preferences_path() -> Path:
    return get_agent_home() / "preferences.yaml"


def get_env_path() -> Path:
    return get_agent_home() / ".env"


def load_env() -> None:
    """Load API keys from ~/.browser-agent/.env, then from ./.env."""
    env_path = get_env_path()
    if env_path.exists():
        load_dotenv(env_path)
    load_dotenv()


@dataclass
class AgentSettings:
    """Loop limits and settle delays (milliseconds unless noted)."""
    max_iterations: int = 15
    click_settle_ms: int = 500
    navigate_settle_ms: int = 2500
    wait_cap_ms: int = 5000
    context_max_age_ms: int = 30000
    temperature: float = 0.2
    # Seconds; None waits for the user indefinitely.
    confirmation_timeout: Optional[float] = None
    completion_base_url: str = field(default_factory=lambda: os.getenv("NIM_BASE_URL", DEFAULT_BASE_URL))


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Keep transport chatter out of the console
    logging.getLogger("httpx").setLevel(logging.WARNING)
