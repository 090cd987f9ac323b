"""Web search through Firecrawl."""

import asyncio
import logging
from typing import Any, Dict, List

from firecrawl import Firecrawl

logger = logging.getLogger(__name__)


def _web_results(response: Any) -> List[Dict[str, Any]]:
    """Normalize a Firecrawl search response (SearchData, model or dict) into dicts."""
    if hasattr(response, "web"):
        items = response.web or []
    elif hasattr(response, "model_dump"):
        items = response.model_dump().get("web") or []
    elif isinstance(response, dict):
        items = response.get("web") or []
    else:
        items = []

    results = []
    for item in items:
        if hasattr(item, "model_dump"):
            results.append(item.model_dump())
        elif isinstance(item, dict):
            results.append(item)
        elif hasattr(item, "__dict__"):
            results.append(dict(item.__dict__))
    return results


class WebSearch:
    """Returns the provider's first answer for a query."""

    def __init__(self, limit: int = 3):
        self.limit = limit

    def _search(self, query: str, api_key: str) -> Any:
        return Firecrawl(api_key=api_key).search(query=query, limit=self.limit)

    async def search(self, query: str, api_key: str) -> Dict[str, Any]:
        logger.info("Searching the web for %r", query)
        response = await asyncio.to_thread(self._search, query, api_key)
        results = _web_results(response)
        if not results:
            return {"success": False, "error": f"No search results for: {query}"}
        first = results[0]
        return {
            "success": True,
            "query": query,
            "title": first.get("title"),
            "url": first.get("url"),
            "answer": first.get("description"),
        }
