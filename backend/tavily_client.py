import logging
from typing import Any, Dict, List, Optional

import httpx

from errors import SearchError

logger = logging.getLogger(__name__)


class TavilySearchClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.tavily.com",
        timeout_seconds: float = 15.0,
        max_results: int = 5,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_results = max_results

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str) -> Dict[str, Any]:
        if not self.enabled:
            raise SearchError("Tavily API key is not configured")
        payload = {
            "query": query,
            "search_depth": "basic",
            "topic": "general",
            "max_results": self.max_results,
            "include_answer": True,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    f"{self.base_url}/search",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code if e.response is not None else "unknown"
            logger.warning("tavily_search_failed status=%s query=%s", status, query)
            raise SearchError() from e
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("tavily_search_failed query=%s error=%s", query, e)
            raise SearchError() from e
        logger.info("tavily_search_ok query=%s results=%s", query, len(data.get("results") or []))
        return data


def format_search_results(data: Dict[str, Any]) -> str:
    """Render a Tavily response as plain text for prompt context."""
    answer: Optional[str] = data.get("answer")
    results: List[Dict[str, Any]] = data.get("results") or []
    lines: List[str] = []
    if answer:
        lines.append(f"Answer: {answer}")
        lines.append("")
    if results:
        lines.append("Sources:")
        for item in results:
            lines.append(f"- Title: {item.get('title', '')}")
            lines.append(f"  URL: {item.get('url', '')}")
            lines.append(f"  Content: {item.get('content', '')}")
    if not lines:
        return "No search results found."
    return "\n".join(lines)
