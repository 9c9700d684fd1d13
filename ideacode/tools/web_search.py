"""Web search tool powered by Brave Search API."""

import re
from typing import Any

import httpx

from ideacode import __version__
from ideacode.config import get_config
from ideacode.logging import get_logger
from ideacode.tools.registry import Tool, ToolResult

log = get_logger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")


def _clean_text(value: str, max_chars: int = 300) -> str:
    """Strip markup, normalize whitespace and bound output size."""
    cleaned = re.sub(r"\s+", " ", _TAG_RE.sub("", value or "")).strip()
    return cleaned[:max_chars]


def format_search_results(results: list[dict[str, Any]], max_results: int) -> str:
    """Render hits as ``i. title`` / url / snippet blocks."""
    blocks: list[str] = []
    for idx, item in enumerate(results[:max_results], start=1):
        title = _clean_text(str(item.get("title") or "Untitled"), max_chars=180) or "Untitled"
        link = str(item.get("url") or "").strip()
        snippet = _clean_text(str(item.get("description") or item.get("snippet") or ""))
        block = f"{idx}. {title}\n   {link}"
        if snippet:
            block += f"\n   {snippet}"
        blocks.append(block)
    return "\n\n".join(blocks)


class WebSearchTool(Tool):
    """Search the web using Brave Search API."""

    name = "web_search"
    description = (
        "Search the web and return ranked results (title, url, snippet). Use for "
        "current info, docs, GitHub repos."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Search query text",
            },
        },
        "required": ["query"],
    }

    def __init__(self, client: httpx.AsyncClient | None = None):
        self.client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": f"ideacode/{__version__} (Web Search Tool)"},
        )

    async def execute(self, query: str, **kwargs: Any) -> ToolResult:
        """Execute Brave web search."""
        q = (query or "").strip()
        if not q:
            return ToolResult(success=False, error="Missing required query")

        search_cfg = get_config().tools.web_search
        api_key = search_cfg.api_key.strip()
        if not api_key:
            return ToolResult(
                success=False,
                error="Brave Search API key not set. Set BRAVE_API_KEY to enable web search.",
            )

        max_results = min(max(int(search_cfg.max_results), 1), 20)
        try:
            response = await self.client.get(
                search_cfg.base_url,
                params={"q": q, "count": max_results},
                headers={"Accept": "application/json", "X-Subscription-Token": api_key},
                timeout=float(search_cfg.timeout),
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            detail = f"HTTP {e.response.status_code}"
            body = _clean_text(e.response.text or "")
            if body:
                detail = f"{detail}: {body}"
            log.error("Brave web search failed", query=q, error=detail)
            return ToolResult(success=False, error=detail)
        except (httpx.HTTPError, ValueError) as e:
            log.error("Web search failed", query=q, error=str(e))
            return ToolResult(success=False, error=str(e))

        web_block = payload.get("web", {}) if isinstance(payload, dict) else {}
        results = web_block.get("results", []) if isinstance(web_block, dict) else []
        hits = [item for item in results if isinstance(item, dict)] if isinstance(results, list) else []
        if not hits:
            return ToolResult(success=True, content="No results found.")
        return ToolResult(success=True, content=format_search_results(hits, max_results))

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()
