"""Web fetch tool for retrieving web page content."""

import re
import time
from typing import Any
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from ideacode import __version__
from ideacode.config import get_config
from ideacode.logging import get_logger
from ideacode.tools.registry import Tool, ToolResult

log = get_logger(__name__)

FETCH_CACHE_TTL_SECONDS = 5 * 60
_NOISE_TAGS = ["script", "style", "noscript", "template", "svg", "canvas", "nav", "header", "footer", "form", "aside"]

_fetch_cache: dict[str, tuple[float, str]] = {}


def get_cached_fetch(url: str, now: float | None = None) -> str | None:
    entry = _fetch_cache.get(url)
    if entry is None:
        return None
    cached_at, value = entry
    current = time.monotonic() if now is None else now
    if current - cached_at > FETCH_CACHE_TTL_SECONDS:
        _fetch_cache.pop(url, None)
        return None
    return value


def set_cached_fetch(url: str, value: str, now: float | None = None) -> None:
    current = time.monotonic() if now is None else now
    expired = [key for key, (cached_at, _) in _fetch_cache.items() if current - cached_at > FETCH_CACHE_TTL_SECONDS]
    for key in expired:
        del _fetch_cache[key]
    _fetch_cache[url] = (current, value)


def clear_fetch_cache() -> None:
    _fetch_cache.clear()


def clip_output(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + f"\n\n... (truncated, total {len(text)} chars)"


def extract_readable_text(html: str, base_url: str | None = None) -> str:
    """Extract human-readable text from raw HTML, preferring <article>/<main>."""
    soup = BeautifulSoup(html, "html.parser")

    title = ""
    if soup.title and soup.title.string:
        title = soup.title.string.strip()

    focus = soup.find("article") or soup.find("main") or soup
    for tag in focus(_NOISE_TAGS):
        tag.decompose()

    # Keep links in the text so later turns can cite them.
    for anchor in focus.find_all("a"):
        href = (anchor.get("href") or "").strip()
        label = anchor.get_text(" ", strip=True)
        if not href:
            continue
        absolute = urljoin(base_url, href) if base_url else href
        anchor.replace_with(f"{label} ({absolute})" if label else absolute)

    lines: list[str] = []
    for line in focus.get_text(separator="\n").splitlines():
        cleaned = re.sub(r"\s+", " ", line).strip()
        if cleaned:
            lines.append(cleaned)

    text = "\n".join(lines)
    if title and not text.startswith(title):
        return f"{title}\n\n{text}" if text else title
    return text


class WebFetchTool(Tool):
    """Fetch web page content."""

    name = "web_fetch"
    description = (
        "Fetch a URL and return the main text content. Use for docs, raw GitHub, "
        "any web page."
    )
    parameters = {
        "type": "object",
        "properties": {
            "url": {
                "type": "string",
                "description": "URL to fetch",
            },
        },
        "required": ["url"],
    }

    def __init__(self, client: httpx.AsyncClient | None = None):
        cfg = get_config().tools.web_fetch
        self.max_chars = max(1, int(cfg.max_chars))
        self.timeout_seconds = float(cfg.timeout) + 5.0
        self.client = client or httpx.AsyncClient(
            timeout=float(cfg.timeout),
            follow_redirects=True,
            headers={"User-Agent": f"ideacode/{__version__} (Web Fetch Tool)"},
        )

    async def execute(self, url: str, **kwargs: Any) -> ToolResult:
        """Fetch a page and return readable text (cached for five minutes)."""
        target = (url or "").strip()
        if not re.match(r"^https?://", target, re.IGNORECASE):
            return ToolResult(success=False, error=f"Unsupported URL: {url}")

        cached = get_cached_fetch(target)
        if cached is not None:
            log.debug("Web fetch cache hit", url=target)
            return ToolResult(success=True, content=cached)

        try:
            log.info("Fetching URL", url=target)
            response = await self.client.get(target)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            log.error("HTTP fetch failed", url=target, status=e.response.status_code)
            return ToolResult(success=False, error=f"HTTP {e.response.status_code} for {target}")
        except httpx.HTTPError as e:
            log.error("HTTP fetch failed", url=target, error=str(e))
            return ToolResult(success=False, error=f"HTTP error: {e}")

        content_type = response.headers.get("content-type", "").lower()
        if "html" in content_type or (not content_type and "<html" in response.text[:500].lower()):
            text = extract_readable_text(response.text, base_url=str(response.url))
        else:
            text = response.text.strip()

        output = clip_output(text or "(empty)", self.max_chars)
        set_cached_fetch(target, output)
        return ToolResult(success=True, content=output)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
