"""
Web Tools

- web_fetch: GET an http(s) URL; HTML pages are reduced to readable text
"""

import logging
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from tools import tool, tool_error

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_SECONDS = 30.0
MAX_CONTENT_CHARS = 10_000


def _html_to_text(html: str) -> tuple[str | None, str]:
    soup = BeautifulSoup(html, "html.parser")
    for element in soup(["script", "style", "nav", "footer", "header"]):
        element.decompose()
    title = soup.title.string.strip() if soup.title and soup.title.string else None
    return title, soup.get_text(separator="\n", strip=True)


@tool
async def web_fetch(url: str, raw: bool = False) -> dict:
    """Fetch a web page via HTTP/HTTPS.

    Args:
        url: URL to fetch
        raw: Return the body unchanged instead of extracting text from HTML
    """
    parsed = urlparse(url.strip())
    if not parsed.scheme or not parsed.netloc:
        return tool_error(f"Invalid URL format: {url}")
    if parsed.scheme not in ("http", "https"):
        return tool_error(f"URL must use HTTP or HTTPS scheme: {url}")

    try:
        async with httpx.AsyncClient(follow_redirects=True, timeout=FETCH_TIMEOUT_SECONDS) as client:
            response = await client.get(url)
    except httpx.TimeoutException:
        return tool_error(f"Request timed out after {FETCH_TIMEOUT_SECONDS:.0f} seconds", url=url)
    except httpx.HTTPError as e:
        return tool_error(f"Request failed: {e}", url=url)

    if response.is_error:
        return tool_error(f"HTTP {response.status_code}: {response.reason_phrase}", url=url)

    content_type = response.headers.get("content-type", "")
    title = None
    text = response.text
    if not raw and "html" in content_type:
        title, text = _html_to_text(text)

    truncated = len(text) > MAX_CONTENT_CHARS
    if truncated:
        text = text[:MAX_CONTENT_CHARS] + "\n...[truncated]"

    logger.debug("Fetched %s (%s, %d chars)", url, response.status_code, len(text))
    return {
        "url": str(response.url),
        "status": response.status_code,
        "title": title,
        "content": text,
        "truncated": truncated,
    }
