import html
import logging
import re
from typing import Optional
from urllib.parse import urlparse

import httpx
import trafilatura

from .errors import ToolFailure
from .tavily import TavilyClient, page_text

logger = logging.getLogger("uvicorn.error")

USER_AGENT = "Mozilla/5.0 (compatible; TurnPilot/0.1; +https://github.com/turnpilot)"


def normalize_whitespace(text: str) -> str:
    text = text.replace("\r", "\n")
    text = re.sub(r"[\t\x0b\x0c ]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def strip_markup(raw_html: str) -> str:
    text = re.sub(r"<script[^>]*>.*?</script>", " ", raw_html, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<style[^>]*>.*?</style>", " ", text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<[^>]+>", " ", text)
    return html.unescape(text)


def clean_html(raw_html: str) -> str:
    """Main-content text of a page, falling back to tag stripping."""
    extracted = trafilatura.extract(
        raw_html,
        include_comments=False,
        include_tables=True,
        include_images=False,
        include_links=False,
        favor_precision=True,
        output_format="txt",
    )
    text = extracted if extracted else strip_markup(raw_html)
    return normalize_whitespace(text)


def is_valid_url(url: Optional[str]) -> bool:
    if not url:
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class UrlReader:
    def __init__(
        self,
        tavily: Optional[TavilyClient] = None,
        max_chars: int = 12000,
        extract_depth: str = "basic",
        timeout: float = 20.0,
    ):
        self.tavily = tavily
        self.max_chars = max_chars
        self.extract_depth = extract_depth
        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    async def _extract_with_tavily(self, url: str) -> str:
        if self.tavily is None or not self.tavily.enabled:
            return ""
        resp = await self.tavily.extract([url], extract_depth=self.extract_depth)
        if resp.get("error"):
            logger.warning("Tavily extract failed for %s: %s", url, resp.get("error"))
            return ""
        return normalize_whitespace(page_text(resp))

    async def _fetch_direct(self, url: str) -> str:
        try:
            resp = await self.client.get(url)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ToolFailure(f"The page returned HTTP {exc.response.status_code}.") from exc
        except httpx.RequestError as exc:
            raise ToolFailure(f"Could not reach {url}.") from exc
        content_type = resp.headers.get("content-type", "")
        if "html" in content_type or not content_type:
            return clean_html(resp.text)
        if content_type.startswith("text/") or "json" in content_type:
            return normalize_whitespace(resp.text)
        raise ToolFailure(f"Unsupported content type: {content_type}.")

    async def fetch(self, url: str) -> str:
        """Fetch a page and return cleaned text. Raises ToolFailure when nothing usable comes back."""
        url = (url or "").strip()
        if not is_valid_url(url):
            raise ToolFailure("No valid URL was provided for the URL Reader tool.")
        text = await self._extract_with_tavily(url)
        if not text:
            text = await self._fetch_direct(url)
        if not text:
            raise ToolFailure(f"No readable content was found at {url}.")
        return text[: self.max_chars]

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
