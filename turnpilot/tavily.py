import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger("uvicorn.error")

TAVILY_BASE_URL = "https://api.tavily.com"
SEARCH_TOPICS = {"general", "news", "finance"}


def failure(kind: str, **detail: Any) -> Dict[str, Any]:
    return {"error": kind, **detail}


def page_text(resp: Dict[str, Any]) -> str:
    """First non-empty page body from an extract response."""
    for item in resp.get("results") or []:
        raw = item.get("raw_content") or item.get("content") or ""
        if raw.strip():
            return raw
    return ""


class TavilyClient:
    """Search and extract calls. Failures come back as ``{"error": ...}`` dicts instead of raising."""

    def __init__(self, api_key: Optional[str], base_url: str = TAVILY_BASE_URL, timeout: float = 60.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=8, max_keepalive_connections=4),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = 5,
        topic: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"query": query, "search_depth": search_depth, "max_results": max_results}
        cleaned = (topic or "").strip().lower()
        if cleaned in SEARCH_TOPICS:
            payload["topic"] = cleaned
        return await self._post("search", payload)

    async def extract(self, urls: List[str], extract_depth: str = "basic") -> Dict[str, Any]:
        return await self._post("extract", {"urls": urls, "extract_depth": extract_depth})

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.enabled:
            return failure("missing_api_key")
        # Dev keys are read from the JSON body; the header covers newer accounts.
        body = {**payload, "api_key": self.api_key}
        headers = {"Content-Type": "application/json", "X-API-Key": self.api_key}
        try:
            resp = await self.client.post(f"{self.base_url}/{endpoint}", json=body, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            logger.warning("Tavily %s returned HTTP %s", endpoint, e.response.status_code)
            return failure("http_status", status_code=e.response.status_code, detail=detail)
        except httpx.RequestError as e:
            logger.warning("Tavily %s request failed: %s", endpoint, e)
            return failure("request_failed", detail=str(e))

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
