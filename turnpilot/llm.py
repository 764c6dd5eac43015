import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx

from .errors import StreamFailure
from .schemas import GroundingSource, Usage

logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant"}


@dataclass
class StreamChunk:
    text: str = ""
    usage: Optional[Usage] = None
    sources: List[GroundingSource] = field(default_factory=list)


def message_content(data: Dict[str, Any]) -> str:
    """Text of the first choice of a non-streaming completion."""
    choices = data.get("choices") or []
    if not choices:
        return ""
    message = choices[0].get("message") or {}
    content = message.get("content")
    if not content:
        content = message.get("reasoning") or message.get("reasoning_content") or ""
    return str(content)


def parse_usage(data: Dict[str, Any]) -> Optional[Usage]:
    usage = data.get("usage")
    if not isinstance(usage, dict):
        return None
    return Usage(
        prompt_token_count=int(usage.get("prompt_tokens") or 0),
        candidates_token_count=int(usage.get("completion_tokens") or 0),
    )


def stream_error_text(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error.get("type") or "model server error")
    return str(error)


class LMStudioClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        timeout: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if isinstance(content, str):
                if not content.strip():
                    continue
            elif isinstance(content, list):
                content = [
                    item
                    for item in content
                    if isinstance(item, dict) and item.get("type") and (item.get("text") or item.get("image_url"))
                ]
                if not content:
                    continue
            else:
                continue
            sanitized.append({"role": role, "content": content})
        return sanitized

    def _build_payload(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float,
        max_tokens: int,
        stream: bool,
    ) -> Dict[str, Any]:
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens, self.max_output_tokens)
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        if not model:
            raise ValueError("model is required")
        payload: Dict[str, Any] = {
            "model": model,
            "messages": cleaned,
            "temperature": temperature,
            "max_tokens": final_max_tokens,
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 1024,
        json_mode: bool = False,
    ) -> Dict[str, Any]:
        payload = self._build_payload(model, messages, temperature, max_tokens, stream=False)
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload, headers=self._headers())
        resp.raise_for_status()
        return resp.json()

    async def stream_chat(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> AsyncGenerator[StreamChunk, None]:
        payload = self._build_payload(model, messages, temperature, max_tokens, stream=True)
        url = f"{self.base_url}/chat/completions"
        async with self.client.stream("POST", url, json=payload, headers=self._headers()) as response:
            response.raise_for_status()
            try:
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = line[len("data:"):].strip()
                    if chunk == "[DONE]":
                        break
                    try:
                        data = json.loads(chunk)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed stream line: %s", chunk[:200])
                        continue
                    if not isinstance(data, dict):
                        continue
                    if data.get("error"):
                        raise StreamFailure(stream_error_text(data["error"]))
                    usage = parse_usage(data)
                    choices = data.get("choices") or [{}]
                    delta_obj = choices[0].get("delta") or {}
                    delta = delta_obj.get("content") or ""
                    if delta or usage is not None:
                        yield StreamChunk(text=delta, usage=usage)
            except httpx.TimeoutException:
                raise
            except httpx.TransportError as exc:
                logger.warning("Model stream dropped: %s", exc)
                raise StreamFailure(str(exc) or exc.__class__.__name__) from exc

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
