import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from .config import AppSettings
from .llm import LMStudioClient, StreamChunk
from .schemas import GroundingSource
from .tavily import TavilyClient

logger = logging.getLogger("uvicorn.error")

WEB_SEARCH_TOOL = "web_search"
UserContent = Union[str, List[Dict[str, Any]]]


@dataclass
class GenerationRequest:
    model: str
    content: UserContent
    system_instruction: str = ""
    history: List[Dict[str, Any]] = field(default_factory=list)
    tools: List[str] = field(default_factory=list)


def content_text(content: UserContent) -> str:
    if isinstance(content, str):
        return content
    return "\n".join(part.get("text", "") for part in content if part.get("type") == "text")


def search_context(results: Dict[str, Any]) -> Tuple[str, List[GroundingSource]]:
    """Prompt block and grounding sources for a Tavily search response."""
    sources: List[GroundingSource] = []
    lines: List[str] = []
    for idx, item in enumerate(results.get("results") or [], start=1):
        url = item.get("url")
        if not url:
            continue
        title = item.get("title") or url
        sources.append(GroundingSource(uri=url, title=title))
        snippet = (item.get("content") or "").strip()
        lines.append(f"[{idx}] {title} ({url})\n{snippet}")
    if not lines:
        return "", sources
    block = (
        "\n\n---\n[Web Search Results]\n"
        "Answer with these results and cite them by number. They are newer than your training data.\n"
        + "\n\n".join(lines)
        + "\n---"
    )
    return block, sources


class ChatSession:
    """Multi-turn chat seeded with a system instruction; keeps its own history."""

    def __init__(
        self,
        lm_client: LMStudioClient,
        model: str,
        system_instruction: str,
        history: Optional[List[Dict[str, Any]]] = None,
        max_tokens: int = 4096,
    ):
        self.lm_client = lm_client
        self.model = model
        self.system_instruction = system_instruction
        self.history: List[Dict[str, Any]] = list(history or [])
        self.max_tokens = max_tokens

    async def send_message_stream(self, content: UserContent) -> AsyncIterator[StreamChunk]:
        messages = [{"role": "system", "content": self.system_instruction}, *self.history]
        messages.append({"role": "user", "content": content})
        reply: List[str] = []
        async for chunk in self.lm_client.stream_chat(self.model, messages, max_tokens=self.max_tokens):
            reply.append(chunk.text)
            yield chunk
        self.history.append({"role": "user", "content": content})
        self.history.append({"role": "assistant", "content": "".join(reply)})


class ChatGateway:
    """Entry point for answer generation, with optional web search grounding."""

    def __init__(self, lm_client: LMStudioClient, tavily: TavilyClient, settings: AppSettings):
        self.lm_client = lm_client
        self.tavily = tavily
        self.settings = settings

    @property
    def max_tokens(self) -> int:
        return self.settings.max_output_tokens or 4096

    def start_chat(
        self, model: str, system_instruction: str, history: Optional[List[Dict[str, Any]]] = None
    ) -> ChatSession:
        return ChatSession(self.lm_client, model, system_instruction, history, max_tokens=self.max_tokens)

    async def _web_search(self, query: str) -> Tuple[str, List[GroundingSource]]:
        if not self.tavily.enabled:
            logger.warning("Web search requested but no Tavily key is configured")
            return "", []
        results = await self.tavily.search(
            query,
            search_depth=self.settings.search_depth,
            max_results=self.settings.search_max_results,
        )
        if results.get("error"):
            logger.warning("Web search failed: %s %s", results.get("error"), results.get("detail"))
            return "", []
        return search_context(results)

    async def generate_stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        system_instruction = request.system_instruction
        sources: List[GroundingSource] = []
        if WEB_SEARCH_TOOL in request.tools:
            block, sources = await self._web_search(content_text(request.content))
            system_instruction += block
        messages: List[Dict[str, Any]] = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.extend(request.history)
        messages.append({"role": "user", "content": request.content})
        async for chunk in self.lm_client.stream_chat(request.model, messages, max_tokens=self.max_tokens):
            if sources:
                chunk.sources = list(sources)
            yield chunk
