import logging
import re
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from .attachments import build_user_content
from .gateway import WEB_SEARCH_TOOL, ChatGateway, GenerationRequest, UserContent
from .llm import StreamChunk
from .schemas import GroundingSource, Message, Usage
from .store import ConversationStore

logger = logging.getLogger("uvicorn.error")

TITLE_RE = re.compile(r"^\s*TITLE:\s*([^\n]+)")
TITLE_LINE_RE = re.compile(r"^\s*TITLE:\s*[^\n]*\n?")
TITLE_GIVE_UP_CHARS = 50


def strip_title(text: str) -> str:
    return TITLE_LINE_RE.sub("", text, count=1)


def history_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    """Chat-completions history for prior messages. Empty model messages are skipped."""
    history: List[Dict[str, Any]] = []
    for message in messages:
        if message.role == "model":
            if not message.content.strip() and not message.images:
                continue
            history.append({"role": "assistant", "content": message.content})
        else:
            history.append(
                {"role": "user", "content": build_user_content(message.content, message.images, message.file)}
            )
    return history


@dataclass
class StreamContext:
    model: str
    system_instruction: str
    content: UserContent
    history: List[Dict[str, Any]] = field(default_factory=list)
    web_search: bool = False


class StreamConsumer:
    """Consumes one answer stream into the in-flight model message.

    Each chunk overwrites the message content (never appends) and yields the updated message. The
    cancellation check runs once per chunk. Title extraction only runs on a conversation's first turn.
    """

    def __init__(
        self,
        gateway: ChatGateway,
        store: ConversationStore,
        conversation_id: str,
        message_id: str,
        is_first_turn: bool,
        is_cancelled: Callable[[], bool],
    ):
        self.gateway = gateway
        self.store = store
        self.conversation_id = conversation_id
        self.message_id = message_id
        self.is_first_turn = is_first_turn
        self.is_cancelled = is_cancelled
        self.text = ""
        self.usage: Optional[Usage] = None
        self.sources: Optional[List[GroundingSource]] = None
        self.title: Optional[str] = None
        self.title_done = not is_first_turn
        self.cancelled = False

    @property
    def display_text(self) -> str:
        return strip_title(self.text) if self.is_first_turn else self.text

    def _open(self, ctx: StreamContext) -> AsyncIterator[StreamChunk]:
        if ctx.web_search:
            request = GenerationRequest(
                model=ctx.model,
                content=ctx.content,
                system_instruction=ctx.system_instruction,
                history=ctx.history,
                tools=[WEB_SEARCH_TOOL],
            )
            return self.gateway.generate_stream(request)
        session = self.gateway.start_chat(ctx.model, ctx.system_instruction, ctx.history)
        return session.send_message_stream(ctx.content)

    def _extract_title(self) -> None:
        if self.title_done:
            return
        match = TITLE_RE.match(self.text)
        if match and match.group(1).strip():
            title = match.group(1).strip()
            if title != self.title:
                self.title = title
                self.store.update_conversation(self.conversation_id, title=title, is_generating_title=False)
            if "\n" in self.text:
                self.title_done = True
        elif len(self.text) > TITLE_GIVE_UP_CHARS and not self.text.startswith("TITLE:"):
            self.store.update_conversation(self.conversation_id, is_generating_title=False)
            self.title_done = True

    def _write(self) -> Message:
        fields = {"content": self.display_text, "sources": self.sources, "is_planning": False}
        message = self.store.update_message(self.conversation_id, self.message_id, **fields)
        if message is None:
            message = self.store.append_message(
                self.conversation_id,
                Message(role="model", content=self.display_text, sources=self.sources),
            )
            self.message_id = message.id
        return message

    async def run(self, ctx: StreamContext) -> AsyncIterator[Message]:
        async with aclosing(self._open(ctx)) as stream:
            async for chunk in stream:
                if self.is_cancelled():
                    self.cancelled = True
                    break
                if chunk.usage is not None:
                    self.usage = chunk.usage
                if chunk.sources:
                    self.sources = list(chunk.sources)
                self.text += chunk.text
                if self.is_first_turn:
                    self._extract_title()
                yield self._write()
