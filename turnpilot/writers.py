import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .code_memory import CodeMemoryService, CodeStore, extract_code_blocks
from .errors import BackgroundWriteFailure
from .memory import MemoryService, MemoryStore, apply_memory_update
from .schemas import CodeSnippet, Message, Summary, UserProfile
from .store import ConversationStore
from .summaries import SummaryService, pair_recent_messages

logger = logging.getLogger("uvicorn.error")

_background_tasks: Set[asyncio.Task] = set()


def _finish(name: str) -> Callable[[asyncio.Task], None]:
    def _done(task: asyncio.Task) -> None:
        _background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        failure = exc if isinstance(exc, BackgroundWriteFailure) else BackgroundWriteFailure(f"{name}: {exc!r}")
        logger.warning("Background write failed: %s", failure)

    return _done


def spawn_background(coro: Awaitable, name: str) -> asyncio.Task:
    """Start a detached task. Failures are logged by the done callback and never re-raised."""
    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)
    task.add_done_callback(_finish(name))
    return task


async def wait_for_background() -> None:
    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


def _turn_text(message: Message) -> Dict[str, str]:
    return {"role": message.role, "text": message.content}


@dataclass
class SettledTurn:
    """What the writers see of a turn, captured when it settled."""

    conversation_id: str
    message_id: str
    user_prompt: str
    response_text: str
    messages: List[Message] = field(default_factory=list)
    summary_count: int = 0


class MemoryUpdater:
    def __init__(self, service: MemoryService, memory: MemoryStore, store: ConversationStore):
        self.service = service
        self.memory = memory
        self.store = store

    async def run(self, turn: SettledTurn) -> bool:
        cleaned = turn.response_text.strip()
        if not cleaned:
            return False
        facts, profile = self.memory.snapshot()
        exchange = [{"role": "user", "text": turn.user_prompt}, {"role": "model", "text": cleaned}]
        extraction = await self.service.extract(exchange, facts, profile)
        new_facts, changed = apply_memory_update(facts, extraction)

        new_profile: Optional[UserProfile] = None
        name = (extraction.user_profile_updates.name or "").strip()
        if name and name != profile.name:
            new_profile = UserProfile(name=name)
            logger.info("User profile name updated")
        if changed or new_profile is not None:
            await self.memory.replace(new_facts, new_profile)

        if changed and self.store.get(turn.conversation_id) is not None:
            self.store.update_message(turn.conversation_id, turn.message_id, memory_updated=True)
            await self.store.flush(turn.conversation_id)
        return changed


class Summarizer:
    def __init__(self, service: SummaryService, store: ConversationStore, interval: int = 20):
        self.service = service
        self.store = store
        self.interval = interval

    def should_run(self, length: int) -> bool:
        return length > 0 and length % self.interval == 0

    async def run(self, turn: SettledTurn) -> List[Summary]:
        if not self.should_run(len(turn.messages)):
            return []
        pairs = pair_recent_messages(turn.messages, self.interval)
        summaries = await self.service.summarize(pairs, turn.summary_count)
        if summaries and self.store.get(turn.conversation_id) is not None:
            self.store.append_summaries(turn.conversation_id, summaries)
            await self.store.flush(turn.conversation_id)
        return summaries


class CodeExtractor:
    def __init__(self, service: CodeMemoryService, code_store: CodeStore):
        self.service = service
        self.code_store = code_store

    async def _store_block(self, language: str, code: str, context: List[Dict[str, str]]) -> CodeSnippet:
        description = await self.service.describe(language, code, context)
        snippet = CodeSnippet(description=description, language=language, code=code)
        await self.code_store.add(snippet)
        return snippet

    async def run(self, turn: SettledTurn) -> List[CodeSnippet]:
        blocks = extract_code_blocks(turn.response_text)
        if not blocks:
            return []
        context = [_turn_text(m) for m in turn.messages[-2:]]
        results = await asyncio.gather(
            *(self._store_block(language, code, context) for language, code in blocks),
            return_exceptions=True,
        )
        snippets: List[CodeSnippet] = []
        for result in results:
            if isinstance(result, BaseException):
                logger.warning("Code snippet was not stored: %r", result)
            else:
                snippets.append(result)
        return snippets


class BackgroundWriters:
    def __init__(self, memory: MemoryUpdater, summarizer: Summarizer, code: CodeExtractor):
        self.memory = memory
        self.summarizer = summarizer
        self.code = code

    def dispatch(self, turn: SettledTurn) -> List[asyncio.Task]:
        tasks = [spawn_background(self.memory.run(turn), "memory-updater")]
        if self.summarizer.should_run(len(turn.messages)):
            tasks.append(spawn_background(self.summarizer.run(turn), "summarizer"))
        tasks.append(spawn_background(self.code.run(turn), "code-extractor"))
        return tasks
