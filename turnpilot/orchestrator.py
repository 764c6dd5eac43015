import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from . import agents
from .attachments import build_user_content
from .chemistry import PubChemClient
from .code_memory import CodeMemoryService, CodeStore
from .config import AppSettings
from .errors import ToolFailure, friendly_error_message
from .gateway import ChatGateway
from .llm import LMStudioClient
from .memory import MemoryService, MemoryStore
from .planner import Planner, describe_plan
from .schemas import (
    TRANSIENT_FIELDS,
    Attachments,
    CodeSnippet,
    Conversation,
    ConversationTurn,
    Message,
    ToolName,
    TurnState,
    TurnStatus,
)
from .store import ConversationStore
from .stream import StreamConsumer, StreamContext, history_messages
from .summaries import SummaryService
from .tavily import TavilyClient
from .timers import Ticker, Watchdog
from .tokens import TokenAccountant
from .tools import Route, ToolKind, ToolOutcome, ToolRouter
from .url_reader import UrlReader
from .writers import BackgroundWriters, CodeExtractor, MemoryUpdater, SettledTurn, Summarizer

logger = logging.getLogger("uvicorn.error")

STOP_NOTICE = "*Response generation stopped.*"
ERROR_PREFIX = "Sorry, I encountered an error: "

Emitter = Callable[[str, str, dict], None]


def stop_notice(text: str) -> str:
    text = text.strip()
    if text:
        return f"{text}\n\n{STOP_NOTICE}"
    return STOP_NOTICE


@dataclass
class TurnServices:
    planner: Planner
    router: ToolRouter
    gateway: ChatGateway
    code_memory: CodeMemoryService
    code_store: CodeStore
    memory: MemoryStore
    writers: Optional[BackgroundWriters] = None


def build_services(
    settings: AppSettings,
    store: ConversationStore,
    lm_client: LMStudioClient,
    tavily: TavilyClient,
    url_reader: UrlReader,
    pubchem: PubChemClient,
    memory: Optional[MemoryStore] = None,
    code_store: Optional[CodeStore] = None,
) -> TurnServices:
    memory = memory or MemoryStore()
    code_store = code_store or CodeStore()
    code_memory = CodeMemoryService(lm_client, settings.utility_model)
    writers = BackgroundWriters(
        MemoryUpdater(MemoryService(lm_client, settings.utility_model), memory, store),
        Summarizer(SummaryService(lm_client, settings.utility_model), store, settings.summary_interval),
        CodeExtractor(code_memory, code_store),
    )
    return TurnServices(
        planner=Planner(lm_client, settings.utility_model),
        router=ToolRouter(url_reader, pubchem),
        gateway=ChatGateway(lm_client, tavily, settings),
        code_memory=code_memory,
        code_store=code_store,
        memory=memory,
        writers=writers,
    )


@dataclass
class ActiveTurn:
    """Per-send state. A cancelled turn keeps its own flag so a later turn never sees it."""

    message_id: str
    user_message_id: str
    started_at: float
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class TurnController:
    """Runs one turn at a time for a single conversation.

    IDLE -> PLANNING -> TOOL_EXECUTING -> STREAMING -> SETTLING -> IDLE, with CANCELLED reachable from
    every non-idle state. The controller owns the elapsed and thinking tickers and the long-tool-use
    watchdog; all three are stopped on every exit path.
    """

    def __init__(
        self,
        conversation_id: str,
        store: ConversationStore,
        services: TurnServices,
        settings: AppSettings,
        emit: Optional[Emitter] = None,
    ):
        self.conversation_id = conversation_id
        self.store = store
        self.services = services
        self.settings = settings
        self.emit = emit
        self.status = TurnStatus()
        self.current: Optional[ActiveTurn] = None
        self.elapsed = Ticker("elapsed-ticker", settings.elapsed_tick_ms / 1000, self._on_elapsed)
        self.thinking = Ticker("thinking-ticker", settings.thinking_tick_ms / 1000, self._on_thinking)
        self.watchdog = Watchdog("long-tool-use", settings.long_tool_use_s, self._on_long_tool_use)

    @property
    def is_idle(self) -> bool:
        return self.current is None

    @property
    def timers_running(self) -> bool:
        return self.elapsed.running or self.thinking.running or self.watchdog.running

    # Status and timers

    def _set_status(self, **fields: Any) -> None:
        self.status = self.status.model_copy(update=fields)
        if self.emit is not None:
            self.emit(self.conversation_id, "status", self.status.model_dump(mode="json"))

    def _on_elapsed(self, elapsed_s: float) -> None:
        self.status = self.status.model_copy(update={"elapsed_ms": int(elapsed_s * 1000)})

    def _on_thinking(self, elapsed_s: float) -> None:
        active = self.current
        if active is not None:
            self.store.update_message(self.conversation_id, active.message_id, thinking_duration=round(elapsed_s, 1))

    def _on_long_tool_use(self) -> None:
        active = self.current
        if active is None:
            return
        self._set_status(is_long_tool_use=True)
        self.store.update_message(self.conversation_id, active.message_id, is_long_tool_use=True)

    def _stop_timers(self) -> None:
        self.elapsed.stop()
        self.thinking.stop()
        self.watchdog.stop()

    # Message helpers

    def _update_model(self, active: ActiveTurn, **fields: Any) -> None:
        if not active.cancelled():
            self.store.update_message(self.conversation_id, active.message_id, **fields)

    def _strip_transient(self) -> None:
        self.store.update_messages(
            self.conversation_id,
            lambda m: m.has_transient_state(),
            lambda m: m.stripped(),
        )

    def _end_title_generation(self) -> None:
        conversation = self.store.get(self.conversation_id)
        if conversation is not None and conversation.is_generating_title:
            self.store.update_conversation(self.conversation_id, is_generating_title=False)

    def _settle_text(self, active: ActiveTurn, text: Callable[[str], str], **fields: Any) -> None:
        """Rewrite the in-flight message, or append a model message when it is gone."""
        message = self.store.find_message(self.conversation_id, active.message_id)
        if message is not None:
            self.store.update_message(
                self.conversation_id, active.message_id, content=text(message.content), **TRANSIENT_FIELDS, **fields
            )
        else:
            self.store.append_message(self.conversation_id, Message(role="model", content=text(""), **fields))
        self._strip_transient()
        self._end_title_generation()

    # Entry points

    def accepts(self, turn: ConversationTurn) -> bool:
        if not self.is_idle:
            logger.info("Turn rejected for %s: a turn is already running", self.conversation_id)
            return False
        if not turn.prompt.strip() and turn.attachments.is_empty:
            return False
        if not self.settings.llm_api_key:
            logger.warning("Turn rejected for %s: no API key is configured", self.conversation_id)
            return False
        return self.store.get(self.conversation_id) is not None

    async def send(self, turn: ConversationTurn) -> Optional[str]:
        """Run a turn to completion. Returns the model message id, or None when the turn was rejected."""
        if not self.accepts(turn):
            return None
        cid = self.conversation_id
        attachments = turn.attachments
        model = turn.model or self.settings.chat_model
        messages = self.store.messages(cid)

        if turn.is_retry and messages and messages[-1].role == "user":
            user_message = messages[-1]
            prior = messages[:-1]
        else:
            user_message = self.store.append_message(
                cid,
                Message(
                    role="user",
                    content=turn.prompt,
                    images=attachments.images or None,
                    file=attachments.file,
                    url=attachments.url or None,
                ),
            )
            prior = messages
        is_first_turn = not prior
        if is_first_turn:
            self.store.update_conversation(cid, is_generating_title=True)

        model_message = self.store.append_message(cid, Message(role="model", is_planning=True, model_used=model))
        loop = asyncio.get_running_loop()
        active = ActiveTurn(message_id=model_message.id, user_message_id=user_message.id, started_at=loop.time())
        self.current = active
        self._set_status(state=TurnState.PLANNING, is_loading=True, elapsed_ms=0, error=None)
        self.elapsed.start()

        try:
            await self._run(active, turn, prior, is_first_turn, model)
        except Exception as exc:
            if active.cancelled():
                logger.debug("Cancelled turn for %s ended with %r", cid, exc)
            else:
                self._fail(active, exc)
        finally:
            if self.current is active:
                self._stop_timers()
                self.current = None
                self._set_status(
                    state=TurnState.IDLE,
                    is_loading=False,
                    is_thinking=False,
                    is_searching_web=False,
                    is_long_tool_use=False,
                )
            elif self.current is None:
                self._set_status(state=TurnState.IDLE)
            await self.store.flush(cid)
        return active.message_id

    def cancel(self) -> bool:
        """Stop the running turn now. The running coroutine sees the flag at its next check and exits."""
        active = self.current
        if active is None:
            return False
        active.cancel_event.set()
        self.current = None
        self._stop_timers()
        self._settle_text(active, stop_notice)
        self._set_status(
            state=TurnState.CANCELLED,
            is_loading=False,
            is_thinking=False,
            is_searching_web=False,
            is_long_tool_use=False,
        )
        logger.info("Turn cancelled for %s", self.conversation_id)
        return True

    async def retry(self, model: Optional[str] = None, tool: ToolName = "auto") -> Optional[str]:
        """Drop the last answer and everything after it, then re-send the user message before it."""
        messages = self.store.messages(self.conversation_id)
        model_idx = next((i for i in range(len(messages) - 1, -1, -1) if messages[i].role == "model"), None)
        if model_idx is None:
            return None
        user_idx = next((i for i in range(model_idx - 1, -1, -1) if messages[i].role == "user"), None)
        if user_idx is None:
            return None
        user = messages[user_idx]
        turn = ConversationTurn(
            conversation_id=self.conversation_id,
            prompt=user.content,
            attachments=Attachments(images=user.images or [], file=user.file, url=user.url),
            tool=tool,
            model=model or messages[model_idx].model_used,
            is_retry=True,
        )
        if not self.accepts(turn):
            return None
        self.store.truncate(self.conversation_id, user_idx + 1)
        return await self.send(turn)

    # Turn body

    async def _run(
        self,
        active: ActiveTurn,
        turn: ConversationTurn,
        prior: List[Message],
        is_first_turn: bool,
        model: str,
    ) -> None:
        cid = self.conversation_id
        services = self.services
        attachments = turn.attachments

        plan = await services.planner.plan(turn.prompt, attachments)
        if active.cancelled():
            return
        route = services.router.route(plan, ToolKind(turn.tool), attachments)
        logger.info("Plan for %s: %s", cid, describe_plan(route.plan))

        if route.plan.is_url_read_request or route.plan.is_molecule_request:
            self._set_status(state=TurnState.TOOL_EXECUTING)
        self.watchdog.start()
        outcome = await services.router.execute(
            route, turn.prompt, attachments.url, lambda fields: self._update_model(active, **fields)
        )
        if active.cancelled():
            return
        route = outcome.route
        plan = route.plan

        thinking = plan.needs_thinking and bool(plan.thoughts)
        self._update_model(
            active,
            is_planning=False,
            tool_in_use=None,
            thoughts=list(plan.thoughts) if thinking else None,
            search_plan=list(plan.search_plan) if plan.needs_web_search and plan.search_plan else None,
        )
        if thinking:
            self._set_status(is_thinking=True)
            self.thinking.start()
        if plan.needs_web_search:
            self._set_status(is_searching_web=True)
        if route.image_analysis or route.file_analysis:
            self.store.update_message(
                cid,
                active.user_message_id,
                is_analyzing_image=route.image_analysis,
                is_analyzing_file=route.file_analysis,
            )

        snippets: List[CodeSnippet] = []
        if plan.needs_code_context and services.code_store.snippets:
            ids = await services.code_memory.find_relevant(turn.prompt, services.code_store.descriptors())
            if active.cancelled():
                return
            snippets = services.code_store.by_ids(ids)

        ctx = self._stream_context(turn, outcome, prior, is_first_turn, model, snippets)
        consumer = StreamConsumer(services.gateway, self.store, cid, active.message_id, is_first_turn, active.cancelled)
        self._set_status(state=TurnState.STREAMING)
        started = False
        async for _message in consumer.run(ctx):
            if not started:
                started = True
                self._on_stream_start(active, route)
            active.message_id = consumer.message_id
        if consumer.cancelled or active.cancelled():
            return

        self._settle(active, turn, outcome, consumer)

    def _stream_context(
        self,
        turn: ConversationTurn,
        outcome: ToolOutcome,
        prior: List[Message],
        is_first_turn: bool,
        model: str,
        snippets: List[CodeSnippet],
    ) -> StreamContext:
        settings = self.settings
        plan = outcome.route.plan
        conversation: Conversation = self.store.require(self.conversation_id)
        facts, profile = self.services.memory.snapshot()
        system = agents.build_system_instruction(
            settings.display_name_for(model),
            is_first_turn,
            facts=facts,
            profile=profile,
            summaries=conversation.summaries,
            code_snippets=snippets,
            persona=settings.persona,
            creator_context=settings.creator_profile if plan.is_creator_request else "",
            capabilities_context=settings.capabilities if plan.is_capabilities_request else "",
            summary_limit=settings.summary_context_limit,
        )
        if plan.needs_thinking and plan.thoughts:
            system += agents.thinking_section(plan.thoughts)
        attachments = turn.attachments
        return StreamContext(
            model=model,
            system_instruction=system,
            content=build_user_content(outcome.effective_prompt, attachments.images, attachments.file),
            history=history_messages(prior),
            web_search=plan.needs_web_search,
        )

    def _on_stream_start(self, active: ActiveTurn, route: Route) -> None:
        self.watchdog.stop()
        self.thinking.stop()
        if route.image_analysis or route.file_analysis:
            updates: Dict[str, Any] = {"is_analyzing_image": False, "is_analyzing_file": False}
            if route.image_analysis:
                updates["analysis_completed"] = True
            self.store.update_message(self.conversation_id, active.user_message_id, **updates)
        self._update_model(active, is_long_tool_use=False)
        self._set_status(is_thinking=False, is_searching_web=False, is_long_tool_use=False)

    def _settle(self, active: ActiveTurn, turn: ConversationTurn, outcome: ToolOutcome, consumer: StreamConsumer) -> None:
        cid = self.conversation_id
        self._set_status(state=TurnState.SETTLING)
        self._stop_timers()
        route = outcome.route
        tool_was_used = outcome.tool_ran or route.image_analysis or route.file_analysis or route.web_search
        generation_time = int((asyncio.get_running_loop().time() - active.started_at) * 1000)
        self.store.update_message(
            cid,
            active.message_id,
            **TRANSIENT_FIELDS,
            **TokenAccountant.annotate(consumer.usage, turn.prompt, tool_was_used),
            generation_time=generation_time,
        )
        self._strip_transient()
        self._end_title_generation()

        writers = self.services.writers
        if writers is not None:
            conversation = self.store.require(cid)
            writers.dispatch(
                SettledTurn(
                    conversation_id=cid,
                    message_id=active.message_id,
                    user_prompt=turn.prompt,
                    response_text=consumer.display_text,
                    messages=list(conversation.messages),
                    summary_count=len(conversation.summaries),
                )
            )

    def _fail(self, active: ActiveTurn, exc: Exception) -> None:
        if isinstance(exc, ToolFailure):
            text = exc.user_message()
        else:
            text = ERROR_PREFIX + friendly_error_message(exc)
        logger.exception("Turn failed for conversation %s", self.conversation_id)
        self._stop_timers()
        self._settle_text(active, lambda _content: text, is_error=True)
        self._set_status(error=text)
        if self.emit is not None:
            self.emit(
                self.conversation_id,
                "turn_error",
                {"message_id": active.message_id, "error": text, "kind": type(exc).__name__},
            )


class ChatOrchestrator:
    """One TurnController per conversation, plus the active conversation pointer."""

    def __init__(
        self,
        store: ConversationStore,
        services: TurnServices,
        settings: AppSettings,
        emit: Optional[Emitter] = None,
    ):
        self.store = store
        self.services = services
        self.settings = settings
        self.emit = emit
        self.controllers: Dict[str, TurnController] = {}
        self.active_conversation_id: Optional[str] = None
        if emit is not None:
            store.add_listener(emit)

    def controller(self, conversation_id: str) -> TurnController:
        controller = self.controllers.get(conversation_id)
        if controller is None:
            controller = TurnController(conversation_id, self.store, self.services, self.settings, self.emit)
            self.controllers[conversation_id] = controller
        return controller

    def create_conversation(self, title: Optional[str] = None) -> Conversation:
        conversation = self.store.create(title)
        self.active_conversation_id = conversation.id
        return conversation

    def is_running(self, conversation_id: str) -> bool:
        controller = self.controllers.get(conversation_id)
        return controller is not None and not controller.is_idle

    def accepts(self, turn: ConversationTurn) -> bool:
        return self.controller(turn.conversation_id).accepts(turn)

    async def send(self, turn: ConversationTurn) -> Optional[str]:
        self.active_conversation_id = turn.conversation_id
        return await self.controller(turn.conversation_id).send(turn)

    def stop(self, conversation_id: str) -> bool:
        controller = self.controllers.get(conversation_id)
        return controller.cancel() if controller is not None else False

    async def retry(self, conversation_id: str, model: Optional[str] = None, tool: ToolName = "auto") -> Optional[str]:
        self.active_conversation_id = conversation_id
        return await self.controller(conversation_id).retry(model=model, tool=tool)

    def status(self, conversation_id: str) -> TurnStatus:
        controller = self.controllers.get(conversation_id)
        return controller.status if controller is not None else TurnStatus()

    async def delete_conversation(self, conversation_id: str) -> bool:
        self.stop(conversation_id)
        self.controllers.pop(conversation_id, None)
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = None
        return await self.store.delete(conversation_id)
