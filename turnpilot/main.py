import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .chemistry import PubChemClient
from .code_memory import CodeStore
from .config import CONFIG_PATH, MASKED_SECRET, SECRET_FIELDS, AppSettings, load_settings, save_settings
from .db import Database
from .events import EventBus
from .llm import LMStudioClient
from .memory import MemoryStore
from .orchestrator import ChatOrchestrator, build_services
from .schemas import ConversationPatch, ConversationTurn, SendRequest
from .store import ConversationStore, conversation_payload
from .tavily import TavilyClient
from .url_reader import UrlReader
from .writers import wait_for_background


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


def get_memory(request: Request) -> MemoryStore:
    return request.app.state.memory


def get_code_store(request: Request) -> CodeStore:
    return request.app.state.code_store


def get_turn_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.turn_tasks


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def require_conversation(store: ConversationStore, conversation_id: str) -> None:
    if store.get(conversation_id) is None:
        raise HTTPException(status_code=404, detail="Conversation not found")


def start_turn_task(
    turn_tasks: Dict[str, asyncio.Task],
    conversation_id: str,
    coro: Any,
) -> asyncio.Task:
    async def run_and_cleanup() -> None:
        try:
            await coro
        finally:
            if turn_tasks.get(conversation_id) is task:
                turn_tasks.pop(conversation_id, None)

    task = asyncio.create_task(run_and_cleanup())
    turn_tasks[conversation_id] = task
    return task


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    for key in SECRET_FIELDS:
        if body.get(key) == MASKED_SECRET:
            body.pop(key)
    new_settings = AppSettings(**{**settings.model_dump(), **body})
    save_settings(new_settings, config_path=config_path)
    await db.save_config(new_settings.to_safe_dict())
    apply_settings(request.app, new_settings)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/conversations")
async def list_conversations(store: ConversationStore = Depends(get_store)):
    return {"conversations": [conversation_payload(c) for c in store.list_conversations()]}


@router.post("/api/conversations")
async def create_conversation(
    payload: Dict[str, Any] = Body(default={}),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    store: ConversationStore = Depends(get_store),
):
    conversation = orchestrator.create_conversation(payload.get("title"))
    await store.flush(conversation.id)
    return {"conversation": conversation_payload(conversation, include_messages=True)}


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, store: ConversationStore = Depends(get_store)):
    conversation = store.get(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversation": conversation_payload(conversation, include_messages=True)}


@router.patch("/api/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    patch: ConversationPatch,
    store: ConversationStore = Depends(get_store),
):
    require_conversation(store, conversation_id)
    fields = patch.model_dump(exclude_none=True)
    if "title" in fields:
        fields["title"] = fields["title"].strip() or "New Chat"
    conversation = store.update_conversation(conversation_id, **fields)
    await store.flush(conversation_id)
    return {"conversation": conversation_payload(conversation)}


@router.delete("/api/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    if not await orchestrator.delete_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"ok": True}


@router.post("/api/chat")
async def send_message(
    payload: SendRequest,
    settings: AppSettings = Depends(get_settings),
    store: ConversationStore = Depends(get_store),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    turn_tasks: Dict[str, asyncio.Task] = Depends(get_turn_tasks),
):
    attachments = payload.attachments()
    if not payload.prompt.strip() and attachments.is_empty:
        raise HTTPException(status_code=400, detail="Prompt or attachment is required.")
    if not settings.llm_api_key:
        raise HTTPException(status_code=400, detail="No API key is configured.")
    if payload.conversation_id:
        require_conversation(store, payload.conversation_id)
        conversation_id = payload.conversation_id
    else:
        conversation_id = orchestrator.create_conversation().id
    turn = ConversationTurn(
        conversation_id=conversation_id,
        prompt=payload.prompt,
        attachments=attachments,
        tool=payload.tool,
        model=payload.model,
    )
    if not orchestrator.accepts(turn):
        raise HTTPException(status_code=409, detail="A response is already being generated.")
    start_turn_task(turn_tasks, conversation_id, orchestrator.send(turn))
    return {"conversation_id": conversation_id}


@router.post("/api/conversations/{conversation_id}/stop")
async def stop_turn(
    conversation_id: str,
    store: ConversationStore = Depends(get_store),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    require_conversation(store, conversation_id)
    if not orchestrator.stop(conversation_id):
        raise HTTPException(status_code=409, detail="No response is being generated.")
    await store.flush(conversation_id)
    return {"ok": True, "status": orchestrator.status(conversation_id).model_dump(mode="json")}


@router.post("/api/conversations/{conversation_id}/retry")
async def retry_turn(
    conversation_id: str,
    payload: Dict[str, Any] = Body(default={}),
    store: ConversationStore = Depends(get_store),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    turn_tasks: Dict[str, asyncio.Task] = Depends(get_turn_tasks),
):
    require_conversation(store, conversation_id)
    if orchestrator.is_running(conversation_id):
        raise HTTPException(status_code=409, detail="A response is already being generated.")
    if not any(m.role == "model" for m in store.messages(conversation_id)):
        raise HTTPException(status_code=409, detail="Nothing to retry.")
    start_turn_task(
        turn_tasks,
        conversation_id,
        orchestrator.retry(conversation_id, model=payload.get("model"), tool=payload.get("tool") or "auto"),
    )
    return {"conversation_id": conversation_id}


@router.get("/api/conversations/{conversation_id}/status")
async def turn_status(
    conversation_id: str,
    store: ConversationStore = Depends(get_store),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    require_conversation(store, conversation_id)
    return {"status": orchestrator.status(conversation_id).model_dump(mode="json")}


@router.get("/api/conversations/{conversation_id}/events")
async def stream_events(
    conversation_id: str,
    after_seq: int = 0,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    # Replay persisted events, then stream live ones.
    async def event_generator():
        queue = await bus.subscribe(conversation_id)
        try:
            for ev in await db.list_events(conversation_id, after_seq=after_seq):
                yield sse_format(ev)
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(conversation_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/events")
async def stream_global_events(bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        queue = await bus.subscribe_global()
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe_global(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/api/memory")
async def get_memory_route(memory: MemoryStore = Depends(get_memory)):
    return {"facts": list(memory.facts), "profile": memory.profile.model_dump()}


@router.delete("/api/memory")
async def clear_memory(memory: MemoryStore = Depends(get_memory)):
    await memory.clear()
    return {"ok": True}


@router.get("/api/code")
async def list_code(code_store: CodeStore = Depends(get_code_store)):
    return {"snippets": [s.model_dump() for s in code_store.snippets]}


def apply_settings(app: FastAPI, settings: AppSettings) -> None:
    app.state.settings = settings
    lm_client: LMStudioClient = app.state.lm_client
    lm_client.base_url = settings.lm_studio_base_url.rstrip("/")
    lm_client.api_key = settings.llm_api_key
    lm_client.max_output_tokens = settings.max_output_tokens
    app.state.tavily_client.api_key = settings.tavily_api_key
    orchestrator: ChatOrchestrator = app.state.orchestrator
    orchestrator.settings = settings
    orchestrator.services.gateway.settings = settings
    for controller in orchestrator.controllers.values():
        controller.settings = settings


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    lm_client: Optional[LMStudioClient] = None,
    tavily_client: Optional[TavilyClient] = None,
    url_reader: Optional[UrlReader] = None,
    pubchem: Optional[PubChemClient] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.to_safe_dict())
        await app.state.store.load()
        await app.state.memory.load()
        await app.state.code_store.load()
        try:
            yield
        finally:
            for task in list(app.state.turn_tasks.values()):
                task.cancel()
            await wait_for_background()
            await app.state.url_reader.close()
            await app.state.pubchem.close()
            await app.state.lm_client.close()
            await app.state.tavily_client.close()

    app = FastAPI(title="TurnPilot Chat Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.lm_client = lm_client or LMStudioClient(
        settings.lm_studio_base_url,
        api_key=settings.llm_api_key,
        max_output_tokens=settings.max_output_tokens,
        timeout=settings.request_timeout_s,
    )
    app.state.tavily_client = tavily_client or TavilyClient(settings.tavily_api_key, timeout=settings.request_timeout_s)
    app.state.url_reader = url_reader or UrlReader(
        app.state.tavily_client, max_chars=settings.url_max_chars, extract_depth=settings.extract_depth
    )
    app.state.pubchem = pubchem or PubChemClient(settings.pubchem_base_url)
    app.state.bus = EventBus(app.state.db)
    app.state.store = ConversationStore(app.state.db)
    app.state.memory = MemoryStore(app.state.db)
    app.state.code_store = CodeStore(app.state.db)
    services = build_services(
        settings,
        app.state.store,
        app.state.lm_client,
        app.state.tavily_client,
        app.state.url_reader,
        app.state.pubchem,
        memory=app.state.memory,
        code_store=app.state.code_store,
    )
    app.state.orchestrator = ChatOrchestrator(app.state.store, services, settings, emit=app.state.bus.emit_nowait)
    app.state.turn_tasks = {}
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("TURNPILOT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "turnpilot.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
