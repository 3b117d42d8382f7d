import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import ValidationError

from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .executors import ToolExecutors
from .formatting import clean_user_title
from .llm import CompletionClient
from .orchestrator import CONVERSATION_CHANNEL, EventBus, Orchestrator, TERMINAL_STATES, TurnManager
from .reasoning import ReasoningClient
from .schemas import CreateConversationRequest, SendMessageRequest, UpdateConversationRequest
from .store import ConversationStore
from .tavily import TavilyClient
from .uploads import ALLOWED_MIMES, resolve_attachment

TERMINAL_STATE_VALUES = {state.value for state in TERMINAL_STATES}


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_turn_manager(request: Request) -> TurnManager:
    return request.app.state.turns


def get_upload_dir(request: Request) -> Path:
    return request.app.state.upload_dir


def get_max_upload_bytes(request: Request) -> int:
    return request.app.state.max_upload_bytes


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def validate_upload(file: UploadFile) -> None:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Filename required.")
    raw_name = file.filename
    safe_name = Path(raw_name).name
    if safe_name != raw_name or safe_name in (".", ".."):
        raise HTTPException(status_code=400, detail="Invalid filename.")
    if file.content_type not in ALLOWED_MIMES:
        raise HTTPException(status_code=400, detail="Only images or PDFs are allowed.")


async def require_conversation(store: ConversationStore, conversation_id: int, include_messages: bool = False):
    convo = await store.get_conversation(conversation_id, include_messages=include_messages)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return convo


def apply_settings(app: FastAPI, settings: AppSettings) -> None:
    """Push a settings object into app state and the long-lived clients."""
    app.state.settings = settings
    tavily_client = app.state.tavily_client
    tavily_client.api_key = settings.search_api_key
    tavily_client.endpoint = settings.search_endpoint
    reasoning_client = app.state.reasoning_client
    reasoning_client.endpoint = settings.reasoning_endpoint
    reasoning_client.model = settings.reasoning_model
    reasoning_client.seed = settings.reasoning_seed
    app.state.orchestrator.executors = ToolExecutors.default(tavily_client, reasoning_client, settings)
    app.state.upload_dir = Path(settings.upload_dir).resolve()
    app.state.max_upload_bytes = settings.upload_max_mb * 1024 * 1024


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    store: ConversationStore = Depends(get_store),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings payload must be an object.")
    try:
        new_settings = settings.merged(body)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=json.loads(exc.json())) from exc
    save_settings(new_settings, config_path=config_path)
    await store.save_config(new_settings.to_safe_dict())
    apply_settings(request.app, new_settings)
    request.app.state.upload_dir.mkdir(parents=True, exist_ok=True)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/state")
async def get_state(store: ConversationStore = Depends(get_store)):
    return {"current_conversation_id": await store.get_current_conversation_id()}


@router.post("/api/uploads")
async def upload_file(
    file: UploadFile = File(...),
    conversation_id: Optional[int] = Form(None),
    settings: AppSettings = Depends(get_settings),
    store: ConversationStore = Depends(get_store),
    upload_dir: Path = Depends(get_upload_dir),
    max_upload_bytes: int = Depends(get_max_upload_bytes),
):
    validate_upload(file)
    data = await file.read()
    if len(data) > max_upload_bytes:
        raise HTTPException(status_code=400, detail=f"File too large (>{settings.upload_max_mb} MB).")
    safe_name = Path(file.filename).name
    stored_name = f"{uuid.uuid4().hex}_{safe_name}"
    upload_path = upload_dir / stored_name
    upload_dir.mkdir(parents=True, exist_ok=True)
    upload_path.write_bytes(data)
    upload_id = await store.add_upload(
        conversation_id,
        stored_name,
        safe_name,
        file.content_type or "application/octet-stream",
        len(data),
        str(upload_path),
    )
    return {"id": upload_id, "filename": safe_name, "mime": file.content_type, "size": len(data)}


@router.get("/api/uploads/{upload_id}")
async def get_upload(upload_id: int, store: ConversationStore = Depends(get_store)):
    record = await store.get_upload(upload_id)
    if not record:
        raise HTTPException(status_code=404, detail="Upload not found")
    path = Path(record["storage_path"])
    if not path.exists():
        raise HTTPException(status_code=404, detail="File missing on disk")
    return FileResponse(path, media_type=record["mime"], filename=record["original_name"])


@router.get("/api/conversations")
async def list_conversations(store: ConversationStore = Depends(get_store)):
    conversations = await store.list_conversations()
    return {
        "conversations": [c.model_dump(exclude={"messages"}) for c in conversations],
        "current_conversation_id": await store.get_current_conversation_id(),
    }


@router.post("/api/conversations")
async def create_conversation(
    payload: Optional[CreateConversationRequest] = None,
    store: ConversationStore = Depends(get_store),
    bus: EventBus = Depends(get_event_bus),
):
    title = None
    if payload is not None and payload.title and payload.title.strip():
        title = clean_user_title(payload.title)
    convo = await store.create_conversation(title=title)
    await store.set_current_conversation_id(convo.id)
    data = convo.model_dump(exclude={"messages"})
    await bus.emit(CONVERSATION_CHANNEL, "conversation_created", {"conversation_id": convo.id, "conversation": data})
    await bus.emit(CONVERSATION_CHANNEL, "conversation_selected", {"conversation_id": convo.id})
    return {"conversation": data}


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: int, store: ConversationStore = Depends(get_store)):
    convo = await require_conversation(store, conversation_id, include_messages=True)
    return {"conversation": convo.model_dump()}


@router.get("/api/conversations/{conversation_id}/messages")
async def get_conversation_messages(
    conversation_id: int,
    limit: Optional[int] = None,
    store: ConversationStore = Depends(get_store),
):
    await require_conversation(store, conversation_id)
    messages = await store.list_messages(conversation_id, limit=limit)
    return {"messages": [m.model_dump() for m in messages]}


@router.patch("/api/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: int,
    payload: UpdateConversationRequest,
    store: ConversationStore = Depends(get_store),
    bus: EventBus = Depends(get_event_bus),
):
    await require_conversation(store, conversation_id)
    try:
        title = clean_user_title(payload.title)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Title must not be empty.") from exc
    convo = await store.set_title(conversation_id, title, "user")
    data = convo.model_dump(exclude={"messages"})
    await bus.emit(CONVERSATION_CHANNEL, "conversation_updated", {"conversation_id": conversation_id, "conversation": data})
    return {"conversation": data}


@router.delete("/api/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: int,
    store: ConversationStore = Depends(get_store),
    bus: EventBus = Depends(get_event_bus),
    turns: TurnManager = Depends(get_turn_manager),
):
    await require_conversation(store, conversation_id)
    await turns.cancel(conversation_id, wait=True)
    replacement = await store.delete_conversation(conversation_id)
    turns.forget_conversation(conversation_id)
    await bus.emit(CONVERSATION_CHANNEL, "conversation_deleted", {"conversation_id": conversation_id})
    if replacement is not None:
        await bus.emit(
            CONVERSATION_CHANNEL,
            "conversation_created",
            {"conversation_id": replacement.id, "conversation": replacement.model_dump(exclude={"messages"})},
        )
    current_id = await store.get_current_conversation_id()
    await bus.emit(CONVERSATION_CHANNEL, "conversation_selected", {"conversation_id": current_id})
    return {"ok": True, "current_conversation_id": current_id}


@router.post("/api/conversations/{conversation_id}/select")
async def select_conversation(
    conversation_id: int,
    store: ConversationStore = Depends(get_store),
    bus: EventBus = Depends(get_event_bus),
):
    await require_conversation(store, conversation_id)
    await store.set_current_conversation_id(conversation_id)
    await bus.emit(CONVERSATION_CHANNEL, "conversation_selected", {"conversation_id": conversation_id})
    return {"ok": True, "current_conversation_id": conversation_id}


@router.post("/api/conversations/{conversation_id}/messages")
async def send_message(
    conversation_id: int,
    payload: SendMessageRequest,
    store: ConversationStore = Depends(get_store),
    turns: TurnManager = Depends(get_turn_manager),
):
    await require_conversation(store, conversation_id)
    content = payload.content.strip()
    if not content and payload.upload_id is None:
        raise HTTPException(status_code=400, detail="Message content is required.")
    attachment = None
    if payload.upload_id is not None:
        record = await store.get_upload(payload.upload_id)
        if not record or not Path(record["storage_path"]).exists():
            raise HTTPException(status_code=404, detail="Upload not found")
        attachment = resolve_attachment(record)
        await store.assign_upload(payload.upload_id, conversation_id)
    await store.set_current_conversation_id(conversation_id)
    turn_id = await turns.submit(conversation_id, content, attachment)
    return {"turn_id": turn_id, "conversation_id": conversation_id}


@router.post("/api/conversations/{conversation_id}/stop")
async def stop_conversation_turn(
    conversation_id: int,
    store: ConversationStore = Depends(get_store),
    turns: TurnManager = Depends(get_turn_manager),
):
    await require_conversation(store, conversation_id)
    turn_id = await turns.cancel(conversation_id)
    if not turn_id:
        return {"ok": True, "status": "idle"}
    return {"ok": True, "status": "stopping", "turn_id": turn_id}


@router.get("/api/turns/{turn_id}")
async def get_turn(turn_id: str, turns: TurnManager = Depends(get_turn_manager)):
    turn = turns.get(turn_id)
    if not turn:
        raise HTTPException(status_code=404, detail="Turn not found")
    return {"turn": turn}


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


@router.get("/api/turns/{turn_id}/events")
async def stream_turn_events(
    turn_id: str,
    after_seq: int = 0,
    store: ConversationStore = Depends(get_store),
    bus: EventBus = Depends(get_event_bus),
    turns: TurnManager = Depends(get_turn_manager),
):
    past = await store.list_events(turn_id, after_seq=after_seq)
    if not past and turns.get(turn_id) is None:
        raise HTTPException(status_code=404, detail="Turn not found")

    # Replay stored events, then follow live ones until the turn settles.
    async def event_generator():
        queue = await bus.subscribe(turn_id)
        last_seq = after_seq
        try:
            for ev in await store.list_events(turn_id, after_seq=after_seq):
                last_seq = ev["seq"]
                yield sse_format(ev)
                if _is_terminal(ev):
                    return
            if turns.get(turn_id) is None:
                return
            while True:
                ev = await queue.get()
                if ev["seq"] <= last_seq:
                    continue
                last_seq = ev["seq"]
                yield sse_format(ev)
                if _is_terminal(ev):
                    return
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(turn_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def _is_terminal(event: Dict[str, Any]) -> bool:
    return event["event_type"] == "turn_state" and event["payload"].get("state") in TERMINAL_STATE_VALUES


def create_app(
    settings: AppSettings,
    *,
    store: Optional[ConversationStore] = None,
    completion_client: Optional[CompletionClient] = None,
    tavily_client: Optional[TavilyClient] = None,
    reasoning_client: Optional[ReasoningClient] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.store.init()
        await app.state.store.save_config(app.state.settings.to_safe_dict())
        app.state.upload_dir.mkdir(parents=True, exist_ok=True)
        try:
            yield
        finally:
            await app.state.turns.shutdown()
            await app.state.completion_client.close()
            await app.state.tavily_client.close()
            await app.state.reasoning_client.close()

    app = FastAPI(title="toolchat", lifespan=lifespan)
    app.state.store = store or ConversationStore(settings.database_path)
    app.state.completion_client = completion_client or CompletionClient()
    app.state.tavily_client = tavily_client or TavilyClient(settings.search_api_key, settings.search_endpoint)
    app.state.reasoning_client = reasoning_client or ReasoningClient(
        settings.reasoning_endpoint, settings.reasoning_model, settings.reasoning_seed
    )
    app.state.bus = EventBus(app.state.store)
    app.state.orchestrator = Orchestrator(
        app.state.store,
        app.state.completion_client,
        ToolExecutors.default(app.state.tavily_client, app.state.reasoning_client, settings),
        settings_provider=lambda: app.state.settings,
        bus=app.state.bus,
    )
    app.state.turns = TurnManager(app.state.orchestrator)
    app.state.config_path = config_path or CONFIG_PATH
    apply_settings(app, settings)

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("TOOLCHAT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "toolchat.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
