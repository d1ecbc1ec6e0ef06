"""
FastAPI Application Module

HTTP and WebSocket surface over the per-user chat sessions of the skill-swap
marketplace. Identity is established upstream; requests carry the signed-in
user's id in the ``X-User-Id`` header.

Key Features:
- Conversation list derived from barter requests, with search
- Thread history and message sending
- Find-or-create conversations and swap proposals
- Live session updates over a WebSocket
- Structured logging, Prometheus metrics and OpenTelemetry tracing
"""

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..config import Settings
from ..domain.errors import AuthRequired, ChatError, ConversationNotFound, StoreUnreachable, ValidationError
from ..domain.models import AppendResult, BarterRequest, Conversation, Message, Skill, SessionUpdate
from ..repositories.memory import InMemoryStore
from .sessions import SessionRegistry

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed requests", registry=CUSTOM_REGISTRY)
MESSAGES_SENT = Counter("messages_sent_total", "Messages accepted for delivery", registry=CUSTOM_REGISTRY)

logger = get_logger()


class MessageCreate(BaseModel):
    """Body of a send-message request"""
    content: str


class ConversationCreate(BaseModel):
    """Body of a find-or-create conversation request"""
    other_user_id: UUID
    offered_skill_id: Optional[UUID] = None


class ConversationRef(BaseModel):
    barter_request_id: UUID


class SwapCreate(BaseModel):
    """Body of a swap proposal"""
    requested_skill_id: UUID
    offered_skill_id: Optional[UUID] = None
    message: Optional[str] = None


class ConversationList(BaseModel):
    conversations: List[Conversation]
    error: Optional[str] = None


# Core service instances
settings = Settings.from_env()
store = InMemoryStore()
registry = SessionRegistry(store, settings)


def get_registry() -> SessionRegistry:
    """Returns the session registry"""
    return registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Closes every live session, and with it every subscription, on shutdown"""
    logger.info("application_startup_complete")

    yield

    provider = app.dependency_overrides.get(get_registry, get_registry)
    await provider().close_all()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Skill Swap Chat API",
    description="Conversation and message synchronization for skill bartering",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Tracks requests"""
    REQUESTS.inc()
    logger.info("request_started", path=request.url.path)
    try:
        return await call_next(request)
    except Exception as e:
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise


def parse_user_id(value: Optional[str]) -> UUID:
    if not value:
        raise AuthRequired()
    try:
        return UUID(value)
    except ValueError:
        raise AuthRequired("Invalid user identity, please sign in again")


async def current_user(x_user_id: Optional[str] = Header(default=None)) -> UUID:
    """Resolves the signed-in user or asks the client to sign in"""
    try:
        return parse_user_id(x_user_id)
    except AuthRequired as e:
        raise HTTPException(status_code=401, detail=str(e))


def to_http(error: ChatError, detail: str) -> HTTPException:
    """Maps an engine error onto an HTTP error; ``detail`` is used for store failures"""
    if isinstance(error, AuthRequired):
        return HTTPException(status_code=401, detail=str(error))
    if isinstance(error, ConversationNotFound):
        return HTTPException(status_code=404, detail=str(error))
    ERRORS.inc()
    if isinstance(error, ValidationError):
        return HTTPException(status_code=422, detail=str(error))
    if isinstance(error, StoreUnreachable):
        return HTTPException(status_code=503, detail=detail)
    return HTTPException(status_code=502, detail=detail)


@app.get("/conversations", response_model=ConversationList)
async def list_conversations(
    search: Optional[str] = None,
    user_id: UUID = Depends(current_user),
    registry: SessionRegistry = Depends(get_registry),
) -> ConversationList:
    """Gets the user's conversations, most recently active first"""
    session = await registry.get(user_id)
    return ConversationList(conversations=session.search(search), error=session.error)


@app.post("/conversations/refresh", response_model=ConversationList)
async def refresh_conversations(
    user_id: UUID = Depends(current_user),
    registry: SessionRegistry = Depends(get_registry),
) -> ConversationList:
    """Recomputes the conversation list and every loaded thread"""
    session = await registry.get(user_id)
    result = await session.refresh()
    if not result.ok:
        ERRORS.inc()
    return ConversationList(conversations=session.conversations, error=result.error)


@app.post("/conversations", response_model=ConversationRef)
async def get_or_create_conversation(
    body: ConversationCreate,
    user_id: UUID = Depends(current_user),
    registry: SessionRegistry = Depends(get_registry),
) -> ConversationRef:
    """Finds the conversation with another user or opens a new one"""
    session = await registry.get(user_id)
    try:
        barter_request_id = await session.get_or_create_conversation(body.other_user_id, body.offered_skill_id)
        return ConversationRef(barter_request_id=barter_request_id)
    except ChatError as e:
        logger.warning("get_or_create_conversation_error", user_id=str(user_id), error=str(e))
        raise to_http(e, "Failed to start conversation")


@app.get("/conversations/{barter_request_id}/messages", response_model=List[Message])
async def get_messages(
    barter_request_id: UUID,
    user_id: UUID = Depends(current_user),
    registry: SessionRegistry = Depends(get_registry),
) -> List[Message]:
    """Gets the full message history of a thread, oldest first"""
    session = await registry.get(user_id)
    try:
        return await session.load_thread(barter_request_id)
    except ChatError as e:
        logger.error("get_messages_error", conversation_id=str(barter_request_id), error=str(e))
        raise to_http(e, "Failed to load messages")


@app.post("/conversations/{barter_request_id}/messages", response_model=AppendResult)
async def create_message(
    barter_request_id: UUID,
    message: MessageCreate,
    user_id: UUID = Depends(current_user),
    registry: SessionRegistry = Depends(get_registry),
) -> AppendResult:
    """Sends a message to a thread"""
    session = await registry.get(user_id)
    try:
        result = await session.send_message(barter_request_id, message.content)
    except ChatError as e:
        logger.warning("create_message_error", conversation_id=str(barter_request_id), error=str(e))
        raise to_http(e, "Failed to send message")
    MESSAGES_SENT.inc()
    return result


@app.get("/skills/offerable", response_model=List[Skill])
async def offerable_skills(
    user_id: UUID = Depends(current_user),
    registry: SessionRegistry = Depends(get_registry),
) -> List[Skill]:
    """Lists the user's active skills that can be offered in a swap"""
    session = await registry.get(user_id)
    try:
        return await session.offerable_skills()
    except ChatError as e:
        logger.error("offerable_skills_error", user_id=str(user_id), error=str(e))
        raise to_http(e, "Failed to load your skills")


@app.post("/swaps", response_model=BarterRequest)
async def propose_swap(
    body: SwapCreate,
    user_id: UUID = Depends(current_user),
    registry: SessionRegistry = Depends(get_registry),
) -> BarterRequest:
    """Proposes a skill swap; the note becomes the first message"""
    session = await registry.get(user_id)
    try:
        return await session.propose_swap(body.requested_skill_id, body.offered_skill_id, body.message)
    except ChatError as e:
        logger.warning("propose_swap_error", user_id=str(user_id), error=str(e))
        raise to_http(e, "Failed to send swap proposal")


@app.delete("/session", status_code=204)
async def end_session(
    user_id: UUID = Depends(current_user),
    registry: SessionRegistry = Depends(get_registry),
) -> Response:
    """Ends the user's live session and releases its subscriptions"""
    await registry.end(user_id)
    return Response(status_code=204)


@app.websocket("/ws")
async def stream_updates(
    websocket: WebSocket,
    user_id: Optional[str] = None,
    registry: SessionRegistry = Depends(get_registry),
):
    """Streams session updates; the client may send "refresh" to force a recompute"""
    try:
        uid = parse_user_id(user_id)
    except AuthRequired:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    session = await registry.get(uid)
    updates = session.add_listener()

    async def pump() -> None:
        while True:
            update = await updates.get()
            await websocket.send_json(update.to_wire())

    await websocket.send_json(
        SessionUpdate(kind="conversations", conversations=session.conversations, error=session.error).to_wire()
    )
    sender = asyncio.create_task(pump())
    try:
        while True:
            command = await websocket.receive_text()
            if command == "refresh":
                await session.refresh()
    except WebSocketDisconnect:
        logger.info("update_stream_closed", user_id=str(uid))
    finally:
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        session.remove_listener(updates)


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
