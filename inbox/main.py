from contextlib import asynccontextmanager
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import InterfaceError, OperationalError
import asyncio
import logging
import json

from .config import settings
from .database import AsyncSessionLocal
from .events import TypingEvent, WSClientAction, WSEventType, conversation_channel, user_channel
from .exceptions import MessagingError, TransientInfrastructureError, UnauthorizedError
from .websockets import manager
from .auth import decode_user_id
from .limiter import limiter
from .publisher import RedisBroker, build_broker, publisher, run_redis_relay
from .clock import utcnow
from .routers import conversations, messages, share, admin

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    publisher.broker = build_broker()
    relay_task = None
    if isinstance(publisher.broker, RedisBroker):
        relay_task = asyncio.create_task(run_redis_relay(publisher.broker.client, manager))
    logger.info(f"Realtime backend: {settings.REALTIME_BACKEND}")
    try:
        yield
    finally:
        if relay_task:
            relay_task.cancel()
            try:
                await relay_task
            except asyncio.CancelledError:
                pass
        await publisher.broker.close()

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Exception Handlers
@app.exception_handler(MessagingError)
async def messaging_exception_handler(request: Request, exc: MessagingError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, UnauthorizedError) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

@app.exception_handler(OperationalError)
@app.exception_handler(InterfaceError)
async def storage_exception_handler(request: Request, exc: Exception):
    logger.error(f"Storage unavailable: {str(exc)}")
    error = TransientInfrastructureError("Storage temporarily unavailable, retry later")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global error: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error"},
    )

# Include routers
app.include_router(conversations.router, tags=["conversations"])
app.include_router(messages.router, tags=["messages"])
app.include_router(share.router, tags=["share"])
app.include_router(admin.router)

@app.get("/")
async def root():
    return {
        "app": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "status": "running"
    }

async def handle_client_frame(user_id: int, msg: dict, websocket: WebSocket):
    from .services.conversation_service import is_participant

    action = msg.get("type")
    conversation_id = msg.get("conversation_id")
    if not isinstance(conversation_id, int):
        return

    if action == WSClientAction.SUBSCRIBE:
        async with AsyncSessionLocal() as db:
            allowed = await is_participant(db, conversation_id, user_id)
        if allowed:
            manager.subscribe(conversation_channel(conversation_id), websocket)
        else:
            await websocket.send_json({"type": "error", "detail": "Not a participant of this conversation", "conversation_id": conversation_id})
    elif action == WSClientAction.UNSUBSCRIBE:
        manager.unsubscribe(conversation_channel(conversation_id), websocket)
    elif action == WSClientAction.TYPING:
        # Only relay typing for conversations this socket was allowed into
        channel = conversation_channel(conversation_id)
        if manager.is_subscribed(channel, websocket):
            kind = WSEventType.TYPING_START if msg.get("is_typing", False) else WSEventType.TYPING_STOP
            await publisher.publish(channel, TypingEvent(
                type=kind,
                conversation_id=conversation_id,
                user_id=user_id,
                timestamp=utcnow(),
            ))

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: str = Query(...)):
    try:
        user_id = decode_user_id(token)
    except UnauthorizedError as e:
        logger.warning(f"WS auth failed: {e.detail}")
        await websocket.close(code=4003)
        return

    logger.info(f"WS authorized: user {user_id}")
    await manager.connect(user_id, websocket)
    manager.subscribe(user_channel(user_id), websocket)

    try:
        while True:
            data = await websocket.receive_text()
            try:
                await handle_client_frame(user_id, json.loads(data), websocket)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring malformed WS frame from user {user_id}")
            except (AttributeError, TypeError) as e:
                logger.warning(f"Ignoring unexpected WS frame from user {user_id}: {e}")
    except WebSocketDisconnect:
        manager.disconnect(user_id, websocket)
    except Exception as e:
        logger.error(f"WS error: {str(e)}")
        manager.disconnect(user_id, websocket)
