import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .config import settings
from .events import EventStore
from .facts import FactResolver, build_lookup
from .game import GameController, SessionNotFound
from .hub import ConnectionHub
from .models import Session
from .registry import SessionRegistry
from .scheduler import TurnScheduler
from .schemas import (
    CreateMatchIn,
    CreateSessionIn,
    CreateSessionOut,
    InboundMessage,
    JoinIn,
    PublicSessionOut,
    SubmitAnswerIn,
)
from .utils import new_connection_id, public_players

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

event_store = EventStore()
hub = ConnectionHub(event_store)
registry = SessionRegistry(turns_total=settings.TURNS_TOTAL)
resolver = FactResolver(build_lookup(settings))
scheduler = TurnScheduler(registry, resolver, hub, settings)
controller = GameController(registry, scheduler, hub, settings)


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    scheduler.shutdown()


app = FastAPI(title="CityMatch API", lifespan=lifespan)

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
origin_regex = settings.CORS_ORIGIN_REGEX or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _public_session(s: Session) -> PublicSessionOut:
    return PublicSessionOut(
        id=s.id,
        status=s.status.value,
        players=public_players(s.ordered_players()),
        current_turn_index=s.current_turn_index,
        turns_total=s.turns_total,
        prompt=s.prompt,
        turn_started_at=s.turn_started_at,
    )


@app.post("/api/session", response_model=CreateSessionOut)
async def create_session(payload: Optional[CreateSessionIn] = None):
    s = controller.create_session(payload.session_id if payload else None)
    join_url = f"{settings.PUBLIC_BASE_URL.rstrip('/')}/join/{s.id}"
    return CreateSessionOut(session_id=s.id, join_url=join_url)


@app.get("/api/session/{session_id}", response_model=PublicSessionOut)
async def get_session(session_id: str):
    try:
        s = controller.get_session(session_id)
    except SessionNotFound as exc:
        raise HTTPException(404, "Session not found") from exc
    return _public_session(s)


@app.get("/api/session/{session_id}/events")
async def list_events(session_id: str, after: int | None = None, limit: int = 200):
    events = event_store.list(session_id, after=after, limit=limit)
    latest_seq = events[-1]["seq"] if events else after
    return {"events": events, "latest_seq": latest_seq}


async def handle_message(connection_id: str, raw: str) -> None:
    """Route one inbound frame from a socket to the game controller."""
    try:
        message = InboundMessage.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError):
        hub.to_connection(connection_id, "errorMsg", {"text": "Invalid message"})
        return

    try:
        if message.event == "createMatch":
            data = CreateMatchIn.model_validate(message.data)
            controller.create_match(connection_id, data.display_name)
        elif message.event == "join":
            data = JoinIn.model_validate(message.data)
            controller.join(connection_id, data.session_id, data.display_name)
        elif message.event == "submitAnswer":
            data = SubmitAnswerIn.model_validate(message.data)
            await controller.submit_answer(connection_id, data.session_id, data.answer)
        else:
            hub.to_connection(connection_id, "errorMsg", {"text": f"Unknown event: {message.event}"})
    except ValidationError as exc:
        hub.to_connection(connection_id, "errorMsg", {"text": f"Invalid {message.event} payload"})
        logger.info(f"[ws-invalid] connection={connection_id} event={message.event} errors={exc.error_count()}")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    connection_id = new_connection_id()
    hub.register(connection_id)
    writer = asyncio.create_task(hub.pump(connection_id, websocket))
    hub.to_connection(connection_id, "connected", {"connectionId": connection_id})
    logger.info(f"[ws-connect] connection={connection_id}")

    try:
        while True:
            raw = await websocket.receive_text()
            await handle_message(connection_id, raw)
    except WebSocketDisconnect:
        pass
    finally:
        logger.info(f"[ws-disconnect] connection={connection_id}")
        hub.unregister(connection_id)
        controller.disconnect(connection_id)
        writer.cancel()
