"""
Live-update relay.

A socket.io server served next to the API under /ws. Admin clients connect,
join named rooms and receive the events published to those rooms. Delivery is
best effort: nothing is persisted and room membership ends with the
connection.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Type

import socketio
from fastapi import FastAPI
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from pymongo.database import Database
from socketio import exceptions as socketio_errors
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import QueryParams
from starlette.requests import cookie_parser

from config import Settings
from errors import AuthenticationError
from schemas import Role
from security import extract_token, resolve_user

logger = logging.getLogger(__name__)

SOCKETIO_PATH = "ws"
PROJECTS_ROOM = "projects"
MAX_ROOM_NAME = 64


class RelayEvent(str, Enum):
    """Everything a relay client can observe."""

    # connection lifecycle, raised on the client side
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    CONNECT_ERROR = "connect_error"
    # sent by the server
    ROOM_JOINED = "roomJoined"
    ROOM_LEFT = "roomLeft"
    ERROR = "error"
    PROJECT_CREATED = "project:created"
    PROJECT_UPDATED = "project:updated"
    PROJECT_DELETED = "project:deleted"


LIFECYCLE_EVENTS = frozenset({RelayEvent.CONNECT, RelayEvent.DISCONNECT, RelayEvent.CONNECT_ERROR})


class RelayCommand(str, Enum):
    """Client -> server events."""

    JOIN_ROOM = "joinRoom"
    LEAVE_ROOM = "leaveRoom"


# ========
# Payloads
# ========
class _Frame(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConnectInfo(_Frame):
    sid: str
    client_type: Optional[str] = None
    client_version: Optional[str] = None


class DisconnectInfo(_Frame):
    reason: Optional[str] = None


class RoomInfo(_Frame):
    room: str


class ErrorInfo(_Frame):
    message: str


class ProjectChange(_Frame):
    old: Dict[str, Any]
    new: Dict[str, Any]


class ProjectEvent(_Frame):
    type: RelayEvent
    data: Any
    timestamp: str
    user_id: Optional[str] = None


EVENT_PAYLOADS: Dict[RelayEvent, Type[BaseModel]] = {
    RelayEvent.CONNECT: ConnectInfo,
    RelayEvent.DISCONNECT: DisconnectInfo,
    RelayEvent.CONNECT_ERROR: ErrorInfo,
    RelayEvent.ROOM_JOINED: RoomInfo,
    RelayEvent.ROOM_LEFT: RoomInfo,
    RelayEvent.ERROR: ErrorInfo,
    RelayEvent.PROJECT_CREATED: ProjectEvent,
    RelayEvent.PROJECT_UPDATED: ProjectEvent,
    RelayEvent.PROJECT_DELETED: ProjectEvent,
}


def encode_payload(event: RelayEvent, payload: BaseModel) -> Dict[str, Any]:
    expected = EVENT_PAYLOADS[event]
    if not isinstance(payload, expected):
        raise TypeError(f"{event.value} carries {expected.__name__}, got {type(payload).__name__}")
    return payload.model_dump(by_alias=True, mode="json")


def _room_name(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    name = value.strip()
    if not name or len(name) > MAX_ROOM_NAME:
        return None
    return name


# =====
# Relay
# =====
class Relay:
    def __init__(self, settings: Settings, db: Database):
        self.settings = settings
        self.db = db
        self.sio = socketio.AsyncServer(
            async_mode="asgi",
            cors_allowed_origins=[*settings.cors_origins, settings.api_url],
            logger=False,
            engineio_logger=False,
        )
        self._clients: Dict[str, ConnectInfo] = {}
        self.sio.on("connect", self.on_connect)
        self.sio.on("disconnect", self.on_disconnect)
        self.sio.on(RelayCommand.JOIN_ROOM.value, self.on_join_room)
        self.sio.on(RelayCommand.LEAVE_ROOM.value, self.on_leave_room)
        self.sio.on("*", self.on_unknown_event)

    @property
    def connection_count(self) -> int:
        return len(self._clients)

    def members(self, room: str) -> set:
        return {sid for sid in list(self._clients) if room in self.sio.rooms(sid)}

    async def send(self, event: RelayEvent, payload: BaseModel, to: str) -> None:
        await self.sio.emit(event.value, encode_payload(event, payload), to=to)

    # Connection

    def _authenticate(self, token: Optional[str]) -> Dict[str, Any]:
        if not token:
            raise AuthenticationError("Not authenticated, token missing")
        user = resolve_user(self.db, self.settings, token)
        if user.get("role") != Role.ADMIN.value:
            raise AuthenticationError("Relay is reserved to administrators")
        return user

    def _token(self, environ: Dict[str, Any], auth: Any) -> Optional[str]:
        if isinstance(auth, dict) and auth.get("token"):
            return auth["token"]
        query = QueryParams(environ.get("QUERY_STRING", ""))
        if query.get("token"):
            return query["token"]
        cookies = cookie_parser(environ.get("HTTP_COOKIE", ""))
        return extract_token(None, cookies, self.settings.cookie_name)

    async def on_connect(self, sid: str, environ: Dict[str, Any], auth: Any = None) -> None:
        try:
            user = await run_in_threadpool(self._authenticate, self._token(environ, auth))
        except AuthenticationError as e:
            logger.warning(f"Relay connection refused: {e.message}")
            raise socketio_errors.ConnectionRefusedError(e.message)

        query = QueryParams(environ.get("QUERY_STRING", ""))
        info = ConnectInfo(sid=sid, client_type=query.get("clientType"), client_version=query.get("clientVersion"))
        self._clients[sid] = info
        await self.sio.save_session(sid, {"user_id": str(user["_id"])})
        logger.info(f"Relay client {sid} connected (type={info.client_type}, version={info.client_version})")

    async def on_disconnect(self, sid: str, reason: Any = None) -> None:
        self._clients.pop(sid, None)
        logger.info(f"Relay client {sid} disconnected ({reason or 'closed'})")

    # Rooms

    async def on_join_room(self, sid: str, data: Any = None) -> None:
        room = _room_name(data)
        if room is None:
            await self.send(RelayEvent.ERROR, ErrorInfo(message="Invalid room name"), to=sid)
            return
        await self.sio.enter_room(sid, room)
        logger.info(f"Relay client {sid} joined room '{room}'")
        await self.send(RelayEvent.ROOM_JOINED, RoomInfo(room=room), to=sid)

    async def on_leave_room(self, sid: str, data: Any = None) -> None:
        room = _room_name(data)
        if room is None:
            await self.send(RelayEvent.ERROR, ErrorInfo(message="Invalid room name"), to=sid)
            return
        await self.sio.leave_room(sid, room)
        await self.send(RelayEvent.ROOM_LEFT, RoomInfo(room=room), to=sid)

    async def on_unknown_event(self, event: str, sid: str, *args: Any) -> None:
        await self.send(RelayEvent.ERROR, ErrorInfo(message=f"Unknown event '{event}'"), to=sid)

    # Publishing

    async def publish_project_event(self, event: RelayEvent, data: Any, user_id: Optional[str] = None) -> int:
        payload = ProjectEvent(
            type=event,
            data=data,
            timestamp=datetime.now(timezone.utc).isoformat(),
            user_id=user_id,
        )
        delivered = len(self.members(PROJECTS_ROOM))
        await self.send(event, payload, to=PROJECTS_ROOM)
        logger.info(f"Published {event.value} to {delivered} client(s)")
        return delivered

    async def close_all(self) -> None:
        for sid in list(self._clients):
            await self.sio.disconnect(sid)
            self._clients.pop(sid, None)


def asgi_app(app: FastAPI) -> socketio.ASGIApp:
    """Serve the relay under /ws and hand every other request to the API."""
    return socketio.ASGIApp(app.state.context.relay.sio, other_asgi_app=app, socketio_path=SOCKETIO_PATH)
