"""
Python client for the Portfolio API.

PortfolioClient wraps the REST endpoints with a small read cache, TokenStore
keeps the tokens between runs and RelayClient mirrors live project events into
the same cache. Everything is constructed explicitly; nothing is global.
"""

import functools
import json
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, Hashable, List, Optional, Set, Tuple
from urllib.parse import urlencode

import requests
import socketio
from jose import JWTError, jwt
from socketio import exceptions as socketio_errors

from errors import AppError, NetworkError, RequestTimeout, error_for_status
from relay import (
    LIFECYCLE_EVENTS,
    SOCKETIO_PATH,
    ConnectInfo,
    DisconnectInfo,
    ErrorInfo,
    RelayCommand,
    RelayEvent,
    encode_payload,
)

logger = logging.getLogger(__name__)

CLIENT_TYPE = "python"
CLIENT_VERSION = "1.0.0"

RESOURCES = ("skills", "experiences", "educations", "certifications", "projects", "users")


# ===========
# Token store
# ===========
class TokenStore:
    """Access and refresh tokens, persisted to a JSON file when a path is given."""

    def __init__(self, path: Optional[str] = None, access_key: str = "token", refresh_key: str = "refreshToken"):
        self.path = path
        self.access_key = access_key
        self.refresh_key = refresh_key
        self._data: Dict[str, str] = {}
        if path and os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                self._data = json.load(f)

    @property
    def access_token(self) -> Optional[str]:
        return self._data.get(self.access_key)

    @property
    def refresh_token(self) -> Optional[str]:
        return self._data.get(self.refresh_key)

    def save(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        self._data[self.access_key] = access_token
        if refresh_token:
            self._data[self.refresh_key] = refresh_token
        self._flush()

    def clear(self) -> None:
        self._data = {}
        self._flush()

    def _flush(self) -> None:
        if not self.path:
            return
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(self._data, f)

    def _claims(self) -> Optional[Dict[str, Any]]:
        if not self.access_token:
            return None
        try:
            return jwt.get_unverified_claims(self.access_token)
        except JWTError:
            return None

    @property
    def is_authenticated(self) -> bool:
        claims = self._claims()
        if not claims:
            return False
        exp = claims.get("exp")
        return exp is None or exp > time.time()

    @property
    def current_role(self) -> Optional[str]:
        if not self.is_authenticated:
            return None
        return self._claims().get("role")


# ===========
# Query cache
# ===========
def list_key(resource: str, params: Optional[Dict[str, Any]] = None) -> Tuple:
    return (resource, "list", tuple(sorted((params or {}).items())))


def detail_key(resource: str, item_id: str) -> Tuple:
    return (resource, "detail", item_id)


class QueryCache:
    """Keyed read cache; entries older than `stale_after` seconds are refetched."""

    def __init__(self, stale_after: float = 300, clock: Callable[[], float] = time.monotonic):
        self.stale_after = stale_after
        self.clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, data = entry
            if self.clock() - stored_at >= self.stale_after:
                del self._entries[key]
                return None
            return data

    def set(self, key: Hashable, data: Any) -> None:
        with self._lock:
            self._entries[key] = (self.clock(), data)

    def keys(self, resource: str) -> List[Hashable]:
        with self._lock:
            return [key for key in self._entries if key[0] == resource]

    def invalidate(self, resource: str) -> None:
        with self._lock:
            for key in [key for key in self._entries if key[0] == resource]:
                del self._entries[key]

    def discard(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def patch(self, key: Hashable, update: Callable[[Any], Any]) -> bool:
        """Rewrite a cached value in place; returns False when nothing is cached."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            self._entries[key] = (entry[0], update(entry[1]))
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def apply_relay_event(cache: QueryCache, event: Any, payload: Any) -> bool:
    """Mirror a relay event into the cache. Returns True when the cache was touched."""
    name = event.value if isinstance(event, RelayEvent) else event
    if not isinstance(name, str) or not name.startswith("project:"):
        return False
    data = payload.get("data") if isinstance(payload, dict) else None
    base = list_key("projects")

    def touch_others(keep):
        # filtered lists and the featured list cannot be patched reliably
        for key in cache.keys("projects"):
            if key != base and key not in keep:
                cache.discard(key)

    if name == RelayEvent.PROJECT_CREATED.value and isinstance(data, dict):
        # newest first, as the server lists them
        cache.patch(base, lambda items: [data] + [doc for doc in items if doc.get("id") != data.get("id")])
        touch_others(())
    elif name == RelayEvent.PROJECT_UPDATED.value and isinstance(data, dict) and isinstance(data.get("new"), dict):
        new = data["new"]
        cache.patch(base, lambda items: [new if doc.get("id") == new.get("id") else doc for doc in items])
        cache.set(detail_key("projects", new.get("id")), new)
        touch_others((detail_key("projects", new.get("id")),))
    elif name == RelayEvent.PROJECT_DELETED.value and isinstance(data, dict):
        cache.patch(base, lambda items: [doc for doc in items if doc.get("id") != data.get("id")])
        cache.discard(detail_key("projects", data.get("id")))
        touch_others(())
    else:
        cache.invalidate("projects")
    return True


# ===========
# REST client
# ===========
class PortfolioClient:
    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        token_store: Optional[TokenStore] = None,
        cache: Optional[QueryCache] = None,
        timeout: float = 15,
        read_retries: int = 2,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.tokens = token_store or TokenStore()
        self.cache = cache or QueryCache()
        self.timeout = timeout
        self.read_retries = read_retries

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _send(self, method: str, path: str, **kwargs):
        headers = {}
        if self.tokens.access_token:
            headers["Authorization"] = f"Bearer {self.tokens.access_token}"
        try:
            return self.session.request(method, self._url(path), headers=headers, timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise RequestTimeout(f"{method} {path} timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

    @staticmethod
    def _body(response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"data": body}

    def request(self, method: str, path: str, retry_auth: bool = True, **kwargs) -> Dict[str, Any]:
        # only reads are retried
        attempts = 1 + (self.read_retries if method == "GET" else 0)
        for attempt in range(1, attempts + 1):
            try:
                response = self._send(method, path, **kwargs)
            except NetworkError as e:
                if attempt == attempts:
                    raise
                logger.info(f"Retrying {method} {path} ({attempt}/{attempts - 1}): {e.message}")
                continue
            if response.status_code >= 500 and attempt < attempts:
                logger.info(f"Retrying {method} {path} after HTTP {response.status_code}")
                continue
            break

        if response.status_code == 401 and retry_auth and self.tokens.access_token:
            if self.tokens.refresh_token and self.refresh():
                return self.request(method, path, retry_auth=False, **kwargs)
            logger.warning("Session expired, clearing stored tokens")
            self.tokens.clear()
            self.cache.clear()
        elif response.status_code == 401 and not retry_auth and self.tokens.access_token:
            self.tokens.clear()
            self.cache.clear()

        body = self._body(response)
        if response.status_code >= 400:
            raise error_for_status(response.status_code, body)
        return body

    # Auth

    def login(self, email: str, password: str) -> Dict[str, Any]:
        body = self.request("POST", "/api/v1/auth/login", retry_auth=False, json={"email": email, "password": password})
        self.tokens.save(body["token"], body.get("refreshToken"))
        self.cache.clear()
        return body["user"]

    def register(self, **fields) -> Dict[str, Any]:
        return self.request("POST", "/api/v1/auth/register", retry_auth=False, json=fields)["data"]

    def refresh(self) -> bool:
        """Exchange the refresh token for a new pair; False when the server refuses."""
        try:
            body = self.request(
                "POST", "/api/v1/auth/refresh-token", retry_auth=False, json={"refreshToken": self.tokens.refresh_token}
            )
        except AppError as e:
            logger.info(f"Token refresh failed: {e.message}")
            return False
        self.tokens.save(body["token"], body.get("refreshToken"))
        return True

    def logout(self) -> None:
        try:
            self.request("POST", "/api/v1/auth/logout", retry_auth=False)
        finally:
            self.tokens.clear()
            self.cache.clear()

    def me(self) -> Dict[str, Any]:
        return self.request("GET", "/api/v1/auth/me")["data"]

    # Resources

    def _check(self, resource: str) -> None:
        if resource not in RESOURCES:
            raise ValueError(f"Unknown resource '{resource}'")

    def list(self, resource: str, **params) -> List[Dict[str, Any]]:
        self._check(resource)
        key = list_key(resource, params)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        data = self.request("GET", f"/api/v1/{resource}", params=params or None)["data"]
        self.cache.set(key, data)
        return data

    def get(self, resource: str, item_id: str) -> Dict[str, Any]:
        self._check(resource)
        key = detail_key(resource, item_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        data = self.request("GET", f"/api/v1/{resource}/{item_id}")["data"]
        self.cache.set(key, data)
        return data

    def featured_projects(self) -> List[Dict[str, Any]]:
        key = ("projects", "featured")
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        data = self.request("GET", "/api/v1/projects/featured")["data"]
        self.cache.set(key, data)
        return data

    def create(self, resource: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._check(resource)
        data = self.request("POST", f"/api/v1/{resource}", json=payload)["data"]
        self.cache.invalidate(resource)
        return data

    def update(self, resource: str, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._check(resource)
        data = self.request("PUT", f"/api/v1/{resource}/{item_id}", json=payload)["data"]
        self.cache.invalidate(resource)
        return data

    def delete(self, resource: str, item_id: str) -> None:
        self._check(resource)
        self.request("DELETE", f"/api/v1/{resource}/{item_id}")
        self.cache.invalidate(resource)

    # Files and forms

    def upload(self, category: str, filename: str, content: bytes, content_type: str) -> str:
        body = self.request(
            "POST", f"/api/v1/uploads/{category}", files={"file": (filename, content, content_type)}
        )
        return body["data"]["url"]

    def file_url(self, relative: str) -> str:
        return self._url(relative)

    def contact(self, name: str, email: str, subject: str, message: str) -> None:
        self.request(
            "POST",
            "/api/v1/contact",
            retry_auth=False,
            json={"name": name, "email": email, "subject": subject, "message": message},
        )


# ============
# Relay client
# ============
Handler = Callable[[Any], None]


class RelayClient:
    """socket.io relay consumer.

    Reconnection is left to socket.io (bounded attempts, growing delay); rooms
    are remembered here and joined again on every (re)connect, since the server
    forgets them with the connection. Handlers run on the socket.io thread.
    """

    def __init__(
        self,
        url: str,
        token_store: Optional[TokenStore] = None,
        cache: Optional[QueryCache] = None,
        reconnection_attempts: int = 5,
        reconnection_delay: float = 1.0,
        reconnection_delay_max: float = 5.0,
        wait_timeout: float = 5.0,
        sio: Optional[socketio.Client] = None,
    ):
        self.url = url.rstrip("/")
        self.tokens = token_store
        self.cache = cache
        self.wait_timeout = wait_timeout
        self.sio = sio or socketio.Client(
            reconnection=True,
            reconnection_attempts=reconnection_attempts,
            reconnection_delay=reconnection_delay,
            reconnection_delay_max=reconnection_delay_max,
            logger=False,
            engineio_logger=False,
        )
        self._handlers: Dict[RelayEvent, List[Handler]] = {}
        self.rooms: Set[str] = set()
        self.sid: Optional[str] = None

        self.sio.on("connect", self._on_connect)
        self.sio.on("disconnect", self._on_disconnect)
        self.sio.on("connect_error", self._on_connect_error)
        for event in RelayEvent:
            if event not in LIFECYCLE_EVENTS:
                self.sio.on(event.value, functools.partial(self.dispatch, event))

    # Handlers

    def on(self, event, handler: Handler) -> None:
        self._handlers.setdefault(RelayEvent(event), []).append(handler)

    def off(self, event, handler: Optional[Handler] = None) -> None:
        event = RelayEvent(event)
        if handler is None:
            self._handlers.pop(event, None)
        elif handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def dispatch(self, event: RelayEvent, data: Any = None) -> None:
        if self.cache is not None:
            apply_relay_event(self.cache, event, data)
        for handler in list(self._handlers.get(event, [])):
            handler(data)

    def _on_connect(self) -> None:
        self.sid = self.sio.sid
        logger.info(f"Relay connected to {self.url} as {self.sid}")
        # membership does not survive a reconnect
        for room in sorted(self.rooms):
            self.sio.emit(RelayCommand.JOIN_ROOM.value, room)
        info = ConnectInfo(sid=self.sid or "", client_type=CLIENT_TYPE, client_version=CLIENT_VERSION)
        self.dispatch(RelayEvent.CONNECT, encode_payload(RelayEvent.CONNECT, info))

    def _on_disconnect(self, reason: Any = None) -> None:
        logger.warning(f"Relay disconnected from {self.url} ({reason or 'closed'})")
        reason = str(reason) if reason is not None else None
        self.dispatch(RelayEvent.DISCONNECT, encode_payload(RelayEvent.DISCONNECT, DisconnectInfo(reason=reason)))

    def _on_connect_error(self, data: Any = None) -> None:
        message = data.get("message") if isinstance(data, dict) else None
        message = message or str(data or "Connection failed")
        logger.warning(f"Relay connection error: {message}")
        self.dispatch(RelayEvent.CONNECT_ERROR, encode_payload(RelayEvent.CONNECT_ERROR, ErrorInfo(message=message)))

    # Connection

    @property
    def connected(self) -> bool:
        return self.sio.connected

    def _handshake_url(self) -> str:
        params = {"clientType": CLIENT_TYPE, "clientVersion": CLIENT_VERSION}
        return f"{self.url}?{urlencode(params)}"

    def connect(self) -> None:
        """Open the connection; an unreachable server is retried before giving up.

        Raises NetworkError once the attempts are exhausted or when the server
        refuses the handshake.
        """
        auth = None
        if self.tokens is not None and self.tokens.access_token:
            auth = {"token": self.tokens.access_token}
        try:
            self.sio.connect(
                self._handshake_url(),
                auth=auth,
                transports=["websocket"],
                socketio_path=SOCKETIO_PATH,
                wait_timeout=self.wait_timeout,
                retry=True,
            )
        except socketio_errors.ConnectionError as e:
            raise NetworkError(f"Could not connect to relay: {e}") from e

    def close(self) -> None:
        if self.sio.connected:
            self.sio.disconnect()

    def wait(self) -> None:
        """Block until the connection ends for good."""
        self.sio.wait()

    # Rooms

    def join_room(self, room: str) -> None:
        self.rooms.add(room)
        if self.connected:
            self.sio.emit(RelayCommand.JOIN_ROOM.value, room)

    def leave_room(self, room: str) -> None:
        self.rooms.discard(room)
        if self.connected:
            self.sio.emit(RelayCommand.LEAVE_ROOM.value, room)
