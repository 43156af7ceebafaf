from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from nixpackpy import config
from nixpackpy.auth.jwt import SESSION_COOKIE, InvalidToken, verify_session_token
from nixpackpy.collab.edits import EditEngine
from nixpackpy.collab.registry import ClientRegistry
from nixpackpy.errors import TransportError
from nixpackpy.files.store import FileStore, store_from_env
from nixpackpy.runtimes.dispatcher import ProtocolDispatcher
from nixpackpy.runtimes.protocol import Message, OutEvent
from nixpackpy.sandbox_backends.base import SandboxBackend
from nixpackpy.sandbox_backends.factory import get_backend
from nixpackpy.sessions.manager import SessionManager

# Load local env after imports to keep linting (E402) happy.
load_dotenv()

app = FastAPI(title="nixpackpy")
logger = logging.getLogger(__name__)

CLOSE_NO_TOKEN = 4001
CLOSE_INVALID_TOKEN = 4002


@dataclass
class Runtime:
    store: FileStore
    registry: ClientRegistry
    sessions: SessionManager
    edits: EditEngine
    dispatcher: ProtocolDispatcher


def build_runtime(
    *,
    store: FileStore | None = None,
    backend: SandboxBackend | None = None,
    work_root: str | None = None,
) -> Runtime:
    store = store or store_from_env()
    registry = ClientRegistry()
    sessions = SessionManager(
        store=store,
        registry=registry,
        backend=backend or get_backend(),
        work_root=work_root,
    )
    # Last client leaving an environment tears its session down.
    registry.set_on_empty(sessions.stop)
    edits = EditEngine(store)
    dispatcher = ProtocolDispatcher(
        registry=registry, sessions=sessions, store=store, edits=edits
    )
    return Runtime(
        store=store,
        registry=registry,
        sessions=sessions,
        edits=edits,
        dispatcher=dispatcher,
    )


_runtime: Runtime | None = None


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Runtime | None) -> None:
    global _runtime
    _runtime = runtime


class WebSocketClient:
    """ClientHandle over a Starlette WebSocket."""

    def __init__(
        self, ws: WebSocket, *, session_id: str, claims: dict[str, Any] | None = None
    ) -> None:
        self._ws = ws
        self.session_id = session_id
        self.environment_id: str | None = None
        self.claims = claims or {}
        self.closed = False
        self._send_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        if self.closed:
            return False
        return (
            self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    async def send(self, message: dict[str, Any]) -> None:
        # Output relays and replies can race on the same socket.
        async with self._send_lock:
            try:
                await self._ws.send_json(message)
            except (RuntimeError, WebSocketDisconnect) as exc:
                raise TransportError(f"send to {self.session_id} failed: {exc}") from exc


class AuthRejected(Exception):
    def __init__(self, code: int, reason: str) -> None:
        super().__init__(reason)
        self.code = code
        self.reason = reason


def _require_auth(ws: WebSocket) -> dict[str, Any]:
    mode = config.auth_mode()
    if mode == "none":
        return {}
    if mode != "jwt":
        raise AuthRejected(CLOSE_INVALID_TOKEN, f"unknown auth mode: {mode}")

    token = ws.cookies.get(SESSION_COOKIE)
    if not token:
        raise AuthRejected(CLOSE_NO_TOKEN, "No session token")
    try:
        return verify_session_token(token, secret=config.jwt_secret())
    except InvalidToken as e:
        raise AuthRejected(CLOSE_INVALID_TOKEN, "Invalid session token") from e


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.on_event("shutdown")
async def _shutdown() -> None:
    if _runtime is None:
        return
    await _runtime.sessions.shutdown()
    close = getattr(_runtime.store.kv, "close", None)
    if close is not None:
        await close()


async def _handle_ws(ws: WebSocket) -> None:
    await ws.accept()
    try:
        claims = _require_auth(ws)
    except AuthRejected as e:
        # Close after accept so the browser sees the application close code.
        logger.warning(
            "WS auth rejected: %s (client=%s cause=%s)",
            e.reason,
            getattr(ws, "client", None),
            e.__cause__,
        )
        await ws.close(code=e.code, reason=e.reason)
        return

    runtime = get_runtime()
    client = WebSocketClient(ws, session_id=str(uuid.uuid4()), claims=claims)
    await client.send(
        Message.new(OutEvent.CONNECTED, {"sessionId": client.session_id}).to_dict()
    )
    logger.info("Client %s connected (peer=%s)", client.session_id, getattr(ws, "client", None))

    try:
        while True:
            msg = await ws.receive()
            if msg.get("type") == "websocket.disconnect":
                break
            raw = msg.get("text")
            if raw is None:
                raw = msg.get("bytes") or b""
            await runtime.dispatcher.dispatch(client, raw)
    finally:
        client.closed = True
        await runtime.dispatcher.disconnect(client)
        logger.info(
            "Client %s disconnected (environment=%s)",
            client.session_id,
            client.environment_id,
        )


@app.websocket("/")
async def websocket_root(ws: WebSocket) -> None:
    await _handle_ws(ws)


@app.websocket("/ws")
async def websocket_ws(ws: WebSocket) -> None:
    await _handle_ws(ws)


def main() -> None:
    import uvicorn

    uvicorn.run(
        "nixpackpy.runtimes.ws_server:app",
        host=config.server_host(),
        port=config.server_port(),
    )
