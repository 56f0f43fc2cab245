import asyncio
import logging
import os
import secrets
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from . import __version__
from .dispatch import CommandDispatcher
from .errors import ProtocolError
from .event_bus import BusReceiver, EventBus
from .process import GitWorktreeProvisioner, PtyProcessSpawner
from .protocol import Auth, AuthResult, Event, Invoke, InvokeResult, Subscribe, Unsubscribe, encode, parse_client_message
from .remote_manager import RemoteManager
from .session_manager import SessionManager, SessionManagerConfig

logger = logging.getLogger(__name__)


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8800
    token_ttl: float = 300.0
    auth_timeout: float = 10.0
    cors_origins: List[str] = field(default_factory=lambda: [
        "http://localhost",
        "http://localhost:8800",
        "http://127.0.0.1",
        "http://127.0.0.1:8800",
    ])

    @classmethod
    def from_env(cls) -> "ServerConfig":
        config = cls(
            host=os.environ.get("CHORUS_HOST", "0.0.0.0"),
            port=int(os.environ.get("CHORUS_PORT", "8800")),
            token_ttl=float(os.environ.get("CHORUS_TOKEN_TTL", "300")),
        )
        origins = os.environ.get("CHORUS_CORS_ORIGINS")
        if origins:
            config.cors_origins = [o.strip() for o in origins.split(",") if o.strip()]
        return config


class AccessTokens:
    """Short-lived bearer tokens for web access. Expired tokens are pruned lazily."""

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._tokens: Dict[str, float] = {}
        self._revoke_listeners: List[Callable[[], None]] = []

    def generate(self) -> str:
        token = str(uuid.uuid4())
        self._tokens[token] = self._clock() + self.ttl
        logger.info(f"Generated web access token (valid {self.ttl:g}s)")
        return token

    def validate(self, token: Optional[str]) -> bool:
        if not token:
            return False
        self._prune()
        for known in self._tokens:
            if secrets.compare_digest(known, token):
                return True
        return False

    def on_revoke(self, callback: Callable[[], None]) -> None:
        self._revoke_listeners.append(callback)

    def revoke(self, token: str) -> bool:
        if self._tokens.pop(token, None) is None:
            return False
        self._notify_revoked()
        return True

    def revoke_all(self) -> None:
        self._tokens.clear()
        self._notify_revoked()

    def _notify_revoked(self) -> None:
        logger.info("Web access revoked")
        for callback in self._revoke_listeners:
            try:
                callback()
            except Exception as e:
                logger.error(f"Revoke listener failed: {e}")

    def _prune(self) -> None:
        now = self._clock()
        for token in [t for t, expiry in self._tokens.items() if expiry <= now]:
            del self._tokens[token]

    def __len__(self) -> int:
        self._prune()
        return len(self._tokens)


class RenameRequest(BaseModel):
    name: str


class SessionRequest(BaseModel):
    cwd: Optional[str] = None
    isolate: bool = False
    command: Optional[List[str]] = None


def create_app(
    dispatcher: CommandDispatcher,
    bus: EventBus,
    tokens: AccessTokens,
    config: Optional[ServerConfig] = None,
) -> FastAPI:
    config = config or ServerConfig()
    manager = dispatcher.sessions
    # Each client maps to the loop serving it; revocation may come from another thread.
    clients: Dict[WebSocket, asyncio.AbstractEventLoop] = {}

    def disconnect_clients() -> None:
        for websocket, loop in list(clients.items()):
            asyncio.run_coroutine_threadsafe(websocket.close(code=1008, reason="Access revoked"), loop)
        if clients:
            logger.info(f"Disconnecting {len(clients)} web client(s)")

    tokens.on_revoke(disconnect_clients)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Chorus session server...")
        yield
        logger.info("Shutting down all agent sessions...")
        await manager.shutdown_all()
        if dispatcher.remote is not None:
            await dispatcher.remote.stop()

    app = FastAPI(
        title="Chorus",
        description="Agent session registry with remote web access",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def require_token(authorization: Optional[str] = Header(default=None)) -> None:
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not tokens.validate(token.strip()):
            raise HTTPException(status_code=401, detail="Invalid or expired token")

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "chorus"}

    @app.get("/status")
    async def status():
        return {
            "sessions": len(manager.list_sessions()),
            "clients": len(clients),
            "tokenValid": len(tokens) > 0,
            "remote": dispatcher.remote.status.to_dict() if dispatcher.remote else None,
        }

    @app.get("/sessions", dependencies=[Depends(require_token)])
    async def list_sessions():
        return manager.list_sessions()

    @app.post("/session/create", dependencies=[Depends(require_token)])
    async def create_session(request: SessionRequest):
        if request.cwd and not os.path.isdir(request.cwd):
            raise HTTPException(status_code=400, detail=f"Directory {request.cwd} does not exist")
        try:
            return await manager.create_session(cwd=request.cwd, isolate=request.isolate, command=request.command)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/session/{session_id}/rename", dependencies=[Depends(require_token)])
    async def rename_session(session_id: int, request: RenameRequest):
        if manager.rename_session(session_id, request.name):
            return {"status": "renamed", "session_id": session_id, "new_name": request.name}
        raise HTTPException(status_code=404, detail="Session not found")

    @app.delete("/session/{session_id}", dependencies=[Depends(require_token)])
    async def kill_session(session_id: int):
        if await manager.kill_session(session_id):
            return {"status": "terminated", "session_id": session_id}
        raise HTTPException(status_code=404, detail="Session not found")

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.accept()
        try:
            raw = await asyncio.wait_for(websocket.receive_text(), config.auth_timeout)
        except asyncio.TimeoutError:
            logger.warning("Client did not authenticate in time")
            await websocket.close(code=1008, reason="Authentication timeout")
            return
        except WebSocketDisconnect:
            return

        try:
            first = parse_client_message(raw)
        except ProtocolError:
            first = None
        if not isinstance(first, Auth):
            await websocket.send_text(encode(AuthResult(success=False, error="First message must be Auth")))
            await websocket.close(code=1008)
            return
        if not tokens.validate(first.token):
            logger.warning("Rejected web client with an invalid token")
            await websocket.send_text(encode(AuthResult(success=False, error="Invalid or expired token")))
            await websocket.close(code=1008)
            return
        clients[websocket] = asyncio.get_running_loop()
        logger.info(f"Web client connected ({len(clients)} total)")
        subscriptions: Set[str] = set()
        outgoing: asyncio.Queue = asyncio.Queue()
        receiver = bus.receiver()
        tasks: Set[asyncio.Task] = set()
        sender = asyncio.create_task(_send_loop(websocket, outgoing))
        forwarder = asyncio.create_task(_forward_events(receiver, subscriptions, outgoing))

        try:
            await websocket.send_text(encode(AuthResult(success=True)))
            while True:
                raw = await websocket.receive_text()
                try:
                    message = parse_client_message(raw)
                except ProtocolError as e:
                    logger.warning(f"Skipping invalid client message: {e}")
                    continue
                if isinstance(message, Invoke):
                    task = asyncio.create_task(_invoke(dispatcher, message, outgoing))
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
                elif isinstance(message, Subscribe):
                    subscriptions.add(message.event)
                elif isinstance(message, Unsubscribe):
                    subscriptions.discard(message.event)
                else:
                    logger.debug("Ignoring repeated Auth")
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
        finally:
            clients.pop(websocket, None)
            receiver.close()
            for task in [sender, forwarder, *tasks]:
                task.cancel()
            logger.info(f"Web client disconnected ({len(clients)} remaining)")

    return app


async def _invoke(dispatcher: CommandDispatcher, message: Invoke, outgoing: asyncio.Queue) -> None:
    try:
        value = await dispatcher.dispatch(message.command, message.args)
        result = InvokeResult(id=message.id, result=value)
    except Exception as e:
        logger.debug(f"Command {message.command} failed: {e}")
        result = InvokeResult(id=message.id, error=str(e))
    await outgoing.put(encode(result))


async def _forward_events(receiver: BusReceiver, subscriptions: Set[str], outgoing: asyncio.Queue) -> None:
    async for item in receiver:
        if item.event in subscriptions:
            await outgoing.put(encode(Event(event=item.event, payload=item.payload)))


async def _send_loop(websocket: WebSocket, outgoing: asyncio.Queue) -> None:
    while True:
        data = await outgoing.get()
        await websocket.send_text(data)


def build_app(config: Optional[ServerConfig] = None):
    """Wire the default stack: pty spawner, registry, bridge supervisor, dispatcher."""
    config = config or ServerConfig.from_env()
    bus = EventBus()
    manager = SessionManager(
        PtyProcessSpawner(),
        bus,
        provisioner=GitWorktreeProvisioner(),
        config=SessionManagerConfig.from_env(),
    )
    dispatcher = CommandDispatcher(manager, RemoteManager(bus))
    tokens = AccessTokens(ttl=config.token_ttl)
    return create_app(dispatcher, bus, tokens, config), tokens


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    config = ServerConfig.from_env()
    app, tokens = build_app(config)
    token = tokens.generate()
    logger.info(f"Web access: http://{config.host}:{config.port}/#token={token}")
    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    main()
