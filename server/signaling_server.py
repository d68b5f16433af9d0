from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketDisconnect

from shared.protocol import ErrorMessage

from .room_broker import PeerConnection, RoomBroker

logger = logging.getLogger(__name__)

INVALID_FRAME = "Invalid message format."


class SignalingServer:
    """WebSocket front end that feeds every connection into the room broker."""

    def __init__(self, host: str, port: int, broker: Optional[RoomBroker] = None) -> None:
        self._host = host
        self._port = port
        self._broker = broker or RoomBroker()
        self._app = FastAPI(title="PairWatch broker")
        self._server: Optional[object] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._ids = itertools.count(1)
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def broker(self) -> RoomBroker:
        return self._broker

    def _configure_routes(self) -> None:
        @self._app.get("/healthz")
        async def healthz() -> dict[str, str]:
            return {"status": "ok"}

        @self._app.get("/api/rooms")
        async def rooms() -> JSONResponse:
            return JSONResponse(self._broker.snapshot())

        @self._app.websocket("/")
        async def ws_root(websocket: WebSocket) -> None:
            await self._handle_client(websocket)

        @self._app.websocket("/ws")
        async def ws_alias(websocket: WebSocket) -> None:
            await self._handle_client(websocket)

    async def _handle_client(self, websocket: WebSocket) -> None:
        await websocket.accept()
        peer = websocket.client
        outbox: asyncio.Queue[Optional[str]] = asyncio.Queue()
        connection = PeerConnection(
            connection_id=f"conn-{next(self._ids)}",
            deliver=outbox.put_nowait,
        )
        logger.info("Incoming WebSocket connection %s from %s", connection.connection_id, peer)
        writer = asyncio.create_task(self._write_loop(websocket, outbox, connection))
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                text = message.get("text")
                if text is None:
                    raw = message.get("bytes") or b""
                    try:
                        text = raw.decode("utf-8")
                    except UnicodeDecodeError:
                        logger.warning("Rejected non-UTF-8 frame from %s", connection.connection_id)
                        connection.messages_received += 1
                        connection.send(ErrorMessage(message=INVALID_FRAME))
                        continue
                self._broker.handle_message(connection, text)
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            logger.exception("Error while handling connection %s: %s", connection.connection_id, exc)
        finally:
            self._broker.close_connection(connection)
            outbox.put_nowait(None)
            try:
                await writer
            except Exception:
                logger.debug("Writer for %s ended with an error", connection.connection_id)
            logger.info("Connection %s closed", connection.connection_id)

    async def _write_loop(
        self,
        websocket: WebSocket,
        outbox: "asyncio.Queue[Optional[str]]",
        connection: PeerConnection,
    ) -> None:
        while True:
            text = await outbox.get()
            if text is None:
                return
            try:
                await websocket.send_text(text)
            except Exception:
                # Peer vanished; the receive side tears the connection down.
                logger.debug("Dropping outbound frame for %s", connection.connection_id)
                connection.alive = False
                return

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        config = uvicorn.Config(self._app, host=self._host, port=self._port, log_level="info")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Broker listening on ws://%s:%s", self._host, self._port)

    async def wait_closed(self) -> None:
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None
