from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from shared.protocol import Envelope, EnvelopeDecodeError, decode_envelope, encode_envelope

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Envelope], Awaitable[None] | None]
DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]


class BrokerClient:
    """Handles the WebSocket connection to the room broker."""

    def __init__(
        self,
        url: str,
        on_message: MessageCallback,
        *,
        on_disconnect: Optional[DisconnectCallback] = None,
    ) -> None:
        self._url = url
        self._on_message = on_message
        self._on_disconnect = on_disconnect
        self._ws = None
        self._send_queue: Deque[str] = deque()
        self._send_event = asyncio.Event()
        self._send_task: Optional[asyncio.Task[None]] = None
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._stop = False
        self._disconnect_notified = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._stop

    async def connect(self) -> None:
        logger.info("Connecting to broker %s", self._url)
        self._ws = await websockets.connect(self._url)
        self._stop = False
        self._disconnect_notified = False
        self._send_task = asyncio.create_task(self._send_loop())
        self._recv_task = asyncio.create_task(self._recv_loop())

    async def close(self) -> None:
        self._stop = True
        self._send_event.set()
        ws = self._ws
        self._ws = None
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                pass
        self._send_queue.clear()

    def post(self, envelope: Envelope) -> None:
        """Queue an envelope without waiting; delivery order is preserved."""

        if self._stop:
            logger.debug("Dropping %s; broker connection is closed", envelope.type.value)
            return
        self._send_queue.append(encode_envelope(envelope))
        self._send_event.set()

    async def send(self, envelope: Envelope) -> None:
        self.post(envelope)

    async def _notify_disconnect(self, reason: Optional[str]) -> None:
        if self._on_disconnect is None or self._disconnect_notified:
            return
        self._disconnect_notified = True
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")

    async def _send_loop(self) -> None:
        while not self._stop:
            await self._send_event.wait()
            self._send_event.clear()
            while self._send_queue and not self._stop:
                data = self._send_queue.popleft()
                ws = self._ws
                if ws is None:
                    break
                try:
                    await ws.send(data)
                except Exception:
                    logger.exception("Failed to send envelope to broker")
                    self._stop = True
                    break

    async def _recv_loop(self) -> None:
        ws = self._ws
        assert ws is not None
        disconnect_reason: Optional[str] = None
        try:
            async for frame in ws:
                try:
                    envelope = decode_envelope(frame)
                except EnvelopeDecodeError as exc:
                    logger.warning("Ignoring undecodable frame from broker: %s", exc)
                    continue
                await self._dispatch(envelope)
            disconnect_reason = "server_closed"
            logger.info("Broker closed the connection")
        except ConnectionClosed:
            disconnect_reason = "server_closed"
            logger.info("Broker connection closed")
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error while receiving from broker")
            disconnect_reason = "recv_error"
        finally:
            was_stopping = self._stop
            await self.close()
        if not was_stopping:
            await self._notify_disconnect(disconnect_reason or "connection_closed")

    async def _dispatch(self, envelope: Envelope) -> None:
        try:
            result = self._on_message(envelope)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error while handling envelope %s", envelope.type.value)
