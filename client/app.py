from __future__ import annotations

import asyncio
import json
import logging
import webbrowser
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse, HTMLResponse
from starlette.websockets import WebSocketState

from shared.protocol import (
    DEFAULT_ICE_SERVERS,
    Answer,
    BothJoined,
    CallEnded,
    ChatMessage,
    CreateRoom,
    Envelope,
    ErrorMessage,
    FileInfo,
    IceCandidateMessage,
    JoinRoom,
    LeaveRoom,
    Offer,
    PeerLeft,
    RoomCreated,
    RoomJoined,
    SyncAction,
)

from .broker_client import BrokerClient
from .call_negotiation import CallController, CallMode, MediaDevices, NegotiationState, SessionFactory
from .media_probe import probe_duration_async
from .playback_sync import DurationProbe, PlaybackState, PlaybackSyncController

logger = logging.getLogger(__name__)

CHAT_HISTORY_LIMIT = 200
PEER_LEFT_NOTICE = "Peer has left the room."
DISCONNECTED_NOTICE = "Disconnected from server."
CHAT_NOT_READY_NOTICE = "Chat opens once both files are verified."
WEBUI_DIR = Path(__file__).resolve().parent / "webui"


class WebSocketHub:
    """Tracks active UI WebSocket connections."""

    def __init__(self) -> None:
        self._connections: List[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._connections.append(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            if ws in self._connections:
                self._connections.remove(ws)

    async def broadcast(self, message: Dict[str, object]) -> None:
        async with self._lock:
            for ws in list(self._connections):
                try:
                    if ws.application_state == WebSocketState.CONNECTED:
                        await ws.send_json(message)
                except Exception:
                    logger.exception("Failed to send WebSocket message")


class UiPlayer:
    """Video player rendered by the UI; commands travel over the hub."""

    def __init__(self, publish: Callable[[Dict[str, object]], None]) -> None:
        self._publish = publish
        self._current_time = 0.0
        self.source: Optional[str] = None
        self.visible = False

    @property
    def current_time(self) -> float:
        return self._current_time

    def update_position(self, position: float) -> None:
        self._current_time = max(0.0, float(position))

    def load(self, source: str) -> None:
        self.source = source
        self._current_time = 0.0
        self._command("load", source=source)

    def play(self) -> None:
        self._command("play")

    def pause(self) -> None:
        self._command("pause")

    def seek(self, position: float) -> None:
        self.update_position(position)
        self._command("seek")

    def show(self) -> None:
        self.visible = True
        self._publish({"type": "player_visibility", "payload": {"visible": True}})

    def hide(self) -> None:
        self.visible = False
        self._publish({"type": "player_visibility", "payload": {"visible": False}})

    def _command(self, command: str, **extra: object) -> None:
        payload: Dict[str, object] = {"command": command, "currentTime": self._current_time}
        payload.update(extra)
        self._publish({"type": "player_command", "payload": payload})


class ClientApp:
    """Client runtime wiring the broker connection, both controllers and the local UI."""

    def __init__(
        self,
        broker_url: str,
        *,
        ice_servers: Sequence[str] = DEFAULT_ICE_SERVERS,
        room_id: Optional[str] = None,
        devices: Optional[MediaDevices] = None,
        session_factory: Optional[SessionFactory] = None,
        probe: Optional[DurationProbe] = None,
        client_factory: Callable[..., BrokerClient] = BrokerClient,
    ) -> None:
        if devices is None or session_factory is None:
            from .rtc_session import AiortcPeerSession, DeviceMedia

            devices = devices or DeviceMedia()
            session_factory = session_factory or AiortcPeerSession
        self._broker_url = broker_url
        self._auto_join_room = room_id
        self._hub = WebSocketHub()
        self._publish_tasks: set[asyncio.Task] = set()
        self._player = UiPlayer(self._publish)
        self._client = client_factory(broker_url, self._handle_envelope, on_disconnect=self._handle_disconnect)
        self._playback = PlaybackSyncController(
            self._player,
            self._post,
            probe=probe or probe_duration_async,
            notify=self._notice,
            on_teardown=self._end_call_silently,
            on_state=self._on_playback_state,
        )
        self._call = CallController(
            self._post,
            devices,
            session_factory,
            ice_servers=ice_servers,
            notify=self._notice,
            on_state=self._on_call_state,
            on_remote_track=self._on_remote_track,
        )
        self._room_id: Optional[str] = None
        self._peer_present = False
        self._connected = False
        self._chat_history: List[Dict[str, str]] = []
        self._notices: List[str] = []
        self._uvicorn_server = None
        self._app = FastAPI()
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def room_id(self) -> Optional[str]:
        return self._room_id

    @property
    def peer_present(self) -> bool:
        return self._peer_present

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def playback(self) -> PlaybackSyncController:
        return self._playback

    @property
    def call(self) -> CallController:
        return self._call

    @property
    def player(self) -> UiPlayer:
        return self._player

    @property
    def chat_history(self) -> list[Dict[str, str]]:
        return list(self._chat_history)

    @property
    def notices(self) -> list[str]:
        return list(self._notices)

    def _configure_routes(self) -> None:
        @self._app.get("/", response_class=HTMLResponse)
        async def index() -> HTMLResponse:
            html_path = WEBUI_DIR / "index.html"
            return HTMLResponse(html_path.read_text(encoding="utf-8"))

        @self._app.get("/media")
        async def media() -> FileResponse:
            source = self._player.source
            if not source or not Path(source).is_file():
                raise HTTPException(status_code=404, detail="No file selected")
            return FileResponse(source)

        @self._app.get("/api/config")
        async def config() -> Dict[str, object]:
            return {
                "broker_url": self._broker_url,
                "room_id": self._room_id or self._auto_join_room,
            }

        @self._app.get("/api/state")
        async def state() -> Dict[str, object]:
            return self._build_snapshot()

        @self._app.websocket("/ws/ui")
        async def ws_ui(websocket: WebSocket) -> None:
            await self._hub.connect(websocket)
            try:
                await websocket.send_json({"type": "state_snapshot", "payload": self._build_snapshot()})
                while True:
                    text = await websocket.receive_text()
                    try:
                        data = json.loads(text)
                    except json.JSONDecodeError:
                        logger.debug("Ignoring malformed UI message")
                        continue
                    if isinstance(data, dict):
                        await self._handle_ui_message(data)
            except WebSocketDisconnect:
                pass
            finally:
                await self._hub.disconnect(websocket)

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        await self._client.connect()
        self._connected = True
        self._publish_session_status("connected")
        if self._auto_join_room:
            await self.join_room(self._auto_join_room)

    async def stop(self) -> None:
        self._playback.close()
        await self._call.end_call(notify_peer=True)
        await self._client.close()
        self._connected = False

    async def run(self, host: str = "127.0.0.1", port: int = 8200, *, open_browser: bool = True) -> None:
        import uvicorn

        try:
            await self.start()
        except Exception:
            logger.exception("Failed to connect to broker %s", self._broker_url)
            self._notice(DISCONNECTED_NOTICE)
        config = uvicorn.Config(self._app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        self._uvicorn_server = server
        if open_browser:
            url = f"http://{host}:{port}" if host != "0.0.0.0" else f"http://127.0.0.1:{port}"
            webbrowser.open_new_tab(url)
        try:
            await server.serve()
        finally:
            self._uvicorn_server = None
            await self.stop()

    # -- room and chat ----------------------------------------------------

    async def create_room(self) -> bool:
        if self._room_id is not None:
            self._notice("Already in a room.")
            return False
        await self._client.send(CreateRoom())
        return True

    async def join_room(self, room_id: str) -> bool:
        room_id = (room_id or "").strip()
        if not room_id:
            self._notice("Please enter a Room ID to join.")
            return False
        if self._room_id is not None:
            self._notice("Already in a room.")
            return False
        await self._client.send(JoinRoom(room_id=room_id))
        return True

    async def leave_room(self) -> None:
        if self._room_id is None:
            return
        await self._client.send(LeaveRoom())
        self._room_id = None
        self._peer_present = False
        self._playback.handle_peer_left()
        await self._call.end_call()
        self._publish_room()

    async def send_chat(self, message: str) -> bool:
        message = (message or "").strip()
        if not message:
            return False
        if not self._playback.verified:
            self._notice(CHAT_NOT_READY_NOTICE)
            return False
        await self._client.send(ChatMessage(message=message))
        self._append_chat("You", message)
        return True

    # -- playback and call --------------------------------------------------

    async def select_file(self, path: str) -> bool:
        return await self._playback.select_file(path)

    def handle_player_event(self, event: str, current_time: Optional[float] = None) -> None:
        if current_time is not None:
            self._player.update_position(current_time)
        if event == "play":
            self._playback.on_local_play()
        elif event == "pause":
            self._playback.on_local_pause()
        elif event in ("seek", "seeked"):
            self._playback.on_local_seek()
        elif event != "timeupdate":
            logger.debug("Ignoring player event %s", event)

    async def start_call(self, mode: CallMode | str) -> bool:
        if not self._peer_present:
            self._notice("Waiting for a peer to join before calling.")
            return False
        return await self._call.initiate(CallMode(mode))

    async def end_call(self) -> None:
        await self._call.end_call(notify_peer=True)

    # -- inbound envelopes --------------------------------------------------

    async def _handle_envelope(self, envelope: Envelope) -> None:
        logger.debug("Envelope %s from broker", envelope.type.value)
        if isinstance(envelope, (RoomCreated, RoomJoined)):
            self._room_id = envelope.room_id
            logger.info("In room %s", envelope.room_id)
            self._publish_room()
        elif isinstance(envelope, BothJoined):
            self._peer_present = True
            self._playback.dispatch(envelope)
            self._publish_room()
        elif isinstance(envelope, PeerLeft):
            self._peer_present = False
            self._append_chat("System", PEER_LEFT_NOTICE)
            self._playback.dispatch(envelope)
            await self._call.dispatch(envelope)
            self._publish_room()
        elif isinstance(envelope, ErrorMessage):
            logger.warning("Broker error: %s", envelope.message)
            self._notice(envelope.message)
        elif isinstance(envelope, ChatMessage):
            self._append_chat("Peer", envelope.message)
        elif isinstance(envelope, (FileInfo, SyncAction)):
            self._playback.dispatch(envelope)
        elif isinstance(envelope, (Offer, Answer, IceCandidateMessage, CallEnded)):
            await self._call.dispatch(envelope)
        else:
            logger.warning("Unexpected %s envelope from broker", envelope.type.value)

    async def _handle_disconnect(self, reason: Optional[str]) -> None:
        logger.warning("Lost broker connection (%s)", reason)
        self._connected = False
        self._peer_present = False
        self._room_id = None
        self._notice(DISCONNECTED_NOTICE)
        self._playback.handle_peer_left()
        await self._call.end_call()
        self._publish_session_status("disconnected", message=reason)

    # -- UI bridge ------------------------------------------------------------

    async def _handle_ui_message(self, data: Dict[str, Any]) -> None:
        """Handle messages coming from the web UI via WebSocket."""

        kind = data.get("type")
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            payload = {}
        if kind == "create_room":
            await self.create_room()
        elif kind == "join_room":
            await self.join_room(str(payload.get("roomId") or ""))
        elif kind == "leave_room":
            await self.leave_room()
        elif kind == "select_file":
            path = payload.get("path")
            if isinstance(path, str) and path:
                await self.select_file(path)
        elif kind == "player_event":
            raw_time = payload.get("currentTime")
            current_time = float(raw_time) if isinstance(raw_time, (int, float)) and not isinstance(raw_time, bool) else None
            self.handle_player_event(str(payload.get("event") or ""), current_time)
        elif kind == "chat_send":
            await self.send_chat(str(payload.get("message") or ""))
        elif kind == "start_call":
            try:
                mode = CallMode(payload.get("mode", CallMode.VIDEO.value))
            except ValueError:
                self._notice("Unknown call mode.")
                return
            await self.start_call(mode)
        elif kind == "end_call":
            await self.end_call()
        else:
            logger.debug("Unhandled UI message %s", kind)

    def _post(self, envelope: Envelope) -> None:
        self._client.post(envelope)

    def _publish(self, message: Dict[str, object]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._hub.broadcast(message))
        except RuntimeError:
            return
        self._publish_tasks.add(task)
        task.add_done_callback(self._publish_tasks.discard)

    def _publish_session_status(self, state: str, *, message: Optional[str] = None) -> None:
        self._publish({"type": "session_status", "payload": {"state": state, "message": message}})

    def _publish_room(self) -> None:
        self._publish(
            {
                "type": "room_status",
                "payload": {"roomId": self._room_id, "peerPresent": self._peer_present},
            }
        )

    def _notice(self, message: str) -> None:
        self._notices.append(message)
        if len(self._notices) > 100:
            self._notices = self._notices[-100:]
        self._publish({"type": "notice", "payload": {"message": message}})

    def _append_chat(self, sender: str, message: str) -> None:
        entry = {"sender": sender, "message": message}
        self._chat_history.append(entry)
        if len(self._chat_history) > CHAT_HISTORY_LIMIT:
            self._chat_history.pop(0)
        self._publish({"type": "chat_message", "payload": entry})

    async def _end_call_silently(self) -> None:
        await self._call.end_call()

    def _on_playback_state(self, state: PlaybackState) -> None:
        self._publish(
            {
                "type": "playback_state",
                "payload": {
                    "state": state.value,
                    "localDuration": self._playback.local_duration,
                    "remoteDuration": self._playback.remote_duration,
                },
            }
        )

    def _on_call_state(self, state: NegotiationState) -> None:
        self._publish({"type": "call_state", "payload": {"state": state.value}})

    def _on_remote_track(self, track: Any) -> None:
        self._publish({"type": "remote_track", "payload": {"kind": getattr(track, "kind", "unknown")}})

    def _build_snapshot(self) -> Dict[str, object]:
        return {
            "connected": self._connected,
            "roomId": self._room_id,
            "peerPresent": self._peer_present,
            "playback": {
                "state": self._playback.state.value,
                "localDuration": self._playback.local_duration,
                "remoteDuration": self._playback.remote_duration,
                "source": self._player.source,
                "visible": self._player.visible,
            },
            "call": {
                "state": self._call.state.value,
                "mode": self._call.mode.value if self._call.mode else None,
            },
            "chat_history": list(self._chat_history),
        }
