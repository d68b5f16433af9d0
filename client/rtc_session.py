"""aiortc-backed implementations of the call session and capture devices."""
from __future__ import annotations

import asyncio
import logging
import platform
from typing import Any, Callable, List, Optional, Sequence

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp

from shared.protocol import IceCandidate, SessionDescription

from .call_negotiation import CallMode

logger = logging.getLogger(__name__)


class AiortcPeerSession:
    """Peer media session on top of :class:`aiortc.RTCPeerConnection`.

    aiortc finishes ICE gathering inside ``setLocalDescription`` and embeds
    every local candidate in the SDP, so ``on_ice_candidate`` is never called;
    candidates trickled by a browser peer are still accepted.
    """

    def __init__(
        self,
        ice_servers: Sequence[str],
        *,
        on_ice_candidate: Callable[[IceCandidate], None],
        on_state_change: Callable[[str], None],
        on_track: Callable[[Any], None],
    ) -> None:
        servers = [RTCIceServer(urls=list(ice_servers))] if ice_servers else []
        self._pc = RTCPeerConnection(RTCConfiguration(iceServers=servers))
        self._on_ice_candidate = on_ice_candidate

        @self._pc.on("connectionstatechange")
        async def on_connection_state() -> None:
            on_state_change(self._pc.connectionState)

        @self._pc.on("track")
        def on_remote_track(track: Any) -> None:
            logger.info("Receiving remote %s track", track.kind)
            on_track(track)

    def add_tracks(self, tracks: Sequence[Any]) -> None:
        for track in tracks:
            self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return self._local_description()

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return self._local_description()

    async def accept_remote(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        line = candidate.candidate.strip()
        if not line:
            # End-of-candidates marker.
            return
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.sdp_mid
        ice.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(ice)

    async def close(self) -> None:
        await self._pc.close()

    def _local_description(self) -> SessionDescription:
        description = self._pc.localDescription
        return SessionDescription(type=description.type, sdp=description.sdp)


def _capture_sources(video_device: Optional[str], audio_device: Optional[str]) -> tuple[tuple[str, str, dict], tuple[str, str, dict]]:
    """Return ``(file, format, options)`` for the camera and the microphone."""

    system = platform.system()
    if system == "Linux":
        return (
            (video_device or "/dev/video0", "v4l2", {"video_size": "640x480"}),
            (audio_device or "default", "pulse", {}),
        )
    if system == "Darwin":
        return (
            (f"{video_device or 'default'}:none", "avfoundation", {"framerate": "30", "video_size": "640x480"}),
            (f"none:{audio_device or 'default'}", "avfoundation", {}),
        )
    if system == "Windows":
        if not video_device or not audio_device:
            raise RuntimeError("DirectShow capture needs explicit --video-device and --audio-device names")
        return (
            (f"video={video_device}", "dshow", {"video_size": "640x480"}),
            (f"audio={audio_device}", "dshow", {}),
        )
    raise RuntimeError(f"Unsupported platform for camera capture: {system}")


class DeviceMedia:
    """Opens the local camera and microphone through FFmpeg capture devices."""

    def __init__(self, *, video_device: Optional[str] = None, audio_device: Optional[str] = None) -> None:
        self._video_device = video_device
        self._audio_device = audio_device

    async def acquire(self, mode: CallMode) -> List[Any]:
        video_source, audio_source = _capture_sources(self._video_device, self._audio_device)
        tracks: List[Any] = []
        audio_player = await asyncio.to_thread(self._open, audio_source)
        if audio_player.audio is None:
            raise RuntimeError("Microphone produced no audio track")
        tracks.append(audio_player.audio)
        if CallMode(mode) == CallMode.VIDEO:
            try:
                video_player = await asyncio.to_thread(self._open, video_source)
            except Exception:
                audio_player.audio.stop()
                raise
            if video_player.video is None:
                audio_player.audio.stop()
                raise RuntimeError("Camera produced no video track")
            tracks.append(video_player.video)
        return tracks

    @staticmethod
    def _open(source: tuple[str, str, dict]) -> MediaPlayer:
        file, fmt, options = source
        logger.info("Opening capture device %s (%s)", file, fmt)
        return MediaPlayer(file, format=fmt, options=options)
