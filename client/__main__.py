from __future__ import annotations

import argparse
import asyncio
import logging

from shared.protocol import DEFAULT_BROKER_PORT, DEFAULT_ICE_SERVERS

from .app import ClientApp


def main() -> None:
    parser = argparse.ArgumentParser(description="PairWatch client")
    parser.add_argument(
        "broker_url",
        nargs="?",
        default=f"ws://127.0.0.1:{DEFAULT_BROKER_PORT}/",
        help="WebSocket URL of the room broker",
    )
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host to bind the local UI web server")
    parser.add_argument("--ui-port", type=int, default=8200, help="Port for the local UI web server")
    parser.add_argument("--room", help="Room ID to join right after connecting")
    parser.add_argument(
        "--stun",
        action="append",
        default=None,
        help="STUN/TURN URL for calls (repeatable; defaults to a public STUN server)",
    )
    parser.add_argument("--video-device", help="Camera device name/path for calls")
    parser.add_argument("--audio-device", help="Microphone device name for calls")
    parser.add_argument("--no-browser", action="store_true", help="Do not open the UI in a browser")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    args = parser.parse_args()

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    from .rtc_session import AiortcPeerSession, DeviceMedia

    app = ClientApp(
        args.broker_url,
        ice_servers=tuple(args.stun) if args.stun else DEFAULT_ICE_SERVERS,
        room_id=args.room,
        devices=DeviceMedia(video_device=args.video_device, audio_device=args.audio_device),
        session_factory=AiortcPeerSession,
    )

    try:
        asyncio.run(app.run(host=args.ui_host, port=args.ui_port, open_browser=not args.no_browser))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
