"""Duration probing for locally selected video files."""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Union

import cv2


class MediaProbeError(RuntimeError):
    """Raised when a file cannot be opened or has no usable timing metadata."""


def probe_duration(path: Union[str, Path]) -> float:
    """Return the duration of a video file in seconds."""

    source = Path(path)
    if not source.is_file():
        raise MediaProbeError(f"{source} does not exist")
    cap = cv2.VideoCapture(str(source))
    try:
        if not cap.isOpened():
            raise MediaProbeError(f"{source.name} is not a readable video")
        fps = cap.get(cv2.CAP_PROP_FPS)
        frame_count = cap.get(cv2.CAP_PROP_FRAME_COUNT)
        if fps and fps > 0 and frame_count and frame_count > 0:
            return float(frame_count) / float(fps)
        # Some containers only expose a position; seek to the end and read it back.
        cap.set(cv2.CAP_PROP_POS_AVI_RATIO, 1.0)
        position_ms = cap.get(cv2.CAP_PROP_POS_MSEC)
        if position_ms and position_ms > 0:
            return float(position_ms) / 1000.0
        raise MediaProbeError(f"{source.name} has no duration metadata")
    finally:
        cap.release()


async def probe_duration_async(path: Union[str, Path]) -> float:
    return await asyncio.to_thread(probe_duration, path)
