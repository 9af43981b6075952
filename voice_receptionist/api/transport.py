"""WebSocket call channel.

Wire format, both directions:

  * binary messages carry PCM16 mono audio at ``AUDIO_SAMPLE_RATE``
  * text messages carry JSON control events: the server sends
    ``{"event": "clear"}`` on barge-in; the client sends
    ``{"event": "stop"}`` to hang up (other events are ignored)
"""

from __future__ import annotations

import json
import logging

from fastapi import WebSocket
from fastapi.websockets import WebSocketState

logger = logging.getLogger(__name__)


class WebSocketAudioChannel:
    """``AudioChannel`` over a Starlette WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._closed = False

    async def receive_frame(self) -> bytes | None:
        while not self._closed:
            message = await self._ws.receive()
            if message["type"] == "websocket.disconnect":
                self._closed = True
                return None
            data = message.get("bytes")
            if data is not None:
                return data
            text = message.get("text")
            if text is None:
                continue
            try:
                event = json.loads(text).get("event")
            except (json.JSONDecodeError, AttributeError):
                logger.debug("Ignoring malformed control message: %r", text[:100])
                continue
            if event == "stop":
                return None
            logger.debug("Ignoring control event %r", event)
        return None

    async def send_frame(self, frame: bytes) -> None:
        await self._ws.send_bytes(frame)

    async def clear_playback(self) -> None:
        if self._connected:
            await self._ws.send_text(json.dumps({"event": "clear"}))

    async def close(self) -> None:
        if self._connected:
            await self._ws.close()
        self._closed = True

    @property
    def _connected(self) -> bool:
        return (
            not self._closed
            and self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )
