"""Connected parties that receive channel events."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional
from uuid import uuid4

from starlette.websockets import WebSocket

from .channels import ChannelEvent, ChannelKey


class Observer:
    """A subscriber identified by ``id`` and acting for ``principal``.

    Subclasses implement :meth:`deliver`. ``closed`` is flipped once by the
    router when the observer disconnects.
    """

    def __init__(self, principal: str, observer_id: Optional[str] = None):
        self.id = observer_id or uuid4().hex
        self.principal = principal
        self.closed = False

    async def deliver(self, channel: ChannelKey, event: ChannelEvent) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id} principal={self.principal}>"


class WebSocketObserver(Observer):
    """Observer bound to one websocket connection.

    Writes are serialized so frames from concurrent publishes never
    interleave on the socket.
    """

    def __init__(self, websocket: WebSocket, principal: str):
        super().__init__(principal)
        self.websocket = websocket
        self._send_lock = asyncio.Lock()

    async def deliver(self, channel: ChannelKey, event: ChannelEvent) -> None:
        await self.send(event.to_frame(channel))

    async def send(self, frame: Dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_json(frame)
