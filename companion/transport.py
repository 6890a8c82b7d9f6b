"""Duplex websocket transport to the live voice agent."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional, Protocol, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from common.errors import TransportError
from common.log import emit


class Transport(Protocol):
    async def send(self, message: Dict[str, Any]) -> None: ...

    def messages(self) -> AsyncIterator[Union[str, bytes]]: ...

    async def close(self) -> None: ...


class LiveTransport:
    """One websocket connection; the first frame sent is the setup message."""

    def __init__(self, url: str, api_key: Optional[str], setup: Dict[str, Any]) -> None:
        self.url = url
        self.api_key = api_key
        self.setup = setup
        self._ws: Optional[ClientConnection] = None

    async def open(self) -> "LiveTransport":
        if not self.api_key:
            raise TransportError("no API key configured")
        try:
            self._ws = await connect(f"{self.url}?key={self.api_key}", max_size=None)
            await self._ws.send(json.dumps(self.setup))
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise TransportError(f"connect failed: {exc!r}") from exc
        emit("session.transport", event="open", url=self.url)
        return self

    async def send(self, message: Dict[str, Any]) -> None:
        if self._ws is None:
            raise TransportError("transport not open")
        try:
            await self._ws.send(json.dumps(message))
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"send failed: {exc}") from exc

    async def messages(self) -> AsyncIterator[Union[str, bytes]]:
        """Yield raw frames until the server closes; abnormal ends raise."""

        if self._ws is None:
            raise TransportError("transport not open")
        try:
            async for raw in self._ws:
                yield raw
        except ConnectionClosedOK:
            return
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"receive failed: {exc}") from exc

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"close failed: {exc}") from exc
