from __future__ import annotations

import asyncio
import enum
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import websockets
from loguru import logger

from .errors import CaiConnectionError


class ConnectionState(enum.Enum):
    """Lifecycle of the duplex connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class Transport(ABC):
    """Abstract duplex transport exchanging raw text frames."""

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return ConnectionState.CONNECTED

    async def ensure_connected(self) -> None:
        """Connect unless already connected."""
        await self.connect()

    @abstractmethod
    async def connect(self) -> None:
        """Open transport resources and establish connection."""
        raise NotImplementedError

    @abstractmethod
    async def send(self, data: str) -> None:
        """Send one frame."""
        raise NotImplementedError

    @abstractmethod
    async def recv(self) -> str | bytes:
        """Receive one frame."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Close transport resources."""
        raise NotImplementedError


class WebSocketTransport(Transport):
    """Duplex transport over one lazily opened websocket connection."""

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
    ) -> None:
        """Configure websocket transport.

        Args:
            url: Websocket endpoint URL.
            headers: Handshake headers, including auth.
            connect_timeout: Timeout for websocket handshake.
        """
        self._url = url
        self._headers = dict(headers) if headers is not None else None
        self._connect_timeout = connect_timeout
        self._socket: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._lifecycle_lock = asyncio.Lock()

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._state

    async def ensure_connected(self) -> None:
        """Open the websocket once; concurrent callers share one handshake."""
        if self._state is ConnectionState.CONNECTED:
            return
        async with self._lifecycle_lock:
            if self._state is ConnectionState.CONNECTED:
                return
            await self._dial()

    async def connect(self) -> None:
        """Open websocket if not already connected."""
        await self.ensure_connected()

    async def _dial(self) -> None:
        self._state = ConnectionState.CONNECTING
        logger.debug("transport.connect url={}", self._url)
        try:
            self._socket = await asyncio.wait_for(
                websockets.connect(
                    self._url,
                    additional_headers=self._headers,
                    compression=None,
                ),
                timeout=self._connect_timeout,
            )
        except Exception as exc:
            self._socket = None
            self._state = ConnectionState.DISCONNECTED
            raise CaiConnectionError(
                "failed to connect websocket transport: "
                f"{self._url} ({exc.__class__.__name__}: {exc})"
            ) from exc
        self._state = ConnectionState.CONNECTED
        logger.debug("transport.connected url={}", self._url)

    async def send(self, data: str) -> None:
        """Send one text frame over websocket."""
        if self._socket is None or self._state is not ConnectionState.CONNECTED:
            raise CaiConnectionError("websocket transport is not connected")
        try:
            await self._socket.send(data)
        except Exception as exc:
            await self._drop()
            raise CaiConnectionError("failed writing to websocket transport") from exc

    async def recv(self) -> str | bytes:
        """Receive one websocket frame.

        Cancelling a pending receive leaves the connection usable.
        """
        if self._socket is None or self._state is not ConnectionState.CONNECTED:
            raise CaiConnectionError("websocket transport is not connected")
        try:
            return await self._socket.recv()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._drop()
            raise CaiConnectionError(
                f"failed reading from websocket transport ({exc.__class__.__name__}: {exc})"
            ) from exc

    async def close(self) -> None:
        """Send a normal closure frame and release the socket."""
        async with self._lifecycle_lock:
            if self._socket is None:
                self._state = ConnectionState.DISCONNECTED
                return
            self._state = ConnectionState.CLOSING
            socket = self._socket
            self._socket = None
            try:
                await socket.close(code=1000)
            except Exception as exc:
                logger.debug("transport.close ignored error={!r}", exc)
            self._state = ConnectionState.DISCONNECTED
            logger.debug("transport.closed url={}", self._url)

    async def _drop(self) -> None:
        """Forget a broken socket so the next operation re-dials."""
        socket = self._socket
        self._socket = None
        self._state = ConnectionState.DISCONNECTED
        if socket is None:
            return
        try:
            await socket.close()
        except Exception as exc:
            logger.debug("transport.drop ignored error={!r}", exc)
