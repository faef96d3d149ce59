"""WebSocket transport that turns socket traffic into a queue of events."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass

import aiohttp

from .constants import DEFAULT_CONNECT_TIMEOUT_S, DEFAULT_HEARTBEAT_S, MAX_FRAME_SIZE
from .errors import ConnectFailure

logger = logging.getLogger(__name__)

EV_FRAME = "frame"
EV_ERROR = "error"
EV_CLOSED = "closed"

CLOSE_WAIT_S = 5.0


@dataclass(frozen=True)
class TransportEvent:
    """One item read from the socket: a frame, an error or the final close."""

    kind: str
    data: str | bytes | None = None
    close_code: int | None = None
    error: BaseException | None = None


class WebSocketTransport:
    """Message-framed connection to one room socket.

    A single reader task drains the socket into an ``asyncio.Queue``; the
    consumer pulls events with ``receive()``. The last event is always
    ``EV_CLOSED``.
    """

    def __init__(
        self,
        http: aiohttp.ClientSession,
        url: str,
        *,
        connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
        heartbeat_s: float | None = DEFAULT_HEARTBEAT_S,
        max_msg_size: int = MAX_FRAME_SIZE,
    ) -> None:
        self.http = http
        self.url = url
        self.connect_timeout_s = connect_timeout_s
        self.heartbeat_s = heartbeat_s
        self.max_msg_size = max_msg_size

        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._queue: asyncio.Queue[TransportEvent] = asyncio.Queue()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def close_code(self) -> int | None:
        return self._ws.close_code if self._ws is not None else None

    async def connect(self) -> None:
        """Open the socket and start reading.

        Raises:
            ConnectFailure: If the socket cannot be opened in time
        """
        if self._ws is not None:
            raise RuntimeError("Transport already connected")

        logger.debug("Connecting to %s (timeout=%ss)", self.url, self.connect_timeout_s)
        try:
            self._ws = await asyncio.wait_for(
                self.http.ws_connect(
                    self.url,
                    heartbeat=self.heartbeat_s,
                    max_msg_size=self.max_msg_size,
                ),
                timeout=self.connect_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise ConnectFailure(
                f"Timed out connecting to {self.url} after {self.connect_timeout_s}s"
            ) from e
        except aiohttp.WSServerHandshakeError as e:
            raise ConnectFailure(f"Server refused WebSocket upgrade (HTTP {e.status})") from e
        except (aiohttp.ClientError, OSError) as e:
            raise ConnectFailure(f"Could not connect to {self.url}: {e}") from e

        self._reader = asyncio.get_running_loop().create_task(
            self._read_loop(self._ws), name="roomchat-ws-reader"
        )
        logger.info("WebSocket connected to %s", self.url)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    self._queue.put_nowait(TransportEvent(EV_FRAME, data=msg.data))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = ws.exception()
                    logger.warning("WebSocket error: %s", error)
                    self._queue.put_nowait(TransportEvent(EV_ERROR, error=error))
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, ConnectionError) as e:
            logger.warning("WebSocket read failed: %s", e)
            self._queue.put_nowait(TransportEvent(EV_ERROR, error=e))
        finally:
            logger.debug("WebSocket reader finished (close code %s)", ws.close_code)
            self._queue.put_nowait(TransportEvent(EV_CLOSED, close_code=ws.close_code))

    async def receive(self) -> TransportEvent:
        return await self._queue.get()

    async def send_text(self, text: str) -> None:
        """Send one raw text frame.

        Raises:
            ConnectionError: If the socket is not open
        """
        if self._ws is None or self._ws.closed:
            raise ConnectionError("WebSocket is not connected")
        await self._ws.send_str(text)

    async def close(self) -> None:
        """Close the socket and wait for the reader to finish."""
        ws = self._ws
        if ws is not None and not ws.closed:
            try:
                await asyncio.wait_for(ws.close(), timeout=CLOSE_WAIT_S)
            except (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError) as e:
                logger.debug("Error closing WebSocket: %s", e)

        reader = self._reader
        if reader is not None and not reader.done():
            try:
                await asyncio.wait_for(asyncio.shield(reader), timeout=CLOSE_WAIT_S)
            except asyncio.TimeoutError:
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader
