"""Room session: one authenticated socket and one timeline per open room."""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from typing import Any

import aiohttp

from .api import ChatAPI
from .config import SessionConfig
from .constants import DEFAULT_IMAGE_CONTENT_TYPE, DEFAULT_IMAGE_FILENAME, WS_AUTH_REJECTED_CODES
from .credentials import CredentialProvider
from .errors import (
    APIError,
    ConnectFailure,
    ConnectionLost,
    CredentialMissing,
    HistoryFetchFailure,
    RoomChatError,
    SendFailure,
    SendInProgress,
    TokenRejected,
)
from .events import ChatEvent, ImageStatus, SequenceKey
from .images import ImageResolver
from .normalizer import normalize
from .timeline import ORIGIN_HISTORY, ORIGIN_LIVE, Timeline, TimelineSnapshot
from .transport import EV_CLOSED, EV_ERROR, EV_FRAME, TransportEvent, WebSocketTransport
from .utils import normalize_room_id, sanitize_text_input

logger = logging.getLogger(__name__)

SEND_TEXT = "text"
SEND_IMAGE = "image"


class SessionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    REPLAYING_HISTORY = "replaying_history"
    STREAMING = "streaming"
    CLOSED = "closed"
    ERRORED = "errored"


ACTIVE_STATES = frozenset({SessionState.REPLAYING_HISTORY, SessionState.STREAMING})
TERMINAL_STATES = frozenset({SessionState.CLOSED, SessionState.ERRORED})

TransportFactory = Callable[[str], WebSocketTransport]


class RoomSession:
    """Connection lifecycle and timeline for one open room.

    Lifecycle:
        IDLE -> CONNECTING -> AUTHENTICATING -> REPLAYING_HISTORY -> STREAMING,
        ending in CLOSED (caller closed) or ERRORED (anything else). ERRORED
        is absorbing; to retry, open a new session.

    Concurrency:
        Live frames are consumed by one task reading the transport queue and
        are applied while history is still loading. The timeline's idempotent,
        timestamp-ordered append makes both streams commute, so nothing is
        buffered or delayed here.

    Callbacks:
        ``on_state(state, error)``, ``on_event(event)`` and ``on_error(error)``
        run on the event loop and must not block. Exceptions raised by them
        are logged and ignored.
    """

    def __init__(
        self,
        room_id: str,
        credentials: CredentialProvider,
        api: ChatAPI,
        config: SessionConfig | None = None,
        *,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        """Initialize a room session.

        Args:
            room_id: Server-assigned room identifier
            credentials: Source of the bearer token
            api: HTTP channel to the backend
            config: Optional session tunables
            transport_factory: Optional factory building the socket transport
                for a URL

        Raises:
            ValueError: If the room identifier is invalid
        """
        normalized = normalize_room_id(room_id)
        if normalized is None:
            raise ValueError(f"Invalid room id: {room_id!r}")

        self.room_id = normalized
        self.credentials = credentials
        self.api = api
        self.config = config or SessionConfig()
        self.timeline = Timeline(max_entries=self.config.max_timeline_entries)

        self.state = SessionState.IDLE
        self.error: RoomChatError | None = None

        self._token: str | None = None
        self._transport_factory = transport_factory or self._default_transport
        self._transport: WebSocketTransport | None = None
        self._images: ImageResolver | None = None
        self._driver: asyncio.Task | None = None
        self._history: asyncio.Task | None = None
        self._closing = False
        self._sending: set[str] = set()

        self.on_state: Callable[[SessionState, RoomChatError | None], None] | None = None
        self.on_event: Callable[[ChatEvent], None] | None = None
        self.on_error: Callable[[RoomChatError], None] | None = None

    def __repr__(self) -> str:
        return f"RoomSession(room_id={self.room_id!r}, state={self.state.value})"

    async def __aenter__(self) -> RoomSession:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    def snapshot(self) -> TimelineSnapshot:
        return self.timeline.snapshot()

    def image_status(self, key: SequenceKey) -> ImageStatus:
        if self._images is None:
            return ImageStatus.NONE
        return self._images.status(key)

    def _default_transport(self, url: str) -> WebSocketTransport:
        return WebSocketTransport(
            self.api.http,
            url,
            connect_timeout_s=self.config.connect_timeout_s,
            heartbeat_s=self.config.heartbeat_s,
        )

    # ------------------------------------------------------------------
    # State reporting
    # ------------------------------------------------------------------

    def _set_state(self, state: SessionState, error: RoomChatError | None = None) -> None:
        if self.state is state or self.state in TERMINAL_STATES:
            return
        previous = self.state
        self.state = state
        if error is not None:
            self.error = error
        logger.info("Room %s: %s -> %s", self.room_id, previous.value, state.value)
        if self.on_state:
            try:
                self.on_state(state, error)
            except Exception as e:
                logger.exception("Error in on_state callback: %s", e)

    def _report(self, error: RoomChatError) -> None:
        if self.on_error:
            try:
                self.on_error(error)
            except Exception as e:
                logger.exception("Error in on_error callback: %s", e)

    def _emit(self, event: ChatEvent) -> None:
        if self.on_event:
            try:
                self.on_event(event)
            except Exception as e:
                logger.exception("Error in on_event callback: %s", e)

    def _fail(self, error: RoomChatError) -> bool:
        """Move to ERRORED and report the cause once.

        Returns:
            True if the session transitioned, False if it had already ended
        """
        if self.state in TERMINAL_STATES:
            return False
        logger.error("Room %s failed: %s", self.room_id, error)
        self._set_state(SessionState.ERRORED, error)
        self._report(error)
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Connect, authenticate, replay history and start streaming.

        Returns once the session is STREAMING, or CLOSED if ``close()`` was
        called meanwhile.

        Raises:
            CredentialMissing: If no token is available (no connection is made)
            ConnectFailure: If the socket could not be opened or authenticated
            TokenRejected: If the backend refused the token during replay
            ConnectionLost: If the socket dropped during replay
            RuntimeError: If the session was already opened
        """
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"Session for room {self.room_id} is already {self.state.value}")

        try:
            await self._open()
        except asyncio.CancelledError:
            self._closing = True
            self._set_state(SessionState.CLOSED)
            await self._release()
            raise

        if self.state is SessionState.ERRORED:
            await self._release()
            if self.error is not None:
                raise self.error

    async def _open(self) -> None:
        self._set_state(SessionState.CONNECTING)

        token = await self._acquire_token()
        if self._closing:
            return
        self._token = token

        transport = self._transport_factory(self.api.ws_url(self.room_id))
        self._transport = transport
        try:
            await transport.connect()
        except ConnectFailure as e:
            if self._closing:
                return
            self._fail(e)
            raise
        if self._closing:
            await transport.close()
            return

        self._set_state(SessionState.AUTHENTICATING)
        try:
            await transport.send_text(token)
        except (ConnectionError, aiohttp.ClientError) as e:
            await transport.close()
            if self._closing:
                return
            error = ConnectFailure(f"Could not send credentials: {e}")
            self._fail(error)
            raise error from e
        if self._closing:
            return

        self._images = ImageResolver(
            self.api,
            self.timeline,
            token,
            timeout_s=self.config.image_timeout_s,
            max_bytes=self.config.max_image_bytes,
        )
        self._images.on_resolved = self._emit
        self._images.on_failed = lambda event, _error: self._emit(event)

        loop = asyncio.get_running_loop()
        self._set_state(SessionState.REPLAYING_HISTORY)
        self._driver = loop.create_task(self._drive(transport), name=f"roomchat-drive-{self.room_id}")
        self._history = loop.create_task(
            self._replay_history(token), name=f"roomchat-history-{self.room_id}"
        )

        await asyncio.wait({self._history})
        self._set_state(SessionState.STREAMING)

    async def _acquire_token(self) -> str:
        try:
            token = await asyncio.wait_for(
                self.credentials.get_token(), timeout=self.config.credential_timeout_s
            )
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for credentials")
            token = None
        except Exception as e:
            logger.warning("Credential provider failed: %s", e)
            token = None

        if not isinstance(token, str) or not token.strip():
            error = CredentialMissing("No bearer token available. Log in again to open this room.")
            self._fail(error)
            raise error
        return token.strip()

    async def _replay_history(self, token: str) -> None:
        try:
            records = await self.api.fetch_history(
                token, self.room_id, timeout_s=self.config.history_timeout_s
            )
        except asyncio.CancelledError:
            logger.debug("History fetch cancelled for room %s", self.room_id)
            raise
        except APIError as e:
            if e.is_auth_error:
                self._fail(TokenRejected(f"Backend rejected the session token: {e}"))
                return
            self._history_failed(HistoryFetchFailure(str(e)))
            return
        except HistoryFetchFailure as e:
            self._history_failed(e)
            return

        replayed = 0
        for record in records:
            if self.state not in ACTIVE_STATES:
                break
            if self._ingest(record, ORIGIN_HISTORY) is not None:
                replayed += 1
        logger.info(
            "Replayed %d of %d history records for room %s", replayed, len(records), self.room_id
        )

    def _history_failed(self, error: HistoryFetchFailure) -> None:
        logger.warning("History unavailable for room %s, continuing live: %s", self.room_id, error)
        self._report(error)

    async def _drive(self, transport: WebSocketTransport) -> None:
        while True:
            event = await transport.receive()
            if event.kind == EV_FRAME:
                self._ingest(event.data, ORIGIN_LIVE)
            elif event.kind == EV_ERROR:
                logger.debug("Transport error in room %s: %s", self.room_id, event.error)
            elif event.kind == EV_CLOSED:
                await self._transport_closed(event)
                return

    async def _transport_closed(self, event: TransportEvent) -> None:
        if self._closing or self.state in TERMINAL_STATES:
            return

        code = event.close_code
        if code in WS_AUTH_REJECTED_CODES:
            error: RoomChatError = TokenRejected(
                f"Backend closed the room socket, rejecting the token (code {code})"
            )
        else:
            error = ConnectionLost(f"Connection to room {self.room_id} lost (code {code})")
        if self._fail(error):
            await self._release()

    def _ingest(self, payload: Any, origin: str) -> ChatEvent | None:
        if self.state not in ACTIVE_STATES:
            logger.debug("Dropping %s payload, session is %s", origin, self.state.value)
            return None

        stored = self.timeline.append(normalize(payload), origin=origin)
        if stored is None:
            return None

        if stored.is_image and self._images is not None:
            self._images.resolve(stored)
        self._emit(stored)
        return stored

    async def close(self) -> None:
        """Close the session and cancel all outstanding work.

        No timeline changes happen after this returns. Calling it again is a
        no-op.
        """
        if self._closing:
            return
        self._closing = True
        self._set_state(SessionState.CLOSED)
        await self._release()
        logger.info("Room session %s closed", self.room_id)

    async def _release(self) -> None:
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._history, self._driver)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._images is not None:
            await self._images.cancel_all()
        if self._transport is not None:
            await self._transport.close()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def _begin_send(self, kind: str) -> None:
        if self.state is not SessionState.STREAMING:
            raise SendFailure(f"Cannot send while the session is {self.state.value}")
        if kind in self._sending:
            raise SendInProgress(f"Previous {kind} message is still being sent")
        self._sending.add(kind)

    async def send_text(self, text: str) -> None:
        """Send a chat message over the socket.

        Returns only after the frame was written; the caller should clear its
        compose box then, not before.

        Raises:
            ValueError: If the text is empty or contains invalid characters
            SendFailure: If the session is not streaming or the write failed
            SendInProgress: If a previous text send has not completed
        """
        sanitized = sanitize_text_input(text)
        if sanitized is None:
            raise ValueError("Message text cannot be empty or contain control characters.")

        self._begin_send(SEND_TEXT)
        transport = self._transport
        try:
            if transport is None:
                raise SendFailure("Room socket is not open")
            await asyncio.wait_for(
                transport.send_text(sanitized), timeout=self.config.send_timeout_s
            )
        except asyncio.TimeoutError as e:
            raise SendFailure("Timed out sending message") from e
        except (ConnectionError, aiohttp.ClientError) as e:
            raise SendFailure(f"Failed to send message: {e}") from e
        finally:
            self._sending.discard(SEND_TEXT)
        logger.debug("Sent %d characters to room %s", len(sanitized), self.room_id)

    async def send_image(
        self,
        data: bytes,
        *,
        caption: str = "",
        filename: str = DEFAULT_IMAGE_FILENAME,
        content_type: str = DEFAULT_IMAGE_CONTENT_TYPE,
    ) -> Any:
        """Upload an image with an optional caption to the room.

        Only one image upload may be in flight per session.

        Returns:
            The backend's response to the upload

        Raises:
            ValueError: If the image or caption is invalid
            SendFailure: If the session is not streaming or the upload failed
            SendInProgress: If a previous image upload has not completed
        """
        if not isinstance(data, (bytes, bytearray)) or not data:
            raise ValueError("Image data cannot be empty.")
        if len(data) > self.config.max_image_bytes:
            raise ValueError(
                f"Image is too large ({len(data)} bytes, max {self.config.max_image_bytes})."
            )
        clean_caption = ""
        if caption and caption.strip():
            sanitized = sanitize_text_input(caption)
            if sanitized is None:
                raise ValueError("Caption contains invalid characters or is too long.")
            clean_caption = sanitized

        self._begin_send(SEND_IMAGE)
        token = self._token
        try:
            if token is None:
                raise SendFailure("No session token to upload with")
            response = await self.api.upload_image(
                token,
                self.room_id,
                bytes(data),
                caption=clean_caption,
                filename=filename,
                content_type=content_type,
                timeout_s=self.config.send_timeout_s,
            )
        except APIError as e:
            if e.is_auth_error and self._fail(TokenRejected(f"Backend rejected the session token: {e}")):
                await self._release()
            raise SendFailure(f"Image upload failed: {e}") from e
        finally:
            self._sending.discard(SEND_IMAGE)

        logger.debug("Uploaded %d byte image to room %s", len(data), self.room_id)
        return response
