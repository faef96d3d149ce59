"""HTTP channel to the chat backend."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from .constants import (
    DEFAULT_HISTORY_TIMEOUT_S,
    DEFAULT_IMAGE_CONTENT_TYPE,
    DEFAULT_IMAGE_FILENAME,
    F_ROOM_NAME,
    F_TOKEN,
    FORM_CHAT_IMAGE,
    FORM_CONTENT,
    MAX_HISTORY_SIZE,
    MAX_IMAGE_BYTES,
    PATH_IMAGE,
    PATH_LOGIN,
    PATH_ROOM,
    PATH_ROOM_CREATE,
    PATH_ROOM_IMAGE,
    PATH_ROOM_MESSAGES,
    PATH_ROOMS,
    PATH_SIGNUP,
)
from .errors import APIError, HistoryFetchFailure
from .utils import http_to_ws_url, quote_segment

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


def image_name(image_ref: str) -> str:
    """Extract the file name the image endpoint expects from a reference.

    Args:
        image_ref: Server-side image path or identifier

    Returns:
        Last path segment of the reference

    Raises:
        ValueError: If the reference has no usable name
    """
    name = image_ref.strip().replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]
    if not name or name in (".", ".."):
        raise ValueError(f"Invalid image reference: {image_ref!r}")
    return name


def decode_history(body: bytes | str) -> list[Any]:
    """Decode a history response body.

    The backend may encode the array twice (a JSON string holding JSON);
    both forms are accepted.

    Raises:
        HistoryFetchFailure: If the body is not a JSON array
    """
    try:
        data = json.loads(body)
        if isinstance(data, str):
            data = json.loads(data)
    except (ValueError, RecursionError) as e:
        raise HistoryFetchFailure(f"History response is not valid JSON: {e}") from e

    if not isinstance(data, list):
        raise HistoryFetchFailure(
            f"History response must be a JSON array (got {type(data).__name__})"
        )
    return data


class ChatAPI:
    """Request/response channel to the chat backend.

    One instance can be shared by every room session of a process; it owns
    the underlying ``aiohttp.ClientSession`` unless one is supplied.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = DEFAULT_HISTORY_TIMEOUT_S,
    ) -> None:
        """Initialize the API client.

        Args:
            base_url: Backend base URL, e.g. ``https://chat.example.com``
            session: Optional externally managed aiohttp session
            timeout_s: Default per-request timeout
        """
        if not isinstance(base_url, str) or not base_url.strip():
            raise ValueError("Backend URL cannot be empty")
        self.base_url = base_url.strip().rstrip("/")
        self.timeout_s = timeout_s
        self._session = session
        self._owns_session = session is None

    @property
    def http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> ChatAPI:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def url(self, path: str) -> str:
        return self.base_url + path

    def ws_url(self, room_id: str) -> str:
        return http_to_ws_url(self.base_url, PATH_ROOM.format(room_id=quote_segment(room_id)))

    def image_url(self, image_ref: str) -> str:
        ref = image_ref.strip()
        if ref.lower().startswith(("http://", "https://")):
            return ref
        return self.url(PATH_IMAGE.format(name=quote_segment(image_name(ref))))

    def _headers(self, token: str | None) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _timeout(self, timeout_s: float | None) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=timeout_s or self.timeout_s)

    async def _raise_for_status(self, resp: aiohttp.ClientResponse, what: str) -> None:
        if resp.status < 400:
            return
        try:
            detail = (await resp.text())[:200]
        except (aiohttp.ClientError, UnicodeDecodeError):
            detail = ""
        raise APIError(
            f"{what} failed with HTTP {resp.status}{': ' + detail if detail else ''}",
            status=resp.status,
        )

    async def _read_limited(self, resp: aiohttp.ClientResponse, limit: int, what: str) -> bytes:
        if resp.content_length is not None and resp.content_length > limit:
            raise APIError(f"{what} too large: {resp.content_length} bytes (max {limit})")
        chunks: list[bytes] = []
        total = 0
        async for chunk in resp.content.iter_chunked(READ_CHUNK_SIZE):
            total += len(chunk)
            if total > limit:
                raise APIError(f"{what} too large: more than {limit} bytes")
            chunks.append(chunk)
        return b"".join(chunks)

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        payload: Any = None,
        timeout_s: float | None = None,
        what: str,
    ) -> Any:
        try:
            async with self.http.request(
                method,
                self.url(path),
                json=payload,
                headers=self._headers(token),
                timeout=self._timeout(timeout_s),
            ) as resp:
                await self._raise_for_status(resp, what)
                body = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise APIError(f"{what} failed: {str(e) or type(e).__name__}") from e

        if not body.strip():
            return None
        try:
            return json.loads(body)
        except ValueError:
            logger.debug("%s returned a non-JSON body", what)
            return body

    async def _auth(self, path: str, username: str, password: str, what: str) -> str:
        data = await self._request_json(
            "POST",
            path,
            payload={"username": username, "password": password},
            what=what,
        )
        token = data.get(F_TOKEN) if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            raise APIError(f"{what} response did not include a token")
        return token

    async def login(self, username: str, password: str) -> str:
        """Log in and return a bearer token."""
        return await self._auth(PATH_LOGIN, username, password, "Login")

    async def signup(self, username: str, password: str) -> str:
        """Create an account and return a bearer token."""
        return await self._auth(PATH_SIGNUP, username, password, "Signup")

    async def list_rooms(self, token: str | None) -> dict[str, str]:
        """List rooms.

        Returns:
            Mapping of room id to display name
        """
        data = await self._request_json("GET", PATH_ROOMS, token=token, what="Room listing")
        rooms: dict[str, str] = {}
        if isinstance(data, dict):
            for room_id, info in data.items():
                name = info.get(F_ROOM_NAME) if isinstance(info, dict) else None
                rooms[str(room_id)] = name if isinstance(name, str) else ""
        elif isinstance(data, list):
            for info in data:
                if not isinstance(info, dict):
                    continue
                room_id = info.get("id", info.get("_id", info.get("roomId")))
                if room_id is None:
                    continue
                name = info.get(F_ROOM_NAME)
                rooms[str(room_id)] = name if isinstance(name, str) else ""
        else:
            logger.warning("Unexpected room listing payload: %s", type(data).__name__)
        return rooms

    async def create_room(self, token: str | None, name: str) -> Any:
        return await self._request_json(
            "POST", PATH_ROOM_CREATE, token=token, payload={F_ROOM_NAME: name}, what="Room creation"
        )

    async def delete_room(self, token: str | None, room_id: str) -> None:
        await self._request_json(
            "DELETE",
            PATH_ROOM.format(room_id=quote_segment(room_id)),
            token=token,
            what="Room deletion",
        )

    async def fetch_history(
        self, token: str, room_id: str, *, timeout_s: float | None = None
    ) -> list[Any]:
        """Fetch the stored messages of a room.

        Returns:
            History records in server order

        Raises:
            APIError: On network failure or error status
            HistoryFetchFailure: If the body is not a JSON array
        """
        path = PATH_ROOM_MESSAGES.format(room_id=quote_segment(room_id))
        try:
            async with self.http.get(
                self.url(path),
                headers=self._headers(token),
                timeout=self._timeout(timeout_s),
            ) as resp:
                await self._raise_for_status(resp, "History fetch")
                body = await self._read_limited(resp, MAX_HISTORY_SIZE, "History response")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise APIError(f"History fetch failed: {str(e) or type(e).__name__}") from e

        records = decode_history(body)
        logger.debug("Fetched %d history records for room %s", len(records), room_id)
        return records

    async def fetch_image(
        self,
        token: str,
        image_ref: str,
        *,
        max_bytes: int = MAX_IMAGE_BYTES,
        timeout_s: float | None = None,
    ) -> tuple[bytes, str | None]:
        """Download the bytes behind an image reference.

        Returns:
            Tuple of body bytes and the response content type

        Raises:
            APIError: On network failure, error status or oversized body
            ValueError: If the reference is unusable
        """
        url = self.image_url(image_ref)
        try:
            async with self.http.get(
                url,
                headers=self._headers(token),
                timeout=self._timeout(timeout_s),
            ) as resp:
                await self._raise_for_status(resp, "Image fetch")
                data = await self._read_limited(resp, max_bytes, "Image")
                return data, resp.content_type
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise APIError(f"Image fetch failed: {str(e) or type(e).__name__}") from e

    async def upload_image(
        self,
        token: str,
        room_id: str,
        data: bytes,
        *,
        caption: str = "",
        filename: str = DEFAULT_IMAGE_FILENAME,
        content_type: str = DEFAULT_IMAGE_CONTENT_TYPE,
        timeout_s: float | None = None,
    ) -> Any:
        """Post an image with its caption to a room.

        Returns:
            Decoded JSON response, the raw text, or None for an empty body
        """
        form = aiohttp.FormData()
        form.add_field(FORM_CHAT_IMAGE, data, filename=filename, content_type=content_type)
        form.add_field(FORM_CONTENT, caption)

        path = PATH_ROOM_IMAGE.format(room_id=quote_segment(room_id))
        try:
            async with self.http.post(
                self.url(path),
                data=form,
                headers=self._headers(token),
                timeout=self._timeout(timeout_s),
            ) as resp:
                await self._raise_for_status(resp, "Image upload")
                body = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise APIError(f"Image upload failed: {str(e) or type(e).__name__}") from e

        if not body.strip():
            return None
        try:
            return json.loads(body)
        except ValueError:
            return body
