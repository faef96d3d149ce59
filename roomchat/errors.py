"""Exceptions raised by the room chat client."""

from __future__ import annotations


class RoomChatError(Exception):
    """Base class for room chat client errors."""


class CredentialMissing(RoomChatError):
    """Raised when no bearer token is available to open a session."""


class ConnectFailure(RoomChatError):
    """Raised when the WebSocket could not be established."""


class TokenRejected(RoomChatError):
    """Raised when the backend refuses the session's bearer token."""


class ConnectionLost(RoomChatError):
    """Raised when the socket drops without the caller closing it."""


class HistoryFetchFailure(RoomChatError):
    """Raised when history replay cannot be fetched or decoded."""


class ImageResolveFailure(RoomChatError):
    """Raised when an image reference cannot be turned into an asset."""


class SendFailure(RoomChatError):
    """Raised when an outbound message could not be dispatched."""


class SendInProgress(SendFailure):
    """Raised when a send of the same kind is still awaiting acknowledgement."""


class APIError(RoomChatError):
    """Raised when the backend answers an HTTP request with an error status."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def is_auth_error(self) -> bool:
        return self.status in (401, 403)
