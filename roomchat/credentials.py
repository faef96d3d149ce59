"""Bearer token providers for room sessions."""

from __future__ import annotations

import asyncio
import logging
import os
import stat
from pathlib import Path
from typing import Protocol

from .utils import expand_path

logger = logging.getLogger(__name__)

MAX_TOKEN_FILE_SIZE = 16 * 1024


class CredentialProvider(Protocol):
    """Supplies the bearer token for a session, or None when there is none."""

    async def get_token(self) -> str | None: ...


class StaticCredentials:
    """Provider returning a token fixed at construction."""

    def __init__(self, token: str | None) -> None:
        self._token = token.strip() if isinstance(token, str) else None

    async def get_token(self) -> str | None:
        return self._token or None


class TokenFileStore:
    """Token kept in a local file readable only by its owner."""

    def __init__(self, path: str) -> None:
        self.path = Path(expand_path(path))

    def load(self) -> str | None:
        """Read the stored token.

        Returns:
            Token string, or None if no usable token is stored
        """
        if not self.path.is_file():
            return None

        try:
            if self.path.stat().st_size > MAX_TOKEN_FILE_SIZE:
                logger.error("Token file too large, ignoring: %s", self.path)
                return None
            token = self.path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read token file %s: %s", self.path, e)
            return None

        return token or None

    def save(self, token: str) -> None:
        """Store a token, replacing any previous one.

        Raises:
            ValueError: If the token is empty
            OSError: If the file cannot be written
        """
        if not isinstance(token, str) or not token.strip():
            raise ValueError("Token cannot be empty")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(token.strip())
        try:
            self.path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        except OSError as e:
            logger.warning("Could not set secure permissions on token file: %s", e)
        logger.info("Saved token to %s", self.path)

    def clear(self) -> bool:
        """Remove the stored token.

        Returns:
            True if a token file was removed
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Removed token file %s", self.path)
        return True

    async def get_token(self) -> str | None:
        return await asyncio.get_running_loop().run_in_executor(None, self.load)
