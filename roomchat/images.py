"""Lazy resolution of image references into displayable assets."""

from __future__ import annotations

import asyncio
import io
import logging
from collections.abc import Callable

from PIL import Image

from .api import ChatAPI
from .constants import DEFAULT_IMAGE_TIMEOUT_S, MAX_IMAGE_BYTES
from .errors import APIError, ImageResolveFailure
from .events import ChatEvent, ImageAsset, ImageStatus, SequenceKey
from .timeline import Timeline

logger = logging.getLogger(__name__)


def decode_image(data: bytes, content_type: str | None) -> ImageAsset:
    """Check that downloaded bytes are a readable image and wrap them.

    The format Pillow detects wins over the declared content type.

    Args:
        data: Response body
        content_type: Content type the server declared, if any

    Returns:
        Image asset

    Raises:
        ImageResolveFailure: If the body is empty or cannot be decoded
    """
    if not data:
        raise ImageResolveFailure("Image body is empty")

    try:
        with Image.open(io.BytesIO(data)) as img:
            image_format = img.format
            size = img.size
            img.verify()
    except Exception as e:
        declared = (content_type or "unknown").split(";", 1)[0].strip()
        raise ImageResolveFailure(f"Response is not a readable image ({declared}): {e}") from e

    mime = Image.MIME.get(image_format or "")
    if mime is None:
        declared = (content_type or "").split(";", 1)[0].strip().lower()
        mime = declared if declared.startswith("image/") else f"image/{(image_format or 'unknown').lower()}"

    logger.debug("Decoded %s image %dx%d", image_format, size[0], size[1])
    return ImageAsset(data=data, content_type=mime)


class ImageResolver:
    """Fetches image bytes for timeline entries.

    Each reference gets exactly one attempt. A failed attempt leaves the
    entry without an asset, so it is shown caption-only. Results are written
    back by sequence key, never by position.
    """

    def __init__(
        self,
        api: ChatAPI,
        timeline: Timeline,
        token: str,
        *,
        timeout_s: float = DEFAULT_IMAGE_TIMEOUT_S,
        max_bytes: int = MAX_IMAGE_BYTES,
    ) -> None:
        self.api = api
        self.timeline = timeline
        self.token = token
        self.timeout_s = timeout_s
        self.max_bytes = max_bytes

        self._tasks: dict[SequenceKey, asyncio.Task] = {}
        self._status: dict[SequenceKey, ImageStatus] = {}
        self._closed = False

        self.on_resolved: Callable[[ChatEvent], None] | None = None
        self.on_failed: Callable[[ChatEvent, Exception], None] | None = None

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def status(self, key: SequenceKey) -> ImageStatus:
        return self._status.get(key, ImageStatus.NONE)

    def resolve(self, event: ChatEvent) -> asyncio.Task | None:
        """Start resolving the image of an event.

        Args:
            event: Timeline entry (must already carry its sequence key)

        Returns:
            The resolution task, or None if nothing was started
        """
        key = event.sequence_key
        ref = event.image_ref
        if self._closed or not event.is_image or key is None or ref is None or key in self._status:
            return None

        self._status[key] = ImageStatus.PENDING
        task = asyncio.get_running_loop().create_task(
            self._resolve(event, key, ref), name=f"roomchat-image-{ref}"
        )
        self._tasks[key] = task
        task.add_done_callback(lambda _t, k=key: self._tasks.pop(k, None))
        return task

    async def _resolve(self, event: ChatEvent, key: SequenceKey, ref: str) -> None:
        try:
            data, content_type = await self.api.fetch_image(
                self.token,
                ref,
                max_bytes=self.max_bytes,
                timeout_s=self.timeout_s,
            )
            asset = decode_image(data, content_type)
        except asyncio.CancelledError:
            logger.debug("Image resolution cancelled for %s", ref)
            self._status.pop(key, None)
            raise
        except (APIError, ImageResolveFailure, ValueError) as e:
            logger.warning("Failed to resolve image %s: %s", ref, e)
            self._status[key] = ImageStatus.FAILED
            if self.on_failed:
                try:
                    self.on_failed(event, ImageResolveFailure(str(e)))
                except Exception as cb_err:
                    logger.exception("Error in on_failed callback: %s", cb_err)
            return

        if self._closed or not self.timeline.resolve_image(key, asset):
            logger.debug("Dropping resolved image for missing entry %s", ref)
            self._status.pop(key, None)
            return

        self._status[key] = ImageStatus.READY
        logger.debug("Resolved image %s (%d bytes)", ref, asset.size)
        resolved = self.timeline.get(key)
        if resolved is not None and self.on_resolved:
            try:
                self.on_resolved(resolved)
            except Exception as e:
                logger.exception("Error in on_resolved callback: %s", e)

    async def cancel_all(self) -> None:
        """Cancel every pending resolution and stop accepting new ones."""
        self._closed = True
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
