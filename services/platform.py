"""
Chat-platform collaborator contract.

The engine never talks to a chat client directly; it receives an object that
satisfies ``ChatPlatform`` and wraps it in ``BoundedPlatform`` so that every
call has a deadline and every failure surfaces as an engine error: a thread
or message the platform does not know becomes ``NotFound`` (or
``MessageNotFound`` when the adapter raises it), anything else
``PlatformError``.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from services.errors import MessageNotFound, NotFound, PlatformError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThreadInfo:
    """What the platform reports about a forum thread"""
    thread_id: int
    author_id: int
    parent_id: Optional[int] = None
    name: str = ""


class ChatPlatform(Protocol):
    async def get_thread(self, thread_id: int) -> ThreadInfo:
        """Raises LookupError (or NotFound) for a thread that does not exist"""
        ...

    async def post_message(self, thread_id: int, content: str) -> int:
        ...

    async def edit_or_remove_message(self, thread_id: int, message_id: int, content: Optional[str]) -> None:
        """Replace the message text, or delete the message when content is None"""
        ...

    async def set_pinned(self, thread_id: int, message_id: int, pinned: bool) -> None:
        ...

    async def notify_user(self, user_id: int, content: str) -> None:
        ...


class BoundedPlatform:
    """Applies a timeout to every platform call and normalizes failures"""

    def __init__(self, platform: ChatPlatform, timeout_seconds: float):
        self.platform = platform
        self.timeout_seconds = timeout_seconds

    async def _call(self, operation: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except (PlatformError, NotFound):
            raise
        except asyncio.TimeoutError as e:
            logger.error(f"Platform call {operation} timed out after {self.timeout_seconds}s")
            raise PlatformError(f"{operation} timed out") from e
        except LookupError as e:
            logger.warning(f"Platform call {operation} found nothing: {e}")
            raise NotFound(f"{operation}: {e}", user_message="That thread or message no longer exists.") from e
        except Exception as e:
            logger.error(f"Platform call {operation} failed: {e}")
            raise PlatformError(f"{operation} failed: {e}") from e

    async def get_thread(self, thread_id: int) -> ThreadInfo:
        return await self._call("get_thread", self.platform.get_thread(thread_id))

    async def post_message(self, thread_id: int, content: str) -> int:
        return await self._call("post_message", self.platform.post_message(thread_id, content))

    async def edit_or_remove_message(self, thread_id: int, message_id: int, content: Optional[str]) -> None:
        await self._call(
            "edit_or_remove_message",
            self.platform.edit_or_remove_message(thread_id, message_id, content),
        )

    async def set_pinned(self, thread_id: int, message_id: int, pinned: bool) -> None:
        await self._call("set_pinned", self.platform.set_pinned(thread_id, message_id, pinned))

    async def notify_user(self, user_id: int, content: str) -> None:
        await self._call("notify_user", self.platform.notify_user(user_id, content))


__all__ = ["ThreadInfo", "ChatPlatform", "BoundedPlatform", "MessageNotFound"]
