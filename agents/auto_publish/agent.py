"""
The Auto-Publish Agent - Default licenses on new threads

Reacts to thread-creation events: when the author opted in and has a default
license, the license is published on the new thread, optionally after the
author confirms a preview. Failures are reported to the author and logged;
nothing escapes to the event source.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from services.errors import LicenseEngineError, NotFound, PlatformError, describe_error
from services.permissions import Requester
from services.rendering import render_auto_publish_prompt
from services.user_settings_service import default_choice

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThreadCreatedEvent:
    thread_id: int
    author_id: int
    parent_id: Optional[int] = None
    name: str = ""


class AutoPublishOutcome(str, Enum):
    PUBLISHED = "published"
    FORUM_NOT_ALLOWED = "forum_not_allowed"
    DUPLICATE = "duplicate"
    DISABLED = "disabled"
    NO_DEFAULT = "no_default"
    DECLINED = "declined"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


# =============================================================================
# CONFIRMATION BROKER
# =============================================================================

class ConfirmationBroker:
    """Hands a confirm/cancel answer from the command layer to a waiting auto-publish"""

    def __init__(self):
        self._pending: Dict[int, Tuple[int, asyncio.Future]] = {}

    def is_waiting(self, thread_id: int) -> bool:
        return thread_id in self._pending

    async def wait(self, thread_id: int, author_id: int, timeout: float) -> Optional[bool]:
        """The author's answer, or None when nobody answered in time"""
        future = asyncio.get_running_loop().create_future()
        self._pending[thread_id] = (author_id, future)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            current = self._pending.get(thread_id)
            if current is not None and current[1] is future:
                del self._pending[thread_id]

    def confirm(self, thread_id: int, user_id: int, accepted: bool) -> bool:
        """Deliver an answer. Only the thread's author can answer."""
        pending = self._pending.get(thread_id)
        if pending is None:
            return False
        author_id, future = pending
        if user_id != author_id:
            logger.warning(f"User {user_id} tried to answer the auto-publish prompt of thread {thread_id}")
            return False
        if not future.done():
            future.set_result(accepted)
        return True


# =============================================================================
# AUTO-PUBLISH AGENT
# =============================================================================

class AutoPublishCoordinator:
    def __init__(
        self,
        publications,
        user_settings,
        platform,
        broker: Optional[ConfirmationBroker] = None,
        allowed_forum_ids: Iterable[int] = (),
        confirmation_timeout_seconds: float = 180.0,
        dedup_window_seconds: float = 300.0,
        clock=time.monotonic,
    ):
        self.logger = logging.getLogger("auto_publish")
        self.publications = publications
        self.user_settings = user_settings
        self.platform = platform
        self.broker = broker or ConfirmationBroker()
        self.allowed_forum_ids = frozenset(allowed_forum_ids)
        self.confirmation_timeout_seconds = confirmation_timeout_seconds
        self.dedup_window_seconds = dedup_window_seconds
        self._clock = clock
        self._seen: Dict[int, float] = {}

    def _is_duplicate(self, thread_id: int) -> bool:
        now = self._clock()
        self._seen = {
            seen_id: seen_at for seen_id, seen_at in self._seen.items()
            if now - seen_at < self.dedup_window_seconds
        }
        if thread_id in self._seen:
            return True
        self._seen[thread_id] = now
        return False

    async def handle_thread_created(self, event: ThreadCreatedEvent) -> AutoPublishOutcome:
        if self.allowed_forum_ids and event.parent_id not in self.allowed_forum_ids:
            self.logger.debug(f"Thread {event.thread_id} is outside the watched forums")
            return AutoPublishOutcome.FORUM_NOT_ALLOWED

        if self._is_duplicate(event.thread_id):
            self.logger.info(f"Ignoring duplicate creation event for thread {event.thread_id}")
            return AutoPublishOutcome.DUPLICATE

        try:
            return await self._auto_publish(event)
        except Exception as e:
            self.logger.error(f"Auto-publish on thread {event.thread_id} failed: {e}")
            await self._tell_author(event.author_id, f"Could not publish your default license: {describe_error(e)}")
            return AutoPublishOutcome.FAILED

    async def handle_thread_deleted(self, thread_id: int) -> bool:
        self._seen.pop(thread_id, None)
        return await self.publications.retire(thread_id)

    async def _auto_publish(self, event: ThreadCreatedEvent) -> AutoPublishOutcome:
        author_settings = await self.user_settings.get(event.author_id)
        if not author_settings.auto_publish_enabled:
            return AutoPublishOutcome.DISABLED

        choice = default_choice(author_settings)
        if choice is None:
            self.logger.info(f"User {event.author_id} has auto-publish on but no default license")
            return AutoPublishOutcome.NO_DEFAULT

        requester = Requester(event.author_id)
        try:
            license = await self.publications.resolve(requester, choice)
        except NotFound:
            if choice.is_template:
                self.logger.info(f"Default template of user {event.author_id} no longer exists, skipping")
            else:
                self.logger.warning(f"Default system license {choice.system_name!r} of user {event.author_id} is gone")
                await self._tell_author(
                    event.author_id,
                    f"Your default license '{choice.system_name}' no longer exists, "
                    f"so nothing was published on '{event.name or event.thread_id}'. Please pick a new default.",
                )
            return AutoPublishOutcome.NO_DEFAULT

        if not author_settings.skip_auto_publish_confirmation:
            answer = await self._ask_author(event, license)
            if answer is None:
                self.logger.info(f"No answer to the auto-publish prompt on thread {event.thread_id}")
                return AutoPublishOutcome.TIMED_OUT
            if not answer:
                self.logger.info(f"User {event.author_id} declined auto-publish on thread {event.thread_id}")
                return AutoPublishOutcome.DECLINED

        try:
            result = await self.publications.publish(event.thread_id, requester, choice)
        except LicenseEngineError as e:
            self.logger.error(f"Auto-publish on thread {event.thread_id} aborted: {e}")
            await self._tell_author(event.author_id, f"Could not publish your default license: {describe_error(e)}")
            return AutoPublishOutcome.FAILED

        self.logger.info(f"✅ Auto-published {license.name!r} on thread {event.thread_id} ({result.action.value})")
        return AutoPublishOutcome.PUBLISHED

    async def _ask_author(self, event: ThreadCreatedEvent, license) -> Optional[bool]:
        prompt_id = await self.platform.post_message(
            event.thread_id,
            render_auto_publish_prompt(license, self.confirmation_timeout_seconds),
        )
        try:
            return await self.broker.wait(event.thread_id, event.author_id, self.confirmation_timeout_seconds)
        finally:
            try:
                await self.platform.edit_or_remove_message(event.thread_id, prompt_id, None)
            except PlatformError as e:
                self.logger.warning(f"Could not remove auto-publish prompt on thread {event.thread_id}: {e}")

    async def _tell_author(self, user_id: int, content: str) -> None:
        try:
            await self.platform.notify_user(user_id, content)
        except PlatformError as e:
            self.logger.warning(f"Could not notify user {user_id}: {e}")
