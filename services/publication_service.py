"""
Publication State Machine.

Per thread: Unpublished -> Published -> (replace) Published -> Retired.

Every transition of a thread runs under that thread's lock. A replace edits
the previous declaration into a superseded notice instead of deleting it, so
the thread keeps an audit trail, and only one message is ever authoritative:
the one named by the PublishedPost row. When a step fails, the steps already
taken on the platform are undone before the error propagates, and no partial
row is ever committed.
"""

import logging
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from models.published_post import PublishedPost
from services.errors import MessageNotFound, NotFound, PersistenceError, PlatformError, storage_errors
from services.license_choice import EffectiveLicense, LicenseChoice
from services.permissions import PermissionResolver, Requester
from services.platform import BoundedPlatform, ThreadInfo
from services.rendering import render_declaration, render_superseded
from services.thread_locks import KeyedLocks

logger = logging.getLogger(__name__)


class PublicationAction(str, Enum):
    PUBLISHED = "published"
    REPLACED = "replaced"
    UNCHANGED = "unchanged"


@dataclass
class PublicationResult:
    post: PublishedPost
    action: PublicationAction
    notified: bool = False


class PublicationService:
    def __init__(
        self,
        session_factory,
        platform: BoundedPlatform,
        permissions: PermissionResolver,
        templates,
        system_licenses,
        locks: Optional[KeyedLocks] = None,
        relay=None,
    ):
        self.session_factory = session_factory
        self.platform = platform
        self.permissions = permissions
        self.templates = templates
        self.system_licenses = system_licenses
        self.locks = locks or KeyedLocks()
        self.relay = relay

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def publish(self, thread_id: int, requester: Requester, choice: LicenseChoice) -> PublicationResult:
        """Publish a license on a thread.

        Publishing the declaration that is already live is a no-op; anything
        else on an already published thread becomes a replace. So does a
        live declaration that has disappeared from the platform.
        """
        thread = await self._authorize(thread_id, requester)

        async with self.locks.hold(thread_id), self._reserve(choice, thread_id):
            license = await self.resolve(requester, choice)
            content = render_declaration(license, requester.user_id)
            existing = await self.get(thread_id)
            if existing is None:
                return await self._publish_first(thread, requester, license, content)
            if existing.content == content and existing.backup_allowed == license.backup_allowed:
                try:
                    await self.platform.edit_or_remove_message(thread_id, existing.message_id, existing.content)
                except MessageNotFound:
                    logger.warning(f"Declaration {existing.message_id} on thread {thread_id} is gone, publishing it again")
                else:
                    logger.info(f"Thread {thread_id} already carries this declaration, nothing to do")
                    return PublicationResult(existing, PublicationAction.UNCHANGED)
            return await self._replace(thread, requester, license, content, existing)

    async def replace(self, thread_id: int, requester: Requester, choice: LicenseChoice) -> PublicationResult:
        """Supersede the live declaration with a new one, always as a new revision"""
        thread = await self._authorize(thread_id, requester)

        async with self.locks.hold(thread_id), self._reserve(choice, thread_id):
            license = await self.resolve(requester, choice)
            content = render_declaration(license, requester.user_id)
            existing = await self.get(thread_id)
            if existing is None:
                return await self._publish_first(thread, requester, license, content)
            return await self._replace(thread, requester, license, content, existing)

    async def retire(self, thread_id: int) -> bool:
        """Forget the thread's published post. The platform messages are left alone."""
        async with self.locks.hold(thread_id):
            async with storage_errors("retire published post"):
                async with self.session_factory() as session:
                    post = await session.get(PublishedPost, thread_id)
                    if post is None:
                        return False
                    await session.delete(post)
                    await session.commit()
        logger.info(f"Retired published post for thread {thread_id}")
        return True

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get(self, thread_id: int) -> Optional[PublishedPost]:
        async with storage_errors("get published post"):
            async with self.session_factory() as session:
                return await session.get(PublishedPost, thread_id)

    async def count(self) -> int:
        async with storage_errors("count published posts"):
            async with self.session_factory() as session:
                return await session.scalar(select(func.count()).select_from(PublishedPost))

    async def count_by_source(self) -> Dict[str, int]:
        async with storage_errors("count published posts by source"):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(PublishedPost.license_source, func.count()).group_by(PublishedPost.license_source)
                )
                return {source: count for source, count in result.all()}

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _authorize(self, thread_id: int, requester: Requester) -> ThreadInfo:
        thread = await self.platform.get_thread(thread_id)
        self.permissions.require_mutate(requester, thread)
        return thread

    def _reserve(self, choice: LicenseChoice, thread_id: int):
        if choice.is_template:
            return self.templates.reserve(choice.template_id, thread_id)
        return nullcontext()

    async def resolve(self, requester: Requester, choice: LicenseChoice) -> EffectiveLicense:
        if choice.is_template:
            template = await self.templates.get(requester, choice.template_id)
            return EffectiveLicense.from_template(template, choice.backup_override)
        system_license = self.system_licenses.lookup(choice.system_name)
        return EffectiveLicense.from_system(system_license, choice.backup_override)

    async def _count_usage(self, license: EffectiveLicense, session) -> None:
        if license.template_id is None:
            return
        if not await self.templates.increment_usage(license.template_id, session):
            raise NotFound(f"Template {license.template_id} was deleted during publication", user_message="License not found.")

    async def _publish_first(
        self,
        thread: ThreadInfo,
        requester: Requester,
        license: EffectiveLicense,
        content: str,
    ) -> PublicationResult:
        message_id = await self.platform.post_message(thread.thread_id, content)
        post = PublishedPost(
            thread_id=thread.thread_id,
            message_id=message_id,
            user_id=requester.user_id,
            backup_allowed=license.backup_allowed,
            license_name=license.name,
            license_source=license.source,
            template_id=license.template_id,
            content=content,
            revision=1,
        )

        async with self.session_factory() as session:
            try:
                session.add(post)
                await self._count_usage(license, session)
                await session.commit()
            except (SQLAlchemyError, NotFound) as e:
                await session.rollback()
                logger.error(f"Publishing on thread {thread.thread_id} aborted: {e}")
                await self._remove_message(thread.thread_id, message_id)
                if isinstance(e, NotFound):
                    raise
                raise PersistenceError(f"publish on thread {thread.thread_id} failed: {e}") from e

        logger.info(f"✅ Published {license.name!r} on thread {thread.thread_id} (message {message_id})")
        await self._set_pinned(thread.thread_id, message_id, True)
        notified = self._notify(post) if license.backup_allowed else False
        return PublicationResult(post, PublicationAction.PUBLISHED, notified)

    async def _replace(
        self,
        thread: ThreadInfo,
        requester: Requester,
        license: EffectiveLicense,
        content: str,
        existing: PublishedPost,
    ) -> PublicationResult:
        thread_id = thread.thread_id
        old_message_id = existing.message_id
        old_content = existing.content
        previous_backup = existing.backup_allowed

        superseded = True
        try:
            await self.platform.edit_or_remove_message(thread_id, old_message_id, render_superseded(old_content))
        except MessageNotFound:
            logger.warning(f"Previous declaration {old_message_id} on thread {thread_id} is gone, publishing anyway")
            superseded = False

        try:
            new_message_id = await self.platform.post_message(thread_id, content)
        except PlatformError:
            logger.error(f"Replacing license on thread {thread_id} aborted, could not post the new declaration")
            if superseded:
                await self._restore_message(thread_id, old_message_id, old_content)
            raise

        async with self.session_factory() as session:
            try:
                post = await session.get(PublishedPost, thread_id)
                if post is None:
                    post = PublishedPost(thread_id=thread_id, created_at=existing.created_at)
                    session.add(post)
                post.message_id = new_message_id
                post.user_id = requester.user_id
                post.backup_allowed = license.backup_allowed
                post.license_name = license.name
                post.license_source = license.source
                post.template_id = license.template_id
                post.content = content
                post.revision = existing.revision + 1
                post.updated_at = datetime.now(timezone.utc)
                await self._count_usage(license, session)
                await session.commit()
            except (SQLAlchemyError, NotFound) as e:
                await session.rollback()
                logger.error(f"Replacing license on thread {thread_id} aborted: {e}")
                await self._remove_message(thread_id, new_message_id)
                if superseded:
                    await self._restore_message(thread_id, old_message_id, old_content)
                if isinstance(e, NotFound):
                    raise
                raise PersistenceError(f"replace on thread {thread_id} failed: {e}") from e

        logger.info(
            f"✅ Replaced license on thread {thread_id} with {license.name!r} "
            f"(message {old_message_id} -> {new_message_id}, revision {post.revision})"
        )
        if superseded:
            await self._set_pinned(thread_id, old_message_id, False)
        await self._set_pinned(thread_id, new_message_id, True)
        notified = self._notify(post) if previous_backup != license.backup_allowed else False
        return PublicationResult(post, PublicationAction.REPLACED, notified)

    async def _set_pinned(self, thread_id: int, message_id: int, pinned: bool) -> None:
        # Best effort: the row, not the pin, names the live declaration
        try:
            await self.platform.set_pinned(thread_id, message_id, pinned)
        except PlatformError as e:
            logger.warning(f"Could not {'pin' if pinned else 'unpin'} declaration {message_id} on thread {thread_id}: {e}")

    async def _restore_message(self, thread_id: int, message_id: int, content: str) -> None:
        try:
            await self.platform.edit_or_remove_message(thread_id, message_id, content)
        except PlatformError as e:
            logger.error(f"Could not restore declaration {message_id} on thread {thread_id}: {e}")

    async def _remove_message(self, thread_id: int, message_id: int) -> None:
        try:
            await self.platform.edit_or_remove_message(thread_id, message_id, None)
        except PlatformError as e:
            logger.error(f"Could not remove orphaned declaration {message_id} on thread {thread_id}: {e}")

    def _notify(self, post: PublishedPost) -> bool:
        if self.relay is None:
            return False
        self.relay.notify(
            thread_id=post.thread_id,
            user_id=post.user_id,
            backup_allowed=post.backup_allowed,
            message_id=post.message_id,
            license_name=post.license_name,
        )
        return True
