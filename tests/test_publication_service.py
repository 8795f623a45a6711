"""
Tests for the publication state machine.
"""

import asyncio

import pytest
from sqlalchemy import delete
from sqlalchemy.exc import OperationalError

from models.license_template import LicenseTemplate
from services.errors import NotFound, PermissionDenied, PersistenceError, PlatformError, TemplateInUse
from services.license_choice import LicenseChoice
from services.publication_service import PublicationAction
from tests.conftest import AUTHOR_ID, THREAD_ID, template_fields


async def wait_for_deliveries(relay, count, timeout=2):
    async def drained():
        while len(relay.history) < count:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(drained(), timeout)


# =============================================================================
# Test: First publish
# =============================================================================

async def test_first_publish_posts_and_records(publications, platform, templates, author):
    template = await templates.create(author, template_fields())

    result = await publications.publish(THREAD_ID, author, LicenseChoice.template(template.id))

    assert result.action == PublicationAction.PUBLISHED
    post = await publications.get(THREAD_ID)
    assert post.message_id == result.post.message_id
    assert post.user_id == AUTHOR_ID
    assert post.backup_allowed is True
    assert post.revision == 1
    assert post.license_source == "template"
    assert platform.live_declarations(THREAD_ID) == [post.content]
    assert (await templates.get(author, template.id)).usage_count == 1


async def test_first_publish_notifies_only_when_backup_allowed(publications, relay, notifier, author):
    result = await publications.publish(THREAD_ID, author, LicenseChoice.system("All Rights Reserved"))

    assert result.notified is False
    assert relay.queue_depth == 0
    assert notifier.payloads == []


async def test_publish_twice_is_idempotent(publications, platform, relay, author):
    choice = LicenseChoice.system("Community Share")

    first = await publications.publish(THREAD_ID, author, choice)
    second = await publications.publish(THREAD_ID, author, choice)

    assert second.action == PublicationAction.UNCHANGED
    assert second.post.message_id == first.post.message_id
    assert second.notified is False
    assert len(platform.live_declarations(THREAD_ID)) == 1
    assert platform.superseded(THREAD_ID) == []
    assert await publications.count() == 1


async def test_publish_with_other_license_becomes_replace(publications, platform, author):
    await publications.publish(THREAD_ID, author, LicenseChoice.system("Community Share"))

    result = await publications.publish(THREAD_ID, author, LicenseChoice.system("All Rights Reserved"))

    assert result.action == PublicationAction.REPLACED
    assert result.post.revision == 2
    assert len(platform.live_declarations(THREAD_ID)) == 1
    assert len(platform.superseded(THREAD_ID)) == 1


async def test_backup_override_applies(publications, author):
    result = await publications.publish(
        THREAD_ID, author, LicenseChoice.system("All Rights Reserved", backup_override=True)
    )
    assert result.post.backup_allowed is True


async def test_publish_again_after_declaration_was_deleted_reposts(publications, platform, author):
    """
    GIVEN a published thread whose declaration a moderator deleted
    WHEN the same license is published again
    THEN a fresh declaration is posted instead of reporting no change
    """
    choice = LicenseChoice.system("Community Share")
    first = await publications.publish(THREAD_ID, author, choice)
    del platform.messages[first.post.message_id]

    result = await publications.publish(THREAD_ID, author, choice)

    assert result.action == PublicationAction.REPLACED
    assert result.post.revision == 2
    assert result.post.message_id != first.post.message_id
    assert platform.live_declarations(THREAD_ID) == [result.post.content]
    assert (await publications.get(THREAD_ID)).message_id == result.post.message_id


async def test_live_declaration_is_pinned(publications, platform, author):
    first = await publications.publish(THREAD_ID, author, LicenseChoice.system("Community Share"))
    assert platform.pinned == {first.post.message_id}

    second = await publications.replace(THREAD_ID, author, LicenseChoice.system("All Rights Reserved"))

    assert platform.pinned == {second.post.message_id}


async def test_pin_failure_does_not_fail_publication(publications, platform, author):
    async def broken_pin(thread_id, message_id, pinned):
        raise ConnectionError("missing permission to pin")

    platform.set_pinned = broken_pin

    result = await publications.publish(THREAD_ID, author, LicenseChoice.system("Community Share"))

    assert result.action == PublicationAction.PUBLISHED
    assert (await publications.get(THREAD_ID)).message_id == result.post.message_id


# =============================================================================
# Test: Permission and resolution failures
# =============================================================================

async def test_non_author_cannot_publish(publications, platform, other_user):
    with pytest.raises(PermissionDenied):
        await publications.publish(THREAD_ID, other_user, LicenseChoice.system("Community Share"))
    assert platform.thread_messages(THREAD_ID) == []


async def test_admin_may_publish_on_any_thread(publications, admin):
    result = await publications.publish(THREAD_ID, admin, LicenseChoice.system("Community Share"))
    assert result.post.user_id == admin.user_id


async def test_someone_elses_template_is_not_found(publications, templates, platform, author, other_user):
    foreign = await templates.create(other_user, template_fields())

    with pytest.raises(NotFound):
        await publications.publish(THREAD_ID, author, LicenseChoice.template(foreign.id))
    assert platform.thread_messages(THREAD_ID) == []


async def test_unknown_system_license_is_not_found(publications, author):
    with pytest.raises(NotFound):
        await publications.publish(THREAD_ID, author, LicenseChoice.system("Nope"))
    assert await publications.get(THREAD_ID) is None


async def test_unknown_thread_is_not_found(publications, platform, author):
    with pytest.raises(NotFound) as excinfo:
        await publications.publish(THREAD_ID + 99, author, LicenseChoice.system("Community Share"))

    assert excinfo.value.retryable is False
    assert platform.messages == {}


# =============================================================================
# Test: Replace
# =============================================================================

async def test_replace_supersedes_and_keeps_old_text(publications, platform, author):
    first = await publications.publish(THREAD_ID, author, LicenseChoice.system("Community Share"))

    result = await publications.replace(THREAD_ID, author, LicenseChoice.system("Community Share"))

    assert result.action == PublicationAction.REPLACED
    assert result.post.revision == 2
    assert result.post.message_id != first.post.message_id
    old_text = platform.messages[first.post.message_id][1]
    assert old_text.startswith("⚠️ [Superseded]")
    assert first.post.content in old_text


async def test_replace_tolerates_deleted_old_message(publications, platform, author):
    first = await publications.publish(THREAD_ID, author, LicenseChoice.system("Community Share"))
    del platform.messages[first.post.message_id]

    result = await publications.replace(THREAD_ID, author, LicenseChoice.system("All Rights Reserved"))

    assert result.post.revision == 2
    assert len(platform.live_declarations(THREAD_ID)) == 1


async def test_failed_post_restores_old_message(publications, platform, author):
    first = await publications.publish(THREAD_ID, author, LicenseChoice.system("Community Share"))
    platform.failing_posts = 1

    with pytest.raises(PlatformError):
        await publications.replace(THREAD_ID, author, LicenseChoice.system("All Rights Reserved"))

    assert platform.messages[first.post.message_id][1] == first.post.content
    post = await publications.get(THREAD_ID)
    assert post.message_id == first.post.message_id
    assert post.revision == 1


async def test_platform_timeout_surfaces_as_platform_error(publications, platform, author):
    publications.platform.timeout_seconds = 0.05
    platform.hang_posts = True

    with pytest.raises(PlatformError):
        await publications.publish(THREAD_ID, author, LicenseChoice.system("Community Share"))

    assert await publications.get(THREAD_ID) is None
    assert len(publications.locks) == 0


async def test_failed_commit_rolls_back_platform_changes(publications, platform, templates, author):
    first = await publications.publish(THREAD_ID, author, LicenseChoice.system("Community Share"))
    template = await templates.create(author, template_fields())

    async def broken_increment(template_id, session=None):
        raise OperationalError("UPDATE license_templates", {}, Exception("disk I/O error"))

    templates.increment_usage = broken_increment

    with pytest.raises(PersistenceError):
        await publications.replace(THREAD_ID, author, LicenseChoice.template(template.id))

    post = await publications.get(THREAD_ID)
    assert post.message_id == first.post.message_id
    assert post.revision == 1
    assert platform.live_declarations(THREAD_ID) == [first.post.content]
    assert platform.superseded(THREAD_ID) == []
    assert len(platform.removed) == 1


# =============================================================================
# Test: Concurrency
# =============================================================================

async def test_concurrent_replaces_converge(publications, platform, author):
    await publications.publish(THREAD_ID, author, LicenseChoice.system("Community Share"))
    n = 8

    results = await asyncio.gather(*(
        publications.replace(THREAD_ID, author, LicenseChoice.system("Community Share"))
        for _ in range(n)
    ))

    post = await publications.get(THREAD_ID)
    assert post.revision == n + 1
    assert sorted(r.post.revision for r in results) == list(range(2, n + 2))
    assert len(platform.live_declarations(THREAD_ID)) == 1
    assert len(platform.superseded(THREAD_ID)) == n
    assert platform.messages[post.message_id][1] == post.content
    assert len(publications.locks) == 0


async def test_different_threads_do_not_block_each_other(publications, platform, author):
    other_thread = THREAD_ID + 1
    platform.add_thread(other_thread, AUTHOR_ID)
    platform.delay = 0.01

    async with publications.locks.hold(THREAD_ID):
        result = await asyncio.wait_for(
            publications.publish(other_thread, author, LicenseChoice.system("Community Share")),
            timeout=2,
        )

    assert result.post.thread_id == other_thread
    assert await publications.get(THREAD_ID) is None


async def test_template_delete_during_publication_is_rejected(publications, platform, templates, author):
    """
    GIVEN a publication with a template that is still waiting on the platform
    WHEN the owner deletes the template
    THEN the delete is rejected and the published row keeps a valid reference
    """
    template = await templates.create(author, template_fields())
    platform.delay = 0.05
    publishing = asyncio.create_task(
        publications.publish(THREAD_ID, author, LicenseChoice.template(template.id))
    )

    async def reserved():
        while not templates.reserved_threads(template.id):
            await asyncio.sleep(0.005)
    await asyncio.wait_for(reserved(), timeout=2)

    with pytest.raises(TemplateInUse) as excinfo:
        await templates.delete(author, template.id)

    result = await publishing
    assert excinfo.value.thread_ids == [THREAD_ID]
    assert result.post.template_id == template.id
    assert (await templates.get(author, template.id)).usage_count == 1
    assert templates.reserved_threads(template.id) == set()


async def test_template_vanishing_before_commit_aborts_publication(
    publications, platform, templates, session_factory, author
):
    template = await templates.create(author, template_fields())
    post_message = platform.post_message

    async def post_then_lose_template(thread_id, content):
        message_id = await post_message(thread_id, content)
        async with session_factory() as session:
            await session.execute(delete(LicenseTemplate).where(LicenseTemplate.id == template.id))
            await session.commit()
        return message_id

    platform.post_message = post_then_lose_template

    with pytest.raises(NotFound):
        await publications.publish(THREAD_ID, author, LicenseChoice.template(template.id))

    assert await publications.get(THREAD_ID) is None
    assert platform.live_declarations(THREAD_ID) == []
    assert len(platform.removed) == 1


# =============================================================================
# Test: Notifications + retire
# =============================================================================

async def test_backup_change_notifies_relay(publications, relay, notifier, author):
    await publications.publish(THREAD_ID, author, LicenseChoice.system("Community Share"))
    result = await publications.publish(THREAD_ID, author, LicenseChoice.system("All Rights Reserved"))

    assert result.notified is True
    await wait_for_deliveries(relay, 2)
    by_flag = {p["backup_allowed"]: p for p in notifier.payloads}
    assert set(by_flag) == {True, False}
    assert by_flag[False]["thread_id"] == str(THREAD_ID)
    assert by_flag[False]["user_id"] == str(AUTHOR_ID)
    assert by_flag[False]["message_id"] == str(result.post.message_id)


async def test_replace_without_backup_change_does_not_notify(publications, author):
    await publications.publish(THREAD_ID, author, LicenseChoice.system("All Rights Reserved"))
    result = await publications.replace(THREAD_ID, author, LicenseChoice.system("All Rights Reserved"))
    assert result.notified is False


async def test_retire_removes_row_only(publications, platform, author):
    await publications.publish(THREAD_ID, author, LicenseChoice.system("Community Share"))

    assert await publications.retire(THREAD_ID) is True
    assert await publications.retire(THREAD_ID) is False
    assert await publications.get(THREAD_ID) is None
    assert len(platform.live_declarations(THREAD_ID)) == 1
