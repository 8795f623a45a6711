"""
Tests for the license template store.
"""

import asyncio

import pytest

from models.published_post import PublishedPost
from services.errors import NotFound, QuotaExceeded, TemplateInUse, ValidationError
from services.license_choice import LicenseChoice
from services.template_service import TemplateUpdate
from tests.conftest import AUTHOR_ID, OTHER_ID, template_fields


# =============================================================================
# Test: Create + quota
# =============================================================================

async def test_create_returns_persisted_template(templates, author):
    template = await templates.create(author, template_fields(name="  Padded  "))

    assert template.id is not None
    assert template.owner_id == AUTHOR_ID
    assert template.name == "Padded"
    assert template.usage_count == 0


async def test_sixth_template_exceeds_quota(templates, author):
    for i in range(5):
        await templates.create(author, template_fields(name=f"License {i}"))

    with pytest.raises(QuotaExceeded) as excinfo:
        await templates.create(author, template_fields(name="One too many"))

    assert excinfo.value.quota == 5
    assert await templates.count(AUTHOR_ID) == 5


async def test_concurrent_creates_cannot_both_pass_the_quota(templates, author):
    for i in range(4):
        await templates.create(author, template_fields(name=f"License {i}"))

    results = await asyncio.gather(
        templates.create(author, template_fields(name="Racer A")),
        templates.create(author, template_fields(name="Racer B")),
        return_exceptions=True,
    )

    assert sum(isinstance(r, QuotaExceeded) for r in results) == 1
    assert await templates.count(AUTHOR_ID) == 5


async def test_quota_is_per_owner(templates, author, other_user):
    for i in range(5):
        await templates.create(author, template_fields(name=f"License {i}"))

    template = await templates.create(other_user, template_fields())
    assert template.owner_id == OTHER_ID


@pytest.mark.parametrize("overrides", [
    {"name": ""},
    {"name": "   "},
    {"name": "x" * 65},
    {"restrictions_note": "n" * 501},
    {"allow_modification": True, "allow_redistribution": False},
])
async def test_invalid_fields_are_rejected(templates, author, overrides):
    with pytest.raises(ValidationError):
        await templates.create(author, template_fields(**overrides))
    assert await templates.count(AUTHOR_ID) == 0


async def test_blank_restrictions_note_is_stored_as_none(templates, author):
    template = await templates.create(author, template_fields(restrictions_note="   "))
    assert template.restrictions_note is None


# =============================================================================
# Test: Read / update
# =============================================================================

async def test_list_is_in_creation_order(templates, author):
    for name in ["First", "Second", "Third"]:
        await templates.create(author, template_fields(name=name))

    names = [t.name for t in await templates.list(AUTHOR_ID)]
    assert names == ["First", "Second", "Third"]


async def test_list_by_usage_puts_most_used_first(templates, author):
    first = await templates.create(author, template_fields(name="Rarely"))
    second = await templates.create(author, template_fields(name="Often"))
    for _ in range(3):
        await templates.increment_usage(second.id)
    await templates.increment_usage(first.id)

    ordered = await templates.list_by_usage(AUTHOR_ID)
    assert [t.name for t in ordered] == ["Often", "Rarely"]
    assert [t.usage_count for t in ordered] == [3, 1]


async def test_get_hides_other_owners_templates(templates, author, other_user, admin):
    template = await templates.create(author, template_fields())

    with pytest.raises(NotFound):
        await templates.get(other_user, template.id)

    assert (await templates.get(admin, template.id)).id == template.id


async def test_update_merges_and_revalidates(templates, author):
    template = await templates.create(author, template_fields(allow_redistribution=True))

    updated = await templates.update(author, template.id, TemplateUpdate(allow_backup=False))
    assert updated.allow_backup is False
    assert updated.allow_redistribution is True
    assert updated.name == template.name

    with pytest.raises(ValidationError):
        await templates.update(author, template.id, {"allow_redistribution": False, "allow_modification": True})


async def test_update_by_non_owner_is_not_found(templates, author, other_user):
    template = await templates.create(author, template_fields())

    with pytest.raises(NotFound):
        await templates.update(other_user, template.id, {"name": "Hijacked"})


# =============================================================================
# Test: Delete
# =============================================================================

async def test_delete_unreferenced_template(templates, author):
    template = await templates.create(author, template_fields())

    await templates.delete(author, template.id)

    assert await templates.list(AUTHOR_ID) == []


async def test_delete_referenced_template_is_rejected(templates, author, session_factory):
    template = await templates.create(author, template_fields())
    async with session_factory() as session:
        session.add(PublishedPost(
            thread_id=42,
            message_id=1,
            user_id=AUTHOR_ID,
            backup_allowed=True,
            license_name=template.name,
            license_source="template",
            template_id=template.id,
            content="📜 License: My License",
        ))
        await session.commit()

    with pytest.raises(TemplateInUse) as excinfo:
        await templates.delete(author, template.id)

    assert excinfo.value.thread_ids == [42]
    assert (await templates.get(author, template.id)).id == template.id


async def test_delete_clears_user_default(templates, user_settings, author):
    template = await templates.create(author, template_fields())
    await user_settings.set_default_license(author, LicenseChoice.template(template.id))

    await templates.delete(author, template.id)

    stored = await user_settings.get(AUTHOR_ID)
    assert stored.default_template_id is None


async def test_increment_usage_reports_missing_template(templates, author):
    template = await templates.create(author, template_fields())

    assert await templates.increment_usage(template.id) == 1
    assert await templates.increment_usage(template.id + 1000) == 0
