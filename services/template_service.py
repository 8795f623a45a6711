"""
License Template Store.

Per-owner CRUD over user-authored license templates with a hard quota.
Deleting a template that is still published on a thread is rejected: the
published post keeps its own copy of the terms, but an auditor should never
find a post whose source template silently vanished while it was live.
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select, update

from models.license_template import LicenseTemplate
from models.published_post import PublishedPost
from models.user_settings import UserSettings
from services.errors import NotFound, QuotaExceeded, TemplateInUse, ValidationError, storage_errors
from services.permissions import PermissionResolver, Requester
from services.thread_locks import KeyedLocks

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 64
MAX_NOTE_LENGTH = 500


class TemplateFields(BaseModel):
    """Validated content of a license template"""
    name: str = Field(max_length=MAX_NAME_LENGTH)
    allow_redistribution: bool
    allow_modification: bool
    allow_backup: bool
    restrictions_note: Optional[str] = Field(default=None, max_length=MAX_NOTE_LENGTH)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be empty")
        return value

    @field_validator("restrictions_note")
    @classmethod
    def blank_note_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def flags_consistent(self):
        # A modified work that may not be redistributed cannot be shared at all
        if self.allow_modification and not self.allow_redistribution:
            raise ValueError("allow_modification requires allow_redistribution")
        return self


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    allow_redistribution: Optional[bool] = None
    allow_modification: Optional[bool] = None
    allow_backup: Optional[bool] = None
    restrictions_note: Optional[str] = None


def _validate(data: dict) -> TemplateFields:
    try:
        return TemplateFields(**data)
    except PydanticValidationError as e:
        problems = "; ".join(err["msg"] for err in e.errors())
        raise ValidationError(f"Invalid license template: {problems}", user_message=f"Invalid license: {problems}") from e


class LicenseTemplateService:
    def __init__(self, session_factory, permissions: PermissionResolver, quota: int = 5):
        self.session_factory = session_factory
        self.permissions = permissions
        self.quota = quota
        self._owner_locks = KeyedLocks()
        self._template_locks = KeyedLocks()
        # template id -> threads currently publishing it
        self._reservations: Dict[int, Set[int]] = {}

    async def create(self, requester: Requester, fields) -> LicenseTemplate:
        if not isinstance(fields, TemplateFields):
            fields = _validate(dict(fields))

        owner_id = requester.user_id
        async with self._owner_locks.hold(owner_id):
            async with storage_errors("create template"):
                async with self.session_factory() as session:
                    count = await session.scalar(
                        select(func.count()).select_from(LicenseTemplate).where(LicenseTemplate.owner_id == owner_id)
                    )
                    if count >= self.quota:
                        raise QuotaExceeded(owner_id, self.quota)

                    template = LicenseTemplate(owner_id=owner_id, usage_count=0, **fields.model_dump())
                    session.add(template)
                    await session.commit()

        logger.info(f"Created template {template.id} ({template.name!r}) for user {owner_id}")
        return template

    async def list(self, owner_id: int) -> List[LicenseTemplate]:
        """Templates of an owner in creation order"""
        async with storage_errors("list templates"):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(LicenseTemplate)
                    .where(LicenseTemplate.owner_id == owner_id)
                    .order_by(LicenseTemplate.created_at, LicenseTemplate.id)
                )
                return list(result.scalars().all())

    async def list_by_usage(self, owner_id: int) -> List[LicenseTemplate]:
        async with storage_errors("list templates by usage"):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(LicenseTemplate)
                    .where(LicenseTemplate.owner_id == owner_id)
                    .order_by(LicenseTemplate.usage_count.desc(), LicenseTemplate.id)
                )
                return list(result.scalars().all())

    async def count(self, owner_id: int) -> int:
        async with storage_errors("count templates"):
            async with self.session_factory() as session:
                return await session.scalar(
                    select(func.count()).select_from(LicenseTemplate).where(LicenseTemplate.owner_id == owner_id)
                )

    async def get(self, requester: Requester, template_id: int) -> LicenseTemplate:
        async with storage_errors("get template"):
            async with self.session_factory() as session:
                template = await session.get(LicenseTemplate, template_id)
        if template is None or not self.permissions.can_manage_template(requester, template):
            raise NotFound(f"Template {template_id} not found for user {requester.user_id}", user_message="License not found.")
        return template

    async def update(self, requester: Requester, template_id: int, changes) -> LicenseTemplate:
        if isinstance(changes, TemplateUpdate):
            changes = changes.model_dump(exclude_unset=True)

        async with storage_errors("update template"):
            async with self.session_factory() as session:
                template = await session.get(LicenseTemplate, template_id)
                if template is None or not self.permissions.can_manage_template(requester, template):
                    raise NotFound(f"Template {template_id} not found for user {requester.user_id}", user_message="License not found.")

                merged = {
                    "name": template.name,
                    "allow_redistribution": template.allow_redistribution,
                    "allow_modification": template.allow_modification,
                    "allow_backup": template.allow_backup,
                    "restrictions_note": template.restrictions_note,
                }
                merged.update(changes)
                fields = _validate(merged)

                for key, value in fields.model_dump().items():
                    setattr(template, key, value)
                await session.commit()

        logger.info(f"Updated template {template_id} by user {requester.user_id}")
        return template

    async def delete(self, requester: Requester, template_id: int) -> None:
        async with self._template_locks.hold(template_id), storage_errors("delete template"):
            async with self.session_factory() as session:
                template = await session.get(LicenseTemplate, template_id)
                if template is None or not self.permissions.can_manage_template(requester, template):
                    raise NotFound(f"Template {template_id} not found for user {requester.user_id}", user_message="License not found.")

                result = await session.execute(
                    select(PublishedPost.thread_id).where(PublishedPost.template_id == template_id)
                )
                thread_ids = set(result.scalars().all()) | self.reserved_threads(template_id)
                if thread_ids:
                    logger.warning(f"Refusing to delete template {template_id}: live on threads {sorted(thread_ids)}")
                    raise TemplateInUse(template_id, thread_ids)

                await session.delete(template)
                await session.execute(
                    update(UserSettings)
                    .where(UserSettings.default_template_id == template_id)
                    .values(default_template_id=None)
                )
                await session.commit()

        logger.info(f"Deleted template {template_id} by user {requester.user_id}")

    async def increment_usage(self, template_id: int, session=None) -> int:
        """Bump the usage counter; joins the caller's session when one is given.

        Returns the number of rows touched, 0 when the template no longer exists.
        """
        statement = (
            update(LicenseTemplate)
            .where(LicenseTemplate.id == template_id)
            .values(usage_count=LicenseTemplate.usage_count + 1)
        )
        if session is not None:
            result = await session.execute(statement)
            return result.rowcount
        async with storage_errors("increment template usage"):
            async with self.session_factory() as own_session:
                result = await own_session.execute(statement)
                await own_session.commit()
                return result.rowcount

    # -------------------------------------------------------------------------
    # Publication guard
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def reserve(self, template_id: int, thread_id: int):
        """Hold off deletion of a template while a thread is being published with it.

        Registration waits for an in-progress delete to finish, so the caller
        must look the template up again inside the block.
        """
        async with self._template_locks.hold(template_id):
            self._reservations.setdefault(template_id, set()).add(thread_id)
        try:
            yield
        finally:
            threads = self._reservations[template_id]
            threads.discard(thread_id)
            if not threads:
                del self._reservations[template_id]

    def reserved_threads(self, template_id: int) -> Set[int]:
        return set(self._reservations.get(template_id, ()))
