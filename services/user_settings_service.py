"""Per-user auto-publish preferences, created lazily on first write."""

import logging
from typing import Optional

from sqlalchemy import func, select

from models.user_settings import UserSettings
from services.errors import storage_errors
from services.license_choice import LicenseChoice

logger = logging.getLogger(__name__)


def default_choice(user_settings: UserSettings) -> Optional[LicenseChoice]:
    """The stored default license reference, if any"""
    if user_settings.default_template_id is not None:
        return LicenseChoice.template(user_settings.default_template_id)
    if user_settings.default_system_license_name:
        return LicenseChoice.system(
            user_settings.default_system_license_name,
            user_settings.default_system_backup_override,
        )
    return None


class UserSettingsService:
    def __init__(self, session_factory, templates, system_licenses):
        self.session_factory = session_factory
        self.templates = templates
        self.system_licenses = system_licenses

    async def get(self, user_id: int) -> UserSettings:
        """Stored settings, or unsaved defaults when the user never wrote any"""
        async with storage_errors("get user settings"):
            async with self.session_factory() as session:
                stored = await session.get(UserSettings, user_id)
        if stored is not None:
            return stored
        return UserSettings(
            user_id=user_id,
            auto_publish_enabled=False,
            skip_auto_publish_confirmation=False,
        )

    async def _write(self, user_id: int, operation: str, apply) -> UserSettings:
        async with storage_errors(operation):
            async with self.session_factory() as session:
                stored = await session.get(UserSettings, user_id)
                if stored is None:
                    stored = UserSettings(
                        user_id=user_id,
                        auto_publish_enabled=False,
                        skip_auto_publish_confirmation=False,
                    )
                    session.add(stored)
                apply(stored)
                await session.commit()
        return stored

    async def set_auto_publish(self, user_id: int, enabled: bool) -> UserSettings:
        def apply(stored):
            stored.auto_publish_enabled = enabled
        return await self._write(user_id, "set auto publish", apply)

    async def toggle_auto_publish(self, user_id: int) -> UserSettings:
        def apply(stored):
            stored.auto_publish_enabled = not stored.auto_publish_enabled
        return await self._write(user_id, "toggle auto publish", apply)

    async def set_skip_confirmation(self, user_id: int, skip: bool) -> UserSettings:
        def apply(stored):
            stored.skip_auto_publish_confirmation = skip
        return await self._write(user_id, "set skip confirmation", apply)

    async def set_default_license(self, requester, choice: Optional[LicenseChoice]) -> UserSettings:
        """Store a default license after checking that it currently exists"""
        if choice is not None:
            if choice.is_template:
                await self.templates.get(requester, choice.template_id)
            else:
                self.system_licenses.lookup(choice.system_name)

        def apply(stored):
            stored.default_template_id = choice.template_id if choice else None
            stored.default_system_license_name = choice.system_name if choice else None
            stored.default_system_backup_override = (
                choice.backup_override if choice is not None and not choice.is_template else None
            )

        updated = await self._write(requester.user_id, "set default license", apply)
        logger.info(f"User {requester.user_id} default license set to {choice or 'none'}")
        return updated

    async def count_auto_publish_users(self) -> int:
        async with storage_errors("count auto publish users"):
            async with self.session_factory() as session:
                return await session.scalar(
                    select(func.count()).select_from(UserSettings).where(UserSettings.auto_publish_enabled.is_(True))
                )
