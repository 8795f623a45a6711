"""
Engine wiring.

``LicenseEngine`` builds every component from the settings and a chat platform
adapter, owns their lifecycle, and reports health for the admin API.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel
from sqlalchemy import text

from agents.auto_publish.agent import AutoPublishCoordinator, ConfirmationBroker
from agents.relay.agent import NotificationRelay
from config.settings import settings
from services.errors import ReloadParseError
from services.permissions import PermissionResolver, Requester
from services.platform import BoundedPlatform
from services.publication_service import PublicationService
from services.system_license_cache import LicenseSnapshot, SystemLicenseCache
from services.template_service import LicenseTemplateService
from services.thread_locks import KeyedLocks
from services.user_settings_service import UserSettingsService

logger = logging.getLogger(__name__)


class CacheHealth(BaseModel):
    generation: int
    licenses: int
    loaded_at: datetime
    source: str


class RelayHealth(BaseModel):
    enabled: bool
    running: bool
    queue_depth: int
    deliveries: Dict[str, int]


class EngineHealth(BaseModel):
    status: str
    timestamp: datetime
    environment: str
    database: str
    published_posts: Optional[int] = None
    published_by_source: Dict[str, int] = {}
    auto_publish_users: Optional[int] = None
    system_licenses: CacheHealth
    relay: RelayHealth
    active_thread_locks: int


class LicenseEngine:
    def __init__(self, platform, session_factory=None, config=settings, notifier_client=None, sleep=asyncio.sleep):
        if session_factory is None:
            from models.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal

        self.config = config
        self.session_factory = session_factory
        self.platform = BoundedPlatform(platform, config.platform_timeout_seconds)
        self.permissions = PermissionResolver(config.admin_user_ids, config.admin_role_ids)
        self.locks = KeyedLocks()

        self.system_licenses = SystemLicenseCache(config.system_licenses_path)
        self.templates = LicenseTemplateService(session_factory, self.permissions, config.template_quota)
        self.user_settings = UserSettingsService(session_factory, self.templates, self.system_licenses)
        self.relay = NotificationRelay.from_settings(config, client=notifier_client, sleep=sleep)
        self.publications = PublicationService(
            session_factory,
            self.platform,
            self.permissions,
            self.templates,
            self.system_licenses,
            locks=self.locks,
            relay=self.relay,
        )
        self.broker = ConfirmationBroker()
        self.auto_publish = AutoPublishCoordinator(
            self.publications,
            self.user_settings,
            self.platform,
            broker=self.broker,
            allowed_forum_ids=config.allowed_forum_ids,
            confirmation_timeout_seconds=config.auto_publish_confirmation_timeout_seconds,
            dedup_window_seconds=config.auto_publish_dedup_window_seconds,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        try:
            await self.system_licenses.reload()
        except ReloadParseError as e:
            logger.error(f"Starting without system licenses: {e}")
        await self.relay.start()
        logger.info(f"✅ License engine started ({self.config.environment})")

    async def stop(self) -> None:
        await self.relay.stop(self.config.notifier_shutdown_grace_seconds)
        logger.info("License engine stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def reload_system_licenses(self, requester: Requester) -> LicenseSnapshot:
        self.permissions.require_admin(requester)
        logger.info(f"System license reload requested by user {requester.user_id}")
        return await self.system_licenses.reload()

    def confirm_auto_publish(self, thread_id: int, user_id: int, accepted: bool) -> bool:
        return self.broker.confirm(thread_id, user_id, accepted)

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def health(self) -> EngineHealth:
        snapshot = self.system_licenses.snapshot
        report = dict(
            status="healthy",
            timestamp=datetime.now(timezone.utc),
            environment=self.config.environment,
            database="healthy",
            system_licenses=CacheHealth(
                generation=snapshot.generation,
                licenses=len(snapshot),
                loaded_at=snapshot.loaded_at,
                source=snapshot.source,
            ),
            relay=RelayHealth(
                enabled=self.relay.enabled,
                running=self.relay.running,
                queue_depth=self.relay.queue_depth,
                deliveries=dict(self.relay.stats),
            ),
            active_thread_locks=len(self.locks),
        )

        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
            report["published_posts"] = await self.publications.count()
            report["published_by_source"] = await self.publications.count_by_source()
            report["auto_publish_users"] = await self.user_settings.count_auto_publish_users()
        except Exception as e:
            report["status"] = "degraded"
            report["database"] = f"unhealthy: {e}"

        if snapshot.generation == 0:
            report["status"] = "degraded"

        return EngineHealth(**report)
