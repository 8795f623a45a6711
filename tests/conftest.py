import json
import os

# Keep the module level engine off PostgreSQL while the test suite imports models
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest

from agents.relay.agent import NotificationRelay
from config.settings import Settings
from models.database import Base, build_session_factory
from services.permissions import PermissionResolver, Requester
from services.platform import BoundedPlatform
from services.publication_service import PublicationService
from services.system_license_cache import SystemLicenseCache
from services.template_service import LicenseTemplateService
from services.thread_locks import KeyedLocks
from services.user_settings_service import UserSettingsService
from tests.fakes import FakeChatPlatform, NotifierStub

AUTHOR_ID = 101
OTHER_ID = 202
ADMIN_ID = 900
ADMIN_ROLE_ID = 77
THREAD_ID = 5001
FORUM_ID = 3000
BACKUP_ENDPOINT = "http://backup.test/api/backup/notify"

SYSTEM_LICENSES = [
    {
        "license_name": "All Rights Reserved",
        "license_text": "No use without the author's written permission.",
        "allow_redistribution": False,
        "allow_modification": False,
        "allow_backup": False,
    },
    {
        "license_name": "Community Share",
        "license_text": "Share freely with credit.",
        "allow_redistribution": True,
        "allow_modification": False,
        "allow_backup": True,
        "restrictions_note": "Credit the author",
    },
]


def template_fields(**overrides):
    fields = {
        "name": "My License",
        "allow_redistribution": False,
        "allow_modification": False,
        "allow_backup": True,
        "restrictions_note": None,
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def author():
    return Requester(AUTHOR_ID)


@pytest.fixture
def other_user():
    return Requester(OTHER_ID)


@pytest.fixture
def admin():
    return Requester(ADMIN_ID)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}"


@pytest.fixture
async def session_factory(database_url):
    engine, factory = build_session_factory(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield factory
    await engine.dispose()


@pytest.fixture
def license_document(tmp_path):
    path = tmp_path / "system_licenses.json"
    path.write_text(json.dumps(SYSTEM_LICENSES))
    return path


@pytest.fixture
async def system_licenses(license_document):
    cache = SystemLicenseCache(license_document)
    await cache.reload()
    return cache


@pytest.fixture
def permissions():
    return PermissionResolver(admin_user_ids={ADMIN_ID}, admin_role_ids={ADMIN_ROLE_ID})


@pytest.fixture
def templates(session_factory, permissions):
    return LicenseTemplateService(session_factory, permissions, quota=5)


@pytest.fixture
def user_settings(session_factory, templates, system_licenses):
    return UserSettingsService(session_factory, templates, system_licenses)


@pytest.fixture
def platform():
    fake = FakeChatPlatform()
    fake.add_thread(THREAD_ID, AUTHOR_ID, parent_id=FORUM_ID, name="My first track")
    return fake


@pytest.fixture
def notifier():
    return NotifierStub()


@pytest.fixture
async def relay(notifier):
    client = notifier.client()
    relay = NotificationRelay(BACKUP_ENDPOINT, client=client, sleep=notifier.sleep, workers=2)
    await relay.start()
    yield relay
    await relay.stop(grace_seconds=1)
    await client.aclose()


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def publications(session_factory, platform, permissions, templates, system_licenses, locks, relay):
    return PublicationService(
        session_factory,
        BoundedPlatform(platform, timeout_seconds=2),
        permissions,
        templates,
        system_licenses,
        locks=locks,
        relay=relay,
    )


@pytest.fixture
def engine_settings(database_url, license_document):
    return Settings(
        database_url=database_url,
        system_licenses_path=license_document,
        admin_user_ids={ADMIN_ID},
        admin_role_ids={ADMIN_ROLE_ID},
        allowed_forum_ids=set(),
        platform_timeout_seconds=2,
        backup_enabled=True,
        backup_endpoint=BACKUP_ENDPOINT,
        notifier_shutdown_grace_seconds=1,
        auto_publish_confirmation_timeout_seconds=1,
        admin_api_key="let-me-in",
    )
