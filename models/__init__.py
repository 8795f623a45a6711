# models/__init__.py
from models.license_template import LicenseTemplate
from models.user_settings import UserSettings
from models.published_post import PublishedPost
from models.database import Base, engine, AsyncSessionLocal, build_session_factory

__all__ = [
    "LicenseTemplate",
    "UserSettings",
    "PublishedPost",
    "Base",
    "engine",
    "AsyncSessionLocal",
    "build_session_factory",
]
