# models/published_post.py
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String, Text, CheckConstraint
from sqlalchemy.sql import func

from models.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class PublishedPost(Base):
    """Point-in-time record of the live license declaration on a thread.

    The license columns are copies of what was published, not references:
    templates can be edited or deleted later without rewriting history.
    """
    __tablename__ = "published_posts"

    thread_id = Column(BigInteger, primary_key=True, autoincrement=False)
    message_id = Column(BigInteger, nullable=False, unique=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    backup_allowed = Column(Boolean, nullable=False)

    license_name = Column(String(200), nullable=False)
    license_source = Column(String(20), nullable=False)
    template_id = Column(Integer, index=True)
    content = Column(Text, nullable=False)
    revision = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())

    __table_args__ = (
        CheckConstraint(
            "license_source IN ('template', 'system')",
            name="valid_license_source"
        ),
        CheckConstraint(
            "revision > 0",
            name="positive_revision"
        ),
    )
