# models/license_template.py
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from models.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class LicenseTemplate(Base):
    __tablename__ = "license_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(BigInteger, nullable=False, index=True)
    name = Column(String(64), nullable=False)
    allow_redistribution = Column(Boolean, nullable=False)
    allow_modification = Column(Boolean, nullable=False)
    allow_backup = Column(Boolean, nullable=False)
    restrictions_note = Column(Text)
    usage_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())

    def __repr__(self):
        return f"<LicenseTemplate id={self.id} owner={self.owner_id} name={self.name!r}>"
