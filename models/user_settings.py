# models/user_settings.py
from sqlalchemy import BigInteger, Boolean, CheckConstraint, Column, Integer, String

from models.database import Base


class UserSettings(Base):
    __tablename__ = "user_settings"

    user_id = Column(BigInteger, primary_key=True, autoincrement=False)
    auto_publish_enabled = Column(Boolean, nullable=False, default=False)
    skip_auto_publish_confirmation = Column(Boolean, nullable=False, default=False)

    # Default license: either a template id or a system license name, never both
    default_template_id = Column(Integer)
    default_system_license_name = Column(String(200))
    default_system_backup_override = Column(Boolean)

    __table_args__ = (
        CheckConstraint(
            "default_template_id IS NULL OR default_system_license_name IS NULL",
            name="single_default_license"
        ),
    )
