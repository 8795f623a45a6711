"""License references as users express them, and the license they resolve to."""

from dataclasses import dataclass
from typing import Optional

from services.errors import ValidationError

TEMPLATE_PREFIX = "user:"
SYSTEM_PREFIX = "system:"


@dataclass(frozen=True)
class LicenseChoice:
    """Either a template id or a system license name, plus an optional backup override"""
    template_id: Optional[int] = None
    system_name: Optional[str] = None
    backup_override: Optional[bool] = None

    def __post_init__(self):
        if (self.template_id is None) == (self.system_name is None):
            raise ValidationError(
                "A license choice needs exactly one of template_id or system_name",
                user_message="Pick either one of your licenses or a system license.",
            )

    @classmethod
    def template(cls, template_id: int, backup_override: Optional[bool] = None) -> "LicenseChoice":
        return cls(template_id=template_id, backup_override=backup_override)

    @classmethod
    def system(cls, name: str, backup_override: Optional[bool] = None) -> "LicenseChoice":
        return cls(system_name=name, backup_override=backup_override)

    @classmethod
    def parse(cls, value: str, backup_override: Optional[bool] = None) -> "LicenseChoice":
        """Parse the ``user:<id>`` / ``system:<name>`` form used by commands"""
        if value.startswith(TEMPLATE_PREFIX):
            raw_id = value[len(TEMPLATE_PREFIX):]
            try:
                return cls.template(int(raw_id), backup_override)
            except ValueError:
                raise ValidationError(
                    f"Invalid template id {raw_id!r}",
                    user_message="Invalid license id.",
                ) from None
        if value.startswith(SYSTEM_PREFIX):
            name = value[len(SYSTEM_PREFIX):].strip()
            if name:
                return cls.system(name, backup_override)
        raise ValidationError(f"Unrecognized license choice {value!r}", user_message="Invalid license format.")

    @property
    def is_template(self) -> bool:
        return self.template_id is not None

    def __str__(self):
        if self.is_template:
            return f"{TEMPLATE_PREFIX}{self.template_id}"
        return f"{SYSTEM_PREFIX}{self.system_name}"


@dataclass(frozen=True)
class EffectiveLicense:
    """The license terms that will actually be posted on a thread"""
    name: str
    allow_redistribution: bool
    allow_modification: bool
    backup_allowed: bool
    source: str
    restrictions_note: Optional[str] = None
    text: str = ""
    template_id: Optional[int] = None

    @classmethod
    def from_template(cls, template, backup_override: Optional[bool] = None) -> "EffectiveLicense":
        return cls(
            name=template.name,
            allow_redistribution=template.allow_redistribution,
            allow_modification=template.allow_modification,
            backup_allowed=template.allow_backup if backup_override is None else backup_override,
            source="template",
            restrictions_note=template.restrictions_note,
            template_id=template.id,
        )

    @classmethod
    def from_system(cls, system_license, backup_override: Optional[bool] = None) -> "EffectiveLicense":
        return cls(
            name=system_license.license_name,
            allow_redistribution=system_license.allow_redistribution,
            allow_modification=system_license.allow_modification,
            backup_allowed=system_license.allow_backup if backup_override is None else backup_override,
            source="system",
            restrictions_note=system_license.restrictions_note,
            text=system_license.license_text,
        )
