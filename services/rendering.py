"""Text of the messages the engine posts to threads."""

from datetime import datetime, timezone
from typing import Optional

from services.license_choice import EffectiveLicense

SUPERSEDED_MARKER = "⚠️ [Superseded]"


def _flag(value: bool) -> str:
    return "✅ Allowed" if value else "❌ Not allowed"


def _terms(license: EffectiveLicense) -> list[str]:
    return [
        f"Redistribution: {_flag(license.allow_redistribution)}",
        f"Modification: {_flag(license.allow_modification)}",
        f"Backup: {_flag(license.backup_allowed)}",
        f"Restrictions: {license.restrictions_note or 'None'}",
    ]


def render_declaration(license: EffectiveLicense, publisher_id: int) -> str:
    """Render the live license declaration for a thread.

    The output is deterministic for a given license and publisher, which is
    what lets a repeated publish be recognized as a no-op.
    """
    lines = [
        f"📜 License: {license.name}",
        "The content of this thread is covered by the following license:",
    ]
    if license.text:
        lines += ["", license.text]
    lines += [""] + _terms(license)
    lines += ["", f"Published by <@{publisher_id}>"]
    return "\n".join(lines)


def render_superseded(content: str, superseded_at: Optional[datetime] = None) -> str:
    """Mark a previous declaration as replaced while keeping its original text"""
    superseded_at = superseded_at or datetime.now(timezone.utc)
    return (
        f"{SUPERSEDED_MARKER} This license was replaced by a newer declaration.\n\n"
        f"{content}\n\n"
        f"Superseded at {superseded_at.strftime('%Y-%m-%d %H:%M:%S')} UTC"
    )


def is_superseded(content: Optional[str]) -> bool:
    return bool(content) and content.startswith(SUPERSEDED_MARKER)


def render_auto_publish_prompt(license: EffectiveLicense, timeout_seconds: float) -> str:
    minutes = max(1, int(timeout_seconds // 60))
    lines = [
        "📜 Ready to publish a license",
        "Auto-publish is enabled for your account. Publish this license on the thread?",
        "",
        f"License: {license.name}",
    ] + _terms(license)
    lines += ["", f"Confirm or cancel within {minutes} minute(s)."]
    return "\n".join(lines)
