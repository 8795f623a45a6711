"""
Validate a system license document before deploying it.

Parses the document exactly like a live reload would and, with --check-db,
lists the users whose default system license would no longer exist.

Usage:
    python scripts/validate_licenses.py [path] [--check-db]
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path so we can import modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from config.settings import settings
from services.errors import ReloadParseError
from services.system_license_cache import parse_document


def validate_document(path: Path):
    """Parse the document and print what a reload would install"""
    print(f"\n📜 Validating {path}...")

    licenses = parse_document(path.read_bytes(), source=str(path))

    print(f"\n📋 {len(licenses)} system licenses:")
    for name, lic in licenses.items():
        redistribution = "✅" if lic.allow_redistribution else "❌"
        modification = "✅" if lic.allow_modification else "❌"
        backup = "✅" if lic.allow_backup else "❌"
        print(f"  • {name:30} - Redistribution: {redistribution}  Modification: {modification}  Backup: {backup}")

    return licenses


async def find_stale_defaults(names):
    """Users whose stored default system license is missing from the document"""
    from models.database import AsyncSessionLocal
    from models.user_settings import UserSettings

    print("\n🔍 Checking stored defaults...")

    async with AsyncSessionLocal() as session:
        stmt = (
            select(UserSettings.user_id, UserSettings.default_system_license_name)
            .where(UserSettings.default_system_license_name.is_not(None))
        )
        result = await session.execute(stmt)
        stale = [(user_id, name) for user_id, name in result.all() if name not in names]

    if stale:
        print(f"  ⚠️  {len(stale)} user(s) would lose their default license:")
        for user_id, name in stale:
            print(f"     user {user_id}: {name}")
    else:
        print("  ✅ Every stored default still exists")
    return stale


async def main():
    parser = argparse.ArgumentParser(description="Validate a system license document")
    parser.add_argument('path', nargs='?', default=str(settings.system_licenses_path))
    parser.add_argument('--check-db', action='store_true', help='Report stored defaults the document would orphan')

    args = parser.parse_args()

    print("\n" + "="*70)
    print("📜 LICENSE ENGINE - SYSTEM LICENSE VALIDATION")
    print("="*70)

    try:
        licenses = validate_document(Path(args.path))
    except (OSError, ReloadParseError) as e:
        print(f"\n❌ Document rejected: {e}")
        sys.exit(1)

    if args.check_db:
        await find_stale_defaults(set(licenses))

    print("\n" + "="*70)
    print("✅ Document is valid and safe to reload")
    print("="*70 + "\n")


if __name__ == "__main__":
    asyncio.run(main())
