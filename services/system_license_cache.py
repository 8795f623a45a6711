"""
System License Cache.

Readers always go through a single immutable ``LicenseSnapshot``. A reload
builds a complete candidate snapshot off to the side and installs it with one
reference assignment, so a lookup sees either the old set or the new set,
never a mix. A document that fails to parse never replaces the live snapshot.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from services.errors import NotFound, ReloadParseError

logger = logging.getLogger(__name__)


class SystemLicense(BaseModel):
    """A canonical license curated by admins"""
    model_config = ConfigDict(frozen=True)

    license_name: str = Field(min_length=1, max_length=200)
    license_text: str = ""
    allow_redistribution: StrictBool
    allow_modification: StrictBool
    allow_backup: StrictBool
    restrictions_note: Optional[str] = None


_document_adapter = TypeAdapter(List[SystemLicense])


@dataclass(frozen=True)
class LicenseSnapshot:
    generation: int
    licenses: Mapping[str, SystemLicense]
    loaded_at: datetime
    source: str

    def __len__(self):
        return len(self.licenses)


def parse_document(raw: Union[str, bytes], source: str = "<inline>") -> Mapping[str, SystemLicense]:
    """Parse and validate a full system license document.

    Raises ReloadParseError on anything short of a complete, valid set.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ReloadParseError(f"{source} is not valid JSON: {e}") from e

    if not isinstance(data, list):
        raise ReloadParseError(f"{source} must contain a JSON list of licenses")
    if not data:
        raise ReloadParseError(f"{source} contains no licenses")

    try:
        licenses = _document_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ReloadParseError(f"{source} failed validation: {e.error_count()} error(s)\n{e}") from e

    by_name = {}
    for license in licenses:
        name = license.license_name.strip()
        if not name:
            raise ReloadParseError(f"{source} contains a license with a blank name")
        if name in by_name:
            raise ReloadParseError(f"{source} defines license {name!r} more than once")
        by_name[name] = license.model_copy(update={"license_name": name})
    return MappingProxyType(by_name)


class SystemLicenseCache:
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._snapshot = LicenseSnapshot(
            generation=0,
            licenses=MappingProxyType({}),
            loaded_at=datetime.now(timezone.utc),
            source="<empty>",
        )
        self._reload_lock = asyncio.Lock()

    @property
    def snapshot(self) -> LicenseSnapshot:
        return self._snapshot

    @property
    def generation(self) -> int:
        return self._snapshot.generation

    def lookup(self, name: str) -> SystemLicense:
        snapshot = self._snapshot
        license = snapshot.licenses.get(name)
        if license is None:
            raise NotFound(
                f"System license {name!r} not found in generation {snapshot.generation}",
                user_message=f"System license '{name}' does not exist.",
            )
        return license

    def list_all(self) -> List[SystemLicense]:
        return list(self._snapshot.licenses.values())

    async def reload(self, path: Optional[Union[str, Path]] = None) -> LicenseSnapshot:
        """Re-read the document from disk and install it if it is valid"""
        source = Path(path) if path is not None else self.path
        try:
            raw = await asyncio.to_thread(source.read_bytes)
        except OSError as e:
            logger.error(f"Cannot read system license document {source}: {e}")
            raise ReloadParseError(f"Cannot read {source}: {e}") from e
        return await self.reload_document(raw, source=str(source))

    async def reload_document(self, raw: Union[str, bytes], source: str = "<inline>") -> LicenseSnapshot:
        async with self._reload_lock:
            try:
                licenses = parse_document(raw, source)
            except ReloadParseError as e:
                logger.error(f"System license reload rejected, keeping generation {self.generation}: {e}")
                raise
            snapshot = LicenseSnapshot(
                generation=self._snapshot.generation + 1,
                licenses=licenses,
                loaded_at=datetime.now(timezone.utc),
                source=source,
            )
            self._snapshot = snapshot
        logger.info(f"✅ Loaded {len(snapshot)} system licenses from {source} (generation {snapshot.generation})")
        return snapshot
