"""Fabricated hardware identifiers the hooks answer registry and disk queries with."""

from __future__ import annotations

import dataclasses
import logging
import plistlib
from pathlib import Path
from types import MappingProxyType
from typing import Mapping
from xml.parsers.expat import ExpatError

from nac_emulator.errors import FormatError

logger = logging.getLogger(__name__)

FIXTURES_PATH = Path(__file__).resolve().parent / "data" / "fixtures.plist"


@dataclasses.dataclass(frozen=True)
class FixtureData:
    iokit: Mapping[str, bytes | str]
    root_disk_uuid: str


def parse_fixtures(raw: object) -> FixtureData:
    if not isinstance(raw, dict):
        raise FormatError("fixture root must be a dictionary")

    iokit = raw.get("iokit")
    if not isinstance(iokit, dict):
        raise FormatError("fixture 'iokit' must be a dictionary")
    for key, value in iokit.items():
        if not isinstance(value, (bytes, str)):
            raise FormatError(f"fixture iokit[{key!r}] must be data or string, got {type(value).__name__}")

    root_disk_uuid = raw.get("root_disk_uuid")
    if not isinstance(root_disk_uuid, str):
        raise FormatError("fixture 'root_disk_uuid' must be a string")

    return FixtureData(iokit=MappingProxyType(dict(iokit)), root_disk_uuid=root_disk_uuid)


def load_fixtures(path: str | Path | None = None) -> FixtureData:
    source = Path(path) if path is not None else FIXTURES_PATH
    try:
        with source.open("rb") as fh:
            raw = plistlib.load(fh)
    except OSError as exc:
        raise FormatError(f"cannot read fixtures {source}: {exc}") from exc
    except (plistlib.InvalidFileException, ExpatError, ValueError) as exc:
        raise FormatError(f"malformed fixtures {source}: {exc}") from exc
    fixtures = parse_fixtures(raw)
    logger.debug("loaded %d registry fixtures from %s", len(fixtures.iokit), source)
    return fixtures
