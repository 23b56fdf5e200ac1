import plistlib

import pytest

from nac_emulator.errors import FormatError
from nac_emulator.fixtures import FIXTURES_PATH, load_fixtures, parse_fixtures


def test_bundled_fixtures():
    fixtures = load_fixtures()
    assert FIXTURES_PATH.is_file()
    assert fixtures.root_disk_uuid == "FDB13F90-6FDA-3A57-BA48-CFF31478CAF2"
    assert fixtures.iokit["IOPlatformSerialNumber"] == "CK1350NCEUH"
    assert fixtures.iokit["IOPlatformUUID"] == "ABB178CD-25C5-5AFB-A749-B432FD683AE1"
    assert fixtures.iokit["4D1EDE05-38C7-4A6A-9CC6-4BCCA8B38C14:MLB"] == b"CK1340351BH8U"
    assert fixtures.iokit["4D1EDE05-38C7-4A6A-9CC6-4BCCA8B38C14:ROM"] == b"\xb4\x8b\x19\x88\xb8\x80"
    assert fixtures.iokit["IOMACAddress"] == b"\xee\xe9\xd3\x14\x05\xcf"
    assert fixtures.iokit["board-id"] == b"Mac-F221BEC8\x00"
    assert fixtures.iokit["product-name"] == b"MacPro5,1\x00"
    assert len(fixtures.iokit["Gq3489ugfi"]) == 17
    assert len(fixtures.iokit) == 12


def test_fixtures_are_read_only():
    fixtures = load_fixtures()
    with pytest.raises(TypeError):
        fixtures.iokit["IOPlatformUUID"] = "changed"


def test_custom_fixture_file(tmp_path):
    path = tmp_path / "fixtures.plist"
    path.write_bytes(plistlib.dumps({"iokit": {"a": b"\x01"}, "root_disk_uuid": "U"}))
    fixtures = load_fixtures(path)
    assert dict(fixtures.iokit) == {"a": b"\x01"}
    assert fixtures.root_disk_uuid == "U"


@pytest.mark.parametrize(
    "raw",
    [
        [],
        {"root_disk_uuid": "U"},
        {"iokit": {"a": 1}, "root_disk_uuid": "U"},
        {"iokit": {}},
    ],
)
def test_invalid_fixture_shapes(raw):
    with pytest.raises(FormatError):
        parse_fixtures(raw)


def test_unreadable_fixture_files(tmp_path):
    with pytest.raises(FormatError, match="cannot read"):
        load_fixtures(tmp_path / "missing.plist")
    bad = tmp_path / "bad.plist"
    bad.write_bytes(b"<plist><dict><key>x</key>")
    with pytest.raises(FormatError, match="malformed"):
        load_fixtures(bad)
