"""Handle table standing in for CoreFoundation/IOKit objects."""

from __future__ import annotations

import struct
from typing import TYPE_CHECKING, Any, Union

from nac_emulator.errors import EmulationFault, InvalidHandle, InvalidObjectType, KeyNotFound

if TYPE_CHECKING:
    from nac_emulator.machine import Machine


# str: CFString, bytes: CFData, dict: CFDictionary, int: an opaque word the
# binary stored that is not a handle.
CFValue = Union[str, bytes, dict, int]

# struct __builtin_CFString { isa; flags; const char *str; long length; }
CFSTRING_DESCRIPTOR = struct.Struct("<QQQQ")

_KIND_NAMES = {str: "string", bytes: "data", dict: "dictionary", int: "word"}


def kind_name(value: object) -> str:
    return _KIND_NAMES.get(type(value), type(value).__name__)


class ObjectTable:
    """Append-only table of tagged values; handle N is the N-th interned value."""

    def __init__(self) -> None:
        self._values: list[CFValue] = []

    def __len__(self) -> int:
        return len(self._values)

    def intern(self, value: CFValue) -> int:
        if isinstance(value, (bytearray, memoryview)):
            value = bytes(value)
        if not isinstance(value, (str, bytes, dict, int)):
            raise InvalidObjectType(f"cannot intern {type(value).__name__}")
        self._values.append(value)
        return len(self._values)

    def resolve(self, handle: int) -> CFValue:
        if not 1 <= handle <= len(self._values):
            raise InvalidHandle(f"handle {handle} not in 1..{len(self._values)}")
        return self._values[handle - 1]

    def resolve_as(self, handle: int, kind: type | tuple[type, ...]) -> Any:
        value = self.resolve(handle)
        if not isinstance(value, kind):
            expected = (
                " or ".join(_KIND_NAMES.get(k, k.__name__) for k in kind)
                if isinstance(kind, tuple)
                else _KIND_NAMES.get(kind, kind.__name__)
            )
            raise InvalidObjectType(f"handle {handle} is {kind_name(value)}, expected {expected}")
        return value

    def resolve_word(self, word: int) -> CFValue:
        """Resolve ``word`` when it names a live handle, else keep the raw word."""
        if 1 <= word <= len(self._values):
            return self._values[word - 1]
        return word

    def get(self, handle: int, key: str | int) -> CFValue:
        table = self.resolve_as(handle, dict)
        try:
            return table[key]
        except KeyError:
            raise KeyNotFound(f"key {key!r} not in dictionary {handle}") from None

    def set(self, handle: int, key: str | int, value: CFValue) -> None:
        table = self.resolve_as(handle, dict)
        table[key] = value


def parse_cfstring(machine: Machine, ptr: int) -> str:
    """Decode a constant CFString whose descriptor lives at ``ptr``."""
    _isa, _flags, str_ptr, length = CFSTRING_DESCRIPTOR.unpack(
        machine.read_memory(ptr, CFSTRING_DESCRIPTOR.size)
    )
    raw = machine.read_memory(str_ptr, length)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise EmulationFault(f"CFString at 0x{ptr:x} is not valid UTF-8: {exc}") from exc
