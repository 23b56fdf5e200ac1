"""Import hooks: the hook contract, the dispatch table and every stand-in implementation.

Each hook receives the per-run ``Harness`` followed by the raw 64-bit argument
words read at the call site, and returns the value placed in ``rax``.
"""

from __future__ import annotations

import dataclasses
import inspect
import logging
import random
import struct
from typing import Callable, Iterable, Iterator, Sequence

from nac_emulator.errors import EmulationFault, InvalidHookArity, InvalidObjectType, UnresolvedHook
from nac_emulator.fixtures import FixtureData
from nac_emulator.machine import Machine
from nac_emulator.objects import ObjectTable, kind_name, parse_cfstring

logger = logging.getLogger(__name__)


# Data imports are bound into the ret-filled stub page, so dereferencing one
# reads back the fill pattern.
SENTINEL_KEY = 0xC3C3C3C3C3C3C3C3
VOLUME_UUID_KEY = "DADiskDescriptionVolumeUUIDKey"
PROVIDER_CLASS_KEY = "IOProviderClass"

CF_DATA_TYPE_ID = 1
CF_STRING_TYPE_ID = 2

REGISTRY_ROOT_ENTRY = 1
PARENT_ENTRY_OFFSET = 100
MATCHING_SERVICE = 92
MATCHING_ITERATOR = 93
ITERATOR_ELEMENT = 94
DA_SESSION = 201
DA_DISK = 202


@dataclasses.dataclass
class Harness:
    """State shared by every hook during one validation run."""

    machine: Machine
    objects: ObjectTable
    fixtures: FixtureData
    iterator_pending: bool = False


HookFunc = Callable[..., int]


@dataclasses.dataclass(frozen=True)
class Hook:
    name: str
    func: HookFunc
    arity: int

    def __post_init__(self) -> None:
        if self.arity < 0:
            raise InvalidHookArity(f"{self.name}: negative arity {self.arity}")
        try:
            inspect.signature(self.func).bind(None, *([0] * self.arity))
        except TypeError as exc:
            raise InvalidHookArity(
                f"{self.name}: implementation does not take {self.arity} argument(s): {exc}"
            ) from exc

    def invoke(self, context: Harness, args: Sequence[int]) -> int:
        if len(args) != self.arity:
            raise InvalidHookArity(f"{self.name} takes {self.arity} argument(s), got {len(args)}")
        return self.func(context, *args)


class HookTable:
    """Symbol name -> ``Hook``, in registration order."""

    def __init__(self, hooks: Iterable[Hook] = ()) -> None:
        self._hooks: dict[str, Hook] = {}
        for hook in hooks:
            self.add(hook)

    def add(self, hook: Hook) -> Hook:
        if hook.name in self._hooks:
            raise EmulationFault(f"duplicate hook for {hook.name}")
        self._hooks[hook.name] = hook
        return hook

    def register(self, name: str, arity: int) -> Callable[[HookFunc], HookFunc]:
        def decorator(func: HookFunc) -> HookFunc:
            self.add(Hook(name, func, arity))
            return func

        return decorator

    def __getitem__(self, name: str) -> Hook:
        try:
            return self._hooks[name]
        except KeyError:
            raise UnresolvedHook(f"no hook registered for {name}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._hooks

    def __iter__(self) -> Iterator[str]:
        return iter(self._hooks)

    def __len__(self) -> int:
        return len(self._hooks)

    def missing(self, symbols: Iterable[str]) -> list[str]:
        return sorted({name for name in symbols if name not in self._hooks})


_REGISTRY: list[Hook] = []


def _hook(name: str, arity: int) -> Callable[[HookFunc], HookFunc]:
    def decorator(func: HookFunc) -> HookFunc:
        _REGISTRY.append(Hook(name, func, arity))
        return func

    return decorator


def _constant(name: str, arity: int, value: int) -> None:
    def func(_h: Harness, *_args: int) -> int:
        return value

    func.__name__ = f"const_{name.lstrip('_')}"
    _REGISTRY.append(Hook(name, func, arity))


def default_hooks() -> HookTable:
    return HookTable(_REGISTRY)


# libc


@_hook("_malloc", 1)
def malloc(h: Harness, size: int) -> int:
    return h.machine.allocate(size)


@_hook("___memset_chk", 4)
def memset_chk(h: Harness, dest: int, c: int, length: int, dest_len: int) -> int:
    logger.debug("memset_chk dest=0x%x c=0x%x len=0x%x destlen=0x%x", dest, c, length, dest_len)
    count = min(length, dest_len)
    h.machine.write_memory(dest, bytes([c & 0xFF]) * count)
    return dest


@_hook("___bzero", 2)
def bzero(h: Harness, ptr: int, length: int) -> int:
    h.machine.write_memory(ptr, bytes(length))
    return 0


@_hook("_memcpy", 3)
def memcpy(h: Harness, dest: int, src: int, length: int) -> int:
    logger.debug("memcpy dest=0x%x src=0x%x len=0x%x", dest, src, length)
    h.machine.write_memory(dest, h.machine.read_memory(src, length))
    return dest


@_hook("_arc4random", 0)
def arc4random(h: Harness) -> int:
    return random.getrandbits(32)


for _name in ("_free", "_CFRelease", "_IOObjectRelease"):
    _constant(_name, 1, 0)

for _name in (
    "___stack_chk_guard",
    "_kIOMasterPortDefault",
    "_kCFAllocatorDefault",
    "_kCFBooleanTrue",
    "_kDADiskDescriptionVolumeUUIDKey",
):
    _constant(_name, 0, 0)

# Outputs of these are never read back by the binary.
_constant("_sysctlbyname", 5, 0)
_constant("_statfs$INODE64", 2, 0)


# IOKit


_constant("_IORegistryEntryFromPath", 2, REGISTRY_ROOT_ENTRY)


@_hook("_IORegistryEntryCreateCFProperty", 4)
def io_registry_entry_create_cf_property(
    h: Harness, entry: int, key: int, allocator: int, options: int
) -> int:
    name = parse_cfstring(h.machine, key)
    value = h.fixtures.iokit.get(name)
    if value is None:
        logger.debug("IOKit property %s -> absent", name)
        return 0
    logger.debug("IOKit property %s -> %r", name, value)
    return h.objects.intern(value)


@_hook("_IORegistryEntryGetParentEntry", 3)
def io_registry_entry_get_parent_entry(h: Harness, entry: int, plane: int, parent: int) -> int:
    h.machine.write_memory(parent, struct.pack("<I", (entry + PARENT_ENTRY_OFFSET) & 0xFFFFFFFF))
    return 0


@_hook("_IOServiceMatching", 1)
def io_service_matching(h: Harness, name: int) -> int:
    service = h.machine.read_cstring(name)
    logger.debug("IOServiceMatching %s", service)
    return h.objects.intern({PROVIDER_CLASS_KEY: service})


_constant("_IOServiceGetMatchingService", 2, MATCHING_SERVICE)


@_hook("_IOServiceGetMatchingServices", 3)
def io_service_get_matching_services(h: Harness, port: int, matching: int, existing: int) -> int:
    h.iterator_pending = True
    h.machine.write_memory(existing, struct.pack("<I", MATCHING_ITERATOR))
    return 0


@_hook("_IOIteratorNext", 1)
def io_iterator_next(h: Harness, iterator: int) -> int:
    if h.iterator_pending:
        h.iterator_pending = False
        return ITERATOR_ELEMENT
    return 0


# CoreFoundation


@_hook("_CFGetTypeID", 1)
def cf_get_type_id(h: Harness, obj: int) -> int:
    value = h.objects.resolve(obj)
    if isinstance(value, bytes):
        return CF_DATA_TYPE_ID
    if isinstance(value, str):
        return CF_STRING_TYPE_ID
    raise InvalidObjectType(f"CFGetTypeID on {kind_name(value)} handle {obj}")


_constant("_CFDataGetTypeID", 0, CF_DATA_TYPE_ID)
_constant("_CFStringGetTypeID", 0, CF_STRING_TYPE_ID)


@_hook("_CFDataGetLength", 1)
def cf_data_get_length(h: Harness, obj: int) -> int:
    return len(h.objects.resolve_as(obj, bytes))


@_hook("_CFDataGetBytes", 4)
def cf_data_get_bytes(h: Harness, obj: int, location: int, length: int, buf: int) -> int:
    data = h.objects.resolve_as(obj, bytes)[location : location + length]
    logger.debug("CFDataGetBytes %d [0x%x+0x%x] -> 0x%x", obj, location, length, buf)
    h.machine.write_memory(buf, data)
    return len(data)


@_hook("_CFDictionaryCreateMutable", 4)
def cf_dictionary_create_mutable(
    h: Harness, allocator: int, capacity: int, key_callbacks: int, value_callbacks: int
) -> int:
    return h.objects.intern({})


def _dictionary_key(h: Harness, word: int) -> str | int | bytes:
    key = h.objects.resolve_word(word)
    if isinstance(key, dict):
        raise InvalidObjectType(f"dictionary handle {word} used as a key")
    return key


@_hook("_CFDictionarySetValue", 3)
def cf_dictionary_set_value(h: Harness, d: int, key: int, value: int) -> int:
    h.objects.set(d, _dictionary_key(h, key), h.objects.resolve_word(value))
    return 0


@_hook("_CFDictionaryGetValue", 2)
def cf_dictionary_get_value(h: Harness, d: int, key: int) -> int:
    logger.debug("CFDictionaryGetValue %d 0x%x", d, key)
    if key == SENTINEL_KEY:
        # The binary looks the volume UUID up through the stub-page pattern.
        resolved_key: str | int | bytes = VOLUME_UUID_KEY
    else:
        resolved_key = _dictionary_key(h, key)
    value = h.objects.get(d, resolved_key)
    logger.debug("CFDictionaryGetValue %r -> %r", resolved_key, value)
    return h.objects.intern(value)


@_hook("_CFUUIDCreateString", 2)
def cf_uuid_create_string(h: Harness, allocator: int, uuid: int) -> int:
    return uuid


@_hook("_CFStringGetLength", 1)
def cf_string_get_length(h: Harness, string: int) -> int:
    return len(h.objects.resolve_as(string, str).encode("utf-8"))


@_hook("_CFStringGetMaximumSizeForEncoding", 2)
def cf_string_get_maximum_size_for_encoding(h: Harness, length: int, encoding: int) -> int:
    return length


@_hook("_CFStringGetCString", 4)
def cf_string_get_cstring(h: Harness, string: int, buf: int, capacity: int, encoding: int) -> int:
    data = h.objects.resolve_as(string, str).encode("utf-8")[:capacity]
    logger.debug("CFStringGetCString %d -> 0x%x (%d bytes)", string, buf, len(data))
    h.machine.write_memory(buf, data)
    return len(data)


# DiskArbitration


_constant("_DASessionCreate", 1, DA_SESSION)
_constant("_DADiskCreateFromBSDName", 3, DA_DISK)


@_hook("_DADiskCopyDescription", 1)
def da_disk_copy_description(h: Harness, disk: int) -> int:
    return h.objects.intern({VOLUME_UUID_KEY: h.fixtures.root_disk_uuid})
