"""x86-64 emulation core: memory layout, System V call bridge and import interception."""

from __future__ import annotations

import logging
import struct
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from unicorn import (
    UC_ARCH_X86,
    UC_HOOK_CODE,
    UC_HOOK_MEM_UNMAPPED,
    UC_MEM_FETCH_UNMAPPED,
    UC_MEM_READ_UNMAPPED,
    UC_MEM_WRITE_UNMAPPED,
    UC_MODE_64,
    Uc,
    UcError,
)
from unicorn.x86_const import (
    UC_X86_REG_R8,
    UC_X86_REG_R9,
    UC_X86_REG_RAX,
    UC_X86_REG_RBP,
    UC_X86_REG_RCX,
    UC_X86_REG_RDI,
    UC_X86_REG_RDX,
    UC_X86_REG_RIP,
    UC_X86_REG_RSI,
    UC_X86_REG_RSP,
)

from nac_emulator.errors import EmulationFault, FormatError, NacError, UnresolvedHook

if TYPE_CHECKING:
    from nac_emulator.hooks import HookTable
    from nac_emulator.macho import MachOImage

logger = logging.getLogger(__name__)


PAGE_SIZE = 0x1000
MASK64 = 0xFFFFFFFFFFFFFFFF

HEAP_BASE = 0x4000_0000
HEAP_SIZE = 0x0100_0000
STACK_BASE = 0x5000_0000
STACK_SIZE = 0x0010_0000
HOOK_BASE = 0x6000_0000
HOOK_SIZE = 0x1000
STOP_ADDRESS = 0x7000_0000

RET_OPCODE = b"\xc3"
CSTRING_MAX = 256

ARG_REGISTERS = (
    UC_X86_REG_RDI,
    UC_X86_REG_RSI,
    UC_X86_REG_RDX,
    UC_X86_REG_RCX,
    UC_X86_REG_R8,
    UC_X86_REG_R9,
)

_UNMAPPED_ACCESS_NAMES = {
    UC_MEM_READ_UNMAPPED: "read",
    UC_MEM_WRITE_UNMAPPED: "write",
    UC_MEM_FETCH_UNMAPPED: "fetch",
}


def _align_up(value: int, align: int) -> int:
    return (value + align - 1) & ~(align - 1)


def _align_down(value: int, align: int) -> int:
    return value & ~(align - 1)


class Machine:
    """One Unicorn x86-64 engine plus the harness' fixed memory regions.

    Layout: the image at its segment addresses, a bump heap at ``HEAP_BASE``,
    the stack at ``STACK_BASE``, a page of ``ret`` stubs at ``HOOK_BASE`` and
    the sentinel return page at ``STOP_ADDRESS``.
    """

    def __init__(self, trace: bool = False) -> None:
        self.uc = Uc(UC_ARCH_X86, UC_MODE_64)
        self.trace = trace
        self.heap_cursor = HEAP_BASE
        self.stack_top = _align_down(STACK_BASE + STACK_SIZE - PAGE_SIZE, 16)
        self.resolved: Mapping[int, str] = MappingProxyType({})
        self._hook_region_mapped = False
        self._hooks: HookTable | None = None
        self._context: Any = None
        self._pending: BaseException | None = None
        self._unmapped_access: tuple[str, int, int] | None = None

    # Setup.

    def load(self, image: MachOImage) -> None:
        base = _align_down(image.base, PAGE_SIZE)
        end = _align_up(image.end, PAGE_SIZE)
        if end <= base:
            raise FormatError("image has no mapped segments")
        if end > HEAP_BASE:
            raise FormatError(
                f"image span 0x{base:x}-0x{end:x} overlaps harness region at 0x{HEAP_BASE:x}"
            )

        self.uc.mem_map(base, end - base)
        for seg in image.mapped_segments():
            if seg.filesize == 0:
                continue
            size = min(seg.filesize, seg.vmsize)
            self.uc.mem_write(seg.vmaddr, image.data[seg.fileoff : seg.fileoff + size])
            logger.debug(
                "mapped %s at 0x%x (file 0x%x+0x%x)", seg.name, seg.vmaddr, seg.fileoff, size
            )
        if base == 0:
            # Leave page zero unmapped so NULL dereferences fault.
            self.uc.mem_unmap(0, PAGE_SIZE)

        self.uc.mem_map(HEAP_BASE, HEAP_SIZE)
        self.uc.mem_map(STACK_BASE, STACK_SIZE)
        self.uc.mem_map(STOP_ADDRESS, PAGE_SIZE)
        self.uc.mem_write(STOP_ADDRESS, RET_OPCODE * PAGE_SIZE)

        self.uc.hook_add(UC_HOOK_MEM_UNMAPPED, self._on_unmapped)
        if self.trace:
            self.uc.hook_add(UC_HOOK_CODE, self._on_trace)

    def map_hook_region(self) -> None:
        if self._hook_region_mapped:
            return
        self.uc.mem_map(HOOK_BASE, HOOK_SIZE)
        self.uc.mem_write(HOOK_BASE, RET_OPCODE * HOOK_SIZE)
        self._hook_region_mapped = True

    def install_hooks(self, table: HookTable, context: Any, binds: Mapping[int, str]) -> Mapping[int, str]:
        """Assign one stub per hook, patch bind slots and start intercepting."""
        if len(table) > HOOK_SIZE:
            raise EmulationFault(f"{len(table)} hooks exceed the {HOOK_SIZE} stub slots")
        self.map_hook_region()

        by_name: dict[str, int] = {}
        resolved: dict[int, str] = {}
        for index, name in enumerate(table):
            addr = HOOK_BASE + index
            by_name[name] = addr
            resolved[addr] = name

        missing: set[str] = set()
        for slot, symbol in sorted(binds.items()):
            addr = by_name.get(symbol)
            if addr is None:
                missing.add(symbol)
                continue
            self.write_u64(slot, addr)
        for symbol in sorted(missing):
            logger.warning("import %s has no hook; calls to it will fault", symbol)

        self.resolved = MappingProxyType(resolved)
        self._hooks = table
        self._context = context
        self.uc.hook_add(UC_HOOK_CODE, self._on_hook_code, begin=HOOK_BASE, end=HOOK_BASE + HOOK_SIZE - 1)
        logger.debug("installed %d hooks, patched %d bind slots", len(table), len(binds) - len(missing))
        return self.resolved

    # Heap.

    def allocate(self, size: int) -> int:
        addr = self.heap_cursor
        self.heap_cursor += size
        return addr

    # Memory access.

    def read_memory(self, addr: int, size: int) -> bytes:
        try:
            return bytes(self.uc.mem_read(addr, size))
        except UcError as exc:
            raise EmulationFault(f"read of 0x{size:x} bytes at 0x{addr:x} failed: {exc}") from exc

    def write_memory(self, addr: int, data: bytes) -> None:
        if not data:
            return
        try:
            self.uc.mem_write(addr, bytes(data))
        except UcError as exc:
            raise EmulationFault(f"write of 0x{len(data):x} bytes at 0x{addr:x} failed: {exc}") from exc

    def read_u64(self, addr: int) -> int:
        return struct.unpack("<Q", self.read_memory(addr, 8))[0]

    def write_u64(self, addr: int, value: int) -> None:
        self.write_memory(addr, struct.pack("<Q", value & MASK64))

    def read_cstring(self, addr: int, limit: int = CSTRING_MAX) -> str:
        out = bytearray()
        while len(out) < limit:
            byte = self.read_memory(addr + len(out), 1)
            if byte == b"\x00":
                break
            out += byte
        return out.decode("utf-8", "replace")

    # Registers.

    def reg_read(self, reg: int) -> int:
        return self.uc.reg_read(reg)

    def reg_write(self, reg: int, value: int) -> None:
        self.uc.reg_write(reg, value & MASK64)

    def read_args(self, count: int) -> list[int]:
        """Read ``count`` System V arguments at callee entry."""
        args = [self.uc.reg_read(reg) for reg in ARG_REGISTERS[:count]]
        if count > len(ARG_REGISTERS):
            rsp = self.uc.reg_read(UC_X86_REG_RSP)
            for k in range(count - len(ARG_REGISTERS)):
                args.append(self.read_u64(rsp + 8 * (k + 1)))
        return args

    # Calls.

    def call(self, address: int, args: Sequence[int] = (), timeout_ms: int = 0, max_insn: int = 0) -> int:
        """Run ``address`` with System V arguments until it returns to the sentinel."""
        saved_rsp = self.uc.reg_read(UC_X86_REG_RSP)
        if not saved_rsp:
            saved_rsp = self.stack_top

        stack_args = list(args[len(ARG_REGISTERS) :])
        rsp = saved_rsp
        # Keep rsp+8 16-byte aligned at callee entry.
        if len(stack_args) % 2:
            rsp -= 8
        for value in reversed(stack_args):
            rsp -= 8
            self.write_u64(rsp, value)
        rsp -= 8
        self.write_u64(rsp, STOP_ADDRESS)

        for reg, value in zip(ARG_REGISTERS, args):
            self.reg_write(reg, value)
        self.uc.reg_write(UC_X86_REG_RSP, rsp)
        self.uc.reg_write(UC_X86_REG_RBP, saved_rsp)

        self._pending = None
        self._unmapped_access = None
        logger.debug("call 0x%x(%s)", address, ", ".join(f"0x{a & MASK64:x}" for a in args))
        try:
            self.uc.emu_start(
                address,
                STOP_ADDRESS,
                timeout=max(timeout_ms, 0) * 1000,
                count=max(max_insn, 0),
            )
        except UcError as exc:
            if self._pending is not None:
                raise self._take_pending()
            pc = self.uc.reg_read(UC_X86_REG_RIP)
            if self._unmapped_access is not None:
                kind, addr, size = self._unmapped_access
                raise EmulationFault(
                    f"unmapped {kind} of 0x{size:x} bytes at 0x{addr:x} @pc=0x{pc:x}"
                ) from exc
            raise EmulationFault(f"{exc} @pc=0x{pc:x}") from exc
        finally:
            rip = self.uc.reg_read(UC_X86_REG_RIP)
            self.uc.reg_write(UC_X86_REG_RSP, saved_rsp)

        if self._pending is not None:
            raise self._take_pending()
        if rip != STOP_ADDRESS:
            raise EmulationFault(f"emulation stopped at 0x{rip:x} before returning from 0x{address:x}")

        result = self.uc.reg_read(UC_X86_REG_RAX)
        logger.debug("call 0x%x -> 0x%x", address, result)
        return result

    def _take_pending(self) -> BaseException:
        exc = self._pending
        self._pending = None
        assert exc is not None
        return exc

    # Engine callbacks.

    def _on_hook_code(self, uc: Uc, address: int, _size: int, _user_data: object) -> None:
        if self._pending is not None:
            return
        name = None
        try:
            name = self.resolved.get(address)
            if name is None or self._hooks is None:
                raise UnresolvedHook(f"no hook assigned to stub 0x{address:x}")
            hook = self._hooks[name]
            args = self.read_args(hook.arity)
            result = hook.invoke(self._context, args)
            uc.reg_write(UC_X86_REG_RAX, int(result or 0) & MASK64)
        except NacError as exc:
            self._pending = exc
            uc.emu_stop()
        except Exception as exc:
            fault = EmulationFault(f"{name}: {exc}")
            fault.__cause__ = exc
            self._pending = fault
            uc.emu_stop()

    def _on_unmapped(self, uc: Uc, access: int, address: int, size: int, _value: int, _user_data: object) -> bool:
        kind = _UNMAPPED_ACCESS_NAMES.get(access, f"access({access})")
        self._unmapped_access = (kind, address, size)
        logger.debug("unmapped %s at 0x%x size 0x%x", kind, address, size)
        return False

    def _on_trace(self, uc: Uc, address: int, size: int, _user_data: object) -> None:
        logger.debug("trace 0x%x size 0x%x", address, size)
