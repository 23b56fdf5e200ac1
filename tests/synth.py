"""Hand-built Mach-O images and x86-64 snippets for the test suite."""

from __future__ import annotations

import struct

from nac_emulator.macho import (
    CPU_TYPE_ARM64,
    CPU_TYPE_X86_64,
    FAT_MAGIC,
    FAT_MAGIC_64,
    LC_DYLD_INFO_ONLY,
    LC_DYSYMTAB,
    LC_SEGMENT_64,
    LC_SYMTAB,
    S_NON_LAZY_SYMBOL_POINTERS,
)

MH_MAGIC_64 = 0xFEEDFACF
MH_DYLIB = 0x6

CODE_ADDR = 0x1000
DATA_ADDR = 0x2000
GOT_ADDR = 0x2400
IMAGE_SIZE = 0x3000

BIND_OFF = 0x800
SYMTAB_OFF = 0xA00
STRTAB_OFF = 0xC00
INDIRECT_OFF = 0xE00


def uleb(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def slot_address(index: int) -> int:
    return DATA_ADDR + 8 * index


def got_address(index: int) -> int:
    return GOT_ADDR + 8 * index


def bind_opcodes(imports: list[str] | tuple[str, ...]) -> bytes:
    out = bytearray()
    for index, name in enumerate(imports):
        out += b"\x11"  # dylib ordinal 1
        out += b"\x40" + name.encode() + b"\x00"
        out += b"\x51"  # pointer
        out += b"\x71" + uleb(8 * index)  # __DATA + offset
        out += b"\x90"
        out += b"\x00"
    return bytes(out)


def build_macho(
    code: bytes = b"\xc3",
    imports: list[str] | tuple[str, ...] = (),
    got_imports: list[str] | tuple[str, ...] = (),
    opcodes: bytes | None = None,
    cputype: int = CPU_TYPE_X86_64,
) -> bytes:
    """Thin dylib: __TEXT at 0 (code at 0x1000), __DATA at 0x2000 holding bind slots."""
    blob = bytearray(IMAGE_SIZE)
    cmds = bytearray()
    ncmds = 0

    cmds += struct.pack(
        "<II16sQQQQiiII", LC_SEGMENT_64, 72, b"__TEXT", 0, 0x2000, 0, 0x2000, 7, 5, 0, 0
    )
    ncmds += 1

    nsects = 1 if got_imports else 0
    cmds += struct.pack(
        "<II16sQQQQiiII",
        LC_SEGMENT_64,
        72 + 80 * nsects,
        b"__DATA",
        DATA_ADDR,
        0x1000,
        0x2000,
        0x1000,
        7,
        3,
        nsects,
        0,
    )
    if got_imports:
        cmds += struct.pack(
            "<16s16sQQIIIIIIII",
            b"__got",
            b"__DATA",
            GOT_ADDR,
            8 * len(got_imports),
            GOT_ADDR,
            3,
            0,
            0,
            S_NON_LAZY_SYMBOL_POINTERS,
            0,
            0,
            0,
        )
    ncmds += 1

    stream = bind_opcodes(imports) if opcodes is None else opcodes
    if stream:
        blob[BIND_OFF : BIND_OFF + len(stream)] = stream
        cmds += struct.pack(
            "<12I", LC_DYLD_INFO_ONLY, 48, 0, 0, BIND_OFF, len(stream), 0, 0, 0, 0, 0, 0
        )
        ncmds += 1

    if got_imports:
        strtab = bytearray(b"\x00")
        for index, name in enumerate(got_imports):
            struct.pack_into("<IBBHQ", blob, SYMTAB_OFF + 16 * index, len(strtab), 0x01, 0, 0, 0)
            strtab += name.encode() + b"\x00"
            struct.pack_into("<I", blob, INDIRECT_OFF + 4 * index, index)
        blob[STRTAB_OFF : STRTAB_OFF + len(strtab)] = strtab
        cmds += struct.pack(
            "<6I", LC_SYMTAB, 24, SYMTAB_OFF, len(got_imports), STRTAB_OFF, len(strtab)
        )
        dysymtab = [0] * 20
        dysymtab[0] = LC_DYSYMTAB
        dysymtab[1] = 80
        dysymtab[14] = INDIRECT_OFF
        dysymtab[15] = len(got_imports)
        cmds += struct.pack("<20I", *dysymtab)
        ncmds += 2

    header = struct.pack("<IIIIIIII", MH_MAGIC_64, cputype, 3, MH_DYLIB, ncmds, len(cmds), 0, 0)
    blob[0 : len(header)] = header
    blob[len(header) : len(header) + len(cmds)] = cmds
    blob[CODE_ADDR : CODE_ADDR + len(code)] = code
    return bytes(blob)


def build_fat(slices: list[tuple[int, bytes]], fat64: bool = False) -> bytes:
    offset = 0x1000
    header = bytearray(struct.pack(">II", FAT_MAGIC_64 if fat64 else FAT_MAGIC, len(slices)))
    body = bytearray()
    layout = []
    for cputype, blob in slices:
        layout.append((cputype, offset, len(blob)))
        body += blob + bytes(-len(blob) % 0x1000)
        offset += len(blob) + (-len(blob) % 0x1000)
    for cputype, slice_offset, size in layout:
        if fat64:
            header += struct.pack(">iiQQII", cputype, 3, slice_offset, size, 12, 0)
        else:
            header += struct.pack(">iiIII", cputype, 3, slice_offset, size, 12)
    return bytes(header) + bytes(0x1000 - len(header)) + bytes(body)


def build_binary(code: bytes = b"\xc3", imports=(), **kwargs) -> bytes:
    """Fat container with an arm64 decoy and the x86_64 image."""
    x86 = build_macho(code, imports, **kwargs)
    arm = build_macho(b"", (), cputype=CPU_TYPE_ARM64)
    return build_fat([(CPU_TYPE_ARM64, arm), (CPU_TYPE_X86_64, x86)])


class Assembler:
    """Byte-level x86-64 emitter with labels and RIP-relative slot references."""

    def __init__(self, base: int = CODE_ADDR) -> None:
        self.base = base
        self.buf = bytearray()
        self.labels: dict[str, int] = {}

    @property
    def here(self) -> int:
        return self.base + len(self.buf)

    def label(self, name: str) -> int:
        self.labels[name] = self.here
        return self.here

    def emit(self, raw: bytes) -> "Assembler":
        self.buf += raw
        return self

    def call_slot(self, slot: int) -> "Assembler":
        # call qword [rip+disp32]
        return self.emit(b"\xff\x15" + struct.pack("<i", slot - (self.here + 6)))

    def jmp_slot(self, slot: int) -> "Assembler":
        # jmp qword [rip+disp32]
        return self.emit(b"\xff\x25" + struct.pack("<i", slot - (self.here + 6)))

    def load_slot(self, slot: int) -> "Assembler":
        # mov rax, qword [rip+disp32]
        return self.emit(b"\x48\x8b\x05" + struct.pack("<i", slot - (self.here + 7)))

    def code(self) -> bytes:
        return bytes(self.buf)


# Routine bodies.
SUM8 = bytes.fromhex(
    "4889f8"  # mov rax, rdi
    "4801f0"  # add rax, rsi
    "4801d0"  # add rax, rdx
    "4801c8"  # add rax, rcx
    "4c01c0"  # add rax, r8
    "4c01c8"  # add rax, r9
    "4803442408"  # add rax, [rsp+8]
    "4803442410"  # add rax, [rsp+16]
    "c3"
)
DEREF_RDI = bytes.fromhex("488b07c3")  # mov rax, [rdi]; ret
SPIN = bytes.fromhex("ebfe")  # jmp $
RETURN_ZERO = bytes.fromhex("31c0c3")
RETURN_MINUS_TWO = bytes.fromhex("b8feffffffc3")
NAC_INIT = bytes.fromhex(
    "48c70234120000"  # mov qword [rdx], 0x1234
    "488939"  # mov [rcx], rdi
    "498930"  # mov [r8], rsi
    "31c0c3"
)
NAC_CTX = 0x1234


def nac_sign_body(asm: Assembler, malloc_slot: int) -> None:
    asm.emit(bytes.fromhex("53" "4154" "4155" "4889cb" "4d89c4" "bf08000000"))
    asm.call_slot(malloc_slot)
    asm.emit(
        bytes.fromhex(
            "c70041424344"  # mov dword [rax], "ABCD"
            "c7400445464748"  # mov dword [rax+4], "EFGH"
            "488903"  # mov [rbx], rax
            "49c7042408000000"  # mov qword [r12], 8
            "31c0" "415d" "415c" "5b" "c3"
        )
    )
