"""Mach-O loader: fat container slicing, 64-bit image metadata and import binds.

It supports:
- fat containers (32/64 fat headers, either byte order) and thin 64-bit images
- LC_SEGMENT_64 / LC_DYLD_INFO[_ONLY] / LC_SYMTAB / LC_DYSYMTAB
- dyld bind + lazy bind opcode streams and indirect symbol pointer sections
"""

from __future__ import annotations

import dataclasses
import logging
import struct
from types import MappingProxyType
from typing import Iterable, Mapping

from nac_emulator.errors import FormatError

logger = logging.getLogger(__name__)


CPU_TYPE_I386 = 0x00000007
CPU_TYPE_X86_64 = 0x01000007
CPU_TYPE_ARM64 = 0x0100000C
CPU_TYPE_NAMES = {
    CPU_TYPE_I386: "i386",
    CPU_TYPE_X86_64: "x86_64",
    CPU_TYPE_ARM64: "arm64",
}

MH_MAGIC_64_BYTES_LE = b"\xcf\xfa\xed\xfe"
MH_MAGIC_64_BYTES_BE = b"\xfe\xed\xfa\xcf"

FAT_MAGIC = 0xCAFEBABE
FAT_CIGAM = 0xBEBAFECA
FAT_MAGIC_64 = 0xCAFEBABF
FAT_CIGAM_64 = 0xBFBAFECA

MACH_HEADER_64_SIZE = 32

# Load commands.
LC_SEGMENT_64 = 0x19
LC_DYLD_INFO = 0x22
LC_DYLD_INFO_ONLY = 0x80000022
LC_SYMTAB = 0x2
LC_DYSYMTAB = 0xB

# Section types.
SECTION_TYPE = 0x000000FF
S_NON_LAZY_SYMBOL_POINTERS = 0x6
S_LAZY_SYMBOL_POINTERS = 0x7

# Indirect symbol table sentinels.
INDIRECT_SYMBOL_LOCAL = 0x80000000
INDIRECT_SYMBOL_ABS = 0x40000000

# Dyld bind opcodes.
BIND_OPCODE_MASK = 0xF0
BIND_IMMEDIATE_MASK = 0x0F
BIND_OPCODE_DONE = 0x00
BIND_OPCODE_SET_DYLIB_ORDINAL_IMM = 0x10
BIND_OPCODE_SET_DYLIB_ORDINAL_ULEB = 0x20
BIND_OPCODE_SET_DYLIB_SPECIAL_IMM = 0x30
BIND_OPCODE_SET_SYMBOL_TRAILING_FLAGS_IMM = 0x40
BIND_OPCODE_SET_TYPE_IMM = 0x50
BIND_OPCODE_SET_ADDEND_SLEB = 0x60
BIND_OPCODE_SET_SEGMENT_AND_OFFSET_ULEB = 0x70
BIND_OPCODE_ADD_ADDR_ULEB = 0x80
BIND_OPCODE_DO_BIND = 0x90
BIND_OPCODE_DO_BIND_ADD_ADDR_ULEB = 0xA0
BIND_OPCODE_DO_BIND_ADD_ADDR_IMM_SCALED = 0xB0
BIND_OPCODE_DO_BIND_ULEB_TIMES_SKIPPING_ULEB = 0xC0

BIND_TYPE_POINTER = 1

MACH_NLIST_64_SIZE = 16
POINTER_SIZE_64 = 8


@dataclasses.dataclass(frozen=True)
class FatArch:
    cputype: int
    cpusubtype: int
    offset: int
    size: int
    align: int

    @property
    def arch(self) -> str:
        return CPU_TYPE_NAMES.get(self.cputype, f"cpu_0x{self.cputype & 0xFFFFFFFF:08x}")


@dataclasses.dataclass(frozen=True)
class MachOHeader64:
    endian: str
    cputype: int
    cpusubtype: int
    filetype: int
    ncmds: int
    sizeofcmds: int
    flags: int


@dataclasses.dataclass(frozen=True)
class Segment:
    name: str
    vmaddr: int
    vmsize: int
    fileoff: int
    filesize: int
    maxprot: int
    initprot: int


@dataclasses.dataclass(frozen=True)
class Section:
    sectname: str
    segname: str
    addr: int
    size: int
    offset: int
    flags: int
    reserved1: int
    reserved2: int


@dataclasses.dataclass(frozen=True)
class DyldInfo:
    bind_off: int
    bind_size: int
    lazy_bind_off: int
    lazy_bind_size: int


@dataclasses.dataclass(frozen=True)
class MachOImage:
    data: bytes
    header: MachOHeader64
    segments: tuple[Segment, ...]
    sections: tuple[Section, ...]
    binds: Mapping[int, str]

    def mapped_segments(self) -> list[Segment]:
        # __PAGEZERO style reservations carry no bytes and no protections.
        return [seg for seg in self.segments if seg.vmsize and (seg.filesize or seg.initprot)]

    @property
    def base(self) -> int:
        return min((seg.vmaddr for seg in self.mapped_segments()), default=0)

    @property
    def end(self) -> int:
        return max((seg.vmaddr + seg.vmsize for seg in self.mapped_segments()), default=0)

    def imported_symbols(self) -> list[str]:
        return sorted(set(self.binds.values()))


def _decode_uleb128(blob: bytes, pos: int, end: int) -> tuple[int, int]:
    value = 0
    shift = 0
    while pos < end:
        byte = blob[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if (byte & 0x80) == 0:
            return value, pos
        shift += 7
        if shift > 63:
            raise FormatError("uleb128 overflow")
    raise FormatError("truncated uleb128")


def _decode_sleb128(blob: bytes, pos: int, end: int) -> tuple[int, int]:
    value = 0
    shift = 0
    byte = 0
    while pos < end:
        byte = blob[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        shift += 7
        if (byte & 0x80) == 0:
            break
    else:
        raise FormatError("truncated sleb128")

    if shift < 64 and (byte & 0x40):
        value |= -(1 << shift)
    return value, pos


def _read_c_string(blob: bytes, pos: int, end: int) -> tuple[str, int]:
    cur = blob.find(b"\x00", pos, end)
    if cur < 0:
        raise FormatError("unterminated string in Mach-O string data")
    return blob[pos:cur].decode("utf-8", "replace"), cur + 1


def iter_fat_arches(binary: bytes) -> Iterable[FatArch]:
    if len(binary) < 8:
        raise FormatError("input is too small")

    magic_be = struct.unpack_from(">I", binary, 0)[0]

    if magic_be in (FAT_MAGIC, FAT_MAGIC_64, FAT_CIGAM, FAT_CIGAM_64):
        is_64 = magic_be in (FAT_MAGIC_64, FAT_CIGAM_64)
        endian = ">" if magic_be in (FAT_MAGIC, FAT_MAGIC_64) else "<"

        nfat_arch = struct.unpack_from(f"{endian}I", binary, 4)[0]
        entry_size = 32 if is_64 else 20
        if 8 + nfat_arch * entry_size > len(binary):
            raise FormatError("truncated fat header")

        for i in range(nfat_arch):
            off = 8 + i * entry_size
            if is_64:
                cputype, cpusubtype, offset, size, align, _reserved = struct.unpack_from(
                    f"{endian}iiQQII", binary, off
                )
            else:
                cputype, cpusubtype, offset, size, align = struct.unpack_from(
                    f"{endian}iiIII", binary, off
                )
            yield FatArch(
                cputype=cputype & 0xFFFFFFFF,
                cpusubtype=cpusubtype & 0xFFFFFFFF,
                offset=offset,
                size=size,
                align=align,
            )
        return

    header = _parse_macho_header_64(binary)
    yield FatArch(
        cputype=header.cputype,
        cpusubtype=header.cpusubtype,
        offset=0,
        size=len(binary),
        align=0,
    )


def get_slice(binary: bytes, cputype: int = CPU_TYPE_X86_64) -> bytes:
    """Return the single-architecture image for ``cputype``.

    Raises FormatError when the container is malformed or lacks that slice.
    """
    for entry in iter_fat_arches(binary):
        if entry.cputype != cputype:
            continue
        if entry.size <= 0 or entry.offset + entry.size > len(binary):
            raise FormatError(
                f"{entry.arch} slice 0x{entry.offset:x}+0x{entry.size:x} exceeds container bounds"
            )
        blob = bytes(binary[entry.offset : entry.offset + entry.size])
        if blob[:4] not in (MH_MAGIC_64_BYTES_LE, MH_MAGIC_64_BYTES_BE):
            raise FormatError(f"{entry.arch} slice is not a 64-bit Mach-O image")
        logger.debug("selected %s slice at 0x%x size 0x%x", entry.arch, entry.offset, entry.size)
        return blob
    name = CPU_TYPE_NAMES.get(cputype, f"0x{cputype:08x}")
    raise FormatError(f"no {name} slice in container")


def _parse_macho_header_64(blob: bytes) -> MachOHeader64:
    if len(blob) < MACH_HEADER_64_SIZE:
        raise FormatError("buffer too small for mach_header_64")

    magic = bytes(blob[:4])
    if magic == MH_MAGIC_64_BYTES_LE:
        endian = "<"
    elif magic == MH_MAGIC_64_BYTES_BE:
        endian = ">"
    else:
        raise FormatError("not a 64-bit Mach-O image")

    _, cputype, cpusubtype, filetype, ncmds, sizeofcmds, flags, _reserved = struct.unpack_from(
        f"{endian}IIIIIIII", blob, 0
    )
    return MachOHeader64(
        endian=endian,
        cputype=cputype,
        cpusubtype=cpusubtype,
        filetype=filetype,
        ncmds=ncmds,
        sizeofcmds=sizeofcmds,
        flags=flags,
    )


def parse_image(blob: bytes) -> MachOImage:
    header = _parse_macho_header_64(blob)
    endian = header.endian

    cmd_off = MACH_HEADER_64_SIZE
    cmds_end = cmd_off + header.sizeofcmds
    if cmds_end > len(blob):
        raise FormatError("invalid mach_header_64 sizeofcmds")

    segments: list[Segment] = []
    sections: list[Section] = []
    dyld_info: DyldInfo | None = None
    symtab: tuple[int, int, int, int] | None = None
    dysymtab: tuple[int, int] | None = None

    for _ in range(header.ncmds):
        if cmd_off + 8 > cmds_end:
            raise FormatError("truncated load command")
        cmd, cmdsize = struct.unpack_from(f"{endian}II", blob, cmd_off)
        if cmdsize < 8 or cmd_off + cmdsize > cmds_end:
            raise FormatError("invalid load command size")

        if cmd == LC_SEGMENT_64:
            if cmdsize < 72:
                raise FormatError("invalid LC_SEGMENT_64 command size")
            (
                _cmd,
                _cmdsize,
                raw_segname,
                vmaddr,
                vmsize,
                fileoff,
                filesize,
                maxprot,
                initprot,
                nsects,
                _flags,
            ) = struct.unpack_from(f"{endian}II16sQQQQiiII", blob, cmd_off)

            if filesize > 0 and fileoff + filesize > len(blob):
                raise FormatError("segment file range exceeds slice bounds")

            segments.append(
                Segment(
                    name=raw_segname.split(b"\x00", 1)[0].decode("ascii", "ignore"),
                    vmaddr=vmaddr,
                    vmsize=vmsize,
                    fileoff=fileoff,
                    filesize=filesize,
                    maxprot=maxprot,
                    initprot=initprot,
                )
            )

            section_base = cmd_off + 72
            if section_base + nsects * 80 > cmd_off + cmdsize:
                raise FormatError("invalid section list in LC_SEGMENT_64")

            for i in range(nsects):
                (
                    raw_sectname,
                    raw_segname2,
                    addr,
                    size,
                    file_offset,
                    _align,
                    _reloff,
                    _nreloc,
                    flags,
                    reserved1,
                    reserved2,
                    _reserved3,
                ) = struct.unpack_from(f"{endian}16s16sQQIIIIIIII", blob, section_base + i * 80)
                sections.append(
                    Section(
                        sectname=raw_sectname.split(b"\x00", 1)[0].decode("ascii", "ignore"),
                        segname=raw_segname2.split(b"\x00", 1)[0].decode("ascii", "ignore"),
                        addr=addr,
                        size=size,
                        offset=file_offset,
                        flags=flags,
                        reserved1=reserved1,
                        reserved2=reserved2,
                    )
                )

        elif cmd in (LC_DYLD_INFO, LC_DYLD_INFO_ONLY):
            if cmdsize < 48:
                raise FormatError("invalid LC_DYLD_INFO[_ONLY] size")
            fields = struct.unpack_from(f"{endian}12I", blob, cmd_off)
            dyld_info = DyldInfo(
                bind_off=fields[4],
                bind_size=fields[5],
                lazy_bind_off=fields[8],
                lazy_bind_size=fields[9],
            )

        elif cmd == LC_SYMTAB:
            if cmdsize < 24:
                raise FormatError("invalid LC_SYMTAB size")
            _cmd, _cmdsize, symoff, nsyms, stroff, strsize = struct.unpack_from(
                f"{endian}6I", blob, cmd_off
            )
            symtab = (symoff, nsyms, stroff, strsize)

        elif cmd == LC_DYSYMTAB:
            if cmdsize < 80:
                raise FormatError("invalid LC_DYSYMTAB size")
            fields = struct.unpack_from(f"{endian}20I", blob, cmd_off)
            dysymtab = (fields[14], fields[15])

        cmd_off += cmdsize

    binds: dict[int, str] = {}
    if symtab is not None and dysymtab is not None:
        binds.update(_parse_indirect_symbol_binds(blob, endian, sections, symtab, dysymtab))
    if dyld_info is not None:
        binds.update(_parse_bind_opcodes(blob, segments, dyld_info.bind_off, dyld_info.bind_size))
        binds.update(
            _parse_bind_opcodes(blob, segments, dyld_info.lazy_bind_off, dyld_info.lazy_bind_size)
        )
    logger.debug(
        "parsed image: %d segments, %d sections, %d bound slots",
        len(segments),
        len(sections),
        len(binds),
    )

    return MachOImage(
        data=bytes(blob),
        header=header,
        segments=tuple(segments),
        sections=tuple(sections),
        binds=MappingProxyType(binds),
    )


def _parse_indirect_symbol_binds(
    blob: bytes,
    endian: str,
    sections: list[Section],
    symtab: tuple[int, int, int, int],
    dysymtab: tuple[int, int],
) -> dict[int, str]:
    symoff, nsyms, stroff, strsize = symtab
    indirectsymoff, nindirectsyms = dysymtab
    if nsyms <= 0 or nindirectsyms <= 0 or strsize <= 0:
        return {}

    strtab_end = stroff + strsize
    if (
        symoff + nsyms * MACH_NLIST_64_SIZE > len(blob)
        or strtab_end > len(blob)
        or indirectsymoff + nindirectsyms * 4 > len(blob)
    ):
        raise FormatError("symbol tables exceed slice bounds")

    addr_map: dict[int, str] = {}
    for section in sections:
        if (section.flags & SECTION_TYPE) not in (S_LAZY_SYMBOL_POINTERS, S_NON_LAZY_SYMBOL_POINTERS):
            continue
        for i in range(section.size // POINTER_SIZE_64):
            indirect_index = section.reserved1 + i
            if indirect_index >= nindirectsyms:
                break
            (symbol_index,) = struct.unpack_from(
                f"{endian}I", blob, indirectsymoff + indirect_index * 4
            )
            if symbol_index & (INDIRECT_SYMBOL_LOCAL | INDIRECT_SYMBOL_ABS):
                continue
            if symbol_index >= nsyms:
                raise FormatError(f"indirect symbol index {symbol_index} out of range")
            (strx,) = struct.unpack_from(f"{endian}I", blob, symoff + symbol_index * MACH_NLIST_64_SIZE)
            if strx >= strsize:
                raise FormatError(f"symbol string index 0x{strx:x} out of range")
            name, _ = _read_c_string(blob, stroff + strx, strtab_end)
            if name:
                addr_map[section.addr + i * POINTER_SIZE_64] = name
    return addr_map


def _parse_bind_opcodes(
    blob: bytes,
    segments: list[Segment],
    bind_off: int,
    bind_size: int,
) -> dict[int, str]:
    if bind_size <= 0:
        return {}
    bind_end = bind_off + bind_size
    if bind_end > len(blob):
        raise FormatError("bind opcodes exceed slice bounds")

    cur_symbol: str | None = None
    bind_type = BIND_TYPE_POINTER
    seg_index: int | None = None
    seg_offset = 0
    addr_map: dict[int, str] = {}
    pos = bind_off

    def do_bind() -> None:
        if cur_symbol is None or seg_index is None:
            raise FormatError("bind opcode without symbol or segment")
        if bind_type != BIND_TYPE_POINTER:
            raise FormatError(f"unsupported bind type {bind_type} for {cur_symbol}")
        addr_map[segments[seg_index].vmaddr + seg_offset] = cur_symbol

    while pos < bind_end:
        byte = blob[pos]
        pos += 1
        opcode = byte & BIND_OPCODE_MASK
        imm = byte & BIND_IMMEDIATE_MASK

        if opcode == BIND_OPCODE_DONE:
            # Lazy bind streams hold one entry per symbol separated by DONE.
            cur_symbol = None
            bind_type = BIND_TYPE_POINTER
            seg_index = None
            seg_offset = 0
            continue
        if opcode in (BIND_OPCODE_SET_DYLIB_ORDINAL_IMM, BIND_OPCODE_SET_DYLIB_SPECIAL_IMM):
            continue
        if opcode == BIND_OPCODE_SET_DYLIB_ORDINAL_ULEB:
            _value, pos = _decode_uleb128(blob, pos, bind_end)
            continue
        if opcode == BIND_OPCODE_SET_SYMBOL_TRAILING_FLAGS_IMM:
            cur_symbol, pos = _read_c_string(blob, pos, bind_end)
            continue
        if opcode == BIND_OPCODE_SET_TYPE_IMM:
            bind_type = imm
            continue
        if opcode == BIND_OPCODE_SET_ADDEND_SLEB:
            _value, pos = _decode_sleb128(blob, pos, bind_end)
            continue
        if opcode == BIND_OPCODE_SET_SEGMENT_AND_OFFSET_ULEB:
            if imm >= len(segments):
                raise FormatError(f"bind segment index {imm} out of range")
            seg_index = imm
            seg_offset, pos = _decode_uleb128(blob, pos, bind_end)
            continue
        if opcode == BIND_OPCODE_ADD_ADDR_ULEB:
            value, pos = _decode_uleb128(blob, pos, bind_end)
            seg_offset = (seg_offset + value) & 0xFFFFFFFFFFFFFFFF
            continue
        if opcode == BIND_OPCODE_DO_BIND:
            do_bind()
            seg_offset += POINTER_SIZE_64
            continue
        if opcode == BIND_OPCODE_DO_BIND_ADD_ADDR_ULEB:
            do_bind()
            value, pos = _decode_uleb128(blob, pos, bind_end)
            seg_offset = (seg_offset + POINTER_SIZE_64 + value) & 0xFFFFFFFFFFFFFFFF
            continue
        if opcode == BIND_OPCODE_DO_BIND_ADD_ADDR_IMM_SCALED:
            do_bind()
            seg_offset += POINTER_SIZE_64 + (imm * POINTER_SIZE_64)
            continue
        if opcode == BIND_OPCODE_DO_BIND_ULEB_TIMES_SKIPPING_ULEB:
            count, pos = _decode_uleb128(blob, pos, bind_end)
            skip, pos = _decode_uleb128(blob, pos, bind_end)
            for _ in range(count):
                do_bind()
                seg_offset += POINTER_SIZE_64 + skip
            continue

        raise FormatError(f"unsupported bind opcode 0x{opcode:02x}")

    return addr_map
