# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""Just enough ELF parsing to validate Go binaries and read their build
identification: the build ID note and the .go.buildinfo blob."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import struct

from gokr.helpers.exceptions import BuildFailedError

ELF_MAGIC = b"\x7fELF"
ELFCLASS32 = 1
ELFCLASS64 = 2
PT_NOTE = 4

GO_NOTE = b"Go\x00\x00"
GNU_NOTE = b"GNU\x00"
GO_BUILD_ID_TAG = 4
GNU_BUILD_ID_TAG = 3

BUILDINFO_MAGIC = b"\xff Go buildinf:"
BUILDINFO_HEADER_SIZE = 32
BUILDINFO_FLAGS_VERSION_INL = 0x2


@dataclass
class Prog:
    type: int
    offset: int
    filesz: int
    align: int


@dataclass
class Section:
    name: str
    offset: int
    size: int


@dataclass
class ELFFile:
    data: bytes
    order: str
    elf_class: int
    machine: int
    progs: list[Prog] = field(default_factory=list)
    sections: list[Section] = field(default_factory=list)

    def section(self, name: str) -> bytes | None:
        for s in self.sections:
            if s.name == name:
                return self.data[s.offset : s.offset + s.size]
        return None


def is_elf(path: Path) -> bool:
    with open(path, "rb") as handle:
        return handle.read(4) == ELF_MAGIC


def parse(data: bytes) -> ELFFile:
    """:raises ValueError: data is not a valid ELF file"""
    if len(data) < 52 or data[:4] != ELF_MAGIC:
        raise ValueError("bad magic number")
    elf_class = data[4]
    match data[5]:
        case 1:
            order = "<"
        case 2:
            order = ">"
        case _:
            raise ValueError(f"unknown ELF data encoding {data[5]}")

    match elf_class:
        case 2:
            (_, machine, _, _, phoff, shoff, _, _, phentsize, phnum, shentsize, shnum,
             shstrndx) = struct.unpack_from(order + "HHIQQQIHHHHHH", data, 16)
            phdr, shdr = "IIQQQQQQ", "IIQQQQIIQQ"
        case 1:
            (_, machine, _, _, phoff, shoff, _, _, phentsize, phnum, shentsize, shnum,
             shstrndx) = struct.unpack_from(order + "HHIIIIIHHHHHH", data, 16)
            phdr, shdr = "IIIIIIII", "IIIIIIIIII"
        case _:
            raise ValueError(f"unknown ELF class {elf_class}")

    ret = ELFFile(data=data, order=order, elf_class=elf_class, machine=machine)
    for i in range(phnum):
        off = phoff + i * phentsize
        if off + struct.calcsize(order + phdr) > len(data):
            raise ValueError("program header out of range")
        fields = struct.unpack_from(order + phdr, data, off)
        if elf_class == ELFCLASS64:
            ptype, _, offset, _, _, filesz, _, align = fields
        else:
            ptype, offset, _, _, filesz, _, _, align = fields
        ret.progs.append(Prog(ptype, offset, filesz, align))

    raw_sections = []
    for i in range(shnum):
        off = shoff + i * shentsize
        if off + struct.calcsize(order + shdr) > len(data):
            raise ValueError("section header out of range")
        fields = struct.unpack_from(order + shdr, data, off)
        raw_sections.append((fields[0], fields[4], fields[5]))
    if raw_sections and shstrndx < len(raw_sections):
        _, stroff, strsize = raw_sections[shstrndx]
        strtab = data[stroff : stroff + strsize]
        for name_off, offset, size in raw_sections:
            name = strtab[name_off : strtab.find(b"\x00", name_off)].decode(errors="replace")
            ret.sections.append(Section(name, offset, size))
    return ret


def read(path: Path) -> ELFFile:
    """Read and parse the ELF file at path.

    :raises BuildFailedError: path is not an ELF binary
    """
    data = Path(path).read_bytes()
    try:
        return parse(data)
    except ValueError as e:
        raise BuildFailedError(f"{path} is not a valid ELF binary: {e}") from e


def build_id(ef: ELFFile) -> str:
    """
    Go build ID from the PT_NOTE segments.

    :returns: the Go build ID, else the GNU build ID (hex, as written by
              gccgo), else ""
    """
    gnu = ""
    for p in ef.progs:
        if p.type != PT_NOTE or p.filesz < 16:
            continue
        note = ef.data[p.offset : p.offset + p.filesz]
        while len(note) >= 16:
            name_size, val_size, tag = struct.unpack_from(ef.order + "III", note)
            name = note[12:16]
            if name_size == 4 and 16 + val_size <= len(note):
                value = note[16 : 16 + val_size]
                if tag == GO_BUILD_ID_TAG and name == GO_NOTE:
                    return value.decode()
                if tag == GNU_BUILD_ID_TAG and name == GNU_NOTE:
                    gnu = value.hex()
            name_size = (name_size + 3) & ~3
            val_size = (val_size + 3) & ~3
            note_size = 12 + name_size + val_size
            if len(note) <= note_size:
                break
            note = note[note_size:]
    return gnu


def read_uvarint(data: bytes, pos: int) -> tuple[int, int]:
    """:returns: (value, position after the varint)"""
    value = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        b = data[pos]
        pos += 1
        value |= (b & 0x7F) << shift
        if b < 0x80:
            return value, pos
        shift += 7


def build_info(ef: ELFFile) -> str:
    """
    Build information embedded by the Go linker, in the format of
    `go version -m`: "go\\t<version>\\n" followed by the module lines.

    :raises ValueError: the binary carries no (supported) build information
    """
    blob = ef.section(".go.buildinfo")
    if blob is None:
        blob = ef.data
    pos = blob.find(BUILDINFO_MAGIC)
    if pos < 0:
        raise ValueError("not a Go executable")
    flags = blob[pos + 15]
    if not flags & BUILDINFO_FLAGS_VERSION_INL:
        raise ValueError("unsupported Go build information format (built before go1.18?)")

    pos += BUILDINFO_HEADER_SIZE
    strings = []
    for _ in range(2):
        length, pos = read_uvarint(blob, pos)
        strings.append(blob[pos : pos + length])
        pos += length
    version, mod = strings

    # Module information is framed by 16 byte sentinels
    if len(mod) >= 33 and mod[-17:-16] == b"\n":
        mod = mod[16:-16]
    else:
        mod = b""
    return f"go\t{version.decode()}\n{mod.decode()}"
