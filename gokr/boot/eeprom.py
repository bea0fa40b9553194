# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""Raspberry Pi EEPROM update file format.

See https://github.com/raspberrypi/rpi-eeprom (rpi-eeprom-config) for the
reference implementation. All integers are big endian.
"""

from __future__ import annotations

from dataclasses import dataclass
import struct

MAGIC = 0x55AAF00F
MAGIC_MASK = 0xFFFFF00F
# id for modifiable files
FILE_MAGIC = 0x55AAF11F
FILENAME_LEN = 12
FILENAME_PADDING = 4

# magic number + 32 bit length
CHUNK_HEADER_LEN = 4 + 4

VALID_SIZES = (512 * 1024, 2 * 1024 * 1024)


@dataclass
class Section:
    img: bytes
    magic: int
    offset: int
    length: int
    filename: str = ""

    def raw_content(self) -> bytes:
        offset = self.offset + CHUNK_HEADER_LEN
        return self.img[offset : offset + self.length]

    def file_content(self) -> bytes:
        offset = self.offset + CHUNK_HEADER_LEN
        length = self.length
        if self.magic == FILE_MAGIC:
            skip = FILENAME_LEN + FILENAME_PADDING
            offset += skip
            length -= skip
        return self.img[offset : offset + length]


def file_section(offset: int, name: str, contents: bytes) -> Section:
    """Create a modifiable file section located at offset."""
    if len(name) > FILENAME_LEN:
        raise ValueError(f"file name {name} exceeds max FILENAME_LEN = {FILENAME_LEN}")

    img = bytes(offset + CHUNK_HEADER_LEN)
    img += name.encode() + bytes(FILENAME_PADDING + FILENAME_LEN - len(name))
    img += contents
    return Section(
        img=img,
        magic=FILE_MAGIC,
        offset=offset,
        length=len(contents) + FILENAME_LEN + FILENAME_PADDING,
        filename=name,
    )


def _align8(offset: int) -> int:
    return (offset + 7) & ~7


def analyze(img: bytes) -> list[Section]:
    """Split an EEPROM image into its sections.

    :raises ValueError: unexpected size, corrupted image or bootconf.txt is
                        not the last section
    """
    if len(img) not in VALID_SIZES:
        raise ValueError(f"unexpected EEPROM size: got {len(img)}, want 512KB or 2MB")

    sections: list[Section] = []
    offset = 0
    while offset + CHUNK_HEADER_LEN < len(img):
        magic, length = struct.unpack_from(">II", img, offset)
        if magic in (0, 0xFFFFFFFF):
            break  # end of file
        if magic & MAGIC_MASK != MAGIC:
            raise ValueError(f"EEPROM is corrupted: {magic:x} & {MAGIC_MASK:x} != {MAGIC:x}")
        sect = Section(img=img, magic=magic, offset=offset, length=length)
        if magic == FILE_MAGIC:
            name = img[offset + 8 : offset + 8 + FILENAME_LEN]
            sect.filename = name.replace(b"\x00", b"").decode()
        sections.append(sect)
        offset = _align8(offset + CHUNK_HEADER_LEN + length)

    if not sections:
        raise ValueError("invalid EEPROM: no sections found")
    # By convention bootconf.txt is the last section
    if sections[-1].filename != "bootconf.txt":
        raise ValueError("invalid EEPROM: bootconf.txt not the last section")
    return sections


def assemble(sections: list[Section], size: int | None = None) -> bytes:
    """Inverse of analyze(). The image keeps the size of the analyzed one,
    unused space is filled with 0xff."""
    if size is None:
        size = len(sections[0].img)
    output = bytearray(b"\xff" * size)
    offset = 0
    for sect in sections:
        struct.pack_into(">II", output, offset, sect.magic, sect.length)
        content = sect.raw_content()
        output[offset + 8 : offset + 8 + len(content)] = content
        offset = _align8(offset + CHUNK_HEADER_LEN + sect.length)
    return bytes(output)


def overwrite_bootconf(bootconf_txt: bytes, extra_eeprom: list[str]) -> bytes:
    """Replace the lines of bootconf.txt whose property is set in
    extra_eeprom. Properties not present in bootconf.txt are not added."""
    extra_by_prop: dict[str, str] = {}
    for line in extra_eeprom:
        prop, sep, _ = line.partition("=")
        if not sep:
            continue
        extra_by_prop[prop] = line

    out = ""
    for line in bootconf_txt.decode().strip().split("\n"):
        prop, sep, _ = line.partition("=")
        if sep and prop in extra_by_prop:
            out += extra_by_prop[prop] + "\n"
        else:
            out += line + "\n"
    return out.encode()


def apply_extra_eeprom(pieeprom: bytes, extra_eeprom: list[str]) -> bytes:
    sections = analyze(pieeprom)
    # guaranteed to be bootconf.txt
    bc = sections[-1]
    applied = overwrite_bootconf(bc.file_content(), extra_eeprom)
    sections[-1] = file_section(bc.offset, bc.filename, applied)
    return assemble(sections, size=len(pieeprom))


@dataclass
class Installed:
    """EEPROM update signatures reported by a running target."""

    pieeprom_sha256: str = ""
    vl805_sha256: str = ""

    @staticmethod
    def from_dict(data: dict | None) -> Installed | None:
        if not data:
            return None
        return Installed(
            pieeprom_sha256=data.get("PieepromSHA256", ""),
            vl805_sha256=data.get("VL805SHA256", ""),
        )
