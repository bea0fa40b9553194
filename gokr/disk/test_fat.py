# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
import datetime
import io
import struct

import pytest

from . import fat

MTIME = datetime.datetime(2024, 5, 17, 13, 37, 42)


def build(files: dict[str, bytes], **kwargs) -> bytes:
    out = io.BytesIO()
    fw = fat.Writer(out, mtime=MTIME, **kwargs)
    for path, contents in files.items():
        fw.file(path).write(contents)
    written = fw.flush()
    assert written == len(out.getvalue())
    return out.getvalue()


def test_boot_sector():
    img = build({"/cmdline.txt": b"console=tty1"}, hidden_sectors=8192)
    assert img[510:512] == b"\x55\xaa"
    assert img[82:90] == b"FAT32   "
    assert struct.unpack_from("<H", img, 11)[0] == 512
    assert struct.unpack_from("<I", img, 28)[0] == 8192
    assert struct.unpack_from("<I", img, 32)[0] == 100 * 1024 * 1024 // 512
    # backup boot sector
    assert img[6 * 512 : 7 * 512] == img[:512]
    # FSInfo signatures
    assert struct.unpack_from("<I", img, 512)[0] == 0x41615252
    assert struct.unpack_from("<I", img, 512 + 484)[0] == 0x61417272


def test_read_back():
    vmlinuz = bytes(range(256)) * 100
    files = {
        "/vmlinuz": vmlinuz,
        "/cmdline.txt": b"console=tty1 root=PARTUUID=1234-02" + b" " * 64,
        "/overlays/disable-bt.dtbo": b"overlay",
        "/loader/entries/gokrazy.conf": b"title gokrazy\n",
        "/BOOTCODE.BIN": b"short name",
        "/empty.txt": b"",
    }
    img = build(files)
    rd = fat.Reader(io.BytesIO(img))
    for path, contents in files.items():
        assert rd.read_file(path) == contents

    offset, length = rd.extents("/vmlinuz")
    assert length == len(vmlinuz)
    assert offset % 512 == 0
    assert img[offset : offset + length] == vmlinuz

    offset, length = rd.extents("/cmdline.txt")
    assert img[offset : offset + length].endswith(b" " * 64)

    names = [e[0] for e in rd.listdir(rd.root_cluster)]
    assert names == ["vmlinuz", "cmdline.txt", "overlays", "loader", "BOOTCODE.BIN", "empty.txt"]

    with pytest.raises(FileNotFoundError):
        rd.extents("/nope")


def test_reader_offset():
    img = build({"/vmlinuz": b"kernel"})
    padded = bytes(8192 * 512) + img
    rd = fat.Reader(io.BytesIO(padded), offset=8192 * 512)
    assert rd.extents("/vmlinuz") == fat.Reader(io.BytesIO(img)).extents("/vmlinuz")


def test_duplicates():
    fw = fat.Writer(io.BytesIO(), mtime=MTIME)
    fw.file("/config.txt")
    with pytest.raises(FileExistsError):
        fw.file("/config.txt")
    with pytest.raises(FileExistsError):
        fw.file("/CONFIG.TXT")
    fw.mkdir("/overlays")
    with pytest.raises(FileExistsError):
        fw.mkdir("/overlays")
    with pytest.raises(NotADirectoryError):
        fw.file("/config.txt/nested")


def test_long_names():
    # more than 13 UTF-16 code units need several LFN entries
    name = "bcm2711-rpi-cm4-io-with-a-long-name.dtb"
    img = build({"/" + name: b"dtb", "/bcm2711-rpi-cm4-io-other.dtb": b"dtb2"})
    rd = fat.Reader(io.BytesIO(img))
    assert rd.read_file("/" + name) == b"dtb"
    assert rd.read_file("/bcm2711-rpi-cm4-io-other.dtb") == b"dtb2"


def test_lfn_checksum():
    short = fat.short_name_alias("vmlinuz", set())
    assert short == b"VMLINU~1   "
    assert fat.short_name_alias("vmlinuz", {short}) == b"VMLINU~2   "
    assert fat.short_name_alias("cmdline.txt", set()) == b"CMDLIN~1TXT"
    assert 0 <= fat.lfn_checksum(short) <= 255


def test_deterministic():
    files = {"/a.txt": b"a", "/sub/b.txt": b"b" * 1000}
    assert build(files) == build(files)


def test_only_used_clusters_written():
    img = build({"/vmlinuz": b"x" * 4096})
    rd = fat.Reader(io.BytesIO(img))
    offset, length = rd.extents("/vmlinuz")
    assert len(img) == offset + length
