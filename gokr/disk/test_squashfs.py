# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
import datetime
import io
import random
import struct
import zlib

import pytest

from . import squashfs

MTIME = datetime.datetime(2024, 5, 17, 13, 37, 42, tzinfo=datetime.timezone.utc)
BLOCK = squashfs.BLOCK_SIZE


class Reader:
    """Just enough of a SquashFS reader to verify what the writer produced."""

    def __init__(self, img: bytes) -> None:
        self.img = img
        fields = struct.unpack_from(squashfs.SUPERBLOCK_FORMAT, img, 0)
        (
            self.magic,
            self.inode_count,
            self.mtime,
            self.block_size,
            _,
            self.compression,
            _,
            self.flags,
            self.id_count,
            self.major,
            self.minor,
            self.root_ref,
            self.bytes_used,
            self.id_table_start,
            _,
            self.inode_table_start,
            self.directory_table_start,
            _,
            _,
        ) = fields
        self.inodes = self._metadata(self.inode_table_start, self.directory_table_start)
        self.dirs = self._metadata(self.directory_table_start, self.id_table_start)

    def _metadata(self, start: int, end: int) -> dict[int, bytes]:
        """Map on-disk block offset (relative to start) -> uncompressed data,
        concatenated with all following blocks."""
        blocks = []
        pos = start
        while pos < end:
            (header,) = struct.unpack_from("<H", self.img, pos)
            size = header & 0x7FFF
            data = self.img[pos + 2 : pos + 2 + size]
            if not header & squashfs.METADATA_UNCOMPRESSED:
                data = zlib.decompress(data)
            blocks.append((pos - start, data))
            pos += 2 + size
        out = {}
        for i, (offset, _) in enumerate(blocks):
            out[offset] = b"".join(d for _, d in blocks[i:])
        return out

    def inode(self, block: int, offset: int) -> dict:
        data = self.inodes[block][offset:]
        itype, mode, _, _, mtime, number = struct.unpack_from("<HHHHII", data, 0)
        ret = {"type": itype, "mode": mode, "mtime": mtime, "number": number}
        body = data[16:]
        if itype == squashfs.DIR_TYPE:
            start, nlink, size, off, parent = struct.unpack_from("<IIHHI", body)
            ret.update(start=start, nlink=nlink, size=size, offset=off, parent=parent)
        elif itype == squashfs.FILE_TYPE:
            start, _, _, size = struct.unpack_from("<IIII", body)
            nblocks = (size + self.block_size - 1) // self.block_size
            sizes = struct.unpack_from(f"<{nblocks}I", body, 16)
            ret.update(start=start, size=size, block_sizes=sizes)
        elif itype == squashfs.SYMLINK_TYPE:
            nlink, size = struct.unpack_from("<II", body)
            ret.update(nlink=nlink, target=body[8 : 8 + size].decode())
        return ret

    def listdir(self, inode: dict) -> list[tuple[str, dict]]:
        data = self.dirs[inode["start"]][inode["offset"] : inode["offset"] + inode["size"] - 3]
        out = []
        pos = 0
        while pos < len(data):
            count, block, base = struct.unpack_from("<III", data, pos)
            pos += 12
            for _ in range(count + 1):
                offset, delta, _, name_size = struct.unpack_from("<HhHH", data, pos)
                name = data[pos + 8 : pos + 8 + name_size + 1].decode()
                pos += 8 + name_size + 1
                child = self.inode(block, offset)
                assert child["number"] == base + delta
                out.append((name, child))
        return out

    def root(self) -> dict:
        return self.inode(self.root_ref >> 16, self.root_ref & 0xFFFF)

    def lookup(self, path: str) -> dict:
        inode = self.root()
        for part in [p for p in path.split("/") if p]:
            inode = dict(self.listdir(inode))[part]
        return inode

    def read(self, inode: dict) -> bytes:
        out = b""
        pos = inode["start"]
        for size in inode["block_sizes"]:
            length = size & ~squashfs.DATA_UNCOMPRESSED
            data = self.img[pos : pos + length]
            if not size & squashfs.DATA_UNCOMPRESSED:
                data = zlib.decompress(data)
            out += data
            pos += length
        return out


def build(populate, offset: int = 0) -> bytes:
    f = io.BytesIO()
    f.write(bytes(offset))
    w = squashfs.Writer(f, MTIME)
    populate(w.root)
    size = w.flush()
    img = f.getvalue()[offset:]
    assert size <= len(img)
    assert len(img) % 4096 == 0
    return img


def sample_tree(root: squashfs.Directory) -> None:
    gokrazy = root.directory("gokrazy", MTIME)
    with gokrazy.file("init", MTIME, 0o755) as f:
        f.write(b"\x7fELF" + bytes(300000))
    gokrazy.flush()
    etc = root.directory("etc", MTIME)
    with etc.file("hostname", MTIME) as f:
        f.write(b"gokrazy")
    etc.symlink("/tmp/resolv.conf", "resolv.conf", MTIME)
    etc.directory("ssl", MTIME).flush()
    etc.flush()
    root.symlink("/perm/var", "var", MTIME)
    root.directory("perm", MTIME).flush()
    root.flush()


def test_superblock():
    img = build(sample_tree)
    rd = Reader(img)
    assert rd.magic == 0x73717368
    assert (rd.major, rd.minor) == (4, 0)
    assert rd.block_size == 128 * 1024
    assert rd.compression == 1
    assert rd.id_count == 1
    assert rd.mtime == int(MTIME.timestamp())
    # root, gokrazy, init, etc, hostname, resolv.conf, ssl, perm, var
    assert rd.inode_count == 9
    assert rd.bytes_used <= len(img)


def test_tree():
    rd = Reader(build(sample_tree))
    root = rd.root()
    assert root["type"] == squashfs.DIR_TYPE
    assert root["number"] == rd.inode_count
    assert root["parent"] == rd.inode_count + 1
    assert root["mode"] == 0o755
    # ".", "..", gokrazy, etc, perm
    assert root["nlink"] == 5

    assert [name for name, _ in rd.listdir(root)] == ["etc", "gokrazy", "perm", "var"]

    init = rd.lookup("/gokrazy/init")
    assert init["mode"] == 0o755
    assert init["size"] == 300004
    assert len(init["block_sizes"]) == 3
    assert rd.read(init) == b"\x7fELF" + bytes(300000)

    hostname = rd.lookup("/etc/hostname")
    assert hostname["mode"] == 0o444
    assert rd.read(hostname) == b"gokrazy"

    assert rd.lookup("/etc/resolv.conf")["target"] == "/tmp/resolv.conf"
    assert rd.lookup("/var")["target"] == "/perm/var"

    etc = rd.lookup("/etc")
    assert etc["parent"] == root["number"]
    ssl = rd.lookup("/etc/ssl")
    assert ssl["size"] == 3
    assert rd.listdir(ssl) == []


def test_incompressible_block():
    data = random.Random(4).randbytes(BLOCK + 100)

    def populate(root):
        with root.file("random", MTIME) as f:
            f.write(data)

    rd = Reader(build(populate))
    f = rd.lookup("/random")
    assert f["block_sizes"][0] & squashfs.DATA_UNCOMPRESSED
    assert rd.read(f) == data


def test_many_entries():
    def populate(root):
        d = root.directory("lib", MTIME)
        for i in range(600):
            with d.file(f"module-{i:04d}.ko", MTIME) as f:
                f.write(str(i).encode())

    rd = Reader(build(populate))
    entries = rd.listdir(rd.lookup("/lib"))
    assert len(entries) == 600
    assert entries[0][0] == "module-0000.ko"
    assert rd.read(rd.lookup("/lib/module-0599.ko")) == b"599"


def test_deterministic():
    assert build(sample_tree) == build(sample_tree)


def test_offset():
    # root file systems are written behind the boot partition
    assert build(sample_tree, offset=4096) == build(sample_tree)


def test_errors():
    w = squashfs.Writer(io.BytesIO(), MTIME)
    w.root.file("a", MTIME).close()
    with pytest.raises(FileExistsError):
        w.root.file("a", MTIME)
    f = w.root.file("b", MTIME)
    with pytest.raises(RuntimeError):
        w.root.directory("c", MTIME)
    f.close()
    with pytest.raises(ValueError):
        w.root.file("d/e", MTIME)
