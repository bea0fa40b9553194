# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""SquashFS 4.0 writer (zlib compression, no fragments, no xattrs).

File data is streamed to the sink while files are written; inodes and
directory listings are kept in memory and written on Writer.flush(),
followed by the id table and, last, the superblock at the start of the
image. Directory entries are sorted by name and inode numbers are assigned
depth-first, so identical input produces identical images.

See https://dr-emann.github.io/squashfs/ for the format.
"""

from __future__ import annotations

import datetime
import struct
from typing import BinaryIO
import zlib

MAGIC = 0x73717368
BLOCK_SIZE = 128 * 1024
BLOCK_LOG = 17
METADATA_SIZE = 8192
COMPRESSION_ZLIB = 1

FLAG_NO_FRAGMENTS = 0x0010
FLAG_NO_XATTRS = 0x0200

# Set in a data block size if the block is stored uncompressed
DATA_UNCOMPRESSED = 1 << 24
# Set in a metadata block header if the block is stored uncompressed
METADATA_UNCOMPRESSED = 0x8000

NONE = 0xFFFFFFFFFFFFFFFF
NO_FRAGMENT = 0xFFFFFFFF
NO_XATTR = 0xFFFFFFFF

DIR_TYPE = 1
FILE_TYPE = 2
SYMLINK_TYPE = 3
EXT_DIR_TYPE = 8
EXT_FILE_TYPE = 9

SUPERBLOCK_SIZE = 96
SUPERBLOCK_FORMAT = "<IIIIIHHHHHHQQQQQQQQ"

# Maximum number of entries following one directory header
DIR_HEADER_MAX = 256


def unix_time(t: datetime.datetime) -> int:
    return max(0, int(t.timestamp())) & 0xFFFFFFFF


class MetadataWriter:
    """Packs a byte stream into 8 KiB metadata blocks, compressed where that
    saves space."""

    def __init__(self) -> None:
        self.blocks: list[bytes] = []
        self.disk_offset = 0
        self.buf = b""

    def position(self) -> tuple[int, int]:
        """(on-disk start of the current block, offset within the block)"""
        return self.disk_offset, len(self.buf)

    def write(self, data: bytes) -> tuple[int, int]:
        pos = self.position()
        self.buf += data
        while len(self.buf) >= METADATA_SIZE:
            self._emit(self.buf[:METADATA_SIZE])
            self.buf = self.buf[METADATA_SIZE:]
        return pos

    def _emit(self, raw: bytes) -> None:
        compressed = zlib.compress(raw)
        if len(compressed) < len(raw):
            block = struct.pack("<H", len(compressed)) + compressed
        else:
            block = struct.pack("<H", len(raw) | METADATA_UNCOMPRESSED) + raw
        self.blocks.append(block)
        self.disk_offset += len(block)

    def finish(self) -> bytes:
        if self.buf:
            self._emit(self.buf)
            self.buf = b""
        return b"".join(self.blocks)


class Entry:
    def __init__(self, name: str, mtime: datetime.datetime, mode: int) -> None:
        self.name = name
        self.mtime = mtime
        self.mode = mode
        self.inode_number = 0


class File(Entry):
    def __init__(self, name: str, mtime: datetime.datetime, mode: int) -> None:
        super().__init__(name, mtime, mode)
        self.blocks_start = 0
        self.size = 0
        self.block_sizes: list[int] = []


class Symlink(Entry):
    def __init__(self, name: str, mtime: datetime.datetime, mode: int, target: str) -> None:
        super().__init__(name, mtime, mode)
        self.target = target


class FileWriter:
    """Stream a file's contents into data blocks. Must be closed before the
    next file is created."""

    def __init__(self, writer: Writer, entry: File) -> None:
        self.writer = writer
        self.entry = entry
        self.buf = b""
        self.closed = False
        entry.blocks_start = writer.tell()

    def write(self, data: bytes) -> int:
        if self.closed:
            raise ValueError(f"write to closed file {self.entry.name}")
        self.buf += data
        while len(self.buf) >= BLOCK_SIZE:
            self._block(self.buf[:BLOCK_SIZE])
            self.buf = self.buf[BLOCK_SIZE:]
        return len(data)

    def _block(self, raw: bytes) -> None:
        compressed = zlib.compress(raw)
        if len(compressed) < len(raw):
            self.writer.write(compressed)
            self.entry.block_sizes.append(len(compressed))
        else:
            self.writer.write(raw)
            self.entry.block_sizes.append(len(raw) | DATA_UNCOMPRESSED)
        self.entry.size += len(raw)

    def close(self) -> None:
        if self.closed:
            return
        if self.buf:
            self._block(self.buf)
            self.buf = b""
        self.closed = True
        self.writer.open_file = None

    def __enter__(self) -> FileWriter:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class Directory(Entry):
    def __init__(
        self,
        writer: Writer,
        name: str,
        mtime: datetime.datetime,
        mode: int = 0o755,
    ) -> None:
        super().__init__(name, mtime, mode)
        self.writer = writer
        self.children: dict[str, Entry] = {}
        self.flushed = False

    def _add(self, entry: Entry) -> None:
        if self.flushed:
            raise RuntimeError(f"directory {self.name!r} already flushed")
        if not entry.name or "/" in entry.name:
            raise ValueError(f"invalid file name {entry.name!r}")
        if entry.name in self.children:
            raise FileExistsError(entry.name)
        self.writer.check_no_open_file()
        self.children[entry.name] = entry

    def file(self, name: str, mtime: datetime.datetime, mode: int = 0o444) -> FileWriter:
        entry = File(name, mtime, mode)
        self._add(entry)
        fw = FileWriter(self.writer, entry)
        self.writer.open_file = fw
        return fw

    def symlink(self, target: str, name: str, mtime: datetime.datetime, mode: int = 0o444) -> None:
        self._add(Symlink(name, mtime, mode, target))

    def directory(self, name: str, mtime: datetime.datetime, mode: int = 0o755) -> Directory:
        d = Directory(self.writer, name, mtime, mode)
        self._add(d)
        return d

    def flush(self) -> None:
        """Mark the directory as complete."""
        self.writer.check_no_open_file()
        self.flushed = True

    def sorted_children(self) -> list[Entry]:
        return [self.children[k] for k in sorted(self.children, key=lambda n: n.encode())]


class Writer:
    """SquashFS writer.

    :param sink: seekable file, the image starts at its current position
    :param mtime: modification time of the file system
    """

    def __init__(self, sink: BinaryIO, mtime: datetime.datetime) -> None:
        self.sink = sink
        self.mtime = mtime
        self.start = sink.tell()
        self.root = Directory(self, "", mtime)
        self.open_file: FileWriter | None = None
        # Space for the superblock, written on flush()
        sink.write(bytes(SUPERBLOCK_SIZE))

    def tell(self) -> int:
        return self.sink.tell() - self.start

    def write(self, data: bytes) -> None:
        self.sink.write(data)

    def check_no_open_file(self) -> None:
        if self.open_file is not None:
            raise RuntimeError(f"file {self.open_file.entry.name!r} not closed")

    def _number(self, d: Directory, counter: int) -> int:
        for child in d.sorted_children():
            if isinstance(child, Directory):
                counter = self._number(child, counter)
            else:
                counter += 1
                child.inode_number = counter
        counter += 1
        d.inode_number = counter
        return counter

    @staticmethod
    def _header(inode_type: int, entry: Entry) -> bytes:
        return struct.pack(
            "<HHHHII", inode_type, entry.mode & 0o7777, 0, 0, unix_time(entry.mtime), entry.inode_number
        )

    def _file_inode(self, f: File) -> bytes:
        sizes = struct.pack(f"<{len(f.block_sizes)}I", *f.block_sizes)
        if f.blocks_start < 1 << 32 and f.size < 1 << 32:
            return (
                self._header(FILE_TYPE, f)
                + struct.pack("<IIII", f.blocks_start, NO_FRAGMENT, 0, f.size)
                + sizes
            )
        return (
            self._header(EXT_FILE_TYPE, f)
            + struct.pack("<QQQIIII", f.blocks_start, f.size, 0, 1, NO_FRAGMENT, 0, NO_XATTR)
            + sizes
        )

    def _symlink_inode(self, s: Symlink) -> bytes:
        target = s.target.encode()
        return self._header(SYMLINK_TYPE, s) + struct.pack("<II", 1, len(target)) + target

    @staticmethod
    def _listing(entries: list[tuple[bytes, int, int, int, int]]) -> bytes:
        """Directory listing from (name, type, inode block, inode offset,
        inode number) tuples."""
        out = b""
        i = 0
        while i < len(entries):
            _, _, block, _, base = entries[i]
            run = []
            for e in entries[i:]:
                if e[2] != block or len(run) == DIR_HEADER_MAX or not -32768 <= e[4] - base <= 32767:
                    break
                run.append(e)
            out += struct.pack("<III", len(run) - 1, block, base)
            for name, entry_type, _, offset, number in run:
                out += struct.pack("<HhHH", offset, number - base, entry_type, len(name) - 1) + name
            i += len(run)
        return out

    def _write_dir(
        self, d: Directory, parent_number: int, inodes: MetadataWriter, dirs: MetadataWriter
    ) -> tuple[int, int]:
        entries = []
        subdirs = 0
        for child in d.sorted_children():
            if isinstance(child, Directory):
                block, offset = self._write_dir(child, d.inode_number, inodes, dirs)
                entry_type = DIR_TYPE
                subdirs += 1
            elif isinstance(child, File):
                block, offset = inodes.write(self._file_inode(child))
                entry_type = FILE_TYPE
            elif isinstance(child, Symlink):
                block, offset = inodes.write(self._symlink_inode(child))
                entry_type = SYMLINK_TYPE
            else:
                raise TypeError(f"unexpected entry {child!r}")
            name = child.name.encode()
            if len(name) > 256:
                raise ValueError(f"file name too long: {child.name}")
            entries.append((name, entry_type, block, offset, child.inode_number))

        listing = self._listing(entries)
        dir_block, dir_offset = dirs.write(listing)
        # "." and ".." are not stored but counted
        size = len(listing) + 3
        nlink = 2 + subdirs
        if size <= 0xFFFF:
            inode = self._header(DIR_TYPE, d) + struct.pack(
                "<IIHHI", dir_block, nlink, size, dir_offset, parent_number
            )
        else:
            inode = self._header(EXT_DIR_TYPE, d) + struct.pack(
                "<IIIIHHI", nlink, size, dir_block, parent_number, 0, dir_offset, NO_XATTR
            )
        return inodes.write(inode)

    def flush(self) -> int:
        """Write inode table, directory table, id table and superblock.

        :returns: size of the image in bytes (without the 4 KiB padding)
        """
        self.check_no_open_file()
        inode_count = self._number(self.root, 0)

        inodes = MetadataWriter()
        dirs = MetadataWriter()
        root_block, root_offset = self._write_dir(self.root, inode_count + 1, inodes, dirs)

        inode_table_start = self.tell()
        self.write(inodes.finish())
        directory_table_start = self.tell()
        self.write(dirs.finish())

        # A single id (0) used for both uid and gid of all inodes
        ids = MetadataWriter()
        ids.write(struct.pack("<I", 0))
        id_block_start = self.tell()
        self.write(ids.finish())
        id_table_start = self.tell()
        self.write(struct.pack("<Q", id_block_start))

        bytes_used = self.tell()
        pad = -bytes_used % 4096
        self.write(bytes(pad))
        end = self.sink.tell()

        superblock = struct.pack(
            SUPERBLOCK_FORMAT,
            MAGIC,
            inode_count,
            unix_time(self.mtime),
            BLOCK_SIZE,
            0,  # fragment entries
            COMPRESSION_ZLIB,
            BLOCK_LOG,
            FLAG_NO_FRAGMENTS | FLAG_NO_XATTRS,
            1,  # id count
            4,
            0,
            (root_block << 16) | root_offset,
            bytes_used,
            id_table_start,
            NONE,  # xattr id table
            inode_table_start,
            directory_table_start,
            NONE,  # fragment table
            NONE,  # export table
        )
        self.sink.seek(self.start)
        self.sink.write(superblock)
        self.sink.seek(end)
        return bytes_used
