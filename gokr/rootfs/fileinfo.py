# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""In-memory tree of the root file system, written to SquashFS at the end."""

from __future__ import annotations

import datetime
import os
from pathlib import Path
import shutil
import stat

from gokr.disk import squashfs
from gokr.helpers import logging


class FileInfo:
    """
    One entry of the root file system tree. Exactly one of from_host,
    from_literal and symlink_dest is set for non-directories; directories
    have dirents (possibly empty).

    :param filename: name inside the parent directory, "" for the root
    :param mode: permission bits, 0 means the default of the entry type
    :param from_host: path of a file on the host, copied with its mode
    :param from_literal: file contents
    :param symlink_dest: target of a symbolic link
    """

    def __init__(
        self,
        filename: str,
        mode: int = 0,
        from_host: Path | str | None = None,
        from_literal: bytes | str | None = None,
        symlink_dest: str | None = None,
    ) -> None:
        self.filename = filename
        self.mode = mode
        self.from_host = from_host
        self.from_literal = from_literal
        self.symlink_dest = symlink_dest
        self.dirents: list[FileInfo] = []

    def __repr__(self) -> str:
        return f"FileInfo({self.filename!r})"

    def is_file(self) -> bool:
        return self.from_host is not None or self.from_literal is not None

    def is_dir(self) -> bool:
        return not self.is_file() and self.symlink_dest is None

    def find(self, name: str) -> FileInfo | None:
        for ent in self.dirents:
            if ent.filename == name:
                return ent
        return None

    def must_find(self, name: str) -> FileInfo:
        ret = self.find(name)
        if ret is None:
            raise RuntimeError(f"must_find({name!r}) did not find directory entry")
        return ret

    def add(self, ent: FileInfo) -> FileInfo:
        """Append a child, refusing a second child with the same name."""
        if self.find(ent.filename) is not None:
            raise FileExistsError(f"file already exists in filesystem: {self.filename}/{ent.filename}")
        self.dirents.append(ent)
        return ent

    def path_list(self) -> list[str]:
        """Paths of all leaves (files and symlinks) below this directory."""
        paths = []
        for ent in self.dirents:
            if not ent.is_dir():
                paths.append(ent.filename)
                continue
            paths += [f"{ent.filename}/{p}" for p in ent.path_list()]
        return paths

    def combine(self, other: FileInfo) -> None:
        """
        Merge the children of other into this tree. Directories present in
        both are merged recursively.

        :raises FileExistsError: a file exists in both trees
        """
        for ent2 in other.dirents:
            ent = self.find(ent2.filename)
            if ent is None:
                self.dirents.append(ent2)
                continue
            if not ent.is_dir() or not ent2.is_dir():
                raise FileExistsError(f"file already exist: {ent2.filename}")
            ent.combine(ent2)


def mkdirp(root: FileInfo, path: str) -> FileInfo:
    """
    Return the directory entry for path (relative to root), creating missing
    parents along the way.
    """
    d = root
    for part in path.strip("/").split("/"):
        if part in ("", "."):
            continue
        ent = d.find(part)
        if ent is None:
            ent = d.add(FileInfo(part))
        elif not ent.is_dir():
            raise FileExistsError(f"file already exists in filesystem: {path}")
        d = ent
    return d


def get_duplication(fi_a: FileInfo, fi_b: FileInfo) -> list[str]:
    """:returns: paths present in both trees (or twice in one of them)"""
    seen = set()
    ret = []
    for p in fi_a.path_list() + fi_b.path_list():
        if p in seen:
            ret.append(p)
        seen.add(p)
    return ret


def copy_file(d: squashfs.Directory, name: str, src: Path | str) -> None:
    st = os.stat(src)
    mtime = datetime.datetime.fromtimestamp(int(st.st_mtime), datetime.timezone.utc)
    with open(src, "rb") as handle, d.file(name, mtime, stat.S_IMODE(st.st_mode)) as w:
        shutil.copyfileobj(handle, w)


def write(d: squashfs.Directory, fi: FileInfo, mtime: datetime.datetime) -> None:
    """Write fi (recursively) into the SquashFS directory d. The root entry
    (filename "") is written into d itself."""
    if fi.from_host is not None:
        copy_file(d, fi.filename, fi.from_host)
        return
    if fi.from_literal is not None:
        data = fi.from_literal
        if isinstance(data, str):
            data = data.encode()
        with d.file(fi.filename, mtime, fi.mode or 0o444) as w:
            w.write(data)
        return
    if fi.symlink_dest is not None:
        d.symlink(fi.symlink_dest, fi.filename, mtime, 0o444)
        return

    sub = d if fi.filename == "" else d.directory(fi.filename, mtime, fi.mode or 0o755)
    for ent in sorted(fi.dirents, key=lambda e: e.filename):
        write(sub, ent, mtime)
    sub.flush()


def write_root(f, root: FileInfo, mtime: datetime.datetime) -> int:
    """
    Write the root file system as SquashFS image at the current position of f.

    :returns: size of the image in bytes
    """
    logging.info("Creating root file system")
    w = squashfs.Writer(f, mtime)
    write(w.root, root, mtime)
    return w.flush()
