import datetime
import io

import pytest

from gokr.disk import squashfs
from gokr.disk.test_squashfs import Reader
from gokr.rootfs.fileinfo import FileInfo, get_duplication, mkdirp, write_root

MTIME = datetime.datetime(2024, 5, 17, 13, 37, 42, tzinfo=datetime.timezone.utc)


def tree(*paths: str) -> FileInfo:
    root = FileInfo("")
    for p in paths:
        dirname, _, name = p.rpartition("/")
        mkdirp(root, dirname).add(FileInfo(name, from_literal=p))
    return root


def test_path_list():
    root = tree("etc/hostname", "etc/ssl/ca-bundle.pem", "gokrazy/init")
    root.add(FileInfo("var", symlink_dest="/perm/var"))
    root.add(FileInfo("tmp"))
    assert root.path_list() == ["etc/hostname", "etc/ssl/ca-bundle.pem", "gokrazy/init", "var"]


def test_add_duplicate():
    root = tree("etc/hostname")
    with pytest.raises(FileExistsError):
        root.must_find("etc").add(FileInfo("hostname", from_literal="x"))


def test_mkdirp_reuses_directories():
    root = FileInfo("")
    a = mkdirp(root, "/usr/share/doc")
    b = mkdirp(root, "usr/share/doc/")
    assert a is b
    assert mkdirp(root, "/") is root
    assert [e.filename for e in root.dirents] == ["usr"]

    mkdirp(root, "usr").add(FileInfo("file", from_literal=""))
    with pytest.raises(FileExistsError):
        mkdirp(root, "usr/file/sub")


def test_combine():
    root = tree("etc/hostname")
    root.combine(tree("etc/ssl/extra.pem", "usr/bin/tool"))
    assert root.path_list() == ["etc/hostname", "etc/ssl/extra.pem", "usr/bin/tool"]

    with pytest.raises(FileExistsError, match="hostname"):
        root.combine(tree("etc/hostname"))


def test_get_duplication():
    a = tree("etc/a", "etc/b")
    b = tree("etc/b", "usr/c")
    assert get_duplication(a, b) == ["etc/b"]
    assert get_duplication(a, FileInfo("")) == []


def test_write_root(tmp_path):
    host = tmp_path / "init"
    host.write_bytes(b"\x7fELF binary")
    host.chmod(0o755)

    root = FileInfo("")
    root.add(FileInfo("tmp"))
    root.add(FileInfo("var", symlink_dest="/perm/var"))
    gokrazy = root.add(FileInfo("gokrazy"))
    gokrazy.add(FileInfo("init", from_host=host))
    etc = root.add(FileInfo("etc"))
    etc.add(FileInfo("hostname", from_literal="scanner"))
    etc.add(FileInfo("gokr-pw.txt", mode=0o400, from_literal=b"secret"))

    buf = io.BytesIO()
    size = write_root(buf, root, MTIME)
    assert 0 < size <= len(buf.getvalue())

    r = Reader(buf.getvalue())
    assert r.magic == squashfs.MAGIC
    assert r.read(r.lookup("etc/hostname")) == b"scanner"
    assert r.lookup("etc/hostname")["mode"] & 0o777 == 0o444
    assert r.lookup("etc/gokr-pw.txt")["mode"] & 0o777 == 0o400
    assert r.lookup("gokrazy/init")["mode"] & 0o777 == 0o755
    assert r.read(r.lookup("gokrazy/init")) == b"\x7fELF binary"
    assert r.lookup("var")["target"] == "/perm/var"
    assert r.lookup("tmp")["type"] == squashfs.DIR_TYPE


def test_write_root_deterministic(tmp_path):
    def image() -> bytes:
        buf = io.BytesIO()
        write_root(buf, tree("etc/hostname", "etc/hosts", "usr/x"), MTIME)
        return buf.getvalue()

    assert image() == image()
