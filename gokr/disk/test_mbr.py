import datetime
import io
import struct

import pytest

from gokr.disk import fat, mbr


def boot_fs() -> bytes:
    out = io.BytesIO()
    fw = fat.Writer(out, mtime=datetime.datetime(2024, 1, 1))
    fw.file("/config.txt").write(b"enable_uart=1\n")
    fw.file("/vmlinuz").write(b"k" * 5000)
    fw.file("/cmdline.txt").write(b"console=tty1" + b" " * 64)
    fw.flush()
    return out.getvalue()


def test_configure():
    code = mbr.configure(8200, 8300, 0xDEADBEEF)
    assert len(code) == 446
    assert struct.unpack_from("<I", code, 218)[0] == 8200
    assert struct.unpack_from("<I", code, 222)[0] == 8300
    assert struct.unpack_from("<I", code, 440)[0] == 0xDEADBEEF
    with pytest.raises(ValueError):
        mbr.configure(1, 2, 3, template=bytes(512))


def test_write_mbr():
    img = boot_fs()
    rd = fat.Reader(io.BytesIO(img))
    vmlinuz, _ = rd.extents("/vmlinuz")
    cmdline, _ = rd.extents("/cmdline.txt")

    out = io.BytesIO(bytes(512))
    lbas = mbr.write_mbr(io.BytesIO(img), out, 0x12345678)
    assert lbas == (vmlinuz // 512 + 8192, cmdline // 512 + 8192)

    code = out.getvalue()
    assert struct.unpack_from("<II", code, 218) == lbas
    assert struct.unpack_from("<I", code, 440)[0] == 0x12345678
    # the partition table is left alone
    assert len(code) == 512


def test_write_mbr_offset():
    img = boot_fs()
    disk = io.BytesIO(bytes(2048 * 512) + img)
    out = io.BytesIO()
    lbas = mbr.write_mbr(disk, out, 1, first_partition_offset=2048, offset=2048 * 512)
    rd = fat.Reader(io.BytesIO(img))
    assert lbas[0] == rd.extents("/vmlinuz")[0] // 512 + 2048
