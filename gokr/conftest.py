import os
from pathlib import Path
import struct

import pytest

import gokr.core.context
from gokr.core.config import Config
from gokr.core.context import Context


@pytest.fixture(autouse=True)
def logfile(tmp_path_factory):
    """Setup logging for all tests."""
    from gokr.helpers import logging

    tmp_path = tmp_path_factory.getbasetemp()
    logfile = tmp_path / "log_testsuite.txt"
    logging.init(logfile, verbose=True)

    return logfile


def clear_context() -> None:
    vars(gokr.core.context).pop("__context", None)


@pytest.fixture(autouse=True)
def fresh_context():
    """Every test starts without a global context. gokr.main() and
    gokr.parse.arguments.arguments() set it once per run.

    :returns: function clearing the context again, for tests running more
              than one gokr-packer invocation
    """
    clear_context()
    return clear_context


@pytest.fixture(autouse=True)
def goenv(monkeypatch):
    """Tests build for the default target unless they say otherwise."""
    monkeypatch.delenv("GOARCH", raising=False)
    monkeypatch.delenv("GOOS", raising=False)
    monkeypatch.delenv("GOKR_PACKER_FD", raising=False)


# FIXME: get/set_context() is a bad hack :(
@pytest.fixture
def mock_context(monkeypatch, tmp_path):
    """Install a fresh global context for the test, with the host config
    directory and the instance parent directory inside tmp_path. Every
    submodule imports get_context() directly, so the module global is
    replaced instead of the function."""

    cfg = Config()
    cfg.hostname = "gokrazy-test"
    ctx = Context(cfg)
    ctx.log = tmp_path / "log.txt"
    ctx.config_dir = tmp_path / "config"
    ctx.parent_dir = tmp_path / "instances"
    monkeypatch.setattr(gokr.core.context, "__context", ctx, raising=False)
    return ctx


def elf_binary(machine: int = 0xB7, notes: bytes = b"", payload: bytes = b"") -> bytes:
    """Smallest ELF64 little-endian executable that the ELF helpers accept: a
    file header, one PT_NOTE program header, the notes and a payload."""
    phoff = 64
    notes_off = phoff + 56
    header = b"\x7fELF" + bytes([2, 1, 1]) + bytes(9)
    header += struct.pack(
        "<HHIQQQIHHHHHH",
        2,  # ET_EXEC
        machine,
        1,
        0x400000,  # entry
        phoff,
        0,  # no section headers
        0,
        64,
        56,
        1,
        64,
        0,
        0,
    )
    phdr = struct.pack(
        "<IIQQQQQQ", 4, 4, notes_off, notes_off, notes_off, len(notes), len(notes), 4
    )
    return header + phdr + notes + payload


@pytest.fixture
def fake_elf():
    return elf_binary


@pytest.fixture
def kernel_dir(tmp_path):
    """A kernel package directory, as found in github.com/gokrazy/kernel."""
    d = tmp_path / "kernel"
    (d / "overlays").mkdir(parents=True)
    # arm64 Image magic at 0x38
    vmlinuz = bytearray(4096)
    vmlinuz[0x38:0x3C] = struct.pack("<I", 0x644D5241)
    (d / "vmlinuz").write_bytes(bytes(vmlinuz))
    (d / "cmdline.txt").write_text("console=ttyS0 root=/dev/mmcblk0p2 init=/gokrazy/init rootwait\n")
    (d / "config.txt").write_text("enable_uart=0\narm_64bit=1\n")
    (d / "bcm2710-rpi-3-b.dtb").write_bytes(b"dtb3")
    (d / "bcm2711-rpi-4-b.dtb").write_bytes(b"dtb4")
    (d / "overlays" / "disable-bt.dtbo").write_bytes(b"overlay")
    (d / "overlays" / "overlay_map.dtb").write_bytes(b"map")
    (d / "lib" / "modules" / "6.6.0").mkdir(parents=True)
    (d / "lib" / "modules" / "6.6.0" / "modules.dep").write_text("")
    return d


@pytest.fixture
def firmware_dir(tmp_path):
    """A firmware package directory, as found in github.com/gokrazy/firmware."""
    d = tmp_path / "firmware"
    (d / "overlays").mkdir(parents=True)
    (d / "bootcode.bin").write_bytes(b"bootcode")
    (d / "fixup.dat").write_bytes(b"fixup")
    (d / "start.elf").write_bytes(b"start")
    (d / "overlays" / "miniuart-bt.dtbo").write_bytes(b"overlay")
    return d


def eeprom_image(bootconf: bytes) -> bytes:
    """512 KiB EEPROM image with a code section followed by bootconf.txt."""
    from gokr.boot import eeprom

    code = eeprom.Section(img=bytes(8) + b"bootloader code", magic=eeprom.MAGIC, offset=0, length=15)
    return eeprom.assemble(
        [code, eeprom.file_section(24, "bootconf.txt", bootconf)], size=512 * 1024
    )


@pytest.fixture
def eeprom_dir(tmp_path):
    """An EEPROM package directory, as found in github.com/gokrazy/rpi-eeprom."""
    d = tmp_path / "rpi-eeprom"
    d.mkdir()
    (d / "pieeprom-2023-01-11.bin").write_bytes(eeprom_image(b"[all]\nBOOT_UART=0\n"))
    (d / "pieeprom-2024-04-15.bin").write_bytes(
        eeprom_image(b"[all]\nBOOT_UART=0\nBOOT_ORDER=0xf41\n")
    )
    (d / "recovery.bin").write_bytes(b"recovery")
    (d / "vl805-000138c0.bin").write_bytes(b"vl805 old")
    (d / "vl805-000138c1.bin").write_bytes(b"vl805 new")
    return d


@pytest.fixture
def chdir_tmp(tmp_path, monkeypatch):
    cwd = tmp_path / "cwd"
    cwd.mkdir()
    monkeypatch.chdir(cwd)
    return Path(os.getcwd())


@pytest.fixture
def systemd_boot(tmp_path, monkeypatch):
    """systemd-boot EFI binaries, looked up instead of the host's."""
    import gokr.config

    d = tmp_path / "systemd-boot"
    d.mkdir()
    (d / "systemd-bootx64.efi").write_bytes(b"MZ x64")
    (d / "systemd-bootaa64.efi").write_bytes(b"MZ aa64")
    monkeypatch.setattr(gokr.config, "systemd_boot_dirs", ["", str(d)])
    return d
