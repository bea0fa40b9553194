# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
import os
from pathlib import Path
import sys

#
# Exported variables (internal configuration)
#
data_dir: Path = Path(__file__).resolve().parent.parent / "data"

MB = 1024 * 1024

# Partition layout (sizes in bytes). The boot partition starts at the device
# specific first partition offset (in 512 byte sectors).
sector_size = 512
default_boot_partition_start_lba = 8192
boot_size = 100 * MB
root_size = 500 * MB
# boot + root A + root B
reserved_size = boot_size + 2 * root_size
# boot + 2 roots + 100 MB for /perm
min_storage_size = 1200 * MB

# Number of spaces appended to cmdline.txt, so that the on-device updater can
# add kernel parameters in place
cmdline_pad = 64

# Default packages, see https://gokrazy.org/userguide/instance-config/
gokrazy_packages_default = [
    "github.com/gokrazy/gokrazy/cmd/dhcp",
    "github.com/gokrazy/gokrazy/cmd/ntp",
    "github.com/gokrazy/gokrazy/cmd/randomd",
]
kernel_package_default = "github.com/gokrazy/kernel"
firmware_package_default = "github.com/gokrazy/firmware"
eeprom_package_default = "github.com/gokrazy/rpi-eeprom"
# The default init template requires github.com/gokrazy/gokrazy
init_package_default = "github.com/gokrazy/gokrazy"
serial_console_default = "serial0,115200"

default_build_tags = ["gokrazy", "netgo", "osusergo"]

http_port_default = "80"
https_port_default = "443"
update_user = "gokrazy"

# Files copied from the firmware and kernel packages into the boot partition
firmware_globs = [
    "*.bin",
    "*.dat",
    "*.elf",
    "*.upd",
    "*.sig",
    "overlays/*.dtbo",
]
kernel_globs = [
    "boot.scr",  # u-boot script file
    "vmlinuz",
    "*.dtb",
    "overlays/*.dtbo",
    "overlays/overlay_map.dtb",
]

# Skeleton of the root file system
root_skeleton_dirs = ["bin", "dev", "etc", "proc", "sys", "tmp", "perm", "lib", "run", "mnt"]

# System CA bundles, first readable one wins
ca_cert_files = [
    "/etc/ssl/certs/ca-certificates.crt",  # Debian/Ubuntu/Gentoo etc.
    "/etc/pki/tls/certs/ca-bundle.crt",  # Fedora/RHEL 6
    "/etc/ssl/ca-bundle.pem",  # OpenSUSE
    "/etc/pki/tls/cacert.pem",  # OpenELEC
    "/etc/pki/ca-trust/extracted/pem/tls-ca-bundle.pem",  # CentOS/RHEL 7
    "/etc/ssl/cert.pem",  # Alpine Linux
]

# systemd-boot EFI binaries, embedded into the boot partition when using GPT.
# $GOKR_SYSTEMD_BOOT_DIR overrides the copies shipped in data/systemd-boot.
systemd_boot_dirs = [
    os.environ.get("GOKR_SYSTEMD_BOOT_DIR", ""),
    str(data_dir / "systemd-boot"),
    "/usr/lib/systemd/boot/efi",
    "/usr/share/systemd/boot/efi",
]
systemd_boot_files = {
    "/EFI/BOOT/BOOTX64.EFI": "systemd-bootx64.efi",
    "/EFI/BOOT/BOOTAA64.EFI": "systemd-bootaa64.efi",
}

# Health check after an update
update_poll_timeout = 5 * 60
update_poll_request_timeout = 5
update_poll_interval = 1


def xdg_dir(env: str, fallback: str) -> Path:
    return Path(os.environ.get(env) or os.path.expanduser(fallback))


defaults: dict[str, Path | str] = {
    "config_dir": xdg_dir("XDG_CONFIG_HOME", "~/.config") / "gokrazy",
    "log": xdg_dir("XDG_CACHE_HOME", "~/.cache") / "gokrazy" / "log.txt",
    "parent_dir": Path(os.environ.get("GOKRAZY_PARENT_DIR") or os.path.expanduser("~/gokrazy")),
    "instance": "hello",
    "sudo": "auto",
}

# Whether we're connected to a TTY (which allows things like e.g. printing
# progress bars)
is_interactive = sys.stdout.isatty() and sys.stderr.isatty()


# ANSI escape codes to highlight stdout
styles = {
    "GREEN": "\033[92m",
    "RED": "\033[91m",
    "YELLOW": "\033[93m",
    "END": "\033[0m",
}

if "NO_COLOR" in os.environ:
    for style in styles.keys():
        styles[style] = ""
