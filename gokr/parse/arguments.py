# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

import argparse
from argparse import Namespace
from copy import deepcopy
import os
from pathlib import Path

from gokr.config import load
from gokr.core.config import Config, OutputType, SudoMode
from gokr.core.context import Context, set_context
from gokr.helpers import logging
from gokr.helpers.exceptions import NonBugError
import gokr.config

USAGE = """
gokr-packer packs gokrazy installations into SD card or file system images.

To directly partition and overwrite an SD card:
  gokr-packer --overwrite=<device> <go-package> [<go-package>...]

To create an SD card image on the file system:
  gokr-packer --overwrite=<file> --target-storage-bytes=<bytes> <go-package> [<go-package>...]

To create a file system image of the boot and/or root file system:
  gokr-packer [--overwrite-boot=<file>] [--overwrite-root=<file>] <go-package> [<go-package>...]

To update a running installation over the network:
  gokr-packer --update=yes <go-package> [<go-package>...]

To dump the auto-generated init source code (for use with --init-pkg later):
  gokr-packer --overwrite-init=<file> <go-package> [<go-package>...]

Without packages, the instance configuration ~/gokrazy/<instance>/config.json
is used.
"""


class GokrArgs(Namespace):
    config: Path | None
    instance: str
    parent_dir: Path
    packages: list[str]
    hostname: str | None
    device_type: str | None
    overwrite: str | None
    overwrite_boot: str | None
    overwrite_root: str | None
    overwrite_mbr: str | None
    overwrite_init: str | None
    target_storage_bytes: int | None
    output_type: str | None
    output: str | None
    update: str | None
    insecure: bool
    tls: str | None
    password: str | None
    http_port: str | None
    https_port: str | None
    testboot: bool
    sudo: str | None
    serial_console: str | None
    init_pkg: str | None
    kernel_package: str | None
    firmware_package: str | None
    eeprom_package: str | None
    gokrazy_pkgs: str | None
    sbom: bool
    details_to_stdout: bool
    verbose: bool
    log: Path


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gokr-packer",
        description=USAGE,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-V", "--version", action="version", version=gokr.__version__)

    # Instance
    instance = parser.add_argument_group("instance")
    instance.add_argument("-c", "--config", type=Path,
                          help="instance configuration (config.json), default:"
                          " <parent dir>/<instance>/config.json")
    instance.add_argument("-i", "--instance", default=gokr.config.defaults["instance"],
                          help="instance name, identified by hostname (default: %(default)s)")
    instance.add_argument("--parent-dir", type=Path,
                          default=gokr.config.defaults["parent_dir"],
                          help="directory containing the instance directories,"
                          " default: $GOKRAZY_PARENT_DIR or ~/gokrazy")
    instance.add_argument("packages", nargs="*", metavar="go-package",
                          help="Go packages to install to /user/, overriding the"
                          " Packages of the instance configuration")

    # Outputs
    out = parser.add_argument_group("output")
    out.add_argument("--overwrite",
                     help="destination device (e.g. /dev/sdb) or file (e.g."
                     " /tmp/gokrazy.img) to overwrite with a full disk image")
    out.add_argument("--overwrite-boot",
                     help="destination partition (e.g. /dev/sdb1) or file (e.g."
                     " /tmp/boot.fat) to overwrite with the boot file system")
    out.add_argument("--overwrite-root",
                     help="destination partition (e.g. /dev/sdb2) or file (e.g."
                     " /tmp/root.squashfs) to overwrite with the root file system")
    out.add_argument("--overwrite-mbr",
                     help="destination device (e.g. /dev/sdb) or file (e.g."
                     " /tmp/mbr.img) to overwrite the MBR of (only effective"
                     " together with --overwrite-boot)")
    out.add_argument("--overwrite-init",
                     help="destination file (e.g. /tmp/init.go) to overwrite with"
                     " the generated init source code")
    out.add_argument("--target-storage-bytes", type=int,
                     help="number of bytes which the target storage device (SD"
                     " card) has, required for --overwrite=<file>")
    out.add_argument("--output-type", choices=OutputType.choices(),
                     help="type of the --output file: full disk image or gaf"
                     " (gokrazy archive format) archive")
    out.add_argument("--output", help="file to write the --output-type to")
    out.add_argument("--sbom", action="store_true",
                     help="print the software bill of materials and exit")

    # Network update
    upd = parser.add_argument_group("network update")
    upd.add_argument("--update", nargs="?", const="yes",
                     help="update a running installation: \"yes\" to use the"
                     " configured hostname and password, or a URL like"
                     " http://gokrazy:<password>@<host>/")
    upd.add_argument("--insecure", action="store_true",
                     help="ignore TLS stripping detection and certificate errors")
    upd.add_argument("--tls",
                     help="\"self-signed\" to create a certificate for the web"
                     " interface, or \"<certificate>,<key>\"")
    upd.add_argument("--testboot", action="store_true",
                     help="trigger a testboot instead of switching to the new"
                     " root partition directly")
    upd.add_argument("--password", help="password of the gokrazy web interface")
    upd.add_argument("--http-port", help="HTTP port for gokrazy to listen on")
    upd.add_argument("--https-port", help="HTTPS (TLS) port for gokrazy to listen on")

    # Image contents
    img = parser.add_argument_group("image contents")
    img.add_argument("--hostname",
                     help="host name to set on the target system, sent when"
                     " acquiring DHCP leases")
    img.add_argument("--device-type",
                     help="device type identifier for device-specific"
                     " modifications, e.g. odroidhc1")
    img.add_argument("--serial-console",
                     help="\"serial0,115200\" enables UART0 as a serial console,"
                     " \"disabled\" allows applications to use UART0 instead,"
                     " \"off\" sets enable_uart=0 in config.txt")
    img.add_argument("--init-pkg",
                     help="Go package to install as /gokrazy/init instead of the"
                     " auto-generated one")
    img.add_argument("--kernel-package",
                     help="Go package to copy vmlinuz and *.dtb from")
    img.add_argument("--firmware-package",
                     help="Go package to copy *.{bin,dat,elf} from, empty to disable")
    img.add_argument("--eeprom-package",
                     help="Go package to copy the Raspberry Pi EEPROM update"
                     " from, empty to disable")
    img.add_argument("--gokrazy-pkgs",
                     help="comma-separated list of packages installed to"
                     " /gokrazy/ (boot and system utilities)")

    # Other
    parser.add_argument("--sudo", choices=SudoMode.choices(),
                        help="whether to elevate privileges using sudo when"
                        " required (default: auto)")
    parser.add_argument("--details-to-stdout", dest="details_to_stdout", action="store_true",
                        help="print details (e.g. go build output) to stdout,"
                        " instead of writing them to the log")
    parser.add_argument("-v", dest="verbose", action="store_true",
                        help="write even more to the logfiles (this may reduce performance)")
    parser.add_argument("-l", "--log", type=Path, default=gokr.config.defaults["log"],
                        help="path to the log file (default: %(default)s)")

    return parser


def check_operations(args: GokrArgs) -> None:
    """
    Reject contradicting operation flags, before anything is built.

    :raises NonBugError: the flags do not make sense together
    """
    if args.update is not None and args.overwrite:
        raise NonBugError("both --update and --overwrite are specified; use either one, not both")
    if args.overwrite and (args.overwrite_boot or args.overwrite_root):
        raise NonBugError("--overwrite writes a full disk image and cannot be combined with"
                          " --overwrite-boot or --overwrite-root")
    if args.overwrite_mbr and not args.overwrite_boot:
        raise NonBugError("--overwrite-mbr is only effective together with --overwrite-boot")
    if args.output_type is not None and not args.output:
        raise NonBugError(f"--output-type={args.output_type} requires --output")
    if args.output and (args.overwrite or args.overwrite_boot or args.overwrite_root):
        raise NonBugError("--output cannot be combined with --overwrite, --overwrite-boot"
                          " or --overwrite-root")
    if args.target_storage_bytes is not None and args.target_storage_bytes < 0:
        raise NonBugError("--target-storage-bytes must not be negative")
    if args.testboot and args.update is None:
        raise NonBugError("--testboot only makes sense with --update")

    if not any([args.overwrite, args.overwrite_boot, args.overwrite_root,
                args.overwrite_init, args.output, args.update is not None, args.sbom]):
        raise NonBugError("nothing to do: specify one of --overwrite, --overwrite-boot,"
                          " --overwrite-root, --overwrite-init, --output, --update or --sbom"
                          " (see gokr-packer -h)")


def load_config(args: GokrArgs) -> Config:
    """Read the instance configuration. Packages on the command line without
    --config build an ad-hoc configuration instead."""
    if args.config is not None:
        return load.load(args.config)
    if args.packages:
        cfg = Config()
        cfg.meta.instance = args.instance
        return cfg
    path = load.instance_path(args.instance, args.parent_dir) / "config.json"
    return load.load(path, args.instance)


def apply_overrides(cfg: Config, args: GokrArgs) -> Config:
    """
    Apply the command line on top of the configuration file.

    :returns: a new Config, cfg is left untouched
    """
    ret = deepcopy(cfg)
    flags = ret.internal_compatibility_flags

    if args.packages:
        ret.packages = list(args.packages)
    if args.hostname is not None:
        ret.hostname = args.hostname
    if not ret.hostname:
        ret.hostname = "gokrazy"
    if args.device_type is not None:
        ret.device_type = args.device_type
    if args.serial_console is not None:
        ret.serial_console = args.serial_console
    if args.kernel_package is not None:
        ret.kernel_package = args.kernel_package
    if args.firmware_package is not None:
        ret.firmware_package = args.firmware_package
    if args.eeprom_package is not None:
        ret.eeprom_package = args.eeprom_package
    if args.gokrazy_pkgs is not None:
        ret.gokrazy_packages = [p for p in args.gokrazy_pkgs.split(",") if p]

    if args.tls is not None:
        ret.update.use_tls = args.tls
    if args.password is not None:
        ret.update.http_password = args.password
    if args.http_port is not None:
        ret.update.http_port = args.http_port
    if args.https_port is not None:
        ret.update.https_port = args.https_port

    for key in ("overwrite", "overwrite_boot", "overwrite_root", "overwrite_mbr",
                "overwrite_init", "init_pkg", "update"):
        value = getattr(args, key)
        if value is not None:
            setattr(flags, key, value)
    if args.target_storage_bytes is not None:
        flags.target_storage_bytes = args.target_storage_bytes
    if args.sudo is not None:
        flags.sudo = args.sudo
    if not flags.sudo:
        flags.sudo = str(gokr.config.defaults["sudo"])
    if args.output_type is not None or args.output:
        flags.output_type = args.output_type or str(OutputType.FULL)
        flags.output_path = args.output or ""
    flags.testboot = flags.testboot or args.testboot
    flags.insecure = flags.insecure or args.insecure
    flags.env = [f"{k}={v}" for k, v in os.environ.items() if k.startswith("GO")]
    return ret


def init_context(args: GokrArgs, cfg: Config, file_cfg: Config) -> Context:
    context = Context(cfg)
    context.file_config = file_cfg
    context.details_to_stdout = args.details_to_stdout
    context.verbose = args.verbose
    context.log = args.log
    context.parent_dir = args.parent_dir
    set_context(context)
    return context


def arguments(argv: list[str] | None = None) -> GokrArgs:
    """Parse the command line, set up logging and the global context.

    :raises NonBugError: invalid combination of flags, unreadable config
    """
    args: GokrArgs = get_parser().parse_args(argv, namespace=GokrArgs())
    child = os.environ.get("GOKR_PACKER_FD") is not None

    # Initialize logs (we could raise errors below)
    logging.init(args.log, args.verbose, args.details_to_stdout, quiet=child)

    if not child:
        check_operations(args)
    file_cfg = load_config(args)
    init_context(args, apply_overrides(file_cfg, args), file_cfg)
    return args
