# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

from contextlib import ExitStack
from dataclasses import dataclass
import os
from pathlib import Path
import shutil
import socket
import stat
import sys
import tempfile
import threading

from gokr.build import gotool, sbom
from gokr.build.init import InitGenerator
from gokr.build.packages import ConfigFiles, PackageSettings, find_bins
from gokr.core.arch import Arch
from gokr.core.config import Config, OutputType
from gokr.core.context import Context, get_context
from gokr.core.devices import DeviceConfig
from gokr.disk import blockdevice
from gokr.disk.partition import Pack
from gokr.helpers import certs, logging, mount
from gokr.helpers.exceptions import NonBugError
from gokr.helpers.password import PASSWORD_FILE, hostname_specific
from gokr.install import BootSources, Installer, overwrite_gaf
from gokr.parse import kernel
from gokr.rootfs import etc
from gokr.rootfs.extrafiles import check_perm, combine_extra_files, find_extra_files
from gokr.rootfs.fileinfo import FileInfo
from gokr.update import frontend as update
from gokr.update.target import Target
import gokr
import gokr.config
import gokr.core.devices

MBR_BOOT_CODE_SIZE = 446
PLATFORMS_URL = "https://gokrazy.org/platforms/"


class DNSCheck(threading.Thread):
    """Resolve the name of the build host in the background. A failure
    hints at broken name resolution in the local network."""

    def __init__(self) -> None:
        super().__init__(daemon=True)
        self.error: Exception | None = None

    def run(self) -> None:
        host = socket.gethostname()
        try:
            socket.getaddrinfo(host, None)
        except OSError as e:
            self.error = e

    def result(self) -> Exception | None:
        self.join()
        return self.error


@dataclass
class Sources:
    """What to stream to the target after building."""

    root: update.Source | None = None
    boot: update.Source | None = None
    mbr: update.Source | None = None


def full_target(cfg: Config) -> str:
    """:returns: destination of a full disk image, empty if none is written"""
    flags = cfg.internal_compatibility_flags
    if flags.overwrite:
        return flags.overwrite
    if flags.output_type == str(OutputType.FULL):
        return flags.output_path
    return ""


def is_device(path: str) -> bool:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    return stat.S_ISBLK(st.st_mode) or stat.S_ISCHR(st.st_mode)


def new_pack(cfg: Config, device: DeviceConfig) -> Pack:
    """Partition layout for the configured host. Only new installations
    use (GPT) PARTUUIDs right away, updates ask the target first."""
    flags = cfg.internal_compatibility_flags
    new_installation = not flags.update
    pack = Pack.for_host(cfg.hostname, first_partition_offset=device.boot_partition_start_lba)
    pack.use_partuuid = new_installation
    pack.use_gpt_partuuid = new_installation and not device.mbr_only_without_gpt
    pack.use_gpt = pack.use_gpt_partuuid
    return pack


def partition(cfg: Config) -> None:
    """Partition the --overwrite device and pass it to the parent process
    (running as root, see gokr.disk.blockdevice)."""
    pack = new_pack(cfg, gokr.core.devices.get(cfg.device_type))
    blockdevice.sudo_partition(pack, cfg.internal_compatibility_flags.overwrite)


def log_header(context: Context) -> None:
    logging.info(f"gokrazy packer v{gokr.__version__} on {Arch.target_os()}/{Arch.target()}")
    logging.info("")
    logging.info(f"Build target: {' '.join(gotool.filter_go_env(gotool.env()))}")
    logging.info(f"Build timestamp: {context.build_timestamp}")


def build_packages(cfg: Config, context: Context, bindir: Path) -> tuple[gotool.BuildEnv, PackageSettings]:
    """Compile all Go packages into bindir and fetch kernel, firmware and
    EEPROM packages."""
    files = ConfigFiles()
    settings = PackageSettings.from_config(cfg, files)
    files.log_summary(f"Building {len(cfg.packages)} Go packages:", cfg.packages)

    pkgs = cfg.gokrazy_packages_or_default() + cfg.packages
    pkgs += gotool.init_deps(cfg.init_package())
    no_build = [cfg.kernel_package_or_default()]
    if fw := cfg.firmware_package_or_default():
        no_build.append(fw)
    if e := cfg.eeprom_package_or_default():
        no_build.append(e)

    build_env = gotool.BuildEnv(context.instance_dir(), settings.basenames)
    build_env.build(bindir, pkgs, settings.build_flags, settings.build_tags,
                    settings.build_env, no_build)
    return build_env, settings


def package_dir_or_none(build_env: gotool.BuildEnv, pkg: str) -> Path | None:
    return build_env.package_dir(pkg) if pkg else None


def log_feature_summary(pack: Pack) -> None:
    logging.info("")
    logging.info("Feature summary:")
    logging.info(f"  use GPT: {pack.use_gpt}")
    logging.info(f"  use PARTUUID: {pack.use_partuuid}")
    logging.info(f"  use GPT PARTUUID: {pack.use_gpt_partuuid}")


def write_outputs(installer: Installer, cfg: Config, sbom_bytes: bytes,
                  stack: ExitStack) -> Sources | None:
    """
    Write the disk image, gaf archive or partition images as requested.

    :param stack: temporary files needed for a later update are registered
                  here
    :returns: what to stream to the target when updating, else None
    """
    flags = cfg.internal_compatibility_flags
    updating = bool(flags.update)
    sources = None
    dest = full_target(cfg)

    if dest and is_device(dest):
        installer.overwrite_device(dest, flags.sudo)
        logging.info(f"To boot gokrazy, plug the SD card into a supported device (see {PLATFORMS_URL})")
        logging.info("")
    elif dest:
        boot_size, root_size = installer.overwrite_file(dest, flags.target_storage_bytes)
        offset = installer.pack.first_partition_offset * gokr.config.sector_size
        sources = Sources(
            root=update.Source(Path(dest), offset + gokr.config.boot_size, root_size),
            boot=update.Source(Path(dest), offset, boot_size),
            mbr=update.Source(Path(dest), 0, MBR_BOOT_CODE_SIZE),
        )
        logging.info(f"To boot gokrazy, copy {dest} to an SD card and plug it into a"
                     f" supported device (see {PLATFORMS_URL})")
        logging.info("")
    elif flags.output_type == str(OutputType.GAF):
        overwrite_gaf(installer, sbom_bytes, flags.output_path)
    elif flags.overwrite_boot or flags.overwrite_root:
        mbr_path = flags.overwrite_mbr or None
        if flags.overwrite_boot and mbr_path is None and updating:
            tmpdir = stack.enter_context(tempfile.TemporaryDirectory(prefix="gokr-packer"))
            mbr_path = os.path.join(tmpdir, "mbr.img")
        boot_size, root_size = installer.overwrite_partitions(
            flags.overwrite_boot or None, flags.overwrite_root or None, mbr_path)
        sources = Sources()
        if flags.overwrite_root:
            sources.root = update.Source(Path(flags.overwrite_root), size=root_size)
        if flags.overwrite_boot:
            sources.boot = update.Source(Path(flags.overwrite_boot), size=boot_size)
            if mbr_path is not None:
                sources.mbr = update.Source(Path(mbr_path), size=MBR_BOOT_CODE_SIZE)

    if not updating:
        return None
    if sources is None:
        artifacts = stack.enter_context(installer.temporary_artifacts())
        sources = Sources(update.Source(artifacts.root), update.Source(artifacts.boot),
                          update.Source(artifacts.mbr))
    return sources


def log_build_complete(cfg: Config, context: Context, us: update.Settings) -> None:
    logging.info("")
    logging.info("Build complete!")
    logging.info("")
    logging.info("To interact with the device, gokrazy provides a web interface reachable at:")
    logging.info("")
    url = update.base_url("yes", us.schema, us.hostname, us.port(), us.password)
    if us.no_password:
        url = url.replace(f"{gokr.config.update_user}:@", "", 1)
    logging.info(f"\t{update.redact(url)}")
    if not us.no_password:
        path = hostname_specific(context.config_dir, us.hostname, PASSWORD_FILE)
        if path is not None:
            logging.info(f"(the password is stored in {path})")
    logging.info("")
    logging.info("In addition, the following Linux consoles are set up:")
    logging.info("")
    serial = cfg.serial_console_or_default() != "disabled"
    if serial:
        logging.info("\t1. foreground Linux console on the serial port (115200n8, pin 6, 8,"
                     " 10 for GND, TX, RX), accepting input")
        logging.info("\t2. secondary Linux framebuffer console on HDMI; shows Linux kernel"
                     " message but no init system messages")
        logging.info("")
        logging.info("Use --serial-console=disabled to make gokrazy not touch the serial port,"
                     " and instead make the framebuffer console on HDMI the foreground console")
    else:
        logging.info("\t1. foreground Linux framebuffer console on HDMI")
    logging.info("")

    if us.schema == "https":
        logging.info("The TLS certificate of the gokrazy web interface is located under")
        logging.info(f"\t{context.host_dir(us.hostname)}")
        logging.info("The fingerprint of the certificate is")
        logging.info(f"\t{certs.fingerprint_sha1(us.cert_pem)}")
        logging.info("The certificate is valid until")
        logging.info(f"\t{certs.not_after(us.cert_pem)}")
        logging.info("Please verify the certificate, before adding an exception to your browser!")


def packer(sbom_only: bool = False) -> None:
    """
    Build the Go packages, assemble boot and root file system, write them
    to their destination and update a running installation if requested.

    :param sbom_only: print the SBOM of the configuration and return
    """
    context = get_context()
    cfg = context.config
    flags = cfg.internal_compatibility_flags
    updating = bool(flags.update)

    dest = full_target(cfg)
    if dest and is_device(dest):
        try:
            mount.verify_not_mounted(dest)
        except RuntimeError as e:
            raise NonBugError(str(e)) from e

    device = gokr.core.devices.get(cfg.device_type)
    pack = new_pack(cfg, device)

    log_header(context)
    dns = DNSCheck()
    dns.start()

    ca_bundle = certs.system_certs_pem(context.config_dir)

    with ExitStack() as stack:
        bindir = Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="gokrazy-bins-")))
        os.umask(0o22)
        build_env, settings = build_packages(cfg, context, bindir)

        kernel_pkg = cfg.kernel_package_or_default()
        kernel_dir = build_env.package_dir(kernel_pkg)
        kernel.validate_target_arch_matches_kernel(kernel_dir, kernel_pkg)

        root, found_bins = find_bins(cfg, build_env, bindir)

        files = ConfigFiles()
        build_packages_list = cfg.packages + sbom.system_packages(cfg)
        extra_files = find_extra_files(cfg, build_packages_list, build_env.package_dir,
                                       files, context.instance_dir())
        check_perm(extra_files)
        if len(files):
            files.log_summary("Including extra files for Go packages:", cfg.packages)

        if not cfg.init_package():
            gen = InitGenerator(root, settings.flags, settings.env, settings.dont_start,
                                settings.wait_for_clock, settings.basenames,
                                context.build_timestamp)
            if flags.overwrite_init:
                gen.dump(Path(flags.overwrite_init))
                return
            init_dir = gen.build(build_env)
            stack.callback(shutil.rmtree, init_dir, ignore_errors=True)
            root.must_find("gokrazy").add(FileInfo("init", from_host=init_dir / "init"))

        us = update.settings(cfg, context.config_dir)

        etc.skeleton(root, cfg.mount_devices)
        etc.add_kernel_modules(root, kernel_dir)
        tmpdir = Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="gokr-packer")))
        localtime = etc.host_localtime(tmpdir, gotool.goroot())

        sbom_bytes, _ = sbom.generate(context.file_config, found_bins, extra_files,
                                      build_packages_list)
        if sbom_only:
            sys.stdout.write(sbom_bytes.decode())
            return

        etc.populate(root, etc.EtcContents(
            hostname=cfg.hostname,
            ca_bundle=ca_bundle,
            http_port=us.http_port,
            https_port=us.https_port,
            sbom=sbom_bytes,
            mount_devices=cfg.mount_devices,
            password=us.password,
            no_password=us.no_password,
            cert_pem=us.cert_pem,
            key_pem=us.key_pem,
            localtime=localtime,
        ))
        combine_extra_files(root, extra_files)

        target: Target | None = None
        if updating:
            target = update.connect(flags.update, us.schema, us.hostname, us.port(),
                                    us.password, context.config_dir, flags.insecure)
            pack.use_partuuid = target.supports("partuuid")
            pack.use_gpt_partuuid = target.supports("gpt")
            pack.use_gpt = target.supports("gpt")
            pack.existing_eeprom = target.installed_eeprom()
        log_feature_summary(pack)

        installer = Installer(
            pack,
            cfg,
            BootSources(
                kernel_dir,
                package_dir_or_none(build_env, cfg.firmware_package_or_default()),
                package_dir_or_none(build_env, cfg.eeprom_package_or_default()),
            ),
            root,
            context.build_time,
            device.root_device_files,
        )
        sources = write_outputs(installer, cfg, sbom_bytes, stack)

        log_build_complete(cfg, context, us)
        if err := dns.result():
            logging.warning("")
            logging.warning("WARNING: if the above URL does not work, perhaps name resolution"
                            " (DNS) is broken in your local network? Resolving your hostname"
                            f" failed: {err}")
            logging.warning("Did you maybe configure a DNS server other than your router?")

        if target is None or sources is None:
            return
        update.deploy(
            target,
            sources.root,
            sources.boot,
            sources.mbr,
            [(f.name, kernel_dir / f.name) for f in device.root_device_files],
            testboot=flags.testboot,
        )
        update.wait_healthy(target, context.build_timestamp)
