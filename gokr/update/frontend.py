# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import ssl
import time
from typing import BinaryIO
import urllib.error
import urllib.parse
import urllib.request

from gokr.core.config import Config
from gokr.helpers import logging
from gokr.helpers.certs import get_certificate, host_certificate
from gokr.helpers.cli import ProgressReporter, human_bytes
from gokr.helpers.exceptions import NonBugError
from gokr.helpers.password import ensure_password_file_exists
from gokr.update.target import (
    Target,
    UpdateHandlerNotImplemented,
    build_opener,
    split_credentials,
)
import gokr.config


def base_url(update: str, schema: str, hostname: str, port: str, password: str) -> str:
    """
    URL of the target's web interface, including credentials.

    :param update: value of --update: "yes" (or empty) to derive the URL
                   from the configuration, else an explicit URL whose
                   credentials default to gokrazy:<password>
    """
    if update not in ("", "yes"):
        parts = urllib.parse.urlsplit(update)
        if not parts.scheme or not parts.hostname:
            raise NonBugError(f"invalid --update={update}: expected yes or a URL")
        if parts.username is not None:
            return update
        netloc = (f"{gokr.config.update_user}:{urllib.parse.quote(password, safe='')}"
                  f"@{parts.netloc}")
        return urllib.parse.urlunsplit(parts._replace(netloc=netloc, path=parts.path or "/"))

    host = hostname
    default_port = gokr.config.https_port_default if schema == "https" else gokr.config.http_port_default
    if port and port != default_port:
        host += ":" + port
    return f"{schema}://{gokr.config.update_user}:{urllib.parse.quote(password, safe='')}@{host}/"


def update_target(update: str, hostname: str) -> tuple[str, str]:
    """
    Split an explicit --update URL into the password and host to use.

    :returns: (default password, hostname), the password empty and the
              hostname unchanged for --update=yes
    """
    if update in ("", "yes"):
        return "", hostname
    parts = urllib.parse.urlsplit(update)
    if not parts.scheme or not parts.hostname:
        raise NonBugError(f"invalid --update={update}: expected yes or a URL")
    return urllib.parse.unquote(parts.password or ""), parts.hostname


@dataclass
class Settings:
    """Web interface settings, as installed into /etc and used for updating."""

    hostname: str
    http_port: str
    https_port: str
    password: str = ""
    no_password: bool = False
    cert_pem: str = ""
    key_pem: str = ""
    schema: str = "http"

    def port(self) -> str:
        return self.https_port if self.schema == "https" else self.http_port


def settings(cfg: Config, config_dir: Path) -> Settings:
    """
    Resolve hostname, ports, password and certificate of the web interface,
    creating the password file and a self-signed certificate as required.
    """
    update = cfg.update
    flags = cfg.internal_compatibility_flags
    default_password, hostname = update_target(flags.update, cfg.update_hostname())
    ret = Settings(
        hostname=hostname,
        http_port=update.http_port or gokr.config.http_port_default,
        https_port=update.https_port or gokr.config.https_port_default,
        no_password=update.no_password,
    )
    if update.http_password:
        ret.password = update.http_password
    elif not update.no_password:
        ret.password = ensure_password_file_exists(config_dir, hostname, default_password)

    if update.cert_pem and update.key_pem:
        ret.cert_pem, ret.key_pem = update.cert_pem, update.key_pem
    else:
        paths = get_certificate(update.use_tls, config_dir, hostname)
        if paths is not None:
            ret.cert_pem = paths[0].read_text()
            ret.key_pem = paths[1].read_text()
    if ret.cert_pem and ret.key_pem and not flags.insecure:
        ret.schema = "https"
    return ret


def redact(url: str) -> str:
    parts = urllib.parse.urlsplit(url)
    if parts.password is None:
        return url
    netloc = parts.netloc.replace(":" + parts.password + "@", ":***@", 1)
    return urllib.parse.urlunsplit(parts._replace(netloc=netloc))


def ssl_context(config_dir: Path, hostname: str, insecure: bool) -> tuple[ssl.SSLContext, bool]:
    """
    TLS configuration for talking to the target: the certificate of the
    host in the client configuration if present, else the system store.

    :returns: (context, whether a certificate for hostname was found)
    """
    cert = host_certificate(config_dir, hostname)
    if insecure:
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    elif cert is not None:
        ctx = ssl.create_default_context(cafile=os.fspath(cert))
    else:
        ctx = ssl.create_default_context()
    return ctx, cert is not None


class NoRedirect(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        return None


def probe_scheme(url: str, timeout: float = gokr.config.update_poll_request_timeout) -> str:
    """
    :returns: "https" if the target redirects its http interface to https,
              else the scheme of url
    """
    parts = urllib.parse.urlsplit(url)
    if parts.scheme == "https":
        return "https"
    plain, _ = split_credentials(url)
    opener = urllib.request.build_opener(NoRedirect())
    try:
        with opener.open(plain, timeout=timeout):
            return parts.scheme
    except urllib.error.HTTPError as e:
        location = e.headers.get("Location", "") if e.headers else ""
        if 300 <= e.code < 400 and location.startswith("https://"):
            return "https"
        return parts.scheme
    except OSError as e:
        logging.debug(f"probing https: {e}")
        return parts.scheme


def with_scheme(url: str, scheme: str) -> str:
    """Switch url to scheme. The port stays unless it is the default of the
    previous scheme."""
    parts = urllib.parse.urlsplit(url)
    if parts.scheme == scheme:
        return url
    netloc = parts.netloc
    if parts.port is not None and str(parts.port) == gokr.config.http_port_default:
        netloc = netloc.rsplit(":", 1)[0]
    return urllib.parse.urlunsplit(parts._replace(scheme=scheme, netloc=netloc))


def check_ssl_stripping(url: str, found_certificate: bool, insecure: bool) -> None:
    """:raises NonBugError: a certificate for the host is configured, but the
                            host does not offer https"""
    if urllib.parse.urlsplit(url).scheme == "https" or not found_certificate:
        return
    logging.warning("")
    logging.warning("!!!WARNING!!! Possible SSL-Stripping detected!")
    logging.warning("Found certificate for hostname in your client configuration but the"
                    " host does not offer https!")
    logging.warning("")
    if not insecure:
        raise NonBugError("update canceled: TLS certificate found, but negotiating a TLS"
                          " connection with the target failed")
    logging.warning("Proceeding anyway as requested (--insecure).")


def connect(update: str, schema: str, hostname: str, port: str, password: str,
            config_dir: Path, insecure: bool) -> Target:
    """Resolve the target's URL and negotiate its capabilities."""
    url = base_url(update, schema, hostname, port, password)
    ctx, found = ssl_context(config_dir, urllib.parse.urlsplit(url).hostname or hostname, insecure)

    logging.info("Probing https")
    if probe_scheme(url) == "https" and not insecure:
        url = with_scheme(url, "https")
    check_ssl_stripping(url, found, insecure)

    try:
        return Target(url, build_opener(ctx))
    except (OSError, RuntimeError) as e:
        raise NonBugError(f"checking target partuuid support: {e}") from e


@dataclass
class Source:
    """Bytes to stream: a whole file or size bytes at offset of it."""

    path: Path
    offset: int = 0
    size: int | None = None

    def length(self) -> int:
        if self.size is not None:
            return self.size
        return os.stat(self.path).st_size - self.offset


class LimitedReader:
    def __init__(self, f: BinaryIO, remaining: int) -> None:
        self.f = f
        self.remaining = remaining

    def read(self, n: int = -1) -> bytes:
        if self.remaining <= 0:
            return b""
        if n < 0 or n > self.remaining:
            n = self.remaining
        data = self.f.read(n)
        self.remaining -= len(data)
        return data


def stream(target: Target, progress: ProgressReporter, source: Source, label: str,
           name: str) -> None:
    """Stream source to the update stream name, reporting progress."""
    start = time.monotonic()
    progress.set_status(f"update {label}", source.length())
    with open(source.path, "rb") as f:
        f.seek(source.offset)
        reader = LimitedReader(f, source.length())
        try:
            target.stream_to(name, progress.reader(reader))
        except UpdateHandlerNotImplemented:
            raise
        except (OSError, RuntimeError) as e:
            raise RuntimeError(f"updating {label}: {e}") from e
    duration = max(time.monotonic() - start, 0.001)
    transferred = progress.reset()
    logging.info(f"Transferred {label} ({human_bytes(transferred)}) at"
                 f" {transferred / duration / 1024 / 1024:.2f} MiB/s"
                 f" (total: {round(duration)}s)")


def is_connection_reset(e: BaseException) -> bool:
    if isinstance(e, ConnectionResetError):
        return True
    return isinstance(e, urllib.error.URLError) and isinstance(e.reason, ConnectionResetError)


def deploy(
    target: Target,
    root: Source | None,
    boot: Source | None,
    mbr: Source | None,
    device_files: list[tuple[str, Path]] | None = None,
    testboot: bool = False,
) -> None:
    """
    Update a running installation. The root file system goes first: writing
    to the inactive partition cannot break the running system. The target
    switches partitions only after all streams were written.
    """
    logging.info(f"Updating {redact(target.base_url)}")
    progress = ProgressReporter()
    progress.start_reporting()
    try:
        if root is not None:
            stream(target, progress, root, "root file system", "root")

        for name, path in device_files or []:
            try:
                stream(target, progress, Source(path), f"root device file {name}",
                       "device-specific/" + name)
            except UpdateHandlerNotImplemented:
                logging.warning(f"target does not support updating device file {name} yet,"
                                " ignoring")

        if boot is not None:
            stream(target, progress, boot, "boot file system", "boot")

        if mbr is not None:
            try:
                with open(mbr.path, "rb") as f:
                    f.seek(mbr.offset)
                    target.stream_to("mbr", LimitedReader(f, mbr.length()))
            except UpdateHandlerNotImplemented:
                logging.warning("target does not support updating MBR yet, ignoring")
            except (OSError, RuntimeError) as e:
                raise RuntimeError(f"updating MBR: {e}") from e

        if testboot:
            try:
                target.testboot()
            except (OSError, RuntimeError) as e:
                raise RuntimeError(f"enable testboot of non-active partition: {e}") from e
        else:
            try:
                target.switch()
            except (OSError, RuntimeError) as e:
                raise RuntimeError(f"switching to non-active partition: {e}") from e
    finally:
        # Stop progress reporting to not mess up the following logs output
        progress.stop()

    logging.info("Triggering reboot")
    try:
        target.reboot()
    except (OSError, RuntimeError) as e:
        if not is_connection_reset(e):
            raise RuntimeError(f"reboot: {e}") from e
        logging.info(f"ignoring reboot error: {e}")


def wait_healthy(
    target: Target,
    build_timestamp: str,
    timeout: float = gokr.config.update_poll_timeout,
    interval: float = gokr.config.update_poll_interval,
    request_timeout: float = gokr.config.update_poll_request_timeout,
) -> None:
    """
    Wait until the target runs the new build.

    :raises NonBugError: not healthy within timeout seconds
    """
    logging.info(f"Updated, waiting {timeout:.0f}s for the device to become reachable"
                 " (cancel with Ctrl-C any time)")
    deadline = time.monotonic() + timeout
    while True:
        if time.monotonic() > deadline:
            raise NonBugError(f"device did not become healthy after update"
                              f" (no response with build timestamp {build_timestamp}"
                              f" within {timeout:.0f}s)")
        try:
            got = target.status(timeout=request_timeout).get("BuildTimestamp", "")
            if got != build_timestamp:
                raise RuntimeError(f"device on old revision ({got}), want {build_timestamp}")
        except (OSError, RuntimeError, UpdateHandlerNotImplemented) as e:
            logging.info(f"device not yet reachable: {e}")
            time.sleep(interval)
            continue
        logging.info("Device ready to use!")
        return
