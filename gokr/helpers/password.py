# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
import os
from pathlib import Path

from gokr.helpers import logging
from gokr.helpers import pwgen

PASSWORD_FILE = "http-password.txt"


def hostname_specific(config_dir: Path, hostname: str, name: str) -> Path | None:
    """Find a per-host configuration file, falling back to the file of the
    same name directly in the gokrazy config directory.

    :returns: path of the first existing file, None if neither exists
    """
    for path in [config_dir / "hosts" / hostname / name, config_dir / name]:
        if path.is_file():
            return path
    return None


def ensure_password_file_exists(config_dir: Path, hostname: str, default_password: str = "") -> str:
    """
    Read the HTTP password of the gokrazy web interface, creating it when
    missing.

    :param default_password: stored when no password file exists yet, e.g.
                             taken from the update URL
    :returns: the password
    """
    path = hostname_specific(config_dir, hostname, PASSWORD_FILE)
    if path is not None:
        return path.read_text().strip()

    pw = default_password or pwgen.random_password(20)

    config_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    path = config_dir / PASSWORD_FILE
    logging.debug(f"Storing HTTP password in {path}")
    # Without a trailing newline, so that the password can be copied with
    # xclip < ~/.config/gokrazy/http-password.txt
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as handle:
        handle.write(pw)
    return pw
