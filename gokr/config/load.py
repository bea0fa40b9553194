# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
import datetime
import json
from pathlib import Path

from gokr.core.config import Config
from gokr.helpers import logging
from gokr.helpers.exceptions import NonBugError
import gokr.config


def instance_path(instance: str = "", parent_dir: Path | None = None) -> Path:
    if parent_dir is None:
        parent_dir = Path(gokr.config.defaults["parent_dir"])
    return parent_dir / (instance or str(gokr.config.defaults["instance"]))


def load(path: Path, instance: str = "") -> Config:
    """Read a gokrazy instance config.json.

    :param path: path to config.json
    :param instance: instance name, defaults to the name of the containing
                     directory
    :returns: Config, with meta data about the file filled in
    """
    logging.info(f"reading gokrazy config from {path}")
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        raise NonBugError(
            f"{path} does not exist. Create an instance config first, or pass"
            " the packages to include on the command line."
        )
    except json.JSONDecodeError as e:
        raise NonBugError(f"{path}: {e}")

    if not isinstance(data, dict):
        raise NonBugError(f"{path}: expected a JSON object")

    cfg: Config = Config.from_dict(data)
    cfg.meta.instance = instance or path.parent.name
    cfg.meta.path = path
    cfg.meta.last_modified = datetime.datetime.fromtimestamp(
        path.stat().st_mtime, tz=datetime.timezone.utc
    )
    return cfg


def save(cfg: Config, path: Path) -> None:
    logging.debug(f"Save config: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write(cfg.format_for_file())
