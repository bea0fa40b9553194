# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
import pytest

from gokr.core.config import Config
from gokr.helpers.exceptions import NonBugError
from .load import instance_path, load, save


def test_instance_path(tmp_path):
    assert instance_path("scanner", tmp_path) == tmp_path / "scanner"
    assert instance_path("", tmp_path) == tmp_path / "hello"


def test_load_save(tmp_path):
    cfg = Config()
    cfg.hostname = "scanner"
    cfg.packages = ["github.com/gokrazy/hello"]
    path = tmp_path / "scanner" / "config.json"
    save(cfg, path)

    loaded = load(path)
    assert loaded.hostname == "scanner"
    assert loaded.meta.instance == "scanner"
    assert loaded.meta.path == path
    assert loaded.meta.last_modified is not None


def test_load_errors(tmp_path):
    with pytest.raises(NonBugError, match="does not exist"):
        load(tmp_path / "config.json")

    path = tmp_path / "config.json"
    path.write_text("{ nope")
    with pytest.raises(NonBugError, match=str(path)):
        load(path)
