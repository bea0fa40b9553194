import hashlib
import json

import pytest

from gokr.build import sbom
from gokr.conftest import elf_binary
from gokr.core.config import Config
from gokr.helpers.exceptions import BuildFailedError
from gokr.parse.test_elf import GO_BUILD_ID, MODINFO, buildinfo_blob, note
from gokr.rootfs.fileinfo import FileInfo

HELLO = "github.com/gokrazy/hello"


def go_binary(path):
    notes = note(b"Go\x00\x00", 4, GO_BUILD_ID.encode())
    path.write_bytes(elf_binary(notes=notes, payload=bytes(3) + buildinfo_blob()))
    return path


def config() -> Config:
    cfg = Config.from_dict({"Hostname": "scanner", "Packages": [HELLO]})
    return cfg


def test_marshal():
    assert sbom.marshal({"a": ["<x>&"]}) == b'{\n    "a": [\n        "\\u003cx\\u003e\\u0026"\n    ]\n}\n'


def test_generate(tmp_path):
    bins = [
        sbom.FoundBin("/user/hello", go_binary(tmp_path / "hello")),
        sbom.FoundBin("/gokrazy/init", go_binary(tmp_path / "init")),
    ]
    extra = tmp_path / "motd"
    extra.write_text("welcome\n")
    tree = FileInfo("")
    tree.add(FileInfo("etc")).add(FileInfo("motd", from_host=extra))
    tree.add(FileInfo("literal", from_literal="not hashed"))

    cfg = config()
    data, with_hash = sbom.generate(cfg, bins, {HELLO: [tree]}, [HELLO + "@latest"])

    parsed = json.loads(data)
    assert parsed == with_hash
    s = parsed["sbom"]
    assert s["config_hash"]["hash"] == hashlib.sha256(cfg.format_for_file().encode()).hexdigest()
    assert [p["path"] for p in s["go_packages"]] == ["/gokrazy/init", "/user/hello"]
    assert s["go_packages"][0]["BuildID"] == GO_BUILD_ID
    assert s["go_packages"][0]["BuildInfo"] == "go\tgo1.22.3\n" + MODINFO
    assert s["extra_file_hashes"] == [
        {"path": str(extra), "hash": hashlib.sha256(b"welcome\n").hexdigest()}
    ]
    assert parsed["sbom_hash"] == hashlib.sha256(sbom.marshal(s)).hexdigest()
    assert data.endswith(b"}\n")


def test_generate_deterministic(tmp_path):
    bins = [sbom.FoundBin("/user/hello", go_binary(tmp_path / "hello"))]
    a, _ = sbom.generate(config(), bins, {}, [HELLO])
    b, _ = sbom.generate(config(), bins, {}, [HELLO])
    assert a == b
    assert json.loads(a)["sbom"]["extra_file_hashes"] is None


def test_generate_not_go(tmp_path):
    path = tmp_path / "hello"
    path.write_bytes(elf_binary())
    with pytest.raises(BuildFailedError, match="not a Go executable"):
        sbom.generate(config(), [sbom.FoundBin("/user/hello", path)], {}, [])


def test_system_packages():
    cfg = config()
    assert sbom.system_packages(cfg) == [
        "github.com/gokrazy/gokrazy/cmd/dhcp",
        "github.com/gokrazy/gokrazy/cmd/ntp",
        "github.com/gokrazy/gokrazy/cmd/randomd",
        "github.com/gokrazy/gokrazy",
        "github.com/gokrazy/kernel",
        "github.com/gokrazy/firmware",
        "github.com/gokrazy/rpi-eeprom",
    ]
    cfg.firmware_package = ""
    cfg.eeprom_package = ""
    assert sbom.system_packages(cfg)[-1] == "github.com/gokrazy/kernel"
