from pathlib import Path

import pytest

from gokr.build import gotool
from gokr.build.init import InitGenerator, flatten_files
from gokr.helpers.exceptions import BuildFailedError
from gokr.rootfs.fileinfo import FileInfo

HELLO = "github.com/gokrazy/hello"
SERIAL = "github.com/gokrazy/serial-busybox"
NTP = "github.com/gokrazy/gokrazy/cmd/ntp"


def binaries() -> FileInfo:
    root = FileInfo("")
    gokrazy = root.add(FileInfo("gokrazy"))
    for name in ("init", "ntp"):
        gokrazy.add(FileInfo(name, from_host=f"/tmp/bins/{name}"))
    user = root.add(FileInfo("user"))
    for name in ("hi", "serial-busybox"):
        user.add(FileInfo(name, from_host=f"/tmp/bins/{name}"))
    return root


def generator(**kwargs) -> InitGenerator:
    args = dict(
        root=binaries(),
        flags={HELLO: ["-listen", ":8080"]},
        env={HELLO: ["GOGC=off", 'QUOTE="x"']},
        dont_start={SERIAL},
        wait_for_clock={NTP},
        basenames={HELLO: "hi"},
        build_timestamp="2024-05-17T13:37:42Z",
    )
    args.update(kwargs)
    return InitGenerator(**args)


def test_flatten_files():
    assert flatten_files("/", binaries()) == [
        "/gokrazy/init",
        "/gokrazy/ntp",
        "/user/hi",
        "/user/serial-busybox",
    ]


def test_generate():
    src = generator().generate()
    assert src.startswith("package main\n")
    assert 'var buildTimestamp = "2024-05-17T13:37:42Z"\n' in src
    assert '"/gokrazy/init"' not in src
    assert src.count("services = append(services, svc)") == 3

    assert ('\t\tcmd := exec.Command("/user/hi", []string{"-listen", ":8080"}...)\n'
            '\t\tcmd.Env = append(os.Environ(),\n'
            '\t\t\t"GOGC=off",\n'
            '\t\t\t"QUOTE=\\"x\\"",\n'
            '\t\t)\n'
            '\n'
            '\t\tsvc := gokrazy.NewService(cmd)\n') in src
    assert ('\t\tcmd := exec.Command("/gokrazy/ntp")\n'
            '\t\tcmd.Env = append(os.Environ())\n'
            '\n'
            '\t\tsvc := gokrazy.NewWaitForClockService(cmd)\n') in src
    assert "svc := gokrazy.NewStoppedService(cmd)" in src
    assert src.endswith("\tselect {}\n}\n")
    # services are started in the order of the file tree
    assert src.index('"/gokrazy/ntp"') < src.index('"/user/hi"') < src.index('"/user/serial-busybox"')


def test_dump(tmp_path):
    g = generator()
    g.dump(tmp_path / "init.go")
    assert (tmp_path / "init.go").read_text() == g.generate()


def test_build(tmp_path, monkeypatch, fake_elf):
    calls = []

    def fake_go(args, build_dir, go_env=None):
        calls.append((args, build_dir))
        assert Path(args[-1]).read_text() == generator().generate()
        Path(args[3]).write_bytes(fake_elf())
        return ""

    monkeypatch.setattr(gotool, "go", fake_go)
    tmpdir = generator().build(gotool.BuildEnv(tmp_path))
    assert (tmpdir / "init").exists()
    assert not (tmpdir / "init.go").exists()
    args, build_dir = calls[0]
    assert args[:3] == ["build", "-mod=mod", "-o"]
    assert args[4] == "-tags=gokrazy,netgo,osusergo"
    assert build_dir == tmp_path / "builddir" / "github.com/gokrazy/gokrazy"


def test_build_not_elf(tmp_path, monkeypatch):
    created = []

    def fake_go(args, build_dir, go_env=None):
        Path(args[3]).write_text("#!/bin/sh\n")
        created.append(Path(args[3]).parent)
        return ""

    monkeypatch.setattr(gotool, "go", fake_go)
    with pytest.raises(BuildFailedError, match="not an ELF binary"):
        generator().build(gotool.BuildEnv(tmp_path))
    assert not created[0].exists()
