import stat

from gokr.helpers import password, pwgen


def test_random_password():
    pw = pwgen.random_password(20)
    assert len(pw) == 20
    assert all(c in pwgen.charset for c in pw)
    assert pwgen.random_password(20) != pw


def test_generated_password_is_stored(tmp_path):
    config_dir = tmp_path / "gokrazy"
    pw = password.ensure_password_file_exists(config_dir, "gokrazy")
    assert len(pw) == 20

    path = config_dir / "http-password.txt"
    assert path.read_text() == pw
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert stat.S_IMODE(config_dir.stat().st_mode) == 0o700

    # read back on the next run
    assert password.ensure_password_file_exists(config_dir, "gokrazy") == pw


def test_default_password(tmp_path):
    assert password.ensure_password_file_exists(tmp_path, "gokrazy", "secret") == "secret"
    assert (tmp_path / "http-password.txt").read_text() == "secret"


def test_hostname_specific(tmp_path):
    (tmp_path / "http-password.txt").write_text("global\n")
    host = tmp_path / "hosts" / "scanner"
    host.mkdir(parents=True)
    (host / "http-password.txt").write_text("scanner-pw")

    assert password.ensure_password_file_exists(tmp_path, "scanner") == "scanner-pw"
    assert password.ensure_password_file_exists(tmp_path, "other") == "global"
    assert password.hostname_specific(tmp_path, "other", "cert.pem") is None
