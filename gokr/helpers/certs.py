# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""TLS material for the gokrazy web interface and the root file system."""

import datetime
import os
from pathlib import Path
import ssl

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from gokr.helpers import logging
from gokr.helpers.exceptions import NonBugError
import gokr.config

CERT_FILE = "cert.pem"
KEY_FILE = "key.pem"


def generate_and_sign_cert(hostname: str, key_size: int = 4096) -> tuple[bytes, bytes]:
    """Create a self-signed server certificate for hostname, valid for two
    years.

    :returns: (certificate PEM, PKCS#8 private key PEM)
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    name = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, "gokrazy")])
    not_before = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_before + datetime.timedelta(days=2 * 365))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def write_file(path: Path, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


def generate_and_store_self_signed(hostname: str, cert_path: Path, key_path: Path,
                                   key_size: int = 4096) -> None:
    logging.info("Generating new self-signed certificate...")
    cert_path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    cert_pem, key_pem = generate_and_sign_cert(hostname, key_size)
    write_file(cert_path, cert_pem, 0o644)
    write_file(key_path, key_pem, 0o600)


def certificate_paths_for(use_tls: str, config_dir: Path, hostname: str) -> tuple[Path, Path] | None:
    """
    Resolve the --tls flag to certificate and key paths.

    :param use_tls: "" (no TLS), "self-signed" (per-host certificate in the
                    gokrazy config directory) or "<cert>,<key>"
    :returns: (cert, key) or None without TLS
    """
    if not use_tls:
        return None
    if use_tls != "self-signed":
        parts = use_tls.split(",")
        if len(parts) != 2 or not all(parts):
            raise NonBugError(f"invalid --tls={use_tls}: expected self-signed or <cert>,<key>")
        return Path(parts[0]), Path(parts[1])
    host_dir = config_dir / "hosts" / hostname
    return host_dir / CERT_FILE, host_dir / KEY_FILE


def get_certificate(use_tls: str, config_dir: Path, hostname: str,
                    key_size: int = 4096) -> tuple[Path, Path] | None:
    """Find (and for self-signed, create) the certificate for hostname."""
    paths = certificate_paths_for(use_tls, config_dir, hostname)
    if paths is None:
        return None
    cert_path, key_path = paths
    if use_tls == "self-signed" and not (cert_path.exists() and key_path.exists()):
        generate_and_store_self_signed(hostname, cert_path, key_path, key_size)
        return paths
    validate_certificate(cert_path, key_path)
    return paths


def validate_certificate(cert_path: Path, key_path: Path) -> None:
    """Make sure the key belongs to the certificate."""
    try:
        cert = x509.load_pem_x509_certificate(cert_path.read_bytes())
        key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
    except (OSError, ValueError) as e:
        raise NonBugError(f"loading TLS certificate {cert_path} / key {key_path}: {e}") from e
    cert_public = cert.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    key_public = key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    if cert_public != key_public:
        raise NonBugError(f"private key {key_path} does not match certificate {cert_path}")


def host_certificate(config_dir: Path, hostname: str) -> Path | None:
    """Certificate of hostname in the client configuration, trusted when
    talking to the target."""
    path = config_dir / "hosts" / hostname / CERT_FILE
    return path if path.exists() else None


def fingerprint_sha1(cert_pem: str | bytes) -> str:
    if isinstance(cert_pem, str):
        cert_pem = cert_pem.encode()
    cert = x509.load_pem_x509_certificate(cert_pem)
    return cert.fingerprint(hashes.SHA1()).hex()


def not_after(cert_pem: str | bytes) -> datetime.datetime:
    if isinstance(cert_pem, str):
        cert_pem = cert_pem.encode()
    return x509.load_pem_x509_certificate(cert_pem).not_valid_after_utc


def system_certs_pem(config_dir: Path | None = None,
                     cert_files: list[str] | None = None) -> str:
    """CA certificates for /etc/ssl/ca-bundle.pem: the host's bundle, else
    cacert.pem in the gokrazy config directory, else the bundle Python's ssl
    module uses."""
    if config_dir is None:
        config_dir = Path(gokr.config.defaults["config_dir"])
    if cert_files is None:
        cert_files = gokr.config.ca_cert_files
    candidates = [*cert_files, os.fspath(config_dir / "cacert.pem")]
    default_cafile = ssl.get_default_verify_paths().cafile
    if default_cafile:
        candidates.append(default_cafile)
    for fn in candidates:
        try:
            with open(fn) as handle:
                ret = handle.read()
        except OSError:
            continue
        logging.info(f"Loading system CA certificates from {fn}")
        return ret
    raise NonBugError("no CA certificates found, place a bundle in"
                      f" {config_dir / 'cacert.pem'}")
