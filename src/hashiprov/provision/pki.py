# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hashiprov/provision/pki.py
"""
Self-signed CA and per-service leaf certificates, generated with the openssl CLI.

Every artefact (key, CSR, certificate) is created only when its file is
missing, so an interrupted run can be resumed without invalidating material
that was already written. Existing files are never regenerated.
"""
from __future__ import annotations

import ipaddress
import logging
from typing import List, Sequence

from hashiprov.config.models import CASpec, DeploymentPaths
from hashiprov.errors import (
    CertificateAuthorityInvalid,
    CSRError,
    KeyGenError,
    SigningError,
)
from hashiprov.utils.runner import CommandRunner

from .models import CertificateAuthority, LeafCertificate

log = logging.getLogger("hashiprov")

CERTS_DIR_MODE = 0o755
LOCKED_DIR_MODE = 0o770
LOCKED_FILE_MODE = 0o660


def _subject(common_name: str) -> str:
    # openssl -subj uses '/' as a separator and '\' as its escape
    escaped = common_name.replace("\\", "\\\\").replace("/", "\\/")
    return f"/CN={escaped}"


def san_extension(sans: Sequence[str]) -> str:
    """Render an ``-extfile`` body carrying subjectAltName entries."""
    entries = []
    for san in sans:
        if any(c in san for c in ",\n\r"):
            raise ValueError(f"invalid SAN entry: {san!r}")
        try:
            ipaddress.ip_address(san)
            entries.append(f"IP:{san}")
        except ValueError:
            entries.append(f"DNS:{san}")
    return "subjectAltName = " + ", ".join(entries) + "\n"


class CertificateAuthorityManager:
    def __init__(self, runner: CommandRunner, paths: DeploymentPaths, *, key_bits: int = 2048):
        self.runner = runner
        self.paths = paths
        self.key_bits = key_bits

    # ------------------ CA ------------------

    def ensure_ca(self, spec: CASpec) -> CertificateAuthority:
        if not self.runner.exists(self.paths.certs_dir):
            self.runner.makedirs(self.paths.certs_dir, mode=CERTS_DIR_MODE)

        created: List[str] = []
        key, cert = self.paths.ca_key, self.paths.ca_cert

        if self._gen_key(key, spec.key_bits):
            created.append(key)

        if self.runner.exists(cert):
            log.debug("CA certificate %s exists, reusing", cert)
        else:
            self.runner.check(
                [
                    "openssl", "req", "-x509", "-new", "-nodes",
                    "-key", key,
                    "-sha256",
                    "-days", str(spec.validity_days),
                    "-out", cert,
                    "-subj", _subject(spec.common_name),
                ],
                error=SigningError,
                message=f"failed to self-sign CA certificate {cert}",
            )
            created.append(cert)
            log.info("Created CA certificate %s (CN=%s)", cert, spec.common_name)

        ca = CertificateAuthority(
            common_name=spec.common_name,
            key_path=key,
            cert_path=cert,
            serial_path=self.paths.ca_serial,
            validity_days=spec.validity_days,
            created=tuple(created),
        )
        self.assert_valid(ca)
        return ca

    def assert_valid(self, ca: CertificateAuthority) -> None:
        """Raise unless the CA key and an unexpired CA certificate exist."""
        for path in (ca.key_path, ca.cert_path):
            if not self.runner.exists(path):
                raise CertificateAuthorityInvalid(f"CA file missing: {path}", step="ca")
        result = self.runner.run(["openssl", "x509", "-checkend", "0", "-noout", "-in", ca.cert_path])
        if not result.ok:
            raise CertificateAuthorityInvalid(
                f"CA certificate {ca.cert_path} is expired or unreadable",
                step="ca",
                argv=result.argv,
                returncode=result.returncode,
                stderr=result.stderr,
            )

    # ------------------ leaves ------------------

    def issue_leaf(
        self,
        ca: CertificateAuthority,
        name: str,
        subject: str | None = None,
        sans: Sequence[str] = (),
    ) -> LeafCertificate:
        self.assert_valid(ca)

        subject = subject or name
        key = self.paths.leaf_key(name)
        csr = self.paths.leaf_csr(name)
        cert = self.paths.leaf_cert(name)
        created: List[str] = []

        if self._gen_key(key, self.key_bits):
            created.append(key)

        if self.runner.exists(csr):
            log.debug("CSR %s exists, reusing", csr)
        else:
            self.runner.check(
                ["openssl", "req", "-new", "-key", key, "-out", csr, "-subj", _subject(subject)],
                error=CSRError,
                message=f"failed to create CSR {csr}",
            )
            created.append(csr)

        if self.runner.exists(cert):
            log.debug("Certificate %s exists, reusing", cert)
        else:
            argv = [
                "openssl", "x509", "-req",
                "-in", csr,
                "-CA", ca.cert_path,
                "-CAkey", ca.key_path,
                "-CAserial", ca.serial_path,
                "-CAcreateserial",
                "-out", cert,
                "-days", str(ca.validity_days),
                "-sha256",
            ]
            if sans:
                extfile = self.paths.leaf_extfile(name)
                self.runner.write_text(extfile, san_extension(sans), mode=0o644)
                argv += ["-extfile", extfile]
            self.runner.check(argv, error=SigningError, message=f"failed to sign {cert}")
            created.append(cert)
            log.info("Issued certificate %s (CN=%s) signed by %s", cert, subject, ca.common_name)

        return LeafCertificate(
            ca=ca,
            name=name,
            subject=subject,
            key_path=key,
            csr_path=csr,
            cert_path=cert,
            sans=tuple(sans),
            created=tuple(created),
        )

    # ------------------ permissions ------------------

    def tighten_permissions(self) -> None:
        """Restrict the certs directory to owner and group. Run after all material exists."""
        self.runner.chmod(
            self.paths.certs_dir,
            dir_mode=LOCKED_DIR_MODE,
            file_mode=LOCKED_FILE_MODE,
            recursive=True,
        )
        log.info("Restricted %s to owner/group", self.paths.certs_dir)

    # ------------------ helpers ------------------

    def _gen_key(self, path: str, bits: int) -> bool:
        if self.runner.exists(path):
            log.debug("Key %s exists, reusing", path)
            return False
        self.runner.check(
            [
                "openssl", "genpkey",
                "-algorithm", "RSA",
                "-out", path,
                "-pkeyopt", f"rsa_keygen_bits:{bits}",
            ],
            error=KeyGenError,
            message=f"failed to generate RSA key {path}",
        )
        log.info("Generated RSA-%d key %s", bits, path)
        return True
