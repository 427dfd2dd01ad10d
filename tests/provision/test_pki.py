import os
import shutil
import stat
from pathlib import Path

import pytest

from hashiprov.config.models import CASpec
from hashiprov.errors import CertificateAuthorityInvalid, CSRError, KeyGenError, SigningError
from hashiprov.provision.models import CertificateAuthority
from hashiprov.provision.pki import CertificateAuthorityManager, _subject, san_extension
from hashiprov.utils.runner import LocalRunner

needs_openssl = pytest.mark.skipif(shutil.which("openssl") is None, reason="openssl not installed")


def _mode(path):
    return stat.S_IMODE(os.stat(path).st_mode)


def test_subject_escapes_separators():
    assert _subject("Consul-CA") == "/CN=Consul-CA"
    assert _subject("a/b") == "/CN=a\\/b"


def test_san_extension_mixes_ip_and_dns():
    assert san_extension(["127.0.0.1", "consul.local"]) == (
        "subjectAltName = IP:127.0.0.1, DNS:consul.local\n"
    )
    with pytest.raises(ValueError):
        san_extension(["a,b"])


# ------------------ scripted openssl ------------------

def test_ensure_ca_creates_key_then_cert(fake_openssl, paths):
    ca = CertificateAuthorityManager(fake_openssl, paths).ensure_ca(CASpec())
    assert ca.created == (paths.ca_key, paths.ca_cert)
    genpkey = fake_openssl.commands("openssl", "genpkey")
    assert genpkey[0][-1] == "rsa_keygen_bits:2048"
    req = fake_openssl.commands("openssl", "req")[0]
    assert req[req.index("-days") + 1] == "365"
    assert req[req.index("-subj") + 1] == "/CN=Consul-CA"


def test_ensure_ca_reuses_existing_material(fake_openssl, paths):
    mgr = CertificateAuthorityManager(fake_openssl, paths)
    mgr.ensure_ca(CASpec())
    before = Path(paths.ca_cert).read_bytes()
    fake_openssl.calls.clear()

    ca = mgr.ensure_ca(CASpec())
    assert ca.created == ()
    assert Path(paths.ca_cert).read_bytes() == before
    assert fake_openssl.commands("openssl", "genpkey") == []
    assert fake_openssl.commands("openssl", "x509", "-checkend")


def test_keygen_failure(fake_openssl, paths):
    fake_openssl.on("openssl", "genpkey", rc=1, stderr="bad algorithm")
    with pytest.raises(KeyGenError, match="bad algorithm"):
        CertificateAuthorityManager(fake_openssl, paths).ensure_ca(CASpec())


def test_csr_failure(fake_openssl, paths):
    mgr = CertificateAuthorityManager(fake_openssl, paths)
    ca = mgr.ensure_ca(CASpec())
    fake_openssl.on("openssl", "req", "-new", rc=1)
    with pytest.raises(CSRError):
        mgr.issue_leaf(ca, "consul")
    assert not os.path.exists(paths.leaf_cert("consul"))


def test_signing_failure(fake_openssl, paths):
    mgr = CertificateAuthorityManager(fake_openssl, paths)
    ca = mgr.ensure_ca(CASpec())
    fake_openssl.on("openssl", "x509", "-req", rc=1, stderr="unable to load CA")
    with pytest.raises(SigningError) as ei:
        mgr.issue_leaf(ca, "vault")
    assert ei.value.argv[:3] == ["openssl", "x509", "-req"]


def test_leaf_before_ca_is_rejected(fake_openssl, paths):
    ghost = CertificateAuthority(
        common_name="Consul-CA",
        key_path=paths.ca_key,
        cert_path=paths.ca_cert,
        serial_path=paths.ca_serial,
        validity_days=365,
    )
    with pytest.raises(CertificateAuthorityInvalid):
        CertificateAuthorityManager(fake_openssl, paths).issue_leaf(ghost, "consul")
    assert fake_openssl.commands("openssl", "genpkey") == []


def test_expired_ca_is_rejected(fake_openssl, paths):
    mgr = CertificateAuthorityManager(fake_openssl, paths)
    ca = mgr.ensure_ca(CASpec())
    fake_openssl.on("openssl", "x509", "-checkend", rc=1, stdout="Certificate will expire")
    with pytest.raises(CertificateAuthorityInvalid, match="expired"):
        mgr.issue_leaf(ca, "consul")


def test_leaf_with_sans_writes_extfile(fake_openssl, paths):
    mgr = CertificateAuthorityManager(fake_openssl, paths)
    ca = mgr.ensure_ca(CASpec())
    leaf = mgr.issue_leaf(ca, "consul", sans=["127.0.0.1", "consul.service.consul"])
    sign = fake_openssl.commands("openssl", "x509", "-req")[0]
    assert sign[-2:] == ("-extfile", paths.leaf_extfile("consul"))
    assert "IP:127.0.0.1" in Path(paths.leaf_extfile("consul")).read_text()
    assert leaf.created == (paths.leaf_key("consul"), paths.leaf_csr("consul"), paths.leaf_cert("consul"))


# ------------------ real openssl ------------------

@needs_openssl
def test_real_chain_verifies(paths):
    x509 = pytest.importorskip("cryptography.x509")
    mgr = CertificateAuthorityManager(LocalRunner(), paths)
    ca = mgr.ensure_ca(CASpec(common_name="Consul-CA", validity_days=30))
    leaf = mgr.issue_leaf(ca, "consul", sans=["127.0.0.1", "localhost"])

    ca_cert = x509.load_pem_x509_certificate(Path(ca.cert_path).read_bytes())
    leaf_cert = x509.load_pem_x509_certificate(Path(leaf.cert_path).read_bytes())
    leaf_cert.verify_directly_issued_by(ca_cert)

    cn = leaf_cert.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)[0].value
    assert cn == "consul"
    san = leaf_cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert "localhost" in san.get_values_for_type(x509.DNSName)
    assert ca_cert.public_key().key_size == 2048


@needs_openssl
def test_real_rerun_keeps_bytes_and_tightens_modes(paths):
    mgr = CertificateAuthorityManager(LocalRunner(), paths)
    ca = mgr.ensure_ca(CASpec())
    mgr.issue_leaf(ca, "vault")
    snapshot = {p: Path(p).read_bytes() for p in (paths.ca_key, paths.ca_cert, paths.leaf_cert("vault"))}

    ca = mgr.ensure_ca(CASpec())
    leaf = mgr.issue_leaf(ca, "vault")
    assert ca.created == () and leaf.created == ()
    assert {p: Path(p).read_bytes() for p in snapshot} == snapshot

    mgr.tighten_permissions()
    assert _mode(paths.certs_dir) == 0o770
    assert _mode(paths.ca_key) == 0o660
    assert _mode(paths.leaf_key("vault")) == 0o660
