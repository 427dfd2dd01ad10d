# src/hashiprov/provision/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal, Optional, Tuple

OsFamily = Literal["debian", "redhat"]
PackageManager = Literal["apt", "yum", "dnf"]


@dataclass(frozen=True)
class HostProfile:
    """Facts about the target host, probed once per run."""
    os_family: OsFamily
    distribution: str
    package_manager: PackageManager
    arch: str = "amd64"


@dataclass(frozen=True)
class InstalledArtifact:
    name: str
    version: str
    path: str
    changed: bool


@dataclass(frozen=True)
class CertificateAuthority:
    common_name: str
    key_path: str
    cert_path: str
    serial_path: str
    validity_days: int
    created: Tuple[str, ...] = ()    # files generated by this call, empty when reused


@dataclass(frozen=True)
class LeafCertificate:
    ca: CertificateAuthority           # issuing CA, not owned
    name: str
    subject: str
    key_path: str
    csr_path: str
    cert_path: str
    sans: Tuple[str, ...] = ()
    created: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DesiredState:
    enabled: bool = True
    started: bool = True


@dataclass
class ManagedService:
    """
    A systemd-supervised process.
    """
    name: str
    description: str
    exec_path: str
    args: List[str]
    config_path: str
    unit_path: str
    documentation: Optional[str] = None
    restart: str = "on-failure"
    after: List[str] = field(default_factory=lambda: ["network.target"])
    wanted_by: str = "multi-user.target"
    desired: DesiredState = field(default_factory=DesiredState)
    # files that must exist before the service may start
    requires_files: List[str] = field(default_factory=list)

    @property
    def exec_start(self) -> List[str]:
        return [self.exec_path, *self.args]
