# src/hashiprov/config/models.py

from __future__ import annotations

import posixpath
import re
from typing import Annotated, Dict, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_SHA256 = re.compile(r"^[0-9a-f]{64}$")


def _check_abs_path(value: str) -> str:
    if _CONTROL_CHARS.search(value):
        raise ValueError(f"path contains control characters: {value!r}")
    if not posixpath.isabs(value):
        raise ValueError(f"path must be absolute: {value!r}")
    return posixpath.normpath(value)


AbsPath = Annotated[str, AfterValidator(_check_abs_path)]
Port = Annotated[int, Field(ge=1, le=65535)]


class TargetHost(BaseModel):
    """Where the provisioning commands run."""

    mode: Literal["local", "ssh"] = "local"
    address: Optional[str] = None
    username: str = "root"
    port: Port = 22
    password: Optional[str] = None
    pkey_path: Optional[str] = None
    sudo: bool = False
    connect_timeout: float = 20.0

    @model_validator(mode="after")
    def _ssh_needs_address(self) -> "TargetHost":
        if self.mode == "ssh" and not self.address:
            raise ValueError("target.address is required when target.mode is 'ssh'")
        return self

    @property
    def label(self) -> str:
        return self.address if self.mode == "ssh" else "localhost"


class DeploymentPaths(BaseModel):
    """
    Every filesystem location touched on the target host.

    Components receive this object instead of reaching for module constants,
    so tests (and unusual hosts) can relocate the whole tree.
    """

    model_config = ConfigDict(frozen=True)

    install_dir: AbsPath = "/usr/local/bin"
    certs_dir: AbsPath = "/etc/ssl/hashicorp"
    consul_config_path: AbsPath = "/etc/consul.d/consul.hcl"
    consul_data_dir: AbsPath = "/opt/consul/data"
    vault_config_path: AbsPath = "/etc/vault.d/vault.hcl"
    vault_data_dir: AbsPath = "/opt/vault/data"
    systemd_dir: AbsPath = "/etc/systemd/system"
    vault_unseal_key_path: AbsPath = "/opt/consul/vault-unseal-key"
    vault_token_storage_path: AbsPath = "/opt/consul/vault-token-storage"

    def binary(self, name: str) -> str:
        return posixpath.join(self.install_dir, name)

    @property
    def ca_key(self) -> str:
        return posixpath.join(self.certs_dir, "ca-key.pem")

    @property
    def ca_cert(self) -> str:
        return posixpath.join(self.certs_dir, "ca-cert.pem")

    @property
    def ca_serial(self) -> str:
        return posixpath.join(self.certs_dir, "ca-cert.srl")

    def leaf_key(self, name: str) -> str:
        return posixpath.join(self.certs_dir, f"{name}-key.pem")

    def leaf_cert(self, name: str) -> str:
        return posixpath.join(self.certs_dir, f"{name}-cert.pem")

    def leaf_csr(self, name: str) -> str:
        return posixpath.join(self.certs_dir, f"{name}.csr")

    def leaf_extfile(self, name: str) -> str:
        return posixpath.join(self.certs_dir, f"{name}.ext")

    def unit_path(self, name: str) -> str:
        return posixpath.join(self.systemd_dir, f"{name}.service")

    def applied_digest_path(self, name: str) -> str:
        """SHA-256 of the config, unit and certificate the running service was last (re)started with."""
        return f"{self.config_path(name)}.applied-sha256"

    def config_path(self, name: str) -> str:
        return {"consul": self.consul_config_path, "vault": self.vault_config_path}[name]

    def data_dir(self, name: str) -> str:
        return {"consul": self.consul_data_dir, "vault": self.vault_data_dir}[name]


DEFAULT_URL_TEMPLATE = (
    "https://releases.hashicorp.com/{name}/{version}/{name}_{version}_linux_{arch}.zip"
)


class ArtifactSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=r"^[a-z][a-z0-9-]*$")
    version: str = Field(pattern=r"^\d+\.\d+\.\d+([-+][0-9A-Za-z.+-]+)?$")
    url_template: str = DEFAULT_URL_TEMPLATE
    sha256: Optional[str] = None
    verify_published_checksum: bool = True

    @field_validator("sha256")
    @classmethod
    def _hex_digest(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.lower()
        if not _SHA256.match(value):
            raise ValueError("sha256 must be a 64 character hex digest")
        return value

    def url(self, arch: str = "amd64") -> str:
        return self.url_template.format(name=self.name, version=self.version, arch=arch)

    def archive_name(self, arch: str = "amd64") -> str:
        return f"{self.name}_{self.version}_linux_{arch}.zip"

    def checksums_url(self, arch: str = "amd64") -> str:
        base = self.url(arch).rsplit("/", 1)[0]
        return f"{base}/{self.name}_{self.version}_SHA256SUMS"


class CASpec(BaseModel):
    common_name: str = "Consul-CA"
    validity_days: int = Field(default=365, gt=0)
    key_bits: int = Field(default=2048, ge=2048)


class TLSFiles(BaseModel):
    ca_file: AbsPath
    cert_file: AbsPath
    key_file: AbsPath


class ConsulOptions(BaseModel):
    datacenter: str = "dc1"
    node_name: str = "consul-node"
    log_level: Literal["TRACE", "DEBUG", "INFO", "WARN", "ERR"] = "INFO"
    bind_addr: str = "0.0.0.0"
    client_addr: str = "0.0.0.0"
    server: bool = True
    ui: bool = True
    bootstrap_expect: Optional[int] = Field(default=None, ge=1)
    http_port: Port = 8500
    https_port: Optional[Port] = None
    verify_incoming: bool = True
    verify_outgoing: bool = True
    verify_server_hostname: bool = True
    tls_sans: List[str] = Field(default_factory=list)


class ConsulSettings(ConsulOptions):
    """Everything the consul.hcl template needs, paths included."""

    data_dir: AbsPath
    tls: TLSFiles


class VaultOptions(BaseModel):
    listener_address: str = "0.0.0.0:8200"
    ui: bool = True
    api_addr: Optional[str] = None
    storage: Literal["file", "consul"] = "file"
    consul_storage_address: str = "127.0.0.1:8500"
    consul_storage_path: str = "vault/"
    tls_sans: List[str] = Field(default_factory=list)


class VaultSettings(VaultOptions):
    storage_path: AbsPath
    tls_cert_file: AbsPath
    tls_key_file: AbsPath


class RunOptions(BaseModel):
    parallel_downloads: bool = False
    download_retries: int = Field(default=3, ge=1)
    download_retry_delay: float = Field(default=2.0, ge=0)
    download_timeout: float = 60.0
    command_timeout: Optional[float] = 300.0


def _default_artifacts() -> List[ArtifactSpec]:
    return [
        ArtifactSpec(name="consul", version="1.14.0"),
        ArtifactSpec(name="vault", version="1.18.0"),
    ]


class ProvisionConfig(BaseModel):
    target: TargetHost = Field(default_factory=TargetHost)
    paths: DeploymentPaths = Field(default_factory=DeploymentPaths)
    artifacts: List[ArtifactSpec] = Field(default_factory=_default_artifacts)
    packages: List[str] = Field(default_factory=lambda: ["unzip", "openssl"])
    ca: CASpec = Field(default_factory=CASpec)
    consul: ConsulOptions = Field(default_factory=ConsulOptions)
    vault: VaultOptions = Field(default_factory=VaultOptions)
    run: RunOptions = Field(default_factory=RunOptions)

    @model_validator(mode="after")
    def _artifacts_cover_services(self) -> "ProvisionConfig":
        names = [a.name for a in self.artifacts]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate artifact names: {names}")
        missing = {"consul", "vault"} - set(names)
        if missing:
            raise ValueError(f"artifacts missing for: {', '.join(sorted(missing))}")
        return self

    def by_name(self) -> Dict[str, ArtifactSpec]:
        return {a.name: a for a in self.artifacts}

    def consul_settings(self) -> ConsulSettings:
        p = self.paths
        return ConsulSettings(
            **self.consul.model_dump(),
            data_dir=p.consul_data_dir,
            tls=TLSFiles(
                ca_file=p.ca_cert,
                cert_file=p.leaf_cert("consul"),
                key_file=p.leaf_key("consul"),
            ),
        )

    def vault_settings(self) -> VaultSettings:
        p = self.paths
        return VaultSettings(
            **self.vault.model_dump(),
            storage_path=p.vault_data_dir,
            tls_cert_file=p.leaf_cert("vault"),
            tls_key_file=p.leaf_key("vault"),
        )
