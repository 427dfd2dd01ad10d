# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hashiprov/errors.py
from __future__ import annotations

from typing import Optional, Sequence


class ProvisionError(RuntimeError):
    """Base class for provisioning failures."""

    def __init__(
        self,
        message: str,
        *,
        step: Optional[str] = None,
        argv: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None,
    ):
        super().__init__(message)
        self.step = step
        self.argv = list(argv) if argv is not None else None
        self.returncode = returncode
        self.stderr = stderr

    def __str__(self) -> str:
        msg = super().__str__()
        if self.returncode is not None:
            msg += f" (exit {self.returncode})"
        if self.stderr:
            msg += f": {self.stderr.strip()}"
        return msg


class CommandError(ProvisionError):
    """A command on the target host exited non-zero."""


class UnsupportedPlatform(ProvisionError):
    """OS family or package manager could not be determined."""


class PackageInstallError(ProvisionError):
    """The OS package manager failed to install a prerequisite."""


class DownloadError(ProvisionError):
    """Network/HTTP failure while fetching a release archive."""


class ArtifactNotFound(DownloadError):
    """The release server has no archive for this name/version/arch."""


class ChecksumMismatch(DownloadError):
    """Downloaded archive does not match the expected SHA-256."""


class ExtractionError(ProvisionError):
    """Release archive is corrupt or lacks the expected binary."""


class InstallVerificationFailed(ProvisionError):
    """Installed binary does not report the expected version."""


class KeyGenError(ProvisionError):
    pass


class CSRError(ProvisionError):
    pass


class SigningError(ProvisionError):
    pass


class CertificateAuthorityInvalid(ProvisionError):
    """CA material is missing or expired."""


class ConfigRenderError(ProvisionError, ValueError):
    """Settings contain a value that cannot be rendered safely."""


class ConfigWriteError(ProvisionError):
    pass


class ServiceManagerError(ProvisionError):
    """systemctl returned a failure."""
