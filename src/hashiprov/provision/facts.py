# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hashiprov/provision/facts.py
from __future__ import annotations

import logging
import shlex
from typing import Dict, Optional

from hashiprov.errors import UnsupportedPlatform
from hashiprov.utils.runner import CommandRunner

from .models import HostProfile, OsFamily

log = logging.getLogger("hashiprov")

OS_RELEASE_PATHS = ("/etc/os-release", "/usr/lib/os-release")

DEBIAN_IDS = {"debian", "ubuntu", "raspbian", "linuxmint", "pop", "elementary", "kali"}
REDHAT_IDS = {"rhel", "centos", "fedora", "rocky", "almalinux", "amzn", "ol", "redhat"}

# uname -m -> release archive suffix
ARCH_MAP = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "i386": "386",
    "i686": "386",
}


def parse_os_release(text: str) -> Dict[str, str]:
    info: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        try:
            parts = shlex.split(raw)
        except ValueError:
            parts = [raw.strip("\"'")]
        info[key.strip()] = parts[0] if parts else ""
    return info


def os_family(info: Dict[str, str]) -> Optional[OsFamily]:
    ids = [info.get("ID", "").lower()] + info.get("ID_LIKE", "").lower().split()
    for i in ids:
        if i in DEBIAN_IDS:
            return "debian"
        if i in REDHAT_IDS:
            return "redhat"
    return None


class FactProber:
    """Read-only inspection of the target host."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def probe(self) -> HostProfile:
        info = self._os_release()
        family = os_family(info)
        if family is None:
            raise UnsupportedPlatform(
                f"unsupported OS family: ID={info.get('ID')!r} ID_LIKE={info.get('ID_LIKE')!r}",
                step="probe",
            )

        if family == "debian":
            pm = "apt"
        elif self.runner.exists("/usr/bin/dnf"):
            pm = "dnf"
        else:
            pm = "yum"

        profile = HostProfile(
            os_family=family,
            distribution=info.get("ID", family),
            package_manager=pm,
            arch=self._arch(),
        )
        log.info("Probed %s: %s", self.runner.label, profile)
        return profile

    def _os_release(self) -> Dict[str, str]:
        for path in OS_RELEASE_PATHS:
            text = self.runner.read_text(path)
            if text is not None:
                return parse_os_release(text)
        raise UnsupportedPlatform("no os-release file found", step="probe")

    def _arch(self) -> str:
        result = self.runner.run(["uname", "-m"])
        machine = result.stdout.strip()
        if not result.ok or machine not in ARCH_MAP:
            raise UnsupportedPlatform(
                f"unsupported machine architecture: {machine or '?'}",
                step="probe",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return ARCH_MAP[machine]
