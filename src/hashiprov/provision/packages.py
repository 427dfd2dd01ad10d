# src/hashiprov/provision/packages.py
from __future__ import annotations

import logging
from typing import List, Sequence

from hashiprov.errors import PackageInstallError
from hashiprov.utils.runner import CommandRunner

from .models import HostProfile

log = logging.getLogger("hashiprov")


def is_installed(runner: CommandRunner, profile: HostProfile, name: str) -> bool:
    if profile.package_manager == "apt":
        result = runner.run(["dpkg-query", "-W", "-f=${Status}", name])
        return result.ok and "install ok installed" in result.stdout
    return runner.run(["rpm", "-q", name]).ok


def ensure_packages(
    runner: CommandRunner,
    profile: HostProfile,
    names: Sequence[str],
) -> List[str]:
    """
    Install any of *names* that are missing. Returns the packages installed.
    """
    missing = [n for n in names if not is_installed(runner, profile, n)]
    if not missing:
        log.debug("Packages already present: %s", ", ".join(names))
        return []

    log.info("Installing packages via %s: %s", profile.package_manager, ", ".join(missing))
    if profile.package_manager == "apt":
        runner.check(
            ["apt-get", "update"],
            error=PackageInstallError,
            message="apt-get update failed",
        )
        argv = ["apt-get", "install", "-y", *missing]
    else:
        argv = [profile.package_manager, "install", "-y", *missing]

    runner.check(
        argv,
        error=PackageInstallError,
        message=f"failed to install {', '.join(missing)}",
    )
    return missing
