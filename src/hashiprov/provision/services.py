# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hashiprov/provision/services.py
from __future__ import annotations

import logging
import posixpath
from typing import List, Optional, Sequence

from hashiprov.config.models import DeploymentPaths
from hashiprov.errors import ServiceManagerError
from hashiprov.utils.runner import CommandRunner

from .models import DesiredState, ManagedService
from .render import render

log = logging.getLogger("hashiprov")


def consul_service(paths: DeploymentPaths) -> ManagedService:
    config = paths.consul_config_path
    return ManagedService(
        name="consul",
        description="Consul",
        documentation="https://www.consul.io/docs/",
        exec_path=paths.binary("consul"),
        args=["agent", f"-config-file={config}"],
        config_path=config,
        unit_path=paths.unit_path("consul"),
        requires_files=[
            config,
            paths.ca_cert,
            paths.leaf_cert("consul"),
            paths.leaf_key("consul"),
        ],
    )


def vault_service(paths: DeploymentPaths) -> ManagedService:
    config = paths.vault_config_path
    return ManagedService(
        name="vault",
        description="HashiCorp Vault",
        documentation="https://www.vaultproject.io/docs/",
        exec_path=paths.binary("vault"),
        args=["server", f"-config={config}"],
        config_path=config,
        unit_path=paths.unit_path("vault"),
        requires_files=[
            config,
            paths.leaf_cert("vault"),
            paths.leaf_key("vault"),
        ],
    )


class ServiceRegistrar:
    """
    Writes systemd units and drives systemctl.

    Every operation is idempotent: units are rewritten only when their text
    changes, and enable/start are skipped when already in effect.
    """

    def __init__(self, runner: CommandRunner, *, systemctl: str = "systemctl"):
        self.runner = runner
        self.systemctl = systemctl

    def _systemctl(self, *args: str) -> None:
        argv = [self.systemctl, *args]
        self.runner.check(
            argv,
            error=ServiceManagerError,
            message=f"systemctl {' '.join(args)} failed",
        )

    def _probe(self, *args: str) -> bool:
        return self.runner.run([self.systemctl, *args]).ok

    # ------------------ units ------------------

    def register(self, service: ManagedService) -> bool:
        """
        Write the unit file if its content differs, then daemon-reload.
        Returns True when the unit changed.
        """
        unit = render("systemd", service)
        if self.runner.read_text(service.unit_path) == unit:
            log.debug("Unit %s unchanged", service.unit_path)
            return False

        unit_dir = posixpath.dirname(service.unit_path)
        self.runner.makedirs(unit_dir)
        self.runner.write_text(service.unit_path, unit, mode=0o644)
        log.info("Wrote unit %s", service.unit_path)
        # systemd only sees the new unit after a reload
        self.daemon_reload()
        return True

    def daemon_reload(self) -> None:
        self._systemctl("daemon-reload")

    # ------------------ state ------------------

    def is_enabled(self, service: ManagedService) -> bool:
        return self._probe("is-enabled", "--quiet", service.name)

    def is_active(self, service: ManagedService) -> bool:
        return self._probe("is-active", "--quiet", service.name)

    def set_state(
        self,
        service: ManagedService,
        desired: Optional[DesiredState] = None,
    ) -> List[str]:
        """
        Converge enable/start state. Returns the actions taken, e.g. ["enable", "start"].
        """
        desired = desired or service.desired
        actions: List[str] = []

        if desired.enabled and not self.is_enabled(service):
            self._systemctl("enable", service.name)
            actions.append("enable")
        elif not desired.enabled and self.is_enabled(service):
            self._systemctl("disable", service.name)
            actions.append("disable")

        if desired.started and not self.is_active(service):
            self._systemctl("start", service.name)
            actions.append("start")
        elif not desired.started and self.is_active(service):
            self._systemctl("stop", service.name)
            actions.append("stop")

        if actions:
            log.info("%s: %s", service.name, ", ".join(actions))
        return actions

    def restart(self, service: ManagedService) -> None:
        self._systemctl("restart", service.name)
        log.info("%s: restarted", service.name)

    def missing_files(self, service: ManagedService, extra: Sequence[str] = ()) -> List[str]:
        return [p for p in (*service.requires_files, *extra) if not self.runner.exists(p)]
