# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import enum
import hashlib
import logging
import posixpath
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

import requests

from ..config.models import ProvisionConfig
from ..errors import ConfigWriteError, ProvisionError
from ..provision.artifacts import ArtifactInstaller
from ..provision.facts import FactProber
from ..provision.models import CertificateAuthority, HostProfile, LeafCertificate, ManagedService
from ..provision.packages import ensure_packages
from ..provision.pki import CertificateAuthorityManager
from ..provision.render import render
from ..provision.services import ServiceRegistrar, consul_service, vault_service
from ..utils.runner import CommandRunner
from .planner import Step, plan

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import (
    new_ctx,
    stamp,
    StepStarted,
    StepSucceeded,
    StepFailed,
    HostProbed,
    PackagesEnsured,
    ArtifactInstalled,
    ArtifactSkipped,
    CertificateMaterialCreated,
    CertificateMaterialReused,
    PermissionsTightened,
    ConfigWritten,
    UnitWritten,
    ServiceAction,
    ServiceRestartRequested,
    RunSummary,
)

log = logging.getLogger("hashiprov")

TLS_SERVICES = ("consul", "vault")


class RunState(str, enum.Enum):
    INIT = "Init"
    FACTS_PROBED = "FactsProbed"
    ARTIFACTS_INSTALLED = "ArtifactsInstalled"
    CA_CREATED = "CACreated"
    LEAF_CERTS_ISSUED = "LeafCertsIssued"
    PERMISSIONS_TIGHTENED = "PermissionsTightened"
    CONFIGS_WRITTEN = "ConfigsWritten"
    SERVICES_REGISTERED = "ServicesRegistered"
    SERVICES_STARTED = "ServicesStarted"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class StepOutcome:
    name: str
    status: str                 # "OK" | "FAILED"
    changed: bool = False
    duration_ms: int = 0
    error: Optional[str] = None


@dataclass
class RunReport:
    outcomes: List[StepOutcome] = field(default_factory=list)
    state: RunState = RunState.INIT
    failed_step: Optional[str] = None
    cause: Optional[BaseException] = None

    def add(self, outcome: StepOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def ok(self) -> bool:
        return self.state == RunState.DONE

    @property
    def changed(self) -> bool:
        return any(o.changed for o in self.outcomes)

    def summary(self) -> str:
        ok = sum(1 for o in self.outcomes if o.status == "OK")
        failed = sum(1 for o in self.outcomes if o.status == "FAILED")
        text = f"state={self.state.value} OK={ok} FAILED={failed} changed={self.changed}"
        if self.failed_step:
            text += f" failed_step={self.failed_step}"
        return text


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


class RunOrchestrator:
    """
    Drives one provisioning run against a single host.

    Steps run strictly in order and the first failure ends the run in the
    Failed state. There is no rollback: every step converges, so re-running
    after fixing the cause picks up where the last run stopped.
    """

    def __init__(
        self,
        cfg: ProvisionConfig,
        runner: CommandRunner,
        *,
        bus: Optional[EventBus] = None,
        run_id: Optional[str] = None,
        installer: Optional[ArtifactInstaller] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self.cfg = cfg
        self.paths = cfg.paths
        self.runner = runner
        self.bus = bus or EventBus()
        self.ctx = new_ctx(host=runner.label, run_id=run_id)

        self.prober = FactProber(runner)
        self.ca_manager = CertificateAuthorityManager(runner, self.paths, key_bits=cfg.ca.key_bits)
        self.registrar = ServiceRegistrar(runner)
        self._installer = installer
        self._session_factory = session_factory

        self.profile: Optional[HostProfile] = None
        self.ca: Optional[CertificateAuthority] = None
        self.leaves: Dict[str, LeafCertificate] = {}
        self.services: List[ManagedService] = []
        self.rendered: Dict[str, str] = {}
        self.changed_configs: Set[str] = set()
        self.changed_units: Set[str] = set()

    @property
    def run_id(self) -> str:
        return self.ctx["run_id"]

    def steps(self) -> List[Step]:
        return [
            Step("probe_facts", RunState.FACTS_PROBED, self._probe_facts),
            Step("install_artifacts", RunState.ARTIFACTS_INSTALLED, self._install_artifacts,
                 requires=["probe_facts"]),
            Step("create_ca", RunState.CA_CREATED, self._create_ca,
                 requires=["install_artifacts"]),
            Step("issue_leaf_certs", RunState.LEAF_CERTS_ISSUED, self._issue_leaf_certs,
                 requires=["create_ca"]),
            Step("tighten_permissions", RunState.PERMISSIONS_TIGHTENED, self._tighten_permissions,
                 requires=["issue_leaf_certs"]),
            Step("write_configs", RunState.CONFIGS_WRITTEN, self._write_configs,
                 requires=["tighten_permissions"]),
            Step("register_services", RunState.SERVICES_REGISTERED, self._register_services,
                 requires=["write_configs"]),
            Step("start_services", RunState.SERVICES_STARTED, self._start_services,
                 requires=["register_services"]),
        ]

    # ------------------ run loop ------------------

    def run(self) -> RunReport:
        report = RunReport()
        ordered = plan(self.steps(), bus=self.bus, run_ctx=self.ctx)

        for step in ordered:
            self.bus.emit(StepStarted(step=step.name, **stamp(self.ctx)))
            log.info("==> %s", step.name)
            t0 = time.monotonic()
            try:
                changed = bool(step.action())
            except Exception as exc:
                duration_ms = int((time.monotonic() - t0) * 1000)
                report.add(StepOutcome(step.name, "FAILED", duration_ms=duration_ms, error=str(exc)))
                report.state = RunState.FAILED
                report.failed_step = step.name
                report.cause = exc
                self.bus.emit(
                    StepFailed(
                        step=step.name,
                        error=str(exc),
                        returncode=getattr(exc, "returncode", None),
                        **stamp(self.ctx),
                    )
                )
                if isinstance(exc, ProvisionError):
                    log.error("Step %s failed: %s", step.name, exc)
                else:
                    log.exception("Step %s failed unexpectedly", step.name)
                break

            duration_ms = int((time.monotonic() - t0) * 1000)
            report.add(StepOutcome(step.name, "OK", changed=changed, duration_ms=duration_ms))
            report.state = step.state
            self.bus.emit(
                StepSucceeded(step=step.name, changed=changed, duration_ms=duration_ms, **stamp(self.ctx))
            )
        else:
            report.state = RunState.DONE
            self._log_operator_followup()

        self.bus.emit(
            RunSummary(
                state=report.state.value,
                ok=sum(1 for o in report.outcomes if o.status == "OK"),
                failed=sum(1 for o in report.outcomes if o.status == "FAILED"),
                failed_step=report.failed_step,
                error=str(report.cause) if report.cause else None,
                **stamp(self.ctx),
            )
        )
        log.info("Run finished: %s", report.summary())
        return report

    # ------------------ steps ------------------

    def _probe_facts(self) -> bool:
        self.profile = self.prober.probe()
        p = self.profile
        self.bus.emit(
            HostProbed(
                os_family=p.os_family,
                distribution=p.distribution,
                package_manager=p.package_manager,
                arch=p.arch,
                **stamp(self.ctx),
            )
        )
        return False

    def _install_artifacts(self) -> bool:
        installed = ensure_packages(self.runner, self.profile, self.cfg.packages)
        self.bus.emit(PackagesEnsured(installed=installed, **stamp(self.ctx)))

        installer = self._installer or ArtifactInstaller(
            self.runner,
            self.paths,
            arch=self.profile.arch,
            session_factory=self._session_factory,
            retries=self.cfg.run.download_retries,
            retry_delay=self.cfg.run.download_retry_delay,
            timeout=self.cfg.run.download_timeout,
        )
        results = installer.install_all(self.cfg.artifacts, parallel=self.cfg.run.parallel_downloads)
        for r in results:
            event = ArtifactInstalled if r.changed else ArtifactSkipped
            self.bus.emit(event(name=r.name, version=r.version, path=r.path, **stamp(self.ctx)))
        return bool(installed) or any(r.changed for r in results)

    def _emit_material(self, files: List[str], created: tuple) -> None:
        for path in files:
            event = CertificateMaterialCreated if path in created else CertificateMaterialReused
            self.bus.emit(event(path=path, **stamp(self.ctx)))

    def _create_ca(self) -> bool:
        self.ca = self.ca_manager.ensure_ca(self.cfg.ca)
        self._emit_material([self.ca.key_path, self.ca.cert_path], self.ca.created)
        return bool(self.ca.created)

    def _issue_leaf_certs(self) -> bool:
        sans = {"consul": self.cfg.consul.tls_sans, "vault": self.cfg.vault.tls_sans}
        changed = False
        for name in TLS_SERVICES:
            leaf = self.ca_manager.issue_leaf(self.ca, name, sans=sans[name])
            self.leaves[name] = leaf
            self._emit_material([leaf.key_path, leaf.csr_path, leaf.cert_path], leaf.created)
            changed = changed or bool(leaf.created)
        return changed

    def _tighten_permissions(self) -> bool:
        self.ca_manager.tighten_permissions()
        self.bus.emit(PermissionsTightened(path=self.paths.certs_dir, **stamp(self.ctx)))
        return False

    def _write_configs(self) -> bool:
        rendered = {
            "consul": render("consul", self.cfg.consul_settings()),
            "vault": render("vault", self.cfg.vault_settings()),
        }
        self.rendered = rendered
        for name, text in rendered.items():
            path = self.paths.config_path(name)
            try:
                self.runner.makedirs(self.paths.data_dir(name))
                self.runner.makedirs(posixpath.dirname(path))
                changed = self._write_if_changed(path, text)
            except (OSError, ProvisionError) as exc:
                raise ConfigWriteError(f"cannot write {path}: {exc}", step="write_configs") from exc
            if changed:
                self.changed_configs.add(name)
            self.bus.emit(ConfigWritten(path=path, changed=changed, **stamp(self.ctx)))
        return bool(self.changed_configs)

    def _write_if_changed(self, path: str, text: str) -> bool:
        existing = self.runner.read_text(path)
        if existing is not None and _digest(existing) == _digest(text):
            log.debug("%s unchanged", path)
            return False
        self.runner.write_text(path, text, mode=0o644)
        log.info("Wrote %s", path)
        return True

    def _register_services(self) -> bool:
        self.services = [consul_service(self.paths), vault_service(self.paths)]
        for svc in self.services:
            changed = self.registrar.register(svc)
            if changed:
                self.changed_units.add(svc.name)
            self.bus.emit(UnitWritten(name=svc.name, path=svc.unit_path, changed=changed, **stamp(self.ctx)))
        return bool(self.changed_units)

    # ------------------ applied state ------------------

    def _desired_state(self, svc: ManagedService) -> Dict[str, str]:
        """Digests of what the service should be running with right now."""
        leaf = self.leaves.get(svc.name)
        cert = self.runner.read_text(leaf.cert_path) if leaf else ""
        return {
            "config": _digest(self.rendered[svc.name]),
            "unit": _digest(render("systemd", svc)),
            "certificate": _digest(cert or ""),
        }

    def _recorded_state(self, svc: ManagedService) -> Optional[Dict[str, str]]:
        text = self.runner.read_text(self.paths.applied_digest_path(svc.name))
        if text is None:
            return None
        recorded = {}
        for line in text.splitlines():
            key, _, value = line.partition(" ")
            if value:
                recorded[key] = value.strip()
        return recorded

    def _record_state(self, svc: ManagedService, state: Dict[str, str]) -> None:
        text = "".join(f"{k} {v}\n" for k, v in sorted(state.items()))
        self.runner.write_text(self.paths.applied_digest_path(svc.name), text, mode=0o600)

    @staticmethod
    def _restart_reason(desired: Dict[str, str], recorded: Optional[Dict[str, str]]) -> Optional[str]:
        if recorded is None:
            return "no applied state recorded"
        for part in ("config", "unit", "certificate"):
            if recorded.get(part) != desired[part]:
                return f"{part} changed"
        return None

    def _start_services(self) -> bool:
        """
        Start what is stopped, restart what runs with outdated inputs.

        The applied state is only recorded once the service has been
        (re)started with it, so a run that fails here is picked up by the
        next one even though the files on disk no longer change.
        """
        changed = False
        for svc in self.services:
            missing = self.registrar.missing_files(svc)
            if missing:
                raise ConfigWriteError(
                    f"refusing to start {svc.name}, missing: {', '.join(missing)}",
                    step="start_services",
                )

            desired = self._desired_state(svc)
            recorded = self._recorded_state(svc)
            if (
                recorded is not None
                and recorded.get("unit") != desired["unit"]
                and svc.name not in self.changed_units
            ):
                # unit written by an earlier run that failed before the reload
                self.registrar.daemon_reload()

            was_active = self.registrar.is_active(svc)
            for action in self.registrar.set_state(svc):
                self.bus.emit(ServiceAction(name=svc.name, action=action, **stamp(self.ctx)))
                changed = True

            reason = self._restart_reason(desired, recorded)
            if was_active and reason:
                self.bus.emit(ServiceRestartRequested(name=svc.name, reason=reason, **stamp(self.ctx)))
                self.registrar.restart(svc)
                self.bus.emit(ServiceAction(name=svc.name, action="restart", **stamp(self.ctx)))
                changed = True

            if svc.desired.started and recorded != desired:
                self._record_state(svc, desired)
        return changed

    def _log_operator_followup(self) -> None:
        p = self.paths
        if not self.runner.exists(p.vault_unseal_key_path):
            log.warning(
                "Vault still needs 'vault operator init' and unseal by an operator "
                "(unseal key path %s, token path %s are not populated by hashiprov)",
                p.vault_unseal_key_path,
                p.vault_token_storage_path,
            )
