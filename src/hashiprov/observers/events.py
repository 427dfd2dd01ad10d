# src/hashiprov/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single provisioning run
    host: str         # target host label

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_ctx(host: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": _now(),
        "run_id": run_id or str(uuid.uuid4()),
        "host": host,
    }


def stamp(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of *ctx* with a fresh timestamp."""
    return {**ctx, "ts": _now()}


# ---------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PlanComputed(BaseEvent):
    order: List[str]

@dataclass(frozen=True)
class PlanFailed(BaseEvent):
    error: str


# ---------------------------------------------------------------------
# Step lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StepStarted(BaseEvent):
    step: str

@dataclass(frozen=True)
class StepSucceeded(BaseEvent):
    step: str
    changed: bool
    duration_ms: int

@dataclass(frozen=True)
class StepFailed(BaseEvent):
    step: str
    error: str
    returncode: Optional[int] = None


# ---------------------------------------------------------------------
# Host facts & packages
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class HostProbed(BaseEvent):
    os_family: str
    distribution: str
    package_manager: str
    arch: str

@dataclass(frozen=True)
class PackagesEnsured(BaseEvent):
    installed: List[str]


# ---------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ArtifactInstalled(BaseEvent):
    name: str
    version: str
    path: str

@dataclass(frozen=True)
class ArtifactSkipped(BaseEvent):
    name: str
    version: str
    path: str


# ---------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class CertificateMaterialCreated(BaseEvent):
    path: str

@dataclass(frozen=True)
class CertificateMaterialReused(BaseEvent):
    path: str

@dataclass(frozen=True)
class PermissionsTightened(BaseEvent):
    path: str


# ---------------------------------------------------------------------
# Config & services
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ConfigWritten(BaseEvent):
    path: str
    changed: bool

@dataclass(frozen=True)
class UnitWritten(BaseEvent):
    name: str
    path: str
    changed: bool

@dataclass(frozen=True)
class ServiceAction(BaseEvent):
    name: str
    action: str       # "enable" | "start" | "restart"

@dataclass(frozen=True)
class ServiceRestartRequested(BaseEvent):
    name: str
    reason: str


# ---------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunSummary(BaseEvent):
    state: str
    ok: int
    failed: int
    failed_step: Optional[str] = None
    error: Optional[str] = None
