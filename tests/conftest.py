from __future__ import annotations

import itertools
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from hashiprov.config.models import DeploymentPaths
from hashiprov.utils.runner import CommandResult, LocalRunner


class ScriptedRunner(LocalRunner):
    """
    Real file operations (tests point DeploymentPaths at tmp_path),
    but every command is answered from a script instead of executed.
    """

    label = "test-host"

    def __init__(self):
        super().__init__()
        self.calls: List[tuple] = []
        self._handlers = []

    def on(self, *prefix: str, rc: int = 0, stdout: str = "", stderr: str = "",
           effect: Optional[Callable] = None) -> None:
        # later registrations win
        self._handlers.insert(0, (tuple(prefix), rc, stdout, stderr, effect))

    def run(self, argv, *, input=None, timeout=None):
        argv = tuple(str(a) for a in argv)
        self.calls.append(argv)
        for prefix, rc, out, err, effect in self._handlers:
            if argv[: len(prefix)] == prefix:
                if effect is not None:
                    result = effect(argv)
                    if isinstance(result, CommandResult):
                        return result
                return CommandResult(argv, rc, out, err)
        return CommandResult(argv, 0, "", "")

    def commands(self, *prefix: str) -> List[tuple]:
        return [c for c in self.calls if c[: len(prefix)] == prefix]


class FakeSystemd:
    """Minimal systemctl: tracks enabled/active units."""

    def __init__(self, enabled=(), active=()):
        self.enabled = set(enabled)
        self.active = set(active)
        self.actions: List[tuple] = []

    def __call__(self, argv):
        verb, name = argv[1], argv[-1]
        if verb == "is-enabled":
            return CommandResult(argv, 0 if name in self.enabled else 1, "", "")
        if verb == "is-active":
            return CommandResult(argv, 0 if name in self.active else 3, "", "")
        self.actions.append((verb,) + tuple(argv[2:]))
        if verb == "enable":
            self.enabled.add(name)
        elif verb in ("start", "restart"):
            self.active.add(name)
        return CommandResult(argv, 0, "", "")


_serial = itertools.count(1)


def write_out_file(argv):
    """Stand-in for openssl: create whatever file -out names, unique per call."""
    out = Path(argv[argv.index("-out") + 1])
    out.write_text(f"-----BEGIN FAKE-----\n{' '.join(argv[:3])} #{next(_serial)}\n-----END FAKE-----\n")


@pytest.fixture
def paths(tmp_path: Path) -> DeploymentPaths:
    root = tmp_path / "host"
    return DeploymentPaths(
        install_dir=str(root / "usr/local/bin"),
        certs_dir=str(root / "etc/ssl/hashicorp"),
        consul_config_path=str(root / "etc/consul.d/consul.hcl"),
        consul_data_dir=str(root / "opt/consul/data"),
        vault_config_path=str(root / "etc/vault.d/vault.hcl"),
        vault_data_dir=str(root / "opt/vault/data"),
        systemd_dir=str(root / "etc/systemd/system"),
        vault_unseal_key_path=str(root / "opt/consul/vault-unseal-key"),
        vault_token_storage_path=str(root / "opt/consul/vault-token-storage"),
    )


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def systemd(runner: ScriptedRunner) -> FakeSystemd:
    fake = FakeSystemd()
    runner.on("systemctl", effect=fake)
    return fake


@pytest.fixture
def fake_openssl(runner: ScriptedRunner) -> ScriptedRunner:
    runner.on("openssl", "genpkey", effect=write_out_file)
    runner.on("openssl", "req", effect=write_out_file)
    runner.on("openssl", "x509", "-req", effect=write_out_file)
    runner.on("openssl", "x509", "-checkend", rc=0)
    return runner
