from pathlib import Path

import pytest

from hashiprov.errors import ServiceManagerError
from hashiprov.provision.models import DesiredState
from hashiprov.provision.services import ServiceRegistrar, consul_service, vault_service


def test_register_writes_unit_then_reloads(runner, systemd, paths):
    svc = consul_service(paths)
    assert ServiceRegistrar(runner).register(svc) is True
    unit = Path(paths.unit_path("consul")).read_text()
    assert f"ExecStart={paths.binary('consul')} agent -config-file={paths.consul_config_path}" in unit
    assert systemd.actions == [("daemon-reload",)]


def test_register_unchanged_unit_is_noop(runner, systemd, paths):
    reg = ServiceRegistrar(runner)
    reg.register(vault_service(paths))
    systemd.actions.clear()
    assert reg.register(vault_service(paths)) is False
    assert systemd.actions == []


def test_reload_precedes_enable_and_start(runner, systemd, paths):
    reg = ServiceRegistrar(runner)
    svc = consul_service(paths)
    reg.register(svc)
    actions = reg.set_state(svc)
    assert actions == ["enable", "start"]
    assert systemd.actions == [("daemon-reload",), ("enable", "consul"), ("start", "consul")]


def test_set_state_is_idempotent(runner, systemd, paths):
    systemd.enabled.add("vault")
    systemd.active.add("vault")
    assert ServiceRegistrar(runner).set_state(vault_service(paths)) == []
    assert systemd.actions == []


def test_set_state_can_disable_and_stop(runner, systemd, paths):
    systemd.enabled.add("vault")
    systemd.active.add("vault")
    actions = ServiceRegistrar(runner).set_state(
        vault_service(paths), DesiredState(enabled=False, started=False)
    )
    assert actions == ["disable", "stop"]


def test_systemctl_failure_raises(runner, systemd, paths):
    runner.on("systemctl", "start", rc=1, stderr="Job for consul.service failed")
    with pytest.raises(ServiceManagerError, match="Job for consul.service failed"):
        ServiceRegistrar(runner).set_state(consul_service(paths))


def test_missing_files_lists_unwritten_material(runner, paths):
    svc = consul_service(paths)
    missing = ServiceRegistrar(runner).missing_files(svc)
    assert paths.consul_config_path in missing
    assert paths.ca_cert in missing
    assert paths.leaf_key("consul") in missing
