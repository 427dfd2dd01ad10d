# src/hashiprov/cli/app.py
from __future__ import annotations

from pathlib import Path
from typing import Optional

import paramiko
import typer
import yaml

from hashiprov.config.loader import load_config
from hashiprov.config.models import ProvisionConfig, TargetHost
from hashiprov.deploy.orchestrator import RunOrchestrator
from hashiprov.errors import ProvisionError
from hashiprov.logging.log import DEFAULT_LOG_DIR, init_logging
from hashiprov.observers.console import ConsoleObserver
from hashiprov.observers.dispatcher import EventBus
from hashiprov.observers.jsonfile import JsonFileObserver
from hashiprov.observers.logger import LoggerObserver
from hashiprov.provision.facts import FactProber
from hashiprov.provision.render import render as render_config
from hashiprov.provision.services import consul_service, vault_service
from hashiprov.utils.runner import CommandRunner
from hashiprov.utils.ssh import open_runner


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="Provision Consul and Vault with TLS on a host")

RENDER_KINDS = ("consul", "vault", "consul-unit", "vault-unit")


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def _load(config: Optional[Path]) -> ProvisionConfig:
    try:
        return load_config(config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        typer.echo(f"Invalid config {config}: {exc}", err=True)
        raise typer.Exit(code=2)


def _apply_target_overrides(
    cfg: ProvisionConfig,
    *,
    host: Optional[str],
    user: Optional[str],
    ssh_key: Optional[Path],
    port: Optional[int],
    sudo: Optional[bool],
) -> ProvisionConfig:
    updates = {}
    if host:
        updates.update(mode="ssh", address=host)
    if user:
        updates["username"] = user
    if ssh_key:
        updates["pkey_path"] = str(ssh_key)
    if port:
        updates["port"] = port
    if sudo is not None:
        updates["sudo"] = sudo
    if not updates:
        return cfg
    target = TargetHost.model_validate({**cfg.target.model_dump(), **updates})
    return cfg.model_copy(update={"target": target})


def _connect(cfg: ProvisionConfig) -> CommandRunner:
    try:
        return open_runner(cfg.target, command_timeout=cfg.run.command_timeout)
    except (paramiko.SSHException, OSError) as exc:
        typer.echo(f"Cannot connect to {cfg.target.label}: {exc}", err=True)
        raise typer.Exit(code=1)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def provision(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to provisioning YAML"),
    host: Optional[str] = typer.Option(None, "--host", help="Provision this address over SSH"),
    user: Optional[str] = typer.Option(None, "--user", help="SSH username"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key", help="SSH private key"),
    port: Optional[int] = typer.Option(None, "--port", help="SSH port"),
    sudo: Optional[bool] = typer.Option(None, "--sudo/--no-sudo", help="Prefix remote commands with sudo"),
    parallel_downloads: bool = typer.Option(False, "--parallel-downloads", help="Install binaries concurrently"),
    events: bool = typer.Option(False, "--events", help="Print lifecycle events to the console"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """
    Install Consul and Vault, issue TLS certificates, write configs and start services.
    """
    cfg = _load(config)
    cfg = _apply_target_overrides(cfg, host=host, user=user, ssh_key=ssh_key, port=port, sudo=sudo)
    if parallel_downloads:
        cfg = cfg.model_copy(update={"run": cfg.run.model_copy(update={"parallel_downloads": True})})

    logger, run_id, _ = init_logging(host=cfg.target.label, verbose=verbose)

    observers = [
        LoggerObserver(logger),
        JsonFileObserver(DEFAULT_LOG_DIR / f"{run_id}.jsonl"),
    ]
    if events:
        observers.append(ConsoleObserver())

    runner = _connect(cfg)
    try:
        report = RunOrchestrator(cfg, runner, bus=EventBus(observers=observers), run_id=run_id).run()
    finally:
        runner.close()

    for o in report.outcomes:
        mark = "changed" if o.changed else "ok"
        if o.status == "FAILED":
            mark = "FAILED"
        typer.echo(f"  {o.name:<22} {mark:<8} {o.duration_ms}ms")
    typer.echo(report.summary())

    if not report.ok:
        typer.echo(f"Failed at {report.failed_step}: {report.cause}", err=True)
        raise typer.Exit(code=1)


@app.command()
def probe(
    config: Optional[Path] = typer.Option(None, "--config", "-c"),
    host: Optional[str] = typer.Option(None, "--host"),
    user: Optional[str] = typer.Option(None, "--user"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """
    Print the detected OS family, package manager and architecture.
    """
    cfg = _apply_target_overrides(_load(config), host=host, user=user, ssh_key=ssh_key, port=port, sudo=None)
    runner = _connect(cfg)
    try:
        profile = FactProber(runner).probe()
    except ProvisionError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    finally:
        runner.close()

    typer.echo(f"os_family={profile.os_family}")
    typer.echo(f"distribution={profile.distribution}")
    typer.echo(f"package_manager={profile.package_manager}")
    typer.echo(f"arch={profile.arch}")


@app.command()
def render(
    kind: str = typer.Argument(..., help=f"One of: {', '.join(RENDER_KINDS)}"),
    config: Optional[Path] = typer.Option(None, "--config", "-c"),
):
    """
    Print a rendered config file or systemd unit without touching any host.
    """
    if kind not in RENDER_KINDS:
        raise typer.BadParameter(f"Unknown kind {kind!r}. Valid kinds: {', '.join(RENDER_KINDS)}")

    cfg = _load(config)
    try:
        if kind == "consul":
            text = render_config("consul", cfg.consul_settings())
        elif kind == "vault":
            text = render_config("vault", cfg.vault_settings())
        elif kind == "consul-unit":
            text = render_config("systemd", consul_service(cfg.paths))
        else:
            text = render_config("systemd", vault_service(cfg.paths))
    except ProvisionError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)

    typer.echo(text, nl=False)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
