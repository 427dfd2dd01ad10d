# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
from typing import Optional

import paramiko

from hashiprov.config.models import TargetHost
from hashiprov.utils.runner import CommandRunner, LocalRunner
from hashiprov.utils.ssh_runner import SSHRunner

log = logging.getLogger("hashiprov")

KEY_TYPES = (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey)


def _load_pkey(path: str) -> paramiko.PKey:
    for key_cls in KEY_TYPES:
        try:
            return key_cls.from_private_key_file(path)
        except paramiko.SSHException:
            continue
    raise paramiko.SSHException(f"{path}: not an RSA, Ed25519 or ECDSA private key")


def open_ssh(
    host: TargetHost,
    *,
    command_timeout: Optional[float] = None,
) -> SSHRunner:
    client = paramiko.SSHClient()
    client.load_system_host_keys()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    pkey = _load_pkey(host.pkey_path) if host.pkey_path else None

    log.info("Connecting to %s@%s:%s", host.username, host.address, host.port)
    client.connect(
        hostname=host.address,
        port=host.port,
        username=host.username,
        password=host.password if not pkey else None,
        pkey=pkey,
        timeout=host.connect_timeout,
        allow_agent=True,
        look_for_keys=True,
    )

    return SSHRunner(client, sudo=host.sudo, timeout=command_timeout, label=host.label)


def open_runner(host: TargetHost, *, command_timeout: Optional[float] = None) -> CommandRunner:
    if host.mode == "ssh":
        return open_ssh(host, command_timeout=command_timeout)
    return LocalRunner(timeout=command_timeout)
