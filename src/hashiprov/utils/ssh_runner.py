# src/hashiprov/utils/ssh_runner.py

from __future__ import annotations

import itertools
import logging
import os
import shlex
import time
from pathlib import Path
from typing import Optional

import paramiko

from hashiprov.utils.runner import CommandResult, CommandRunner

log = logging.getLogger("hashiprov")

_counter = itertools.count()
_CHUNK = 32768
_POLL_INTERVAL = 0.01


class SSHRunner(CommandRunner):
    """
    Runs argv commands on a remote host over an open paramiko client.

    Files are written to /tmp over SFTP first and moved into place with
    ``install``/``mv``, so root-owned targets work with ``sudo=True``.
    """

    def __init__(
        self,
        client: paramiko.SSHClient,
        *,
        sudo: bool = False,
        timeout: Optional[float] = None,
        label: str = "remote",
    ):
        self.client = client
        self.sudo = sudo
        self.timeout = timeout
        self.label = label

    def _command_line(self, argv) -> str:
        cmd = shlex.join(str(a) for a in argv)
        if self.sudo:
            cmd = f"sudo -n {cmd}"
        return cmd

    def run(self, argv, *, input=None, timeout=None) -> CommandResult:
        argv = tuple(str(a) for a in argv)
        cmd = self._command_line(argv)
        log.debug("[%s] $ %s", self.label, cmd)

        stdin, stdout, stderr = self.client.exec_command(cmd, timeout=timeout or self.timeout)
        if input is not None:
            stdin.write(input)
            stdin.flush()
            stdin.channel.shutdown_write()
        out, err = self._drain(stdout, stderr)
        rc = stdout.channel.recv_exit_status()
        if rc != 0:
            log.debug("[%s] exit=%s stderr=%s", self.label, rc, err.strip())
        return CommandResult(argv, rc, out, err)

    @staticmethod
    def _drain(stdout, stderr) -> tuple[str, str]:
        # read both streams as data arrives so neither fills the channel window
        chan = stdout.channel
        out, err = bytearray(), bytearray()
        while not (chan.exit_status_ready() and (chan.eof_received or chan.closed)):
            busy = False
            if chan.recv_ready():
                out += chan.recv(_CHUNK)
                busy = True
            if chan.recv_stderr_ready():
                err += chan.recv_stderr(_CHUNK)
                busy = True
            if not busy:
                time.sleep(_POLL_INTERVAL)
        out += stdout.read()
        err += stderr.read()
        return out.decode("utf-8", errors="replace"), err.decode("utf-8", errors="replace")

    # ------------------ files ------------------

    def _tmp_path(self) -> str:
        return f"/tmp/.hashiprov_tmp_{os.getpid()}_{next(_counter)}"

    def exists(self, path: str) -> bool:
        return self.run(["test", "-e", path]).ok

    def read_text(self, path: str) -> Optional[str]:
        if not self.exists(path):
            return None
        return self.check(["cat", path]).stdout

    def write_text(self, path: str, content: str, *, mode: int = 0o644) -> None:
        tmp = self._tmp_path()
        sftp = self.client.open_sftp()
        try:
            with sftp.file(tmp, "w") as f:
                f.write(content)
        finally:
            sftp.close()
        self._install(tmp, path, mode)

    def put_file(self, local_path, remote_path, *, mode=0o644) -> None:
        tmp = self._tmp_path()
        sftp = self.client.open_sftp()
        try:
            sftp.put(str(local_path), tmp)
        finally:
            sftp.close()
        self._install(tmp, remote_path, mode)

    def _install(self, tmp: str, path: str, mode: int) -> None:
        staged = f"{path}.hashiprov-new"
        try:
            self.check(["install", "-m", format(mode, "04o"), tmp, staged])
            self.check(["mv", "-f", staged, path])
        finally:
            self.run(["rm", "-f", tmp])

    def makedirs(self, path: str, *, mode: int = 0o755) -> None:
        if self.run(["test", "-d", path]).ok:
            return
        self.check(["install", "-d", "-m", format(mode, "04o"), path])

    def chmod(self, path, *, dir_mode, file_mode=None, recursive=False) -> None:
        if not recursive:
            self.check(["chmod", format(dir_mode, "04o"), path])
            return
        file_mode = file_mode if file_mode is not None else dir_mode
        self.check(["find", path, "-type", "d", "-exec", "chmod", format(dir_mode, "04o"), "{}", "+"])
        self.check(["find", path, "-type", "f", "-exec", "chmod", format(file_mode, "04o"), "{}", "+"])

    def rename(self, src: str, dst: str) -> None:
        self.check(["mv", "-f", src, dst])

    def remove(self, path: str) -> None:
        self.check(["rm", "-f", path])

    def close(self) -> None:
        self.client.close()
