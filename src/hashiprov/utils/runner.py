# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hashiprov/utils/runner.py

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Type

from hashiprov.errors import CommandError, ProvisionError

log = logging.getLogger("hashiprov")


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(ABC):
    """
    Everything the provisioning components need from a host.

    Commands are always argv sequences; implementations must never hand them
    to a shell unquoted.
    """

    label: str = "localhost"

    @abstractmethod
    def run(
        self,
        argv: Sequence[str],
        *,
        input: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult: ...

    @abstractmethod
    def exists(self, path: str) -> bool: ...

    @abstractmethod
    def read_text(self, path: str) -> Optional[str]:
        """Return file contents, or None when the file does not exist."""

    @abstractmethod
    def write_text(self, path: str, content: str, *, mode: int = 0o644) -> None:
        """Atomically replace *path* with *content*."""

    @abstractmethod
    def put_file(self, local_path: str | Path, remote_path: str, *, mode: int = 0o644) -> None: ...

    @abstractmethod
    def makedirs(self, path: str, *, mode: int = 0o755) -> None: ...

    @abstractmethod
    def chmod(
        self,
        path: str,
        *,
        dir_mode: int,
        file_mode: Optional[int] = None,
        recursive: bool = False,
    ) -> None: ...

    @abstractmethod
    def rename(self, src: str, dst: str) -> None: ...

    @abstractmethod
    def remove(self, path: str) -> None: ...

    def check(
        self,
        argv: Sequence[str],
        *,
        error: Type[ProvisionError] = CommandError,
        message: Optional[str] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        """Run *argv* and raise *error* on a non-zero exit."""
        result = self.run(argv, input=input)
        if not result.ok:
            raise error(
                message or f"command failed: {shlex.join(argv)}",
                argv=argv,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    def close(self) -> None:
        pass


class LocalRunner(CommandRunner):
    """Runs commands with subprocess and touches files directly."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    def run(self, argv, *, input=None, timeout=None) -> CommandResult:
        argv = tuple(str(a) for a in argv)
        log.debug("$ %s", shlex.join(argv))
        try:
            cp = subprocess.run(
                list(argv),
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            # same code a shell reports for a missing executable
            return CommandResult(argv, 127, "", str(exc))
        except OSError as exc:
            # not executable or wrong format, reported like a shell would
            return CommandResult(argv, 126, "", str(exc))
        except subprocess.TimeoutExpired as exc:
            raise CommandError(
                f"command timed out after {exc.timeout}s: {shlex.join(argv)}", argv=argv
            ) from exc
        if cp.returncode != 0:
            log.debug("exit=%s stderr=%s", cp.returncode, cp.stderr.strip())
        return CommandResult(argv, cp.returncode, cp.stdout, cp.stderr)

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def read_text(self, path: str) -> Optional[str]:
        try:
            return Path(path).read_text()
        except FileNotFoundError:
            return None

    def write_text(self, path: str, content: str, *, mode: int = 0o644) -> None:
        target = Path(path)
        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.chmod(tmp, mode)
            os.replace(tmp, target)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def put_file(self, local_path, remote_path, *, mode=0o644) -> None:
        shutil.copyfile(local_path, remote_path)
        os.chmod(remote_path, mode)

    def makedirs(self, path: str, *, mode: int = 0o755) -> None:
        if os.path.isdir(path):
            return
        os.makedirs(path, mode=mode, exist_ok=True)
        os.chmod(path, mode)

    def chmod(self, path, *, dir_mode, file_mode=None, recursive=False) -> None:
        os.chmod(path, dir_mode)
        if not recursive:
            return
        for root, dirs, files in os.walk(path):
            for d in dirs:
                os.chmod(os.path.join(root, d), dir_mode)
            for f in files:
                os.chmod(os.path.join(root, f), file_mode if file_mode is not None else dir_mode)

    def rename(self, src: str, dst: str) -> None:
        os.replace(src, dst)

    def remove(self, path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
