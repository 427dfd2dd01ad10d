# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hashiprov/provision/artifacts.py
from __future__ import annotations

import hashlib
import logging
import posixpath
import re
import shutil
import tempfile
import zipfile
import zlib
from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import requests

from hashiprov.config.models import ArtifactSpec, DeploymentPaths
from hashiprov.errors import (
    ArtifactNotFound,
    ChecksumMismatch,
    DownloadError,
    ExtractionError,
    InstallVerificationFailed,
)
from hashiprov.utils.retry import RetryError, retry
from hashiprov.utils.runner import CommandRunner

from .models import InstalledArtifact

log = logging.getLogger("hashiprov")

_VERSION_RE = re.compile(r"\bv?(\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.+-]+)?)")


def parse_version(output: str) -> Optional[str]:
    """Pull the version out of ``<binary> --version`` output (e.g. ``Vault v1.18.0 (...)``)."""
    first = output.strip().splitlines()[0] if output.strip() else ""
    m = _VERSION_RE.search(first)
    return m.group(1) if m else None


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            h.update(chunk)
    return h.hexdigest()


class ArtifactInstaller:
    """
    Installs versioned release binaries into DeploymentPaths.install_dir.

    The binary is uploaded under a hidden staging name next to its final
    location, checked with ``--version`` and only then renamed into place,
    so a failed install never leaves a half-written or wrong binary behind.
    """

    def __init__(
        self,
        runner: CommandRunner,
        paths: DeploymentPaths,
        *,
        arch: str = "amd64",
        session_factory: Callable[[], requests.Session] = requests.Session,
        retries: int = 3,
        retry_delay: float = 2.0,
        timeout: float = 60.0,
    ):
        self.runner = runner
        self.paths = paths
        self.arch = arch
        self.session_factory = session_factory
        self.retries = retries
        self.retry_delay = retry_delay
        self.timeout = timeout

    # ------------------ public ------------------

    def installed_version(self, path: str) -> Optional[str]:
        result = self.runner.run([path, "--version"])
        if not result.ok:
            return None
        return parse_version(result.stdout)

    def ensure_installed(self, spec: ArtifactSpec) -> InstalledArtifact:
        path = self.paths.binary(spec.name)

        if self.runner.exists(path):
            current = self.installed_version(path)
            if current == spec.version:
                log.info("%s %s already installed at %s", spec.name, spec.version, path)
                return InstalledArtifact(spec.name, spec.version, path, changed=False)
            log.info("%s at %s reports %s, want %s", spec.name, path, current, spec.version)

        # one session per install; sessions are not shared between worker threads
        session = self.session_factory()
        try:
            with tempfile.TemporaryDirectory(prefix=f"hashiprov-{spec.name}-") as tmp:
                workdir = Path(tmp)
                archive = workdir / spec.archive_name(self.arch)
                self._download(session, spec.url(self.arch), archive)
                self._verify_checksum(session, spec, archive)
                binary = self._extract(archive, spec.name, workdir / "bin")
                self._place(spec, binary, path)
        finally:
            session.close()

        log.info("Installed %s %s at %s", spec.name, spec.version, path)
        return InstalledArtifact(spec.name, spec.version, path, changed=True)

    def install_all(
        self,
        specs: Sequence[ArtifactSpec],
        *,
        parallel: bool = False,
    ) -> List[InstalledArtifact]:
        """
        Install every spec. Either all succeed or the first error is raised,
        after every install has finished.
        """
        if not parallel or len(specs) < 2:
            return [self.ensure_installed(s) for s in specs]

        with ThreadPoolExecutor(max_workers=len(specs)) as executor:
            futures = [executor.submit(self.ensure_installed, s) for s in specs]
            wait(futures)
        for future in futures:
            exc = future.exception()
            if exc is not None:
                raise exc
        return [f.result() for f in futures]

    # ------------------ download ------------------

    def _fetch(self, session: requests.Session, url: str, dest: Path) -> None:
        log.debug("GET %s", url)
        try:
            with session.get(url, stream=True, timeout=self.timeout) as resp:
                if resp.status_code == 404:
                    raise ArtifactNotFound(f"no release archive at {url}", step="download")
                resp.raise_for_status()
                with dest.open("wb") as f:
                    for chunk in resp.iter_content(chunk_size=1 << 16):
                        if chunk:
                            f.write(chunk)
        except requests.RequestException as exc:
            raise DownloadError(f"download failed: {url}: {exc}", step="download") from exc

    def _download(self, session: requests.Session, url: str, dest: Path) -> None:
        def _warn(attempt: int, exc: Exception) -> None:
            log.warning("Download attempt %d/%d failed: %s", attempt, self.retries, exc)

        fetch = retry(
            retries=self.retries,
            delay=self.retry_delay,
            backoff=2.0,
            retry_on=(DownloadError,),
            give_up_on=(ArtifactNotFound,),
            on_retry=_warn,
        )(self._fetch)
        try:
            fetch(session, url, dest)
        except RetryError as exc:
            raise DownloadError(
                f"giving up on {url} after {self.retries} attempts: {exc.__cause__}",
                step="download",
            ) from exc

    def _published_checksum(self, session: requests.Session, spec: ArtifactSpec) -> str:
        url = spec.checksums_url(self.arch)
        try:
            resp = session.get(url, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise DownloadError(f"could not fetch checksums: {url}: {exc}", step="download") from exc

        archive = spec.archive_name(self.arch)
        for line in resp.text.splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1] == archive:
                return parts[0].lower()
        raise DownloadError(f"{archive} not listed in {url}", step="download")

    def _verify_checksum(self, session: requests.Session, spec: ArtifactSpec, archive: Path) -> None:
        expected = spec.sha256
        if expected is None and spec.verify_published_checksum:
            expected = self._published_checksum(session, spec)
        if expected is None:
            log.warning("No checksum pinned for %s %s, skipping verification", spec.name, spec.version)
            return
        actual = sha256_file(archive)
        if actual != expected:
            raise ChecksumMismatch(
                f"checksum mismatch for {archive.name}: expected {expected}, got {actual}",
                step="download",
            )

    # ------------------ extract & place ------------------

    def _extract(self, archive: Path, member_name: str, dest_dir: Path) -> Path:
        dest_dir.mkdir(parents=True, exist_ok=True)
        dest = dest_dir / member_name
        try:
            with zipfile.ZipFile(archive) as zf:
                bad = zf.testzip()
                if bad is not None:
                    raise ExtractionError(f"corrupt member {bad} in {archive.name}", step="extract")
                member = next(
                    (i for i in zf.infolist() if posixpath.basename(i.filename) == member_name and not i.is_dir()),
                    None,
                )
                if member is None:
                    raise ExtractionError(f"{member_name} not found in {archive.name}", step="extract")
                with zf.open(member) as src, dest.open("wb") as out:
                    shutil.copyfileobj(src, out)
        except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, EOFError) as exc:
            raise ExtractionError(f"cannot read {archive.name}: {exc}", step="extract") from exc
        return dest

    def _place(self, spec: ArtifactSpec, binary: Path, path: str) -> None:
        self.runner.makedirs(self.paths.install_dir)
        staged = posixpath.join(posixpath.dirname(path), f".{spec.name}-{spec.version}.partial")
        self.runner.put_file(binary, staged, mode=0o755)
        try:
            reported = self.installed_version(staged)
            if reported != spec.version:
                raise InstallVerificationFailed(
                    f"{spec.name} reports version {reported!r}, expected {spec.version!r}",
                    step="verify",
                )
            self.runner.rename(staged, path)
        except BaseException:
            self.runner.remove(staged)
            raise
