"""
Prebuilt toolchain fetcher.

Downloads wasm-bindgen and wasm-opt release archives into a local cache
keyed by (artifact id, version):

    ~/.perseus-cache/
        wasm-bindgen-0.2.87/        complete entry
        wasm-opt-version_113/
        .tmp-wasm-opt-...           in progress; never reported by lookup()

Entries appear atomically via rename, so concurrent readers only ever see
complete extractions.
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
import stat
import tarfile
import time
import uuid
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from perseus_cli.core.errors import FetchError, IntegrityError

logger = logging.getLogger(__name__)

TMP_PREFIX = ".tmp-"
CHUNK_SIZE = 64 * 1024
# Staging entries older than this were left by a crashed install
STALE_TMP_SECONDS = 3600.0


# =============================================================================
# Artifact Registry
# =============================================================================


@dataclass(frozen=True)
class ArtifactSpec:
    """Where to download an artifact and what to look for inside it."""

    id: str
    url_template: str  # placeholders: {version}, {triple}
    binary: str
    triples: Mapping[str, str] = field(default_factory=dict)
    archive_format: str = "tar.gz"

    def url(self, version: str, platform_key: Optional[str] = None) -> str:
        key = platform_key or current_platform()
        triple = self.triples.get(key)
        if triple is None:
            raise FetchError(f"No prebuilt {self.id} for platform {key}")
        return self.url_template.format(version=version, triple=triple)


def current_platform() -> str:
    """Platform key such as ``linux-x86_64`` or ``macos-aarch64``."""
    system = {"Darwin": "macos", "Windows": "windows"}.get(platform.system(), platform.system().lower())
    machine = platform.machine().lower()
    machine = {"amd64": "x86_64", "arm64": "aarch64"}.get(machine, machine)
    return f"{system}-{machine}"


ARTIFACTS: dict[str, ArtifactSpec] = {
    "wasm-bindgen": ArtifactSpec(
        id="wasm-bindgen",
        url_template=(
            "https://github.com/rustwasm/wasm-bindgen/releases/download/"
            "{version}/wasm-bindgen-{version}-{triple}.tar.gz"
        ),
        binary="wasm-bindgen",
        triples={
            "linux-x86_64": "x86_64-unknown-linux-musl",
            "linux-aarch64": "aarch64-unknown-linux-gnu",
            "macos-x86_64": "x86_64-apple-darwin",
            "macos-aarch64": "aarch64-apple-darwin",
            "windows-x86_64": "x86_64-pc-windows-msvc",
        },
    ),
    "wasm-opt": ArtifactSpec(
        id="wasm-opt",
        url_template=(
            "https://github.com/WebAssembly/binaryen/releases/download/"
            "{version}/binaryen-{version}-{triple}.tar.gz"
        ),
        binary="wasm-opt",
        triples={
            "linux-x86_64": "x86_64-linux",
            "linux-aarch64": "aarch64-linux",
            "macos-x86_64": "x86_64-macos",
            "macos-aarch64": "arm64-macos",
            "windows-x86_64": "x86_64-windows",
        },
    ),
}


class TransientFetchError(FetchError):
    """Network error, timeout, or 5xx; worth retrying."""


# =============================================================================
# Fetcher
# =============================================================================


class PluginFetcher:
    """Resolves artifacts from the cache, downloading them on a miss."""

    def __init__(
        self,
        cache_dir: Path,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        attempts: int = 3,
        backoff: float = 0.5,
        timeout: float = 60.0,
        registry: Optional[Mapping[str, ArtifactSpec]] = None,
    ):
        self.cache_dir = cache_dir
        self.transport = transport
        self.attempts = attempts
        self.backoff = backoff
        self.timeout = timeout
        self.registry = dict(registry if registry is not None else ARTIFACTS)
        self.downloads = 0

    def entry_dir(self, artifact_id: str, version: str) -> Path:
        return self.cache_dir / f"{artifact_id}-{version}"

    def lookup(self, artifact_id: str, version: str) -> Optional[Path]:
        """Return the cached entry if complete, else None."""
        entry = self.entry_dir(artifact_id, version)
        if entry.name.startswith(TMP_PREFIX) or not entry.is_dir():
            return None
        return entry

    def sweep_stale(self, max_age: float = STALE_TMP_SECONDS) -> list[Path]:
        """Remove staging entries older than ``max_age`` seconds. Returns what was removed.

        Younger entries may belong to an install still running in another
        process and are left alone.
        """
        if not self.cache_dir.is_dir():
            return []
        cutoff = time.time() - max_age
        removed = []
        for entry in self.cache_dir.iterdir():
            if not entry.name.startswith(TMP_PREFIX):
                continue
            try:
                if entry.lstat().st_mtime > cutoff:
                    continue
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except FileNotFoundError:
                continue  # finished or swept by another process
            logger.debug("removed stale staging entry %s", entry)
            removed.append(entry)
        return removed

    def binary(self, artifact_id: str, version: str) -> Optional[Path]:
        """Path to the artifact's executable within a cached entry."""
        entry = self.lookup(artifact_id, version)
        spec = self.registry.get(artifact_id)
        if entry is None or spec is None:
            return None
        return find_binary(entry, spec.binary)

    async def ensure(self, artifact_id: str, version: str) -> Path:
        """Return the cache entry for (artifact_id, version), downloading if needed."""
        self.sweep_stale()
        entry = self.lookup(artifact_id, version)
        if entry is not None:
            logger.debug("cache hit: %s", entry)
            return entry

        spec = self.registry.get(artifact_id)
        if spec is None:
            raise FetchError(f"Unknown artifact: {artifact_id}")
        url = spec.url(version)

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        download = self.cache_dir / f"{TMP_PREFIX}{artifact_id}-{version}-{uuid.uuid4().hex}.download"
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.attempts),
                wait=wait_exponential(multiplier=self.backoff, max=10),
                retry=retry_if_exception_type(TransientFetchError),
                reraise=True,
            ):
                with attempt:
                    n = attempt.retry_state.attempt_number
                    logger.debug("downloading %s (attempt %s/%s)", url, n, self.attempts)
                    await self._download(url, download)
            return self._install(spec, download, artifact_id, version)
        finally:
            download.unlink(missing_ok=True)

    async def _download(self, url: str, dest: Path) -> None:
        """Stream ``url`` to ``dest`` and check the byte count."""
        async with httpx.AsyncClient(
            transport=self.transport,
            timeout=self.timeout,
            follow_redirects=True,
        ) as client:
            try:
                async with client.stream("GET", url) as response:
                    if response.status_code >= 500:
                        raise TransientFetchError(f"HTTP {response.status_code} from {url}")
                    if response.is_error:
                        raise FetchError(f"HTTP {response.status_code} from {url}")

                    declared = response.headers.get("content-length")
                    written = 0
                    with dest.open("wb") as f:
                        async for chunk in response.aiter_raw(CHUNK_SIZE):
                            f.write(chunk)
                            written += len(chunk)
            except httpx.TransportError as e:
                raise TransientFetchError(f"Download of {url} failed: {e}") from e

        self.downloads += 1
        if declared is not None and int(declared) != written:
            raise IntegrityError(f"Expected {declared} bytes from {url}, got {written}")

    def _install(self, spec: ArtifactSpec, archive: Path, artifact_id: str, version: str) -> Path:
        """Extract into a temp dir, then rename it into place."""
        staging = self.cache_dir / f"{TMP_PREFIX}{artifact_id}-{version}-{uuid.uuid4().hex}"
        final = self.entry_dir(artifact_id, version)
        try:
            staging.mkdir()
            try:
                if spec.archive_format == "zip":
                    with zipfile.ZipFile(archive) as zf:
                        zf.extractall(staging)
                else:
                    with tarfile.open(archive, "r:gz") as tar:
                        tar.extractall(staging, filter="data")
            except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError) as e:
                raise IntegrityError(f"Could not extract {spec.id} {version}: {e}") from e

            binary = find_binary(staging, spec.binary)
            if binary is None:
                raise IntegrityError(f"{spec.binary} not found in {spec.id} {version} archive")
            binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

            try:
                os.replace(staging, final)
            except OSError:
                # Another writer installed the same key first
                if self.lookup(artifact_id, version) is None:
                    raise
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        logger.debug("installed %s %s into %s", spec.id, version, final)
        return final


def find_binary(root: Path, name: str) -> Optional[Path]:
    """Locate executable ``name`` (or ``name.exe``) anywhere under ``root``."""
    candidates = sorted(
        p for p in root.rglob("*")
        if p.is_file() and p.name in (name, f"{name}.exe")
    )
    return candidates[0] if candidates else None
