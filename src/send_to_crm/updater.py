"""Release feed access: check, download and launch a new build.

The feed is a small JSON document published next to each release:

    {"version": "1.4.0", "url": "https://.../send-to-crm-1.4.0.AppImage",
     "sha256": "...", "notes": "..."}

These functions block and are run off the main loop by the update
controller.
"""

import hashlib
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Callable, Optional

import httpx

from . import __version__
from .config import Config, get_config
from .models import ReleaseInfo

log = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class UpdateError(RuntimeError):
    """Base class for recoverable update failures."""


class UpdateCheckFailed(UpdateError):
    """The release feed could not be fetched or parsed."""


class DownloadFailed(UpdateError):
    """The release artifact could not be downloaded or verified."""


def parse_version(value: str) -> tuple:
    """Numeric tuple for comparing dotted versions; pre-release suffixes sort first."""
    core, _, suffix = str(value).strip().lstrip("v").partition("-")
    parts = []
    for piece in core.split("."):
        try:
            parts.append(int(piece))
        except ValueError:
            parts.append(0)
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts) + ((0, suffix) if suffix else (1, ""),)


def is_newer(candidate: str, current: str = __version__) -> bool:
    return parse_version(candidate) > parse_version(current)


def is_packaged() -> bool:
    """True for frozen builds (or when forced via SEND_TO_CRM_PACKAGED=1)."""
    if os.environ.get("SEND_TO_CRM_PACKAGED", "").strip() == "1":
        return True
    return bool(getattr(sys, "frozen", False))


def parse_release(data: object) -> ReleaseInfo:
    if not isinstance(data, dict):
        raise UpdateCheckFailed("Release feed must be a JSON object")
    version = data.get("version")
    url = data.get("url")
    if not version or not url:
        raise UpdateCheckFailed("Release feed is missing version or url")
    return ReleaseInfo(
        version=str(version),
        download_url=str(url),
        sha256=data.get("sha256") or None,
        release_notes=data.get("notes") or None,
    )


class ReleaseFeed:
    """Fetches release metadata and artifacts over HTTPS."""

    def __init__(
        self,
        config: Optional[Config] = None,
        transport: Optional[httpx.BaseTransport] = None,
        launcher: Optional[Callable[[list[str]], None]] = None,
    ):
        self.config = config or get_config()
        self._transport = transport
        self._launch = launcher or self._spawn_detached
        self.timeout = httpx.Timeout(60.0, connect=self.config.connect_timeout_s)

    @property
    def download_dir(self) -> Path:
        return self.config.cache_dir / "updates"

    def staged_path(self, release: ReleaseInfo) -> Path:
        name = release.download_url.rstrip("/").rsplit("/", 1)[-1] or f"send-to-crm-{release.version}"
        return self.download_dir / release.version / name

    def check(self) -> Optional[ReleaseInfo]:
        """Return the published release if it is newer than this build."""
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport, follow_redirects=True) as client:
                response = client.get(self.config.update_feed_url)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise UpdateCheckFailed(f"Could not fetch release feed: {e}") from e
        except ValueError as e:
            raise UpdateCheckFailed(f"Release feed is not valid JSON: {e}") from e

        release = parse_release(data)
        if not is_newer(release.version):
            log.info("No updates available (latest %s, running %s)", release.version, __version__)
            return None
        log.info("Update available: %s", release.version)
        return release

    def is_staged(self, release: ReleaseInfo) -> bool:
        path = self.staged_path(release)
        if not path.exists() or path.stat().st_size == 0:
            return False
        if release.sha256:
            return _sha256_file(path) == release.sha256.lower()
        return True

    def download(self, release: ReleaseInfo, on_progress: Optional[ProgressCallback] = None) -> Path:
        """Stream the release artifact into the cache dir.

        ``on_progress`` receives a percentage and is called from the
        downloading thread.
        """
        path = self.staged_path(release)
        if self.is_staged(release):
            log.info("Update %s already downloaded", release.version)
            return path

        path.parent.mkdir(parents=True, exist_ok=True)
        partial = path.with_name(path.name + ".part")
        digest = hashlib.sha256()
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport, follow_redirects=True) as client:
                with client.stream("GET", release.download_url) as response:
                    response.raise_for_status()
                    total = int(response.headers.get("Content-Length") or 0)
                    received = 0
                    with open(partial, "wb") as handle:
                        for chunk in response.iter_bytes():
                            handle.write(chunk)
                            digest.update(chunk)
                            received += len(chunk)
                            if on_progress and total:
                                on_progress(min(100.0, received * 100.0 / total))
        except (httpx.HTTPError, OSError) as e:
            partial.unlink(missing_ok=True)
            raise DownloadFailed(f"Download of {release.version} failed: {e}") from e

        if received == 0:
            partial.unlink(missing_ok=True)
            raise DownloadFailed("Downloaded file is empty")
        if release.sha256 and digest.hexdigest() != release.sha256.lower():
            partial.unlink(missing_ok=True)
            raise DownloadFailed(f"Checksum mismatch for {release.version}")

        partial.replace(path)
        path.chmod(0o755)
        if on_progress:
            on_progress(100.0)
        log.info("Update downloaded; ready to install: %s", path)
        return path

    def install(self, path: Path) -> None:
        """Start the new build; the caller quits this process right after."""
        log.info("Launching update %s", path)
        self._launch([str(path), "--post-update"])

    @staticmethod
    def _spawn_detached(command: list[str]) -> None:
        subprocess.Popen(
            command,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for block in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(block)
    return digest.hexdigest()
