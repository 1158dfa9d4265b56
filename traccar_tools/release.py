"""Release index access: find the newest Traccar build and download it.

The index is the GitHub "latest release" endpoint. The asset is selected by
a fixed platform prefix and archive suffix, and the version string is the
asset filename with both stripped (``traccar-linux-64-6.7.1.zip`` → ``6.7.1``).
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from packaging.version import InvalidVersion, Version

from .config import ReleaseConfig
from .errors import DownloadError, NetworkError, ReleaseNotFound

LOGGER = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


@dataclass(slots=True, frozen=True)
class ReleaseInfo:
    """Metadata about the newest matching release."""

    version: str
    download_url: str
    asset_name: str
    tag: str = ""
    published_at: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "version": self.version,
            "download_url": self.download_url,
            "asset_name": self.asset_name,
            "tag": self.tag,
            "published_at": self.published_at,
        }


@dataclass(slots=True, frozen=True)
class LocalArchive:
    """A fully retrieved release archive on local disk."""

    path: Path
    version: str
    sha256: str
    size: int


def validate_https_url(url: str) -> None:
    if not url.startswith("https://"):
        raise ValueError(f"Refusing non-HTTPS URL for release operation: {url}")


def version_from_asset_name(name: str, prefix: str, suffix: str) -> str | None:
    """Derive the version from an asset filename, or None if it doesn't match."""
    if not (name.startswith(prefix) and name.endswith(suffix)):
        return None
    version = name[len(prefix) : len(name) - len(suffix)]
    return version or None


def is_newer(candidate: str, current: str) -> bool:
    """True if *candidate* is a newer version than *current*.

    Unparseable versions fall back to plain inequality.
    """
    try:
        return Version(candidate) > Version(current)
    except InvalidVersion:
        return candidate != current


class ReleaseFetcher:
    """Query the release index and retrieve archives."""

    def __init__(self, config: ReleaseConfig) -> None:
        self._config = config

    def _api_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Accept": "application/vnd.github+json"}
        if self._config.github_token:
            headers["Authorization"] = f"Bearer {self._config.github_token}"
        return headers

    def _api_get(self, url: str) -> Any:
        validate_https_url(url)
        req = Request(url, headers=self._api_headers())
        try:
            with urlopen(req, timeout=self._config.api_timeout_s) as resp:  # noqa: S310
                body = resp.read()
        except HTTPError as exc:
            if exc.code == 404:
                raise ReleaseNotFound(f"No published release at {url}") from exc
            raise NetworkError(f"Release index returned HTTP {exc.code}: {url}") from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise NetworkError(f"Release index unreachable: {exc}") from exc
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise NetworkError(f"Release index returned malformed JSON: {exc}") from exc

    def _open_download(self, url: str) -> Any:
        validate_https_url(url)
        headers = self._api_headers()
        headers["Accept"] = "application/octet-stream"
        req = Request(url, headers=headers)
        return urlopen(req, timeout=self._config.api_timeout_s)  # noqa: S310

    def select_asset(self, release: dict[str, Any]) -> ReleaseInfo:
        """Pick the platform archive from a release document."""
        prefix, suffix = self._config.asset_prefix, self._config.asset_suffix
        for asset in release.get("assets") or []:
            name = str(asset.get("name", ""))
            url = str(asset.get("browser_download_url", ""))
            version = version_from_asset_name(name or os.path.basename(url), prefix, suffix)
            if version is None or not url:
                continue
            return ReleaseInfo(
                version=version,
                download_url=url,
                asset_name=name or os.path.basename(url),
                tag=str(release.get("tag_name", "")),
                published_at=str(release.get("published_at", "")),
            )
        raise ReleaseNotFound(
            f"No asset matching '{prefix}*{suffix}' in release "
            f"'{release.get('tag_name', '?')}' of {self._config.repo}"
        )

    def fetch_latest_release(self) -> ReleaseInfo:
        """Return the newest release archive.  Read-only; safe to repeat."""
        LOGGER.debug("Querying latest release of %s", self._config.repo)
        release = self._api_get(self._config.latest_url)
        if not isinstance(release, dict):
            raise ReleaseNotFound("Unexpected release index response format")
        info = self.select_asset(release)
        LOGGER.info("Latest Traccar version: %s", info.version)
        return info

    def download_archive(self, release: ReleaseInfo, dest: Path) -> LocalArchive:
        """Retrieve the archive to *dest*.

        Data is streamed into a temp file beside *dest* and only renamed into
        place once the transfer is complete, so a partial download is never
        left at *dest*.
        """
        try:
            resp = self._open_download(release.download_url)
        except (URLError, TimeoutError, OSError) as exc:
            raise NetworkError(f"Archive host unreachable for {release.asset_name}: {exc}") from exc

        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(dest.parent), suffix=".part")
        tmp_path = Path(tmp_name)
        hasher = hashlib.sha256()
        total = 0
        try:
            with resp, os.fdopen(tmp_fd, "wb") as tmp_f:
                expected = resp.headers.get("Content-Length")
                try:
                    while True:
                        chunk = resp.read(_CHUNK_SIZE)
                        if not chunk:
                            break
                        hasher.update(chunk)
                        tmp_f.write(chunk)
                        total += len(chunk)
                except (URLError, TimeoutError, OSError) as exc:
                    raise DownloadError(f"Download of {release.asset_name} failed: {exc}") from exc
                tmp_f.flush()
                os.fsync(tmp_f.fileno())
            if expected is not None and expected.isdigit() and int(expected) != total:
                raise DownloadError(
                    f"Download of {release.asset_name} truncated: "
                    f"got {total} of {expected} bytes"
                )
            if total == 0:
                raise DownloadError(f"Download of {release.asset_name} returned no data")
            os.replace(tmp_path, dest)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        sha = hasher.hexdigest()
        LOGGER.info("Downloaded %s (%d bytes, sha256=%s)", release.asset_name, total, sha)
        return LocalArchive(path=dest, version=release.version, sha256=sha, size=total)
