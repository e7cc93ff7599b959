"""Available Lucee versions with an on-disk cache and offline fallback."""
from __future__ import annotations

import json
import logging
import math
import os
import ssl
import tempfile
import time
import urllib.error
import urllib.request
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

import certifi
from packaging.version import InvalidVersion, Version

from .. import get_version
from ..config import VERSIONS_URL

LOGGER = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 24 * 60 * 60

FALLBACK_VERSIONS: tuple[str, ...] = (
    "7.0.0.346",
    "7.0.0.145",
    "7.0.0.090",
    "6.2.2.91",
    "6.2.1.75",
    "6.2.0.66",
    "6.1.8.29",
    "6.1.7.25",
    "6.1.6.16",
    "6.0.4.10",
    "5.4.5.17",
)

Fetcher = Callable[[str, float], object]


class VersionCatalogError(RuntimeError):
    """Raised internally when the remote catalogue cannot be used."""


@dataclass(frozen=True)
class VersionCacheEntry:
    """Contents of the versions cache file."""

    versions: list[str]
    last_updated: int | None
    source: str | None

    def age_seconds(self, now: float) -> float | None:
        """Return the cache age in seconds, if the timestamp is known."""
        if self.last_updated is None:
            return None
        return now - self.last_updated / 1000.0

    def to_dict(self) -> dict[str, object]:
        """Return the on-disk representation."""
        return {
            "versions": list(self.versions),
            "lastUpdated": self.last_updated,
            "source": self.source,
        }


def sort_versions(versions: Iterable[str]) -> list[str]:
    """Return unique *versions* newest first.

    PEP 440-parseable strings are ordered numerically; anything else follows,
    ordered by plain string comparison.
    """
    parsed: list[tuple[Version, str]] = []
    unparsed: list[str] = []
    for value in set(versions):
        try:
            parsed.append((Version(value), value))
        except InvalidVersion:
            unparsed.append(value)
    parsed.sort(key=lambda item: (item[0], item[1]), reverse=True)
    unparsed.sort(reverse=True)
    return [value for _, value in parsed] + unparsed


def _timestamp_millis(value: object) -> int | None:
    """Return *value* as epoch millis, or None when it is not a usable number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        numeric = float(value)
    except OverflowError:
        return None
    if not math.isfinite(numeric):
        return None
    return int(numeric)


def _ssl_context() -> ssl.SSLContext:
    cafile = os.environ.get("SSL_CERT_FILE")
    if cafile and Path(cafile).is_file():
        return ssl.create_default_context(cafile=cafile)
    return ssl.create_default_context(cafile=certifi.where())


def _fetch_json(url: str, timeout: float) -> object:
    request = urllib.request.Request(
        url,
        headers={
            "Accept": "application/json",
            "User-Agent": f"luceectl/{get_version()}",
        },
    )
    try:
        context = _ssl_context()
        with urllib.request.urlopen(  # noqa: S310
            request, timeout=timeout, context=context
        ) as resp:
            status = getattr(resp, "status", 200)
            if status != 200:
                raise VersionCatalogError(f"Version registry returned HTTP {status}.")
            payload = resp.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raise VersionCatalogError(f"Version registry request failed: {exc}") from exc
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        raise VersionCatalogError(f"Version registry unreachable: {exc}") from exc
    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        raise VersionCatalogError(f"Version registry returned invalid JSON: {exc}") from exc


class VersionCatalog:
    """Provide the list of installable Lucee versions."""

    def __init__(
        self,
        cache_path: Path,
        *,
        source_url: str = VERSIONS_URL,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
        fetcher: Fetcher | None = None,
    ) -> None:
        self.cache_path = cache_path
        self.source_url = source_url
        self.timeout = timeout
        self._clock = clock
        self._fetcher = fetcher or _fetch_json

    def available_versions(self, bypass_cache: bool = False) -> list[str]:
        """Return available versions, newest first. Never raises."""
        if not bypass_cache:
            entry = self.cache_entry()
            if entry is not None and entry.versions and self._is_fresh(entry):
                return list(entry.versions)

        try:
            versions = self._fetch_remote()
        except VersionCatalogError as exc:
            LOGGER.warning("Falling back from remote version list: %s", exc)
            return self._fallback()

        self._write_cache(versions)
        return versions

    def cache_entry(self) -> VersionCacheEntry | None:
        """Return the parsed cache file, or None if absent or unreadable."""
        try:
            raw = json.loads(self.cache_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            LOGGER.warning("Ignoring unreadable version cache %s: %s", self.cache_path, exc)
            return None
        if not isinstance(raw, dict):
            return None

        versions_raw = raw.get("versions")
        versions = (
            [item for item in versions_raw if isinstance(item, str)]
            if isinstance(versions_raw, list)
            else []
        )
        last_updated = _timestamp_millis(raw.get("lastUpdated"))
        if last_updated is None:
            last_updated = self._mtime_millis()
        source = raw.get("source")
        return VersionCacheEntry(
            versions=versions,
            last_updated=last_updated,
            source=source if isinstance(source, str) else None,
        )

    def clear_cache(self) -> bool:
        """Delete the cache file; return True when a file was removed."""
        try:
            self.cache_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            LOGGER.warning("Unable to delete version cache %s: %s", self.cache_path, exc)
            return False
        return True

    # ------------------------------------------------------------------
    def _is_fresh(self, entry: VersionCacheEntry) -> bool:
        age = entry.age_seconds(self._clock())
        return age is not None and age < CACHE_TTL_SECONDS

    def _mtime_millis(self) -> int | None:
        try:
            return int(self.cache_path.stat().st_mtime * 1000)
        except OSError:
            return None

    def _fetch_remote(self) -> list[str]:
        try:
            payload = self._fetcher(self.source_url, self.timeout)
        except VersionCatalogError:
            raise
        except Exception as exc:  # noqa: BLE001 - any fetch failure degrades
            raise VersionCatalogError(str(exc)) from exc

        if not isinstance(payload, list):
            raise VersionCatalogError("Version registry did not return a JSON array.")
        found = {
            item["version"]
            for item in payload
            if isinstance(item, dict) and isinstance(item.get("version"), str)
        }
        if not found:
            raise VersionCatalogError("Version registry returned no versions.")
        return sort_versions(found)

    def _fallback(self) -> list[str]:
        entry = self.cache_entry()
        if entry is not None and entry.versions:
            return list(entry.versions)
        return list(FALLBACK_VERSIONS)

    def _write_cache(self, versions: list[str]) -> None:
        entry = VersionCacheEntry(
            versions=versions,
            last_updated=int(self._clock() * 1000),
            source=self.source_url,
        )
        tmp_path: Path | None = None
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.cache_path.parent),
                prefix=f".{self.cache_path.name}.",
            )
            tmp_path = Path(tmp_name)
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(entry.to_dict(), handle, indent=2)
            os.replace(tmp_path, self.cache_path)
        except OSError as exc:
            LOGGER.warning("Unable to write version cache %s: %s", self.cache_path, exc)
        finally:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)


__all__ = [
    "CACHE_TTL_SECONDS",
    "FALLBACK_VERSIONS",
    "VersionCacheEntry",
    "VersionCatalog",
    "VersionCatalogError",
    "sort_versions",
]
