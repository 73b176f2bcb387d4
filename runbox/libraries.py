"""Trusted-origin allowlist and injectable library management."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import cast
from urllib.parse import urlsplit

from pydantic import ValidationError

from runbox import events as ev
from runbox.config import SandboxConfig
from runbox.net import NETWORK_TIMEOUT_S, FetchFn, fetch_text
from runbox.policy import build_policy
from runbox.schemas import AddResult, LibraryReference, ReferenceCheck
from runbox.store import KeyValueStore, MemoryStateStore, StateStore

DEFAULT_ORIGINS: tuple[str, ...] = (
    "raw.githubusercontent.com",
    "gist.githubusercontent.com",
    "cdn.jsdelivr.net",
    "gitlab.com",
    "bitbucket.org",
)

LIBRARIES_KEY = "sandbox_libraries"
ORIGINS_KEY = "sandbox_allowed_domains"

LOADER_NAME = "__runbox_load_library__"

_SCRIPT_PATH = re.compile(r"\.py(\?.*)?$", re.IGNORECASE)
_HOSTNAME = re.compile(r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*$")
_NAME_PATTERNS = [
    re.compile(r"^(.+?)[-_.]v?\d"),
    re.compile(r"^(.+?)\.min$"),
    re.compile(r"^(.+)$"),
]
_VERSION_PATTERNS = [
    re.compile(r"[-_.@/]v?(\d+\.\d+\.\d+(?:\.\d+)?(?:-[a-zA-Z0-9]+)*)"),
    re.compile(r"[-_.@/]v?(\d+\.\d+)"),
]


def extract_domain(url: str) -> str | None:
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None
    return parts.hostname


def guess_library_name(url: str) -> str:
    """Best-effort display name from the file part of the URL."""
    try:
        filename = urlsplit(url).path.rsplit("/", 1)[-1]
    except ValueError:
        return "Unknown Library"
    stem = re.sub(r"\.py$", "", filename, flags=re.IGNORECASE)
    for pattern in _NAME_PATTERNS:
        match = pattern.match(stem)
        if match and match.group(1):
            return match.group(1)
    return stem or "Unknown Library"


def extract_version(url: str) -> str | None:
    path = urlsplit(url).path
    for pattern in _VERSION_PATTERNS:
        match = pattern.search(path)
        if match:
            return match.group(1)
    return None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _comment_safe(value: str) -> str:
    return value.replace("\r", " ").replace("\n", " ")


class LibraryManager:
    """
    Owns the trusted-origin allowlist and the libraries injected into runs.

    Built-in origins are always trusted and can never be removed. User-added
    origins and library references are persisted through ``store``; if the
    store fails the manager keeps working from memory for the session.

    Mutating methods are not safe for concurrent callers.
    """

    default_origins: tuple[str, ...]
    network_timeout_s: float

    def __init__(
        self,
        events: ev.EventEmitter | None = None,
        store: KeyValueStore | None = None,
        fetch: FetchFn = fetch_text,
        network_timeout_s: float = NETWORK_TIMEOUT_S,
        default_origins: tuple[str, ...] = DEFAULT_ORIGINS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.events = events or ev.EventEmitter()
        self.store: KeyValueStore = store or MemoryStateStore()
        self.fetch = fetch
        self.network_timeout_s = network_timeout_s
        self.default_origins = tuple(default_origins)
        self.logger = logger or logging.getLogger(__name__)

        self._libraries: list[LibraryReference] = []
        self._origins: list[str] = list(self.default_origins)
        self._cache: dict[str, str] = {}
        self._persistent = True
        self._load_from_store()

    # --- persistence -------------------------------------------------

    def _load_from_store(self) -> None:
        try:
            raw_libraries = self.store.get(LIBRARIES_KEY)
            raw_origins = self.store.get(ORIGINS_KEY)
        except (sqlite3.Error, OSError) as exc:
            self.logger.error("Failed to load library state: %s", exc)
            self.logger.warning("Falling back to in-memory state with default origins")
            self._persistent = False
            return

        self._libraries = self._decode_libraries(raw_libraries)
        saved_origins = self._decode_origins(raw_origins)
        for origin in saved_origins:
            if origin not in self._origins:
                self._origins.append(origin)
        self.logger.info(
            "Loaded %d libraries and %d trusted origins",
            len(self._libraries),
            len(self._origins),
        )

    def _decode_libraries(self, raw: str | None) -> list[LibraryReference]:
        if not raw:
            return []
        try:
            loaded = cast(object, json.loads(raw))
        except json.JSONDecodeError:
            self.logger.warning("Stored library list is corrupt; starting empty")
            return []
        if not isinstance(loaded, list):
            return []
        libraries: list[LibraryReference] = []
        for item in cast(list[object], loaded):
            if not isinstance(item, dict):
                continue
            try:
                libraries.append(LibraryReference.from_dict(cast(dict[str, object], item)))
            except ValidationError:
                self.logger.warning("Skipping invalid stored library entry")
        return libraries

    def _decode_origins(self, raw: str | None) -> list[str]:
        if not raw:
            return []
        try:
            loaded = cast(object, json.loads(raw))
        except json.JSONDecodeError:
            self.logger.warning("Stored origin list is corrupt; using defaults only")
            return []
        if not isinstance(loaded, list):
            return []
        return [item for item in cast(list[object], loaded) if isinstance(item, str)]

    def _persist(self, key: str, value: str) -> None:
        if not self._persistent:
            return
        try:
            self.store.set(key, value)
        except (sqlite3.Error, OSError) as exc:
            self.logger.error("Failed to persist %s: %s", key, exc)
            self.logger.warning("Library state is now in-memory only for this session")
            self._persistent = False

    def _save_libraries(self) -> None:
        payload = json.dumps([lib.model_dump(mode="json") for lib in self._libraries])
        self._persist(LIBRARIES_KEY, payload)

    def _save_origins(self) -> None:
        self._persist(ORIGINS_KEY, json.dumps(self.get_custom_origins()))

    @property
    def persistent(self) -> bool:
        return self._persistent

    @classmethod
    def from_config(
        cls,
        config: SandboxConfig,
        events: ev.EventEmitter | None = None,
        logger: logging.Logger | None = None,
    ) -> "LibraryManager":
        logger = logger or logging.getLogger(__name__)
        store: KeyValueStore
        if config.state_path is None:
            store = MemoryStateStore()
        else:
            try:
                store = StateStore(config.state_path)
            except (sqlite3.Error, OSError) as exc:
                logger.error("Cannot open state store %s: %s", config.state_path, exc)
                store = MemoryStateStore()
        return cls(
            events=events,
            store=store,
            network_timeout_s=config.network_timeout_s,
            logger=logger,
        )

    # --- origins -----------------------------------------------------

    def is_origin_trusted(self, origin: str) -> bool:
        return origin in self._origins

    def add_origin(self, origin: str) -> bool:
        origin = origin.strip().lower()
        if not origin or not _HOSTNAME.match(origin):
            self.logger.warning("Refusing invalid origin: %r", origin)
            return False
        if origin in self._origins:
            return False
        self._origins.append(origin)
        self._save_origins()
        self.logger.info("Origin added to allowlist: %s", origin)
        _ = self.events.emit(ev.DOMAIN_ADDED, {"domain": origin})
        return True

    def remove_origin(self, origin: str) -> bool:
        origin = origin.strip().lower()
        if origin in self.default_origins:
            self.logger.warning("Cannot remove default origin: %s", origin)
            return False
        if origin not in self._origins:
            return False
        self._origins.remove(origin)
        self._save_origins()
        self.logger.info("Origin removed from allowlist: %s", origin)
        _ = self.events.emit(ev.DOMAIN_REMOVED, {"domain": origin})
        return True

    def get_origins(self) -> list[str]:
        return list(self._origins)

    def get_custom_origins(self) -> list[str]:
        return [origin for origin in self._origins if origin not in self.default_origins]

    # --- libraries ---------------------------------------------------

    def validate_reference(self, url: object) -> ReferenceCheck:
        if not url or not isinstance(url, str):
            return ReferenceCheck(valid=False, error="URL is required")
        domain = extract_domain(url)
        if not domain:
            return ReferenceCheck(valid=False, error="Invalid URL format")
        if urlsplit(url.strip()).scheme != "https":
            return ReferenceCheck(valid=False, error="URL must use https")
        if not _SCRIPT_PATH.search(url.strip()):
            return ReferenceCheck(valid=False, error="URL must point to a Python module (.py)")
        allowed = self.is_origin_trusted(domain)
        return ReferenceCheck(
            valid=True,
            domain=domain,
            domain_allowed=allowed,
            needs_approval=not allowed,
        )

    def add_reference(self, url: str, name: str | None = None) -> AddResult:
        check = self.validate_reference(url)
        if not check.valid:
            self.logger.warning("Library validation failed: %s", check.error)
            return AddResult(success=False, error=check.error)

        url = url.strip()
        if any(lib.url == url for lib in self._libraries):
            self.logger.warning("Library already exists: %s", url)
            return AddResult(success=False, error="Library already added")

        display_name = name or guess_library_name(url)
        if check.needs_approval:
            self.logger.info("Origin approval needed for: %s", check.domain)
            _ = self.events.emit(
                ev.DOMAIN_TRUST_REQUEST,
                {"domain": check.domain, "url": url, "name": display_name},
            )
            return AddResult(success=False, needs_approval=True, domain=check.domain)

        library = LibraryReference(
            id=f"lib_{uuid.uuid4().hex[:12]}",
            name=display_name,
            url=url,
            domain=cast(str, check.domain),
        )
        self._libraries.append(library)
        self._save_libraries()
        self.logger.info("Library added: %s", library.name)
        _ = self.events.emit(ev.LIBRARY_ADDED, {"library": library})
        return AddResult(success=True, library=library)

    def remove_reference(self, library_id: str) -> bool:
        for index, library in enumerate(self._libraries):
            if library.id == library_id:
                removed = self._libraries.pop(index)
                self._save_libraries()
                self.logger.info("Library removed: %s", removed.name)
                _ = self.events.emit(ev.LIBRARY_REMOVED, {"library": removed})
                return True
        self.logger.warning("Library not found for removal: %s", library_id)
        return False

    def get_libraries(self) -> list[LibraryReference]:
        return list(self._libraries)

    # --- bundle and policy ---------------------------------------------

    async def _fetch_source(self, library: LibraryReference) -> str:
        cached = self._cache.get(library.url)
        if cached is not None:
            self.logger.debug("Using cached content for: %s", library.name)
            return cached
        self.logger.debug("Fetching library: %s from %s", library.name, library.url)
        content = await asyncio.to_thread(self.fetch, library.url, self.network_timeout_s)
        self._cache[library.url] = content
        return content

    async def build_bundle(self) -> str:
        """Fetch every library and return the injectable bundle text."""
        if not self._libraries:
            return ""

        entries: list[str] = []
        for library in self._libraries:
            header = [
                f"# Library: {_comment_safe(library.name)}",
                f"# Source: {_comment_safe(library.url)}",
            ]
            try:
                content = await self._fetch_source(library)
            except Exception as exc:  # noqa: BLE001
                self.logger.error("Failed to fetch library %s: %s", library.name, exc)
                message = f"Failed to load library {library.name}: {exc}"
                entries.append(
                    "\n".join(
                        header
                        + [
                            "# Status: FAILED TO LOAD",
                            f"console.error({message!r})",
                        ]
                    )
                )
                continue

            entries.append(
                "\n".join(
                    header
                    + [
                        f"# Fetched: {_now_iso()}",
                        f"{LOADER_NAME}({library.name!r}, {library.module_name!r}, "
                        f"{library.url!r}, {content!r})",
                    ]
                )
            )
            self.logger.info("Loaded library: %s", library.name)

        bundle = "\n\n".join(entries)
        self.logger.info(
            "Injecting %d libraries (%.1fKB)", len(self._libraries), len(bundle) / 1024
        )
        return bundle

    def build_policy(self) -> str:
        return build_policy(self._origins)

    # --- housekeeping --------------------------------------------------

    def clear_cache(self) -> None:
        self._cache.clear()

    def clear(self) -> None:
        """Drop all libraries and custom origins."""
        self._libraries = []
        self._origins = list(self.default_origins)
        self._cache.clear()
        if self._persistent:
            try:
                self.store.delete(LIBRARIES_KEY)
                self.store.delete(ORIGINS_KEY)
            except (sqlite3.Error, OSError) as exc:
                self.logger.error("Failed to clear stored library state: %s", exc)
                self._persistent = False
        self.logger.info("All libraries and custom origins cleared")
        _ = self.events.emit(ev.LIBRARIES_CLEARED, {})

    def get_stats(self) -> dict[str, int]:
        return {
            "library_count": len(self._libraries),
            "domain_count": len(self._origins),
            "custom_domain_count": len(self.get_custom_origins()),
            "cached_count": len(self._cache),
        }
