"""Version catalog.

Wraps a :class:`~bisket.source.VersionSource`, keeps the last fetched tag
list and tells subscribers when the set of versions changes.

Tag convention: only tags starting with ``@`` are considered. ``@preview/<name>``
is a preview version, any other ``@<name>`` is a standard version.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Union

from packaging.version import InvalidVersion
from packaging.version import Version as PepVersion

from .errors import SourceUnavailable, VersionNotFound
from .events import log_event
from .source import VersionSource

logger = logging.getLogger(__name__)

TAG_MARKER = "@"
PREVIEW_MARKER = "@preview/"
VERSION_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/\-]{0,127}$")


class VersionKind(str, Enum):
    STANDARD = "Standard"
    PREVIEW = "Preview"


@dataclass(frozen=True)
class Version:
    name: str  # tag without marker, e.g. "v1.1.0" or "feat-x"
    tag: str  # git tag, e.g. "@v1.1.0" or "@preview/feat-x"
    kind: VersionKind = VersionKind.STANDARD

    @property
    def is_preview(self) -> bool:
        return self.kind is VersionKind.PREVIEW

    @property
    def key(self) -> str:
        """Identity across both kinds: ``v1.2.0`` or ``preview/v1.2.0``."""
        return f"preview/{self.name}" if self.is_preview else self.name


def valid_version_name(name: str) -> bool:
    # Names become directory names under the work dir.
    return bool(VERSION_NAME_RE.match(name)) and ".." not in name


def classify_tag(tag: str) -> Version | None:
    """Return the :class:`Version` for a marked tag, or None if the tag is ignored."""
    tag = tag.strip()
    if not tag.startswith(TAG_MARKER):
        return None
    if tag.startswith(PREVIEW_MARKER):
        name, kind = tag[len(PREVIEW_MARKER):], VersionKind.PREVIEW
    else:
        name, kind = tag[len(TAG_MARKER):], VersionKind.STANDARD
    if not valid_version_name(name):
        return None
    return Version(name=name, tag=tag, kind=kind)


def partition_tags(tags: Iterable[str]) -> tuple[list[Version], list[Version]]:
    """Split raw tags into (standard, previews), dropping unmarked/invalid tags and duplicates.

    A standard and a preview version may share a name; duplicates are
    detected per kind.
    """
    standard: list[Version] = []
    previews: list[Version] = []
    seen: set[str] = set()
    for raw in tags:
        v = classify_tag(raw)
        if v is None:
            continue
        if v.key in seen:
            continue
        seen.add(v.key)
        (previews if v.is_preview else standard).append(v)
    return standard, previews


def version_sort_key(name: str) -> tuple:
    """Total order over version names.

    PEP 440 parseable names (a leading ``v`` is accepted) rank above
    unparseable ones; unparseable names compare lexically; ties on the
    parsed value fall back to the raw name.
    """
    try:
        return (1, PepVersion(name), name)
    except InvalidVersion:
        return (0, name, name)


def latest_version(versions: Iterable[Version]) -> Version | None:
    versions = list(versions)
    if not versions:
        return None
    return max(versions, key=lambda v: version_sort_key(v.name))


@dataclass(frozen=True)
class VersionUpdated:
    tag: str


@dataclass(frozen=True)
class VersionRemoved:
    tag: str


@dataclass(frozen=True)
class PreviewAdded:
    tag: str


CatalogEvent = Union[VersionUpdated, VersionRemoved, PreviewAdded]


@dataclass(frozen=True)
class CatalogSnapshot:
    standard: tuple[Version, ...] = ()
    previews: tuple[Version, ...] = ()
    latest: Version | None = None

    def keys(self) -> set[str]:
        return {v.key for v in (*self.standard, *self.previews)}

    def preview_keys(self) -> set[str]:
        return {v.key for v in self.previews}

    def find(self, ref: str) -> Version | None:
        """Look up by key (``v1.0.0``, ``preview/feat-x``) or by git tag."""
        for v in (*self.standard, *self.previews):
            if ref in (v.key, v.tag):
                return v
        return None


class Catalog:
    """In-memory cache of known versions, refreshed from the version source."""

    def __init__(self, source: VersionSource, repo_url: str, app_name: str = "app"):
        self.source = source
        self.repo_url = repo_url
        self.app_name = app_name
        self._lock = Lock()
        self._snapshot = CatalogSnapshot()
        self._subscribers: list[Callable[[CatalogEvent], None]] = []

    def subscribe(self, callback: Callable[[CatalogEvent], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def snapshot(self) -> CatalogSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def standard(self) -> list[Version]:
        return list(self.snapshot().standard)

    @property
    def previews(self) -> list[Version]:
        return list(self.snapshot().previews)

    @property
    def latest(self) -> Version | None:
        return self.snapshot().latest

    def find_version(self, ref: str) -> Version:
        v = self.snapshot().find(ref)
        if v is None:
            raise VersionNotFound(f"Version not found: {ref}")
        return v

    def refresh(self) -> bool:
        """Re-read tags from the source.

        Returns True if any change event was emitted. An unreachable source
        is logged and the cached list is kept.
        """
        try:
            tags = self.source.list_tags(self.repo_url)
        except SourceUnavailable as e:
            log_event("WARN", f"Failed to fetch tags, continuing with cached list: {e}", app=self.app_name)
            return False

        standard, previews = partition_tags(tags)
        new = CatalogSnapshot(standard=tuple(standard), previews=tuple(previews), latest=latest_version(standard))

        with self._lock:
            old = self._snapshot
            self._snapshot = new
            subscribers = list(self._subscribers)

        events: list[CatalogEvent] = []
        old_latest = old.latest.key if old.latest else None
        if new.latest is not None and new.latest.key != old_latest:
            events.append(VersionUpdated(new.latest.key))
        for key in sorted(new.preview_keys() - old.preview_keys()):
            events.append(PreviewAdded(key))
        for key in sorted(old.keys() - new.keys()):
            events.append(VersionRemoved(key))

        logger.info(
            "Catalog refreshed: %d standard, %d preview, latest=%s",
            len(new.standard),
            len(new.previews),
            new.latest.name if new.latest else None,
        )
        for ev in events:
            if isinstance(ev, VersionUpdated):
                log_event("INFO", f"Version updated to {ev.tag}", app=self.app_name)
            elif isinstance(ev, PreviewAdded):
                log_event("INFO", f"Detected preview version: {ev.tag}", app=self.app_name)
            else:
                log_event("INFO", f"Version removed: {ev.tag}", app=self.app_name)
            for fn in subscribers:
                try:
                    fn(ev)
                except Exception as e:
                    logger.error("Catalog subscriber failed on %r: %s: %s", ev, type(e).__name__, e)
        return bool(events)
