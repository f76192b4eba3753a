from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timezone, tzinfo
from pathlib import PurePosixPath
from typing import Any, Iterable

from calnotes.document_store import DocumentStore
from calnotes.frontmatter import find_key_insensitive, normalize_identity_value, stored_text
from calnotes.models import (
    IdentityKeys,
    Occurrence,
    StoredDocument,
    normalize_calendar_url,
    parse_frontmatter_datetime,
)

logger = logging.getLogger(__name__)

TRASH_PREFIX = ".trash"
# Suffixes the normalizer appends to a series uid: stable "20240226T093000",
# legacy epoch milliseconds, and the duplicate-uid marker.
_ID_SUFFIX_PATTERN = re.compile(r"[-_](?:dup[-_])?(?:\d{8}T\d{6}|\d{13,})$")
_STABLE_SUFFIX_PATTERN = re.compile(r"(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})$")
_LEGACY_SUFFIX_PATTERN = re.compile(r"[-_](\d{13,})$")


def normalize_comparable_path(value: str | None) -> str:
    if not value or not isinstance(value, str):
        return ""
    return value.strip().strip("/").lower()


def matches_wildcard(pattern: str, value: str) -> bool:
    regex = "^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$"
    return re.match(regex, value, re.IGNORECASE) is not None


def matches_exclusion_pattern(normalized_path: str, normalized_basename: str, raw_pattern: str) -> bool:
    """Match a document against one ignore pattern.

    Supported forms: ``re:<regex>``, ``name:<wildcard>``, ``path:<target>``
    and a bare target. A target with ``*`` is a wildcard over the path or the
    basename; a target ending in ``/`` only matches as a folder prefix;
    anything else matches as a folder prefix or an exact basename.
    """
    pattern = str(raw_pattern or "").strip()
    if not pattern:
        return False
    lowered = pattern.lower()

    if lowered.startswith("re:"):
        source = pattern[3:].strip()
        if not source:
            return False
        try:
            regex = re.compile(source, re.IGNORECASE)
        except re.error:
            return False
        return bool(regex.search(normalized_path) or regex.search(normalized_basename))

    if lowered.startswith("name:"):
        target = pattern[5:].strip().lower()
        if not target:
            return False
        return matches_wildcard(target, normalized_basename)

    path_target = pattern[5:].strip() if lowered.startswith("path:") else pattern
    has_trailing_slash = path_target.endswith(("/", "\\"))
    target = normalize_comparable_path(path_target)
    if not target:
        return False
    if "*" in target:
        return matches_wildcard(target, normalized_path) or matches_wildcard(target, normalized_basename)
    if normalized_path == target or normalized_path.startswith(f"{target}/"):
        return True
    if has_trailing_slash:
        return False
    return normalized_basename == target


def is_ignored_path(path: str, patterns: Iterable[str]) -> bool:
    normalized_path = normalize_comparable_path(path)
    normalized_basename = normalize_comparable_path(PurePosixPath(path).stem)
    return any(matches_exclusion_pattern(normalized_path, normalized_basename, p) for p in patterns)


def is_archived_path(path: str, archive_folder: str) -> bool:
    folder = str(archive_folder or "").strip().strip("/")
    if not folder:
        return False
    return path == folder or path.startswith(f"{folder}/")


def extract_uid(event_id: str) -> str | None:
    """Strip the occurrence suffix from a composite event id."""
    match = _ID_SUFFIX_PATTERN.search(event_id or "")
    if match and match.start() > 0:
        return event_id[: match.start()]
    return None


def recurrence_date_from_id(event_id: str, zone: tzinfo) -> datetime | None:
    stable = _STABLE_SUFFIX_PATTERN.search(event_id or "")
    if stable:
        try:
            return datetime(*(int(part) for part in stable.groups()), tzinfo=zone)
        except ValueError:
            return None
    legacy = _LEGACY_SUFFIX_PATTERN.search(event_id or "")
    if legacy:
        try:
            return datetime.fromtimestamp(int(legacy.group(1)) / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return None


def fallback_key(uid: str, start: datetime | None) -> str:
    rounded = int(math.floor(start.timestamp() / 60 + 0.5)) * 60 if start is not None else 0
    return f"{uid}|{rounded}"


def occurrence_fallback_key(occurrence: Occurrence) -> str:
    uid = (occurrence.series_uid or extract_uid(occurrence.id) or occurrence.id or "").strip()
    return fallback_key(uid, occurrence.start)


def stored_document_from_fields(
    path: str,
    fields: dict[str, Any],
    keys: IdentityKeys,
    archive_folder: str,
    zone: tzinfo,
) -> StoredDocument | None:
    event_id = normalize_identity_value(find_key_insensitive(fields, keys.event_id))
    uid_raw = normalize_identity_value(find_key_insensitive(fields, keys.uid))
    uid = uid_raw or ((extract_uid(event_id) or event_id) if event_id else "")
    if not uid and not event_id:
        return None

    # Stored values stay verbatim; only the fallback key parses the start.
    stored_start = stored_text(find_key_insensitive(fields, keys.start))
    raw_end = find_key_insensitive(fields, keys.end)
    if isinstance(raw_end, int) and not isinstance(raw_end, bool):
        stored_end: str | int = raw_end
    else:
        stored_end = stored_text(raw_end)
    source_url = normalize_calendar_url(normalize_identity_value(find_key_insensitive(fields, keys.source_url)))

    return StoredDocument(
        path=path,
        event_id=event_id,
        uid=uid,
        stored_start=stored_start,
        stored_end=stored_end,
        stored_title=stored_text(find_key_insensitive(fields, keys.title)),
        stored_location=stored_text(find_key_insensitive(fields, keys.location)),
        start=parse_frontmatter_datetime(stored_start, zone) if stored_start else None,
        source_url=source_url or None,
        status=normalize_identity_value(find_key_insensitive(fields, keys.status)),
        cancelled_at=normalize_identity_value(find_key_insensitive(fields, keys.cancelled_at)),
        orphan_candidate_at=normalize_identity_value(find_key_insensitive(fields, keys.orphan_candidate_at)),
        archived=is_archived_path(path, archive_folder),
    )


class DocumentIndex:
    """Lookup of tracked documents by event id and by ``uid|start`` key.

    Collisions keep the first document seen in path order, except that an
    active document takes over an event id held by an archived one.
    """

    def __init__(self) -> None:
        self.documents: list[StoredDocument] = []
        self.by_event_id: dict[str, StoredDocument] = {}
        self.by_fallback_key: dict[str, StoredDocument] = {}

    def add(self, document: StoredDocument) -> None:
        self.documents.append(document)
        if document.event_id:
            held = self.by_event_id.get(document.event_id)
            if held is None or (held.archived and not document.archived):
                self.by_event_id[document.event_id] = document
        if document.uid and document.start is not None:
            self.by_fallback_key.setdefault(fallback_key(document.uid, document.start), document)

    def register(self, document: StoredDocument) -> None:
        self.documents.append(document)
        if document.event_id:
            self.by_event_id[document.event_id] = document
        if document.uid and document.start is not None:
            self.by_fallback_key[fallback_key(document.uid, document.start)] = document

    def rebind_event_id(self, document: StoredDocument, event_id: str) -> None:
        document.event_id = event_id
        self.by_event_id[event_id] = document

    def primary(self, event_id: str) -> StoredDocument | None:
        return self.by_event_id.get(event_id)

    def fallback(self, key: str) -> StoredDocument | None:
        return self.by_fallback_key.get(key)

    @classmethod
    def build(
        cls,
        store: DocumentStore,
        keys: IdentityKeys,
        *,
        archive_folder: str = "",
        ignore_paths: Iterable[str] = (),
        zone: tzinfo = timezone.utc,
    ) -> "DocumentIndex":
        index = cls()
        patterns = list(ignore_paths)
        for path in store.list_documents():
            if path.lower().startswith(TRASH_PREFIX):
                continue
            if is_ignored_path(path, patterns):
                continue
            try:
                fields = store.read_fields(path)
            except Exception as exc:
                logger.warning("Skipping unreadable document %s: %s", path, exc)
                continue
            if not fields:
                continue
            document = stored_document_from_fields(path, fields, keys, archive_folder, zone)
            if document is not None:
                index.add(document)
        return index
