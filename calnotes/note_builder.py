from __future__ import annotations

import logging
import re
from datetime import datetime, timezone, tzinfo
from typing import Any

from calnotes.document_store import DocumentStore, DocumentStoreError, normalize_document_path
from calnotes.frontmatter import (
    FrontmatterError,
    delete_key_insensitive,
    find_key_insensitive,
    set_key_insensitive,
    split_frontmatter,
)
from calnotes.models import IdentityKeys, Occurrence, SourceConfig, UNTITLED_EVENT
from calnotes.reconciler import expected_end, expected_start
from calnotes.retry import RetryPolicy

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[\\/:*?\"<>|\x00-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")
COMPLETE_STATUS = "complete"


def sanitize_title(title: str) -> str:
    cleaned = _WHITESPACE.sub(" ", _UNSAFE_FILENAME_CHARS.sub("", title or "")).strip()
    return cleaned or UNTITLED_EVENT


def normalize_tag(value: str | None) -> str:
    return str(value or "").strip().lstrip("#").strip()


def merge_tags(existing: Any, tag: str) -> list[str]:
    if isinstance(existing, str):
        values = [part for part in re.split(r"[,\s]+", existing) if part]
    elif isinstance(existing, list):
        values = [str(part) for part in existing if str(part).strip()]
    else:
        values = []
    merged: list[str] = []
    for value in [*values, tag]:
        normalized = normalize_tag(value)
        if normalized and normalized not in merged:
            merged.append(normalized)
    return merged


def default_body(occurrence: Occurrence) -> str:
    body = f"# {occurrence.title}\n\n"
    if occurrence.description:
        body += f"## Description\n{occurrence.description}\n\n"
    if occurrence.attendees:
        body += "## Attendees\n" + "\n".join(f"- {name}" for name in occurrence.attendees) + "\n\n"
    body += "## Notes\n\n"
    return body


def build_note_fields(
    occurrence: Occurrence,
    keys: IdentityKeys,
    *,
    zone: tzinfo,
    use_end_duration: bool,
    now: datetime,
) -> dict[str, Any]:
    fields: dict[str, Any] = {
        keys.title: occurrence.title,
        keys.event_id: occurrence.id,
        keys.uid: occurrence.series_uid,
    }
    if occurrence.source_url:
        fields[keys.source_url] = occurrence.source_url
    if occurrence.end is not None and occurrence.end < now:
        fields[keys.status] = COMPLETE_STATUS
    fields[keys.start] = expected_start(occurrence, zone)
    fields[keys.end] = expected_end(occurrence, zone, use_end_duration)
    if occurrence.location:
        fields[keys.location] = occurrence.location
    return fields


class NoteBuilder:
    """Creates the document for an occurrence nobody has a note for yet."""

    def __init__(
        self,
        store: DocumentStore,
        keys: IdentityKeys,
        *,
        zone: tzinfo = timezone.utc,
        use_end_duration: bool = True,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.store = store
        self.keys = keys
        self.zone = zone
        self.use_end_duration = use_end_duration
        self.retry_policy = retry_policy or RetryPolicy()

    def _template(self, source: SourceConfig | None) -> tuple[dict[str, Any], str] | None:
        if source is None or not source.template:
            return None
        try:
            text = self.store.read_text(source.template)
        except DocumentStoreError:
            logger.warning("Template %s not found; using the default body", source.template)
            return None
        try:
            return split_frontmatter(text)
        except FrontmatterError as exc:
            logger.warning("Template %s has unreadable frontmatter (%s); using its text as body", source.template, exc)
            return {}, text

    def _available_path(self, folder: str, base_name: str) -> str:
        prefix = f"{folder}/" if folder else ""
        path = f"{prefix}{base_name}.md"
        counter = 1
        while self.store.exists(path):
            path = f"{prefix}{base_name} {counter}.md"
            counter += 1
        return path

    def document_fields(
        self,
        occurrence: Occurrence,
        source: SourceConfig | None,
        now: datetime,
    ) -> tuple[dict[str, Any], str]:
        template = self._template(source)
        fields: dict[str, Any] = dict(template[0]) if template else {}
        body = template[1] if template and template[1].strip() else default_body(occurrence)

        tag = normalize_tag(source.tag if source else "")
        if tag:
            set_key_insensitive(fields, self.keys.tags, merge_tags(find_key_insensitive(fields, self.keys.tags), tag))
        delete_key_insensitive(fields, self.keys.title)
        for key, value in build_note_fields(
            occurrence,
            self.keys,
            zone=self.zone,
            use_end_duration=self.use_end_duration,
            now=now,
        ).items():
            set_key_insensitive(fields, key, value)
        return fields, body

    def create(
        self,
        occurrence: Occurrence,
        source: SourceConfig | None = None,
        now: datetime | None = None,
    ) -> str:
        """Create the note and return its path.

        Path: ``<folder>/<title> <YYYY-MM-DD>.md`` with a numeric suffix when
        taken. Each attempt picks a fresh path, so losing a race against
        another writer just moves on to the next free name.
        """
        now = now or datetime.now(timezone.utc)
        fields, body = self.document_fields(occurrence, source, now)
        folder = normalize_document_path(source.folder) if source and source.folder else ""
        start = occurrence.start or now
        base_name = f"{sanitize_title(occurrence.title)} {start.astimezone(self.zone).strftime('%Y-%m-%d')}"

        def attempt(number: int) -> str:
            path = self._available_path(folder, base_name)
            logger.debug("Creating note attempt %s at %s", number + 1, path)
            return self.store.create(path, fields, body)

        path = self.retry_policy.run(attempt)
        logger.info("Created note %s for %r", path, occurrence.title)
        return path
