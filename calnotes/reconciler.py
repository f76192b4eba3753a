from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import tzinfo
from typing import Any

from calnotes.frontmatter import find_key_insensitive, set_key_insensitive
from calnotes.models import IdentityKeys, Occurrence, StoredDocument, format_frontmatter_datetime


@dataclass
class FieldDiff:
    name: str
    key: str
    before: Any
    after: Any


@dataclass
class ReconcileOutcome:
    changes: list[FieldDiff] = field(default_factory=list)
    repaired: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.changes)

    def field_names(self) -> list[str]:
        return [change.name for change in self.changes]


def duration_minutes(occurrence: Occurrence) -> int:
    if occurrence.start is None or occurrence.end is None:
        return 0
    seconds = (occurrence.end - occurrence.start).total_seconds()
    return int(math.floor(seconds / 60 + 0.5))


def expected_start(occurrence: Occurrence, zone: tzinfo) -> str:
    if occurrence.start is None:
        return ""
    return format_frontmatter_datetime(occurrence.start, zone)


def expected_end(occurrence: Occurrence, zone: tzinfo, use_end_duration: bool) -> str | int:
    if use_end_duration:
        return duration_minutes(occurrence)
    end = occurrence.end or occurrence.start
    if end is None:
        return ""
    return format_frontmatter_datetime(end, zone)


def diff_document(
    document: StoredDocument,
    occurrence: Occurrence,
    keys: IdentityKeys,
    *,
    zone: tzinfo,
    use_end_duration: bool,
    source_url: str | None,
    repair: bool = False,
) -> ReconcileOutcome:
    """Compare a document's stored strings with a remote occurrence.

    Start and end are compared string-exact against their rendered form.
    Title and location are only filled in when missing, never overwritten.
    """
    outcome = ReconcileOutcome(repaired=repair)
    if repair:
        outcome.changes.append(FieldDiff("event_id", keys.event_id, document.event_id, occurrence.id))
    if not document.stored_title and occurrence.title:
        outcome.changes.append(FieldDiff("title", keys.title, "", occurrence.title))
    if not document.stored_location and occurrence.location:
        outcome.changes.append(FieldDiff("location", keys.location, "", occurrence.location))
    if source_url and document.source_url != source_url:
        outcome.changes.append(FieldDiff("source_url", keys.source_url, document.source_url, source_url))

    start_text = expected_start(occurrence, zone)
    if document.stored_start != start_text:
        outcome.changes.append(FieldDiff("start", keys.start, document.stored_start, start_text))
    end_value = expected_end(occurrence, zone, use_end_duration)
    if document.stored_end != end_value:
        outcome.changes.append(FieldDiff("end", keys.end, document.stored_end, end_value))
    return outcome


def apply_outcome(fields: dict[str, Any], outcome: ReconcileOutcome) -> bool:
    """Write the diffed values into ``fields``; True when anything differed."""
    applied = False
    for change in outcome.changes:
        if find_key_insensitive(fields, change.key) == change.after:
            continue
        set_key_insensitive(fields, change.key, change.after)
        applied = True
    return applied


def record_outcome(document: StoredDocument, outcome: ReconcileOutcome) -> None:
    """Mirror an applied outcome into the in-memory document."""
    for change in outcome.changes:
        if change.name == "event_id":
            document.event_id = change.after
        elif change.name == "title":
            document.stored_title = change.after
        elif change.name == "location":
            document.stored_location = change.after
        elif change.name == "source_url":
            document.source_url = change.after
        elif change.name == "start":
            document.stored_start = change.after
        elif change.name == "end":
            document.stored_end = change.after
