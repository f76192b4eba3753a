from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any


DELETE_POLICIES = ("delete", "archive", "nothing")
UNTITLED_EVENT = "Untitled Event"
FRONTMATTER_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
_FRONTMATTER_DATE_PATTERN = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})(?:\s+(\d{2}):(\d{2})(?::(\d{2}))?)?$"
)


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def format_frontmatter_datetime(value: datetime, zone: tzinfo) -> str:
    """Render an instant as the wall clock of ``zone`` (``YYYY-MM-DD HH:MM:SS``)."""
    return _ensure_tz(value).astimezone(zone).strftime(FRONTMATTER_DATETIME_FORMAT)


def parse_frontmatter_datetime(value: Any, zone: tzinfo) -> datetime | None:
    """Parse a stored metadata date deterministically as wall clock in ``zone``.

    Accepts ``YYYY-MM-DD HH:MM:SS``, ``YYYY-MM-DD HH:MM`` and ``YYYY-MM-DD``;
    anything else goes through ISO-8601 parsing. Returns None when the value
    cannot be understood.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=zone)
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    match = _FRONTMATTER_DATE_PATTERN.match(text)
    if match is None:
        try:
            parsed = datetime.fromisoformat(text[:-1] + "+00:00" if text.endswith("Z") else text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=zone)
        return parsed
    year, month, day = int(match.group(1)), int(match.group(2)), int(match.group(3))
    hour = int(match.group(4) or 0)
    minute = int(match.group(5) or 0)
    second = int(match.group(6) or 0)
    try:
        return datetime(year, month, day, hour, minute, second, tzinfo=zone)
    except ValueError:
        return None


def normalize_calendar_url(url: str | None) -> str:
    if not url:
        return ""
    trimmed = str(url).strip()
    if not trimmed:
        return ""
    if trimmed.lower().startswith("webcal://"):
        return "https://" + trimmed[len("webcal://") :]
    return trimmed


def _clean_list(values: Any) -> list[str]:
    if isinstance(values, str):
        values = values.split(",")
    if not isinstance(values, (list, tuple)):
        return []
    return [str(x).strip() for x in values if str(x).strip()]


@dataclass
class SourceConfig:
    url: str = ""
    enabled: bool = True
    folder: str = ""
    tag: str = ""
    template: str = ""
    auto_create: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SourceConfig":
        data = data or {}
        return cls(
            url=normalize_calendar_url(data.get("url", "")),
            enabled=bool(data.get("enabled", True)),
            folder=str(data.get("folder", "") or "").strip(),
            tag=str(data.get("tag", "") or "").strip(),
            template=str(data.get("template", "") or "").strip(),
            auto_create=bool(data.get("auto_create", True)),
        )


@dataclass
class IdentityKeys:
    event_id: str = "externalEventId"
    uid: str = "calendarUid"
    source_url: str = "calendarSourceUrl"
    title: str = "title"
    status: str = "status"
    previous_status: str = "calendarPrevStatus"
    cancelled_at: str = "calendarCancelledAt"
    orphan_candidate_at: str = "calendarOrphanCandidateAt"
    orphan_miss_count: str = "calendarOrphanMissCount"
    orphan_reason: str = "calendarOrphanReason"
    start: str = "scheduled"
    end: str = "timeEstimate"
    location: str = "location"
    tags: str = "tags"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "IdentityKeys":
        data = data or {}
        defaults = cls()
        values: dict[str, str] = {}
        for name, default in asdict(defaults).items():
            values[name] = str(data.get(name, default) or "").strip() or default
        return cls(**values)


@dataclass
class BehaviorConfig:
    allow_auto_create: bool = True
    no_loss_mode: bool = True
    delete_policy: str = "nothing"
    archive_folder: str = ""
    ignore_paths: list[str] = field(default_factory=list)
    cancelled_status_value: str = "cancelled"
    filter_terms: list[str] = field(default_factory=list)
    use_end_duration: bool = True
    orphan_grace_cycles: int = 2
    tombstone_ttl_hours: float = 6.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "BehaviorConfig":
        data = data or {}
        policy = str(data.get("delete_policy", "nothing")).strip().lower()
        if policy not in DELETE_POLICIES:
            policy = "nothing"
        return cls(
            allow_auto_create=bool(data.get("allow_auto_create", True)),
            no_loss_mode=bool(data.get("no_loss_mode", True)),
            delete_policy=policy,
            archive_folder=str(data.get("archive_folder", "") or "").strip().strip("/"),
            ignore_paths=_clean_list(data.get("ignore_paths", [])),
            cancelled_status_value=str(data.get("cancelled_status_value", "") or "").strip()
            or "cancelled",
            filter_terms=[x.lower() for x in _clean_list(data.get("filter_terms", []))],
            use_end_duration=bool(data.get("use_end_duration", True)),
            orphan_grace_cycles=max(1, int(data.get("orphan_grace_cycles", 2))),
            tombstone_ttl_hours=max(0.0, float(data.get("tombstone_ttl_hours", 6.0))),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 300
    window_past_days: int = 14
    window_future_days: int = 60
    timezone: str = "UTC"
    default_timezone: str = ""
    vault_path: str = "vault"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            window_past_days=max(0, int(data.get("window_past_days", 14))),
            window_future_days=max(1, int(data.get("window_future_days", 60))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            default_timezone=str(data.get("default_timezone", "") or "").strip(),
            vault_path=str(data.get("vault_path", "vault")).strip() or "vault",
        )

    @property
    def floating_timezone(self) -> str:
        # Floating and all-day values follow the zone notes are written in unless set apart.
        return self.default_timezone or self.timezone


@dataclass
class AppConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    sources: list[SourceConfig] = field(default_factory=list)
    identity_keys: IdentityKeys = field(default_factory=IdentityKeys)
    behavior: BehaviorConfig = field(default_factory=BehaviorConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        raw_sources = data.get("sources", [])
        sources: list[SourceConfig] = []
        seen_urls: set[str] = set()
        if isinstance(raw_sources, list):
            for item in raw_sources:
                if isinstance(item, str):
                    item = {"url": item}
                if not isinstance(item, dict):
                    continue
                source = SourceConfig.from_dict(item)
                if not source.url or source.url in seen_urls:
                    continue
                seen_urls.add(source.url)
                sources.append(source)
        return cls(
            sync=SyncConfig.from_dict(data.get("sync")),
            sources=sources,
            identity_keys=IdentityKeys.from_dict(data.get("identity_keys")),
            behavior=BehaviorConfig.from_dict(data.get("behavior")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def source_configs(self) -> dict[str, SourceConfig]:
        return {source.url: source for source in self.sources}


@dataclass
class Occurrence:
    id: str
    series_uid: str
    title: str = UNTITLED_EVENT
    description: str = ""
    location: str = ""
    organizer: str = ""
    attendees: list[str] = field(default_factory=list)
    url: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    source_url: str = ""
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload

    def with_updates(self, **kwargs: Any) -> "Occurrence":
        payload = asdict(self)
        payload.update(kwargs)
        return Occurrence(**payload)


@dataclass
class FetchResult:
    occurrences: list[Occurrence]
    ok: bool
    normalized_url: str | None
    from_cache: bool = False
    status_code: int | None = None
    error: str | None = None


@dataclass
class StoredDocument:
    path: str
    event_id: str | None
    uid: str
    stored_start: str = ""
    stored_end: str | int = ""
    stored_title: str = ""
    stored_location: str = ""
    start: datetime | None = None
    source_url: str | None = None
    status: str | None = None
    cancelled_at: str | None = None
    orphan_candidate_at: str | None = None
    archived: bool = False


@dataclass
class ReconcileSummary:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    quarantined: int = 0
    restored: int = 0
    skipped: bool = False
    successful_urls: list[str] = field(default_factory=list)
    failed_urls: list[str] = field(default_factory=list)

    @property
    def total_changes(self) -> int:
        return self.created + self.updated + self.deleted + self.quarantined + self.restored

    def message(self) -> str:
        parts = [
            f"{self.created} created",
            f"{self.updated} updated",
            f"{self.deleted} archived/deleted",
        ]
        if self.quarantined:
            parts.append(f"{self.quarantined} quarantined")
        if self.restored:
            parts.append(f"{self.restored} restored")
        return ", ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["total_changes"] = self.total_changes
        return payload


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    changes_applied: int
    trigger: str
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "changes_applied": self.changes_applied,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()


def fetch_window(now: datetime, past_days: int, future_days: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    start = now_utc - timedelta(days=max(0, past_days))
    end = now_utc + timedelta(days=max(1, future_days))
    return start, end

