from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Iterable

from dateutil import tz as dateutil_tz
from dateutil.rrule import rruleset, rrulestr
from icalendar import Calendar as ICalendar

from calnotes.models import UNTITLED_EVENT, Occurrence
from calnotes.timezones import ZoneResolver, canonical_zone_name, load_zone

logger = logging.getLogger(__name__)

CALENDAR_MARKER = "BEGIN:VCALENDAR"
CANCELLED_STATUSES = {"CANCELLED", "CANCELED"}
EXCEPTION_TOLERANCE_SECONDS = 60
BASE_MAX_ITERATIONS = 2000
HARD_MAX_ITERATIONS = 200000
DUPLICATE_MARKER = "dup"

_FREQUENCY_SECONDS = {
    "SECONDLY": 1,
    "MINUTELY": 60,
    "HOURLY": 60 * 60,
    "DAILY": 24 * 60 * 60,
    "WEEKLY": 7 * 24 * 60 * 60,
    "MONTHLY": 30 * 24 * 60 * 60,
    "YEARLY": 365 * 24 * 60 * 60,
}
_UNTIL_PATTERN = re.compile(r"UNTIL=[^;]+", re.IGNORECASE)


def stable_time_string(value: datetime | date) -> str:
    # Raw wall-clock fields as written in the feed, never a converted instant.
    if isinstance(value, datetime):
        return (
            f"{value.year:04d}{value.month:02d}{value.day:02d}"
            f"T{value.hour:02d}{value.minute:02d}{value.second:02d}"
        )
    return f"{value.year:04d}{value.month:02d}{value.day:02d}T000000"


def max_iterations(
    frequency: str | None,
    interval: int,
    series_start: datetime | None,
    window_end: datetime | None,
) -> int:
    if series_start is None or window_end is None:
        return BASE_MAX_ITERATIONS
    span = (window_end - series_start).total_seconds()
    if span <= 0:
        return BASE_MAX_ITERATIONS
    period = _FREQUENCY_SECONDS.get((frequency or "").upper(), _FREQUENCY_SECONDS["DAILY"])
    period *= max(1, interval)
    estimated = math.ceil(span / period) + 10
    return min(HARD_MAX_ITERATIONS, max(BASE_MAX_ITERATIONS, estimated))


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    if isinstance(raw_data, str):
        return raw_data
    return ""


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _wall_clock(value: datetime | date, at_time: time | None = None) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    return datetime.combine(value, at_time or time.min)


def _text(component: Any, name: str, fallback: str = "") -> str:
    value = component.get(name)
    if value is None:
        return fallback
    if isinstance(value, list):
        return ", ".join(str(item) for item in value)
    text = str(value)
    return text if text else fallback


def _address_label(address: Any) -> str:
    params = getattr(address, "params", {}) or {}
    common_name = params.get("CN")
    if isinstance(common_name, list):
        common_name = common_name[0] if common_name else ""
    if common_name:
        return str(common_name)
    return re.sub(r"^mailto:", "", str(address or ""), flags=re.IGNORECASE)


@dataclass
class _DateProperty:
    wall: datetime
    is_date: bool
    tzid: str | None
    value_zone: tzinfo | None
    raw: datetime | date


def _date_property(component: Any, name: str) -> _DateProperty | None:
    prop = component.get(name)
    if prop is None:
        return None
    value = getattr(prop, "dt", None)
    if not isinstance(value, date):
        return None
    params = getattr(prop, "params", {}) or {}
    tzid = params.get("TZID")
    if isinstance(tzid, list):
        tzid = tzid[0] if tzid else None
    tzid = str(tzid).strip().strip("\"'") if tzid else None
    is_date = not isinstance(value, datetime)
    value_zone = value.tzinfo if isinstance(value, datetime) else None
    return _DateProperty(
        wall=_wall_clock(value),
        is_date=is_date,
        tzid=tzid or None,
        value_zone=value_zone,
        raw=value,
    )


def _is_recurring_master(component: Any) -> bool:
    has_rule = component.get("RRULE") is not None or component.get("RDATE") is not None
    return has_rule and component.get("RECURRENCE-ID") is None


@dataclass
class _ExceptionInstant:
    wall: datetime
    instant: datetime


class CalendarNormalizer:
    def __init__(self, default_timezone: tzinfo | None = None) -> None:
        self.default_zone = default_timezone or timezone.utc
        self.resolver = ZoneResolver(self.default_zone)

    def normalize(
        self,
        raw_text: Any,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
        include_cancelled: bool = False,
    ) -> list[Occurrence]:
        occurrences: list[Occurrence] = []
        text = _decode_raw_ical(raw_text)
        if CALENDAR_MARKER not in text.strip().upper():
            return occurrences
        try:
            calendar_obj = ICalendar.from_ical(text)
            components = list(calendar_obj.walk("VEVENT"))

            exceptions: dict[str, list[_ExceptionInstant]] = {}
            single_uid_counts: dict[str, int] = {}
            for component in components:
                try:
                    self._index_component(component, exceptions, single_uid_counts)
                except Exception as exc:
                    logger.warning("Failed to pre-parse calendar component: %s", exc)

            for component in components:
                try:
                    occurrences.extend(
                        self._component_occurrences(
                            component,
                            exceptions,
                            single_uid_counts,
                            window_start,
                            window_end,
                            include_cancelled,
                        )
                    )
                except Exception as exc:
                    logger.warning(
                        "Skipping malformed calendar component uid=%s: %s",
                        _text(component, "UID", "?"),
                        exc,
                    )
        except Exception:
            logger.exception("Calendar parse failed, keeping %d occurrences", len(occurrences))
        return occurrences

    def _resolve(self, wall: datetime, prop: _DateProperty) -> datetime:
        if prop.is_date:
            return self.resolver.resolve(wall)
        return self.resolver.resolve(wall, prop.tzid, prop.value_zone)

    def _series_zone(self, prop: _DateProperty) -> tzinfo:
        if prop.tzid:
            target = canonical_zone_name(prop.tzid)
            zone = load_zone(target) or dateutil_tz.gettz(target) or prop.value_zone
            if zone is not None:
                return zone
        return prop.value_zone or self.default_zone

    def _index_component(
        self,
        component: Any,
        exceptions: dict[str, list[_ExceptionInstant]],
        single_uid_counts: dict[str, int],
    ) -> None:
        uid = _text(component, "UID").strip()
        recurrence = _date_property(component, "RECURRENCE-ID")
        if recurrence is not None:
            exceptions.setdefault(uid, []).append(
                _ExceptionInstant(wall=recurrence.wall, instant=self._resolve(recurrence.wall, recurrence))
            )
        elif not _is_recurring_master(component):
            single_uid_counts[uid] = single_uid_counts.get(uid, 0) + 1

    def _component_occurrences(
        self,
        component: Any,
        exceptions: dict[str, list[_ExceptionInstant]],
        single_uid_counts: dict[str, int],
        window_start: datetime | None,
        window_end: datetime | None,
        include_cancelled: bool,
    ) -> Iterable[Occurrence]:
        start_prop = _date_property(component, "DTSTART")
        if start_prop is None:
            raise ValueError("DTSTART missing")

        is_master = _is_recurring_master(component)
        status = _text(component, "STATUS").strip().upper()
        cancelled = status in CANCELLED_STATUSES and not is_master
        if cancelled and not include_cancelled:
            return []

        uid = _text(component, "UID").strip() or stable_time_string(start_prop.raw)
        base = Occurrence(
            id=uid,
            series_uid=uid,
            title=_text(component, "SUMMARY", UNTITLED_EVENT),
            description=_text(component, "DESCRIPTION"),
            location=_text(component, "LOCATION"),
            organizer=_address_label(component.get("ORGANIZER")) if component.get("ORGANIZER") else "",
            attendees=[
                label
                for label in (_address_label(item) for item in _as_list(component.get("ATTENDEE")))
                if label
            ],
            url=_text(component, "URL"),
            all_day=start_prop.is_date,
            cancelled=cancelled,
        )
        end_prop = _date_property(component, "DTEND")
        duration = self._duration(component, start_prop, end_prop)

        if is_master:
            return self._expand_series(
                component, base, start_prop, end_prop, duration, exceptions.get(uid, []), window_start, window_end
            )

        recurrence = _date_property(component, "RECURRENCE-ID")
        if recurrence is not None:
            occurrence_id = f"{uid}-{stable_time_string(recurrence.raw)}"
        elif single_uid_counts.get(uid, 1) > 1:
            occurrence_id = f"{uid}-{DUPLICATE_MARKER}-{stable_time_string(start_prop.raw)}"
        else:
            occurrence_id = uid

        start = self._resolve(start_prop.wall, start_prop)
        if end_prop is not None:
            end = self._resolve(end_prop.wall, end_prop)
        else:
            end = self._resolve(start_prop.wall + duration, start_prop)
        occurrence = base.with_updates(id=occurrence_id, start=start, end=end)
        if not _overlaps(occurrence, window_start, window_end):
            return []
        return [occurrence]

    @staticmethod
    def _duration(component: Any, start_prop: _DateProperty, end_prop: _DateProperty | None) -> timedelta:
        if end_prop is not None:
            return end_prop.wall - start_prop.wall
        duration_prop = component.get("DURATION")
        value = getattr(duration_prop, "dt", None)
        if isinstance(value, timedelta):
            return value
        if start_prop.is_date:
            return timedelta(days=1)
        return timedelta(0)

    def _build_rule_set(self, component: Any, start_prop: _DateProperty) -> tuple[rruleset, str | None, int]:
        series_zone = self._series_zone(start_prop)
        dtstart = start_prop.wall
        rule_set = rruleset()
        rule_set.rdate(dtstart)
        frequency: str | None = None
        interval = 1

        def to_series_wall(value: Any) -> datetime | None:
            if isinstance(value, tuple):
                value = value[0]
            if isinstance(value, datetime):
                if value.tzinfo is not None:
                    return value.astimezone(series_zone).replace(tzinfo=None)
                return value
            if isinstance(value, date):
                return datetime.combine(value, dtstart.time())
            return None

        for recur in _as_list(component.get("RRULE")):
            if frequency is None:
                frequency = str((recur.get("FREQ") or [""])[0]).upper() or None
                interval = int((recur.get("INTERVAL") or [1])[0] or 1)
            rule_text = recur.to_ical().decode("utf-8")
            until_values = recur.get("UNTIL") or []
            if until_values:
                until = until_values[0]
                if isinstance(until, datetime):
                    until_wall = to_series_wall(until)
                else:
                    until_wall = datetime.combine(until, time(23, 59, 59))
                rule_text = _UNTIL_PATTERN.sub(f"UNTIL={stable_time_string(until_wall)}", rule_text)
            rule_set.rrule(rrulestr(rule_text, dtstart=dtstart, ignoretz=True))

        for name, add in (("RDATE", rule_set.rdate), ("EXDATE", rule_set.exdate)):
            for prop in _as_list(component.get(name)):
                for item in getattr(prop, "dts", []):
                    wall = to_series_wall(getattr(item, "dt", None))
                    if wall is not None:
                        add(wall)
        return rule_set, frequency, interval

    def _expand_series(
        self,
        component: Any,
        base: Occurrence,
        start_prop: _DateProperty,
        end_prop: _DateProperty | None,
        duration: timedelta,
        series_exceptions: list[_ExceptionInstant],
        window_start: datetime | None,
        window_end: datetime | None,
    ) -> list[Occurrence]:
        rule_set, frequency, interval = self._build_rule_set(component, start_prop)
        series_start = self._resolve(start_prop.wall, start_prop)
        limit = max_iterations(frequency, interval, series_start, window_end)
        end_reference = end_prop or start_prop

        occurrences: list[Occurrence] = []
        iteration = 0
        for candidate in rule_set:
            iteration += 1
            if iteration > limit:
                logger.warning("Recurrence expansion for %s stopped after %d iterations", base.series_uid, limit)
                break
            start = self._resolve(candidate, start_prop)
            if window_end is not None and start > window_end:
                break
            if _matches_exception(candidate, start, series_exceptions):
                continue
            end = self._resolve(candidate + duration, end_reference)
            occurrence = base.with_updates(
                id=f"{base.series_uid}-{stable_time_string(candidate)}",
                start=start,
                end=end,
            )
            if _overlaps(occurrence, window_start, window_end):
                occurrences.append(occurrence)
        return occurrences


def _matches_exception(wall: datetime, instant: datetime, series_exceptions: list[_ExceptionInstant]) -> bool:
    for exception in series_exceptions:
        if abs((exception.instant - instant).total_seconds()) < EXCEPTION_TOLERANCE_SECONDS:
            return True
        if exception.wall.replace(second=0, microsecond=0) == wall.replace(second=0, microsecond=0):
            return True
    return False


def _overlaps(occurrence: Occurrence, window_start: datetime | None, window_end: datetime | None) -> bool:
    if occurrence.start is None or occurrence.end is None:
        return False
    if window_start is not None and occurrence.end < window_start:
        return False
    if window_end is not None and occurrence.start > window_end:
        return False
    return True
