from __future__ import annotations

import logging
from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import tz as dateutil_tz

logger = logging.getLogger(__name__)

# Windows/Outlook zone names seen in Exchange exports.
LEGACY_TZ_MAP: dict[str, str] = {
    "Pacific Standard Time": "America/Los_Angeles",
    "Mountain Standard Time": "America/Denver",
    "Central Standard Time": "America/Chicago",
    "Eastern Standard Time": "America/New_York",
    "Alaskan Standard Time": "America/Anchorage",
    "Hawaiian Standard Time": "Pacific/Honolulu",
    "Arizona Standard Time": "America/Phoenix",
    "GMT Standard Time": "Europe/London",
    "Romance Standard Time": "Europe/Paris",
    "Central European Standard Time": "Europe/Paris",
    "W. Europe Standard Time": "Europe/Berlin",
    "China Standard Time": "Asia/Shanghai",
    "Tokyo Standard Time": "Asia/Tokyo",
    "India Standard Time": "Asia/Kolkata",
    "AUS Eastern Standard Time": "Australia/Sydney",
}


def canonical_zone_name(tzid: str) -> str:
    name = str(tzid or "").strip().strip("\"'")
    return LEGACY_TZ_MAP.get(name, name)


def load_zone(name: str) -> ZoneInfo | None:
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def get_zone(name: str | None) -> tzinfo:
    """Return the named zone, or UTC when it cannot be loaded."""
    zone = load_zone(canonical_zone_name(name or ""))
    if zone is None:
        if name and name.upper() != "UTC":
            logger.warning("Unknown timezone %r, using UTC", name)
        return timezone.utc
    return zone


def manual_offset_instant(wall: datetime, zone: tzinfo) -> datetime:
    """Resolve ``wall`` in ``zone`` by re-rendering its UTC reading in that zone.

    The difference between the rendered wall clock and the UTC reading is the
    zone offset at (approximately) that instant; subtracting it gives the
    instant whose wall clock in ``zone`` is ``wall``.
    """
    naive = wall.replace(tzinfo=None)
    utc_reading = naive.replace(tzinfo=timezone.utc)
    rendered = utc_reading.astimezone(zone).replace(tzinfo=None)
    offset = rendered - naive
    return utc_reading - offset


class ZoneResolver:
    """Turns raw calendar wall-clock values into UTC instants.

    Resolution order for a value carrying an explicit ``TZID``:

    1. canonical lookup through ``zoneinfo`` (after legacy name mapping);
    2. manual offset correction with ``dateutil.tz`` or the zone icalendar
       attached to the value;
    3. the wall clock taken as-is in the default zone.

    Values without ``TZID`` keep their own zone (``Z`` values); floating values
    use the default zone.
    """

    def __init__(self, default_zone: tzinfo | None = None) -> None:
        self.default_zone = default_zone or timezone.utc
        self._warned_zones: set[str] = set()

    def _warn_once(self, zone_name: str, message: str) -> None:
        if zone_name in self._warned_zones:
            return
        self._warned_zones.add(zone_name)
        logger.warning("%s (tzid=%s)", message, zone_name)

    def resolve(
        self,
        wall: datetime,
        explicit_tzid: str | None = None,
        value_zone: tzinfo | None = None,
    ) -> datetime:
        naive = wall.replace(tzinfo=None)
        if not explicit_tzid:
            zone = value_zone or self.default_zone
            return naive.replace(tzinfo=zone).astimezone(timezone.utc)

        target = canonical_zone_name(explicit_tzid)
        zone = load_zone(target)
        if zone is not None:
            return naive.replace(tzinfo=zone).astimezone(timezone.utc)

        self._warn_once(target, "Canonical timezone lookup failed, using manual offset")
        fallback_zone = dateutil_tz.gettz(target) or value_zone
        if fallback_zone is not None:
            try:
                return manual_offset_instant(naive, fallback_zone).astimezone(timezone.utc)
            except (OverflowError, ValueError) as exc:
                logger.warning("Manual timezone offset failed for %s: %s", target, exc)

        self._warn_once(f"{target}#wall", "No usable zone, keeping wall clock")
        return naive.replace(tzinfo=self.default_zone).astimezone(timezone.utc)
