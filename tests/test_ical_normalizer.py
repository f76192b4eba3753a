import unittest
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from calnotes.ical_normalizer import CalendarNormalizer, max_iterations, stable_time_string


def _calendar(*events: str) -> str:
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//calnotes tests//EN"]
    for event in events:
        lines.append("BEGIN:VEVENT")
        lines.extend(line.strip() for line in event.strip().splitlines())
        lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


WINDOW_START = datetime(2024, 3, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2024, 4, 30, tzinfo=timezone.utc)


class StableIdTests(unittest.TestCase):
    def test_stable_time_string_uses_wall_clock_fields(self) -> None:
        self.assertEqual(stable_time_string(datetime(2024, 2, 26, 9, 30)), "20240226T093000")
        aware = datetime(2024, 2, 26, 9, 30, 5, tzinfo=ZoneInfo("Asia/Tokyo"))
        self.assertEqual(stable_time_string(aware), "20240226T093005")

    def test_max_iterations_bounds(self) -> None:
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.assertEqual(max_iterations("WEEKLY", 1, start, start + timedelta(days=70)), 2000)
        self.assertEqual(max_iterations("MINUTELY", 1, start, start + timedelta(days=10)), 14410)
        self.assertEqual(max_iterations("SECONDLY", 1, start, start + timedelta(days=10)), 200000)
        self.assertEqual(max_iterations(None, 1, None, None), 2000)


class CalendarNormalizerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.normalizer = CalendarNormalizer()

    def test_non_calendar_payload_yields_nothing(self) -> None:
        self.assertEqual(self.normalizer.normalize("<html>Service Unavailable</html>"), [])
        self.assertEqual(self.normalizer.normalize(""), [])
        self.assertEqual(self.normalizer.normalize(None), [])

    def test_weekly_series_ids_are_deterministic(self) -> None:
        text = _calendar(
            """
            UID:standup-1
            SUMMARY:Standup
            DTSTART:20240304T090000Z
            DTEND:20240304T093000Z
            RRULE:FREQ=WEEKLY;COUNT=3
            """
        )
        first = self.normalizer.normalize(text, WINDOW_START, WINDOW_END)
        second = CalendarNormalizer().normalize(text, WINDOW_START, WINDOW_END)

        self.assertEqual(
            [item.id for item in first],
            ["standup-1-20240304T090000", "standup-1-20240311T090000", "standup-1-20240318T090000"],
        )
        self.assertEqual([item.id for item in first], [item.id for item in second])
        self.assertEqual(first[1].start, datetime(2024, 3, 11, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(first[1].end - first[1].start, timedelta(minutes=30))
        self.assertTrue(all(item.series_uid == "standup-1" for item in first))

    def test_ids_do_not_depend_on_zone_resolution_path(self) -> None:
        template = """
            UID:sync-{name}
            SUMMARY:Sync
            DTSTART;TZID={tzid}:20240304T090000
            DTEND;TZID={tzid}:20240304T100000
            """
        legacy = self.normalizer.normalize(
            _calendar(template.format(name="x", tzid="Pacific Standard Time")), WINDOW_START, WINDOW_END
        )
        canonical = self.normalizer.normalize(
            _calendar(template.format(name="x", tzid="America/Los_Angeles")), WINDOW_START, WINDOW_END
        )
        unknown = self.normalizer.normalize(
            _calendar(template.format(name="x", tzid="Mars/Olympus_Mons")), WINDOW_START, WINDOW_END
        )

        self.assertEqual(legacy[0].id, "sync-x")
        self.assertEqual(legacy[0].id, canonical[0].id)
        self.assertEqual(legacy[0].id, unknown[0].id)
        expected = datetime(2024, 3, 4, 9, 0, tzinfo=ZoneInfo("America/Los_Angeles"))
        self.assertEqual(legacy[0].start, expected)
        self.assertEqual(canonical[0].start, expected)
        # Unresolvable zones keep the wall clock in the default zone.
        self.assertEqual(unknown[0].start, datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc))

    def test_override_suppresses_exactly_one_generated_occurrence(self) -> None:
        text = _calendar(
            """
            UID:review
            SUMMARY:Review
            DTSTART:20240304T090000Z
            DTEND:20240304T100000Z
            RRULE:FREQ=WEEKLY;COUNT=4
            """,
            """
            UID:review
            SUMMARY:Review (moved)
            RECURRENCE-ID:20240311T090000Z
            DTSTART:20240311T140000Z
            DTEND:20240311T150000Z
            """,
        )
        occurrences = self.normalizer.normalize(text, WINDOW_START, WINDOW_END)
        ids = [item.id for item in occurrences]

        self.assertEqual(len(occurrences), 4)
        self.assertEqual(ids.count("review-20240311T090000"), 1)
        moved = next(item for item in occurrences if item.id == "review-20240311T090000")
        self.assertEqual(moved.title, "Review (moved)")
        self.assertEqual(moved.start, datetime(2024, 3, 11, 14, 0, tzinfo=timezone.utc))
        self.assertIn("review-20240304T090000", ids)
        self.assertIn("review-20240318T090000", ids)
        self.assertIn("review-20240325T090000", ids)

    def test_exdate_removes_occurrence(self) -> None:
        text = _calendar(
            """
            UID:gym
            SUMMARY:Gym
            DTSTART:20240304T180000Z
            DTEND:20240304T190000Z
            RRULE:FREQ=DAILY;COUNT=3
            EXDATE:20240305T180000Z
            """
        )
        ids = [item.id for item in self.normalizer.normalize(text, WINDOW_START, WINDOW_END)]
        self.assertEqual(ids, ["gym-20240304T180000", "gym-20240306T180000"])

    def test_until_in_utc_is_inclusive_in_series_zone(self) -> None:
        text = _calendar(
            """
            UID:berlin
            SUMMARY:Jour fixe
            DTSTART;TZID=Europe/Berlin:20240304T090000
            DTEND;TZID=Europe/Berlin:20240304T093000
            RRULE:FREQ=WEEKLY;UNTIL=20240318T080000Z
            """
        )
        ids = [item.id for item in self.normalizer.normalize(text, WINDOW_START, WINDOW_END)]
        self.assertEqual(ids, ["berlin-20240304T090000", "berlin-20240311T090000", "berlin-20240318T090000"])

    def test_duplicate_single_event_uids_are_disambiguated(self) -> None:
        text = _calendar(
            """
            UID:shared
            SUMMARY:First
            DTSTART:20240304T090000Z
            DTEND:20240304T100000Z
            """,
            """
            UID:shared
            SUMMARY:Second
            DTSTART:20240305T090000Z
            DTEND:20240305T100000Z
            """,
        )
        first = [item.id for item in self.normalizer.normalize(text, WINDOW_START, WINDOW_END)]
        second = [item.id for item in self.normalizer.normalize(text, WINDOW_START, WINDOW_END)]

        self.assertEqual(first, ["shared-dup-20240304T090000", "shared-dup-20240305T090000"])
        self.assertEqual(first, second)

    def test_cancelled_events_only_with_include_cancelled(self) -> None:
        text = _calendar(
            """
            UID:cancelled-1
            SUMMARY:Cancelled
            STATUS:CANCELLED
            DTSTART:20240304T090000Z
            DTEND:20240304T100000Z
            """,
            """
            UID:canceled-2
            SUMMARY:Canceled
            STATUS:CANCELED
            DTSTART:20240305T090000Z
            DTEND:20240305T100000Z
            """,
        )
        self.assertEqual(self.normalizer.normalize(text, WINDOW_START, WINDOW_END), [])
        included = self.normalizer.normalize(text, WINDOW_START, WINDOW_END, include_cancelled=True)
        self.assertEqual([item.cancelled for item in included], [True, True])

    def test_recurring_master_is_never_cancelled(self) -> None:
        text = _calendar(
            """
            UID:series
            SUMMARY:Series
            STATUS:CANCELLED
            DTSTART:20240304T090000Z
            RRULE:FREQ=DAILY;COUNT=2
            """
        )
        occurrences = self.normalizer.normalize(text, WINDOW_START, WINDOW_END)
        self.assertEqual(len(occurrences), 2)
        self.assertFalse(any(item.cancelled for item in occurrences))

    def test_all_day_and_duration_defaults(self) -> None:
        text = _calendar(
            """
            UID:holiday
            SUMMARY:Holiday
            DTSTART;VALUE=DATE:20240308
            """,
            """
            UID:call
            SUMMARY:Call
            DTSTART:20240306T120000Z
            DURATION:PT45M
            """,
            """
            UID:reminder
            DTSTART:20240307T120000Z
            """,
        )
        by_id = {item.id: item for item in self.normalizer.normalize(text, WINDOW_START, WINDOW_END)}

        self.assertTrue(by_id["holiday"].all_day)
        self.assertEqual(by_id["holiday"].end - by_id["holiday"].start, timedelta(days=1))
        self.assertEqual(by_id["call"].end - by_id["call"].start, timedelta(minutes=45))
        self.assertEqual(by_id["reminder"].end, by_id["reminder"].start)
        self.assertEqual(by_id["reminder"].title, "Untitled Event")

    def test_people_fields_strip_mailto(self) -> None:
        text = _calendar(
            """
            UID:people
            SUMMARY:Planning
            DTSTART:20240306T120000Z
            DTEND:20240306T130000Z
            ORGANIZER;CN=Dana Lee:mailto:dana@example.com
            ATTENDEE:mailto:sam@example.com
            ATTENDEE;CN=Kim:mailto:kim@example.com
            """
        )
        occurrence = self.normalizer.normalize(text, WINDOW_START, WINDOW_END)[0]
        self.assertEqual(occurrence.organizer, "Dana Lee")
        self.assertEqual(occurrence.attendees, ["sam@example.com", "Kim"])

    def test_events_outside_window_are_dropped(self) -> None:
        text = _calendar(
            """
            UID:old
            SUMMARY:Old
            DTSTART:20230101T090000Z
            DTEND:20230101T100000Z
            """,
            """
            UID:daily
            SUMMARY:Daily
            DTSTART:20240101T090000Z
            DTEND:20240101T093000Z
            RRULE:FREQ=DAILY
            """,
        )
        start = datetime(2024, 3, 1, tzinfo=timezone.utc)
        end = datetime(2024, 3, 3, 23, 0, tzinfo=timezone.utc)
        ids = [item.id for item in self.normalizer.normalize(text, start, end)]
        self.assertEqual(ids, ["daily-20240301T090000", "daily-20240302T090000", "daily-20240303T090000"])

    def test_malformed_component_does_not_drop_others(self) -> None:
        text = _calendar(
            """
            UID:broken
            SUMMARY:No start
            """,
            """
            UID:fine
            SUMMARY:Fine
            DTSTART:20240306T120000Z
            DTEND:20240306T130000Z
            """,
        )
        ids = [item.id for item in self.normalizer.normalize(text, WINDOW_START, WINDOW_END)]
        self.assertEqual(ids, ["fine"])


if __name__ == "__main__":
    unittest.main()
