import unittest
from datetime import date, datetime, timedelta, timezone

from fintrack.errors import ValidationError
from fintrack.time_windows import (
    bucket_window,
    cycle_target_points,
    local_end_of_day,
    local_midnight,
    month_starts,
    parse_date_input,
    previous_window,
    resolve_custom_window,
    resolve_dashboard_window,
    resolve_timezone,
    resolve_window,
    trend_periods,
)

UTC = timezone.utc


class ResolveWindowTests(unittest.TestCase):
    def setUp(self) -> None:
        # Wednesday
        self.now = datetime(2024, 5, 15, 12, 0, tzinfo=UTC)

    def test_named_filters_start_at_local_midnight(self) -> None:
        expected = {
            "today": datetime(2024, 5, 15, tzinfo=UTC),
            "week": datetime(2024, 5, 13, tzinfo=UTC),
            "month": datetime(2024, 5, 1, tzinfo=UTC),
            "last7": datetime(2024, 5, 9, tzinfo=UTC),
            "last30": datetime(2024, 4, 16, tzinfo=UTC),
        }
        for filter_name, start in expected.items():
            window = resolve_window(filter_name, "UTC", now=self.now)
            self.assertEqual(window.start, start, filter_name)
            self.assertEqual(window.end, self.now)

    def test_today_follows_the_caller_timezone(self) -> None:
        window = resolve_window("today", "Europe/Copenhagen", now=self.now)

        self.assertEqual(window.start, datetime(2024, 5, 14, 22, 0, tzinfo=UTC))

    def test_unknown_filter_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            resolve_window("yearly", "UTC", now=self.now)

    def test_invalid_timezone_falls_back_to_utc(self) -> None:
        self.assertEqual(resolve_timezone("Mars/Olympus"), "UTC")
        self.assertEqual(resolve_timezone(None), "UTC")
        self.assertEqual(resolve_timezone("America"), "UTC")
        self.assertEqual(resolve_timezone("a" * 300), "UTC")
        self.assertEqual(resolve_timezone("Europe/Copenhagen"), "Europe/Copenhagen")


class LocalTimeTests(unittest.TestCase):
    def test_midnight_before_spring_forward(self) -> None:
        self.assertEqual(
            local_midnight(date(2024, 3, 31), "Europe/Copenhagen"),
            datetime(2024, 3, 30, 23, 0, tzinfo=UTC),
        )
        self.assertEqual(
            local_midnight(date(2024, 4, 1), "Europe/Copenhagen"),
            datetime(2024, 3, 31, 22, 0, tzinfo=UTC),
        )

    def test_midnight_on_fall_back_day(self) -> None:
        self.assertEqual(
            local_midnight(date(2024, 11, 3), "America/New_York"),
            datetime(2024, 11, 3, 4, 0, tzinfo=UTC),
        )

    def test_end_of_day_is_last_millisecond(self) -> None:
        self.assertEqual(
            local_end_of_day(date(2024, 5, 15), "UTC"),
            datetime(2024, 5, 15, 23, 59, 59, 999000, tzinfo=UTC),
        )

    def test_parse_date_input(self) -> None:
        self.assertEqual(
            parse_date_input("2024-02-01", "UTC"), datetime(2024, 2, 1, tzinfo=UTC)
        )
        self.assertEqual(
            parse_date_input("2024-02-01", "UTC", end_of_day=True),
            datetime(2024, 2, 1, 23, 59, 59, 999000, tzinfo=UTC),
        )
        self.assertIsNone(parse_date_input("2024-02-30", "UTC"))
        self.assertIsNone(parse_date_input("2024/02/01", "UTC"))
        self.assertIsNone(parse_date_input(None, "UTC"))


class CustomWindowTests(unittest.TestCase):
    def test_custom_range_covers_whole_local_days(self) -> None:
        window = resolve_custom_window("2024-05-01", "2024-05-10", "UTC")

        self.assertEqual(window.start, datetime(2024, 5, 1, tzinfo=UTC))
        self.assertEqual(window.end, datetime(2024, 5, 10, 23, 59, 59, 999000, tzinfo=UTC))

    def test_reversed_or_malformed_range_is_rejected(self) -> None:
        self.assertIsNone(resolve_custom_window("2024-05-10", "2024-05-01", "UTC"))
        self.assertIsNone(resolve_custom_window("2024-05-01", "nope", "UTC"))

    def test_dashboard_window_prefers_a_valid_custom_range(self) -> None:
        now = datetime(2024, 5, 15, 12, 0, tzinfo=UTC)
        custom = resolve_dashboard_window("week", "2024-05-01", "2024-05-10", "UTC", now=now)
        fallback = resolve_dashboard_window("bogus", "2024-05-10", "2024-05-01", "UTC", now=now)

        self.assertTrue(custom.is_custom)
        self.assertEqual(custom.filter, "custom")
        self.assertFalse(fallback.is_custom)
        self.assertEqual(fallback.filter, "month")
        self.assertEqual(fallback.start, datetime(2024, 5, 1, tzinfo=UTC))

    def test_previous_window_is_adjacent_with_equal_duration(self) -> None:
        start = datetime(2024, 5, 1, tzinfo=UTC)
        end = datetime(2024, 5, 10, 23, 59, 59, 999000, tzinfo=UTC)

        previous = previous_window(start, end)

        self.assertEqual(previous.end, start - timedelta(milliseconds=1))
        self.assertEqual(previous.start, datetime(2024, 4, 21, tzinfo=UTC))
        self.assertEqual(previous.duration, end - start)


class BucketWindowTests(unittest.TestCase):
    def test_ten_days_into_three_buckets(self) -> None:
        start = datetime(2024, 5, 1, tzinfo=UTC)
        end = datetime(2024, 5, 10, 23, 59, 59, 999000, tzinfo=UTC)

        buckets = bucket_window(start, end, 3)

        self.assertEqual(len(buckets), 3)
        self.assertEqual(
            [bucket.start.day for bucket in buckets], [1, 5, 9]
        )
        self.assertEqual(buckets[0].end, datetime(2024, 5, 4, 23, 59, 59, 999000, tzinfo=UTC))
        self.assertEqual(buckets[-1].end, end)

    def test_last_bucket_is_clipped_to_window_end(self) -> None:
        start = datetime(2024, 5, 1, tzinfo=UTC)
        end = datetime(2024, 5, 10, 12, 0, tzinfo=UTC)

        buckets = bucket_window(start, end, 3)

        self.assertEqual(buckets[-1].end, end)

    def test_short_window_gets_one_bucket_per_day(self) -> None:
        start = datetime(2024, 5, 1, tzinfo=UTC)
        end = datetime(2024, 5, 3, 8, 0, tzinfo=UTC)

        self.assertEqual(len(bucket_window(start, end, 7)), 3)

    def test_target_must_be_positive(self) -> None:
        now = datetime(2024, 5, 1, tzinfo=UTC)
        with self.assertRaises(ValidationError):
            bucket_window(now, now, 0)

    def test_cycle_target_points(self) -> None:
        self.assertEqual(cycle_target_points(5), 5)
        self.assertEqual(cycle_target_points(10), 6)
        self.assertEqual(cycle_target_points(31), 8)


class TrendPeriodTests(unittest.TestCase):
    def test_month_filter_uses_whole_calendar_months(self) -> None:
        periods = trend_periods("month", datetime(2024, 5, 1, tzinfo=UTC), "UTC")

        self.assertEqual(
            [period.start for period in periods],
            [
                datetime(2024, 3, 1, tzinfo=UTC),
                datetime(2024, 4, 1, tzinfo=UTC),
                datetime(2024, 5, 1, tzinfo=UTC),
            ],
        )
        self.assertEqual(periods[-1].end, datetime(2024, 5, 31, 23, 59, 59, 999000, tzinfo=UTC))

    def test_month_filter_crosses_year_boundary(self) -> None:
        periods = trend_periods("month", datetime(2024, 1, 1, tzinfo=UTC), "UTC")

        self.assertEqual(periods[0].start, datetime(2023, 11, 1, tzinfo=UTC))
        self.assertEqual(periods[1].end, datetime(2023, 12, 31, 23, 59, 59, 999000, tzinfo=UTC))

    def test_week_filter_uses_seven_day_periods(self) -> None:
        periods = trend_periods("week", datetime(2024, 5, 13, tzinfo=UTC), "UTC")

        self.assertEqual(
            [period.start.date() for period in periods],
            [date(2024, 4, 29), date(2024, 5, 6), date(2024, 5, 13)],
        )
        self.assertEqual(periods[0].end, datetime(2024, 5, 5, 23, 59, 59, 999000, tzinfo=UTC))

    def test_month_starts_for_monthly_overview(self) -> None:
        starts = month_starts(datetime(2024, 2, 10, tzinfo=UTC), "UTC")

        self.assertEqual(
            starts,
            [date(2023, 11, 1), date(2023, 12, 1), date(2024, 1, 1), date(2024, 2, 1)],
        )


if __name__ == "__main__":
    unittest.main()
