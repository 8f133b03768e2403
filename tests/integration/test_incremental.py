"""Integration tests for the known-keys lookup."""

from __future__ import annotations

from datetime import date, datetime, timedelta

import pytest

from scjail_etl.incremental import KnownKeys, fetch_known_keys, inmate_count
from scjail_etl.normalize import ROSTER_TZ
from scjail_etl.shared import ArgumentError

BASE = datetime(2024, 3, 1, 8, 0, tzinfo=ROSTER_TZ)


def _insert(conn, idx: int, natural_key: str | None, image_url: str | None) -> int:
    row = conn.execute(
        """
        INSERT INTO inmate (first_name, last_name, dob, booking_date, image_url, natural_key)
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (f"First{idx}", "Last", date(1990, 1, 1), BASE + timedelta(hours=idx), image_url, natural_key),
    ).fetchone()
    conn.commit()
    return row[0]


class TestFetchKnownKeys:
    def test_partitions_by_image_url(self, conn):
        _insert(conn, 1, "?sysid=1", "mugshots/abc")
        null_id = _insert(conn, 2, "?sysid=2", None)
        empty_id = _insert(conn, 3, "?sysid=3", "")

        known = fetch_known_keys(conn, 10)

        assert known.synchronized == {"?sysid=1"}
        assert known.needs_backfill == {"?sysid=2": null_id, "?sysid=3": empty_id}
        assert len(known) == 3

    def test_sets_are_disjoint(self, conn):
        _insert(conn, 1, "?sysid=1", None)
        _insert(conn, 2, "?sysid=1", "mugshots/abc")  # newer row for the same key

        known = fetch_known_keys(conn, 10)

        assert known.synchronized == {"?sysid=1"}
        assert known.needs_backfill == {}

    def test_null_natural_key_excluded(self, conn):
        _insert(conn, 1, None, "mugshots/abc")
        _insert(conn, 2, "?sysid=2", "mugshots/def")

        known = fetch_known_keys(conn, 10)

        assert known.synchronized == {"?sysid=2"}
        assert None not in known.synchronized

    def test_window_limits_to_newest_rows(self, conn):
        for i in range(1, 6):
            _insert(conn, i, f"?sysid={i}", "mugshots/x")

        known = fetch_known_keys(conn, 2)

        assert known.synchronized == {"?sysid=4", "?sysid=5"}

    def test_empty_store(self, conn):
        known = fetch_known_keys(conn, 200)
        assert len(known) == 0
        assert known == KnownKeys.empty()

    @pytest.mark.parametrize("n", [0, -1])
    def test_non_positive_window_rejected(self, conn, n):
        with pytest.raises(ArgumentError):
            fetch_known_keys(conn, n)


class TestInmateCount:
    def test_counts_rows(self, conn):
        assert inmate_count(conn) == 0
        _insert(conn, 1, "?sysid=1", None)
        _insert(conn, 2, "?sysid=2", None)
        assert inmate_count(conn) == 2
