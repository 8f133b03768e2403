"""Integration tests for the transactional serializer.

Requires a real PostgreSQL database (via pytest-postgresql).
"""

from __future__ import annotations

from datetime import date

import pytest

from scjail_etl.image_store import LocalImageStore
from scjail_etl.records import EMBEDDING_DIMENSIONS
from scjail_etl.serialize import (
    has_image_upload_criteria,
    serialize_and_count,
    serialize_record,
    serialize_records,
)
from scjail_etl.shared import CrawlCounters, StoreError

from record_factory import BOOKED, FailingImageStore, make_record


def _count(conn, table: str) -> int:
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


@pytest.fixture()
def store(tmp_path):
    return LocalImageStore(base_dir=tmp_path / "objects")


# ---------------------------------------------------------------------------
# Single record
# ---------------------------------------------------------------------------

class TestSerializeRecord:
    def test_inserts_all_rows(self, conn, store, tmp_path):
        record = make_record()
        inmate_id = serialize_record(conn, record, store)

        row = conn.execute(
            "SELECT first_name, middle_name, dob, booking_date, image_url, natural_key "
            "FROM inmate WHERE id = %s",
            (inmate_id,),
        ).fetchone()
        assert row[0] == "John"
        assert row[1] == "Q"
        assert row[2] == date(1990, 1, 31)
        assert row[3] == BOOKED
        assert row[4] == record.profile.image_key()
        assert row[5] == "?sysid=100"

        assert _count(conn, "bond") == 2
        assert _count(conn, "charge") == 2
        assert _count(conn, "inmate_alias") == 2
        assert _count(conn, "img") == 1
        assert (tmp_path / "objects" / record.profile.image_key()).read_bytes() == b"\xff\xd8jpeg"

    def test_bond_and_charge_values(self, conn, store):
        inmate_id = serialize_record(conn, make_record(), store)
        amounts = conn.execute(
            "SELECT bond_type, amount_minor_units FROM bond WHERE inmate_id = %s ORDER BY id",
            (inmate_id,),
        ).fetchall()
        assert amounts == [("Cash Only", 220075), ("Surety", 100000)]
        grades = conn.execute(
            "SELECT grade FROM charge WHERE inmate_id = %s ORDER BY id", (inmate_id,),
        ).fetchall()
        assert grades == [("Felony",), ("Misdemeanor",)]

    def test_duplicate_is_rejected_without_partial_rows(self, conn, store):
        serialize_record(conn, make_record(), store)

        with pytest.raises(StoreError):
            serialize_record(conn, make_record(natural_key="?sysid=999"), store)

        assert _count(conn, "inmate") == 1
        assert _count(conn, "bond") == 2
        assert _count(conn, "charge") == 2
        assert _count(conn, "img") == 1
        assert _count(conn, "inmate_alias") == 2

    def test_duplicate_does_not_upload(self, conn):
        serialize_record(conn, make_record(), None)
        failing = FailingImageStore()
        with pytest.raises(StoreError):
            serialize_record(conn, make_record(), failing)
        assert failing.calls == 0

    def test_no_image_store_leaves_image_url_null(self, conn):
        inmate_id = serialize_record(conn, make_record(), None)
        image_url = conn.execute(
            "SELECT image_url FROM inmate WHERE id = %s", (inmate_id,),
        ).fetchone()[0]
        assert image_url is None
        # img row is still written with the bytes
        assert conn.execute("SELECT img FROM img").fetchone()[0] == b"\xff\xd8jpeg"

    def test_missing_photo_writes_null_img_row(self, conn, store):
        record = make_record(image=None)
        assert not has_image_upload_criteria(record.profile, store)
        inmate_id = serialize_record(conn, record, store)
        row = conn.execute(
            "SELECT i.image_url, g.img FROM inmate i JOIN img g ON g.inmate_id = i.id "
            "WHERE i.id = %s",
            (inmate_id,),
        ).fetchone()
        assert row == (None, None)

    def test_upload_failure_marks_empty_image_url(self, conn):
        counters = CrawlCounters()
        inmate_id = serialize_and_count(conn, make_record(), FailingImageStore(), counters)

        assert inmate_id is not None
        image_url = conn.execute(
            "SELECT image_url FROM inmate WHERE id = %s", (inmate_id,),
        ).fetchone()[0]
        assert image_url == ""
        assert counters.inserted == 1
        assert counters.image_upload_failures == 1
        assert _count(conn, "bond") == 2

    def test_aliases_shared_across_inmates(self, conn, store):
        serialize_record(conn, make_record(aliases=("Johnny", "JD", "Johnny")), store)
        serialize_record(
            conn,
            make_record(first="Jane", aliases=("JD",), natural_key="?sysid=101"),
            store,
        )
        assert _count(conn, "alias") == 2
        assert _count(conn, "inmate_alias") == 3

    def test_failing_alias_is_skipped(self, conn, store):
        # The long alias violates this extra CHECK inside its own savepoint.
        conn.execute("ALTER TABLE alias ADD CONSTRAINT alias_short CHECK (length(alias) < 10)")
        conn.commit()
        counters = CrawlCounters()

        inmate_id = serialize_and_count(
            conn, make_record(aliases=("Johnny", "A-Very-Long-Alias")), store, counters,
        )

        assert inmate_id is not None
        aliases = conn.execute(
            "SELECT a.alias FROM alias a JOIN inmate_alias ia ON ia.alias_id = a.id "
            "WHERE ia.inmate_id = %s",
            (inmate_id,),
        ).fetchall()
        assert aliases == [("Johnny",)]
        assert counters.aliases_failed == 1
        assert counters.inserted == 1
        assert _count(conn, "charge") == 2

    def test_dry_run_rolls_back_and_skips_upload(self, conn, tmp_path, store):
        inmate_id = serialize_record(conn, make_record(), store, dry_run=True)
        assert inmate_id > 0
        assert _count(conn, "inmate") == 0
        assert _count(conn, "img") == 0
        assert not (tmp_path / "objects").exists()

    def test_embedding_persisted(self, conn, store):
        record = make_record().with_embedding([0.5] * EMBEDDING_DIMENSIONS)
        inmate_id = serialize_record(conn, record, store)
        stored = conn.execute(
            "SELECT embedding IS NOT NULL FROM inmate WHERE id = %s", (inmate_id,),
        ).fetchone()[0]
        assert stored is True

    def test_no_embedding_is_null(self, conn, store):
        inmate_id = serialize_record(conn, make_record(), store)
        assert conn.execute(
            "SELECT embedding FROM inmate WHERE id = %s", (inmate_id,),
        ).fetchone()[0] is None


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

class TestSerializeRecords:
    def test_counts_and_continues_past_duplicates(self, conn, store):
        records = [
            make_record(first="A", natural_key="?sysid=1"),
            make_record(first="B", natural_key="?sysid=2"),
            make_record(first="A", natural_key="?sysid=3"),  # duplicate of the first
            make_record(first="C", natural_key="?sysid=4"),
        ]
        counters = CrawlCounters()

        serialize_records(conn, records, store, counters)

        assert counters.inserted == 3
        assert counters.failed == 1
        assert _count(conn, "inmate") == 3

    def test_ids_follow_processing_order(self, conn, store):
        records = [
            make_record(first=name, natural_key=f"?sysid={i}")
            for i, name in enumerate(["Old", "Mid", "New"])
        ]
        serialize_records(conn, records, store, CrawlCounters())
        names = [r[0] for r in conn.execute("SELECT first_name FROM inmate ORDER BY id").fetchall()]
        assert names == ["Old", "Mid", "New"]
