"""scjail_etl.serialize

Transactional persistence of Records, plus the image backfill path.

Per-record protocol (one transaction per Record):
  1.  Decide image eligibility (bytes present and an image store configured)
  2.  Derive the deterministic object key from the core attributes
  3.  INSERT inmate with image_url = key      → unique (first, last, dob, booking)
                                                 is the duplicate gate
  4.  Upload the photo; on failure UPDATE image_url = '' (same transaction)
  5.  Upsert each distinct alias + join row   → SAVEPOINT alias_{idx}
  6.  INSERT one img row (bytes or NULL)
  7.  INSERT bonds, charges
  8.  COMMIT (ROLLBACK on dry-run or on any earlier failure)

The upload happens only after the inmate insert succeeds so that a duplicate
record never re-uploads (and overwrites) an existing object.
"""

from __future__ import annotations

import logging
from typing import Iterable

import psycopg

from scjail_etl.image_store import ImageStore
from scjail_etl.incremental import inmate_count
from scjail_etl.records import Bond, Charge, Profile, Record
from scjail_etl.shared import (
    CrawlCounters,
    CrawlerError,
    InternalError,
    ObjectStoreError,
    StoreError,
)

log = logging.getLogger(__name__)

PROGRESS_EVERY = 25


def has_image_upload_criteria(profile: Profile, image_store: ImageStore | None) -> bool:
    """True if the profile has photo bytes and an image store is configured."""
    log.debug(
        "Image upload criteria: has image=%s, has store=%s",
        profile.has_image, image_store is not None,
    )
    return profile.has_image and image_store is not None


# ---------------------------------------------------------------------------
# Row writers (caller manages transaction)
# ---------------------------------------------------------------------------

def _insert_inmate(
    conn: psycopg.Connection,
    profile: Profile,
    image_url: str | None,
) -> int:
    row = conn.execute(
        """
        INSERT INTO inmate
          (first_name, middle_name, last_name, suffix, permanent_id,
           sex, dob, arresting_agency, booking_date, booking_number,
           height, weight, race, eye_color, image_url, natural_key, embedding)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            profile.first_name, profile.middle_name, profile.last_name,
            profile.suffix, profile.permanent_id, profile.sex,
            profile.date_of_birth, profile.arresting_agency,
            profile.booking_timestamp, profile.booking_number,
            profile.height, profile.weight, profile.race, profile.eye_color,
            image_url, profile.natural_key,
            list(profile.embedding) if profile.embedding else None,
        ),
    ).fetchone()
    return int(row[0])


def _upsert_alias(conn: psycopg.Connection, alias: str) -> int:
    """Insert alias or return the existing id (no-op update on conflict)."""
    row = conn.execute(
        """
        INSERT INTO alias (alias)
        VALUES (%s)
        ON CONFLICT (alias) DO UPDATE SET alias = EXCLUDED.alias
        RETURNING id
        """,
        (alias,),
    ).fetchone()
    return int(row[0])


def _link_alias(conn: psycopg.Connection, inmate_id: int, alias_id: int) -> None:
    conn.execute(
        "INSERT INTO inmate_alias (inmate_id, alias_id) VALUES (%s, %s)",
        (inmate_id, alias_id),
    )


def _insert_img(conn: psycopg.Connection, inmate_id: int, image_bytes: bytes | None) -> None:
    conn.execute(
        "INSERT INTO img (inmate_id, img) VALUES (%s, %s)",
        (inmate_id, image_bytes),
    )


def _insert_bond(conn: psycopg.Connection, inmate_id: int, bond: Bond) -> None:
    conn.execute(
        """
        INSERT INTO bond (inmate_id, bond_type, amount_minor_units)
        VALUES (%s, %s, %s)
        """,
        (inmate_id, bond.bond_type, bond.amount_minor_units),
    )


def _insert_charge(conn: psycopg.Connection, inmate_id: int, charge: Charge) -> None:
    conn.execute(
        """
        INSERT INTO charge (inmate_id, description, grade, offense_date)
        VALUES (%s, %s, %s, %s)
        """,
        (inmate_id, charge.description, str(charge.grade), charge.offense_date),
    )


def _serialize_aliases(
    conn: psycopg.Connection,
    inmate_id: int,
    aliases: Iterable[str],
    counters: CrawlCounters | None,
) -> None:
    for idx, alias in enumerate(dict.fromkeys(aliases)):
        if not alias:
            continue
        sp_name = f"alias_{idx}"
        conn.execute(f"SAVEPOINT {sp_name}")
        try:
            alias_id = _upsert_alias(conn, alias)
            _link_alias(conn, inmate_id, alias_id)
            conn.execute(f"RELEASE SAVEPOINT {sp_name}")
        except psycopg.Error as exc:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
            log.warning("Failed to serialize alias %r for inmate %s: %s", alias, inmate_id, exc)
            if counters is not None:
                counters.aliases_failed += 1
                counters.warnings.append(f"alias {alias!r} failed for inmate {inmate_id}: {exc}")


def _serialize_profile(
    conn: psycopg.Connection,
    profile: Profile,
    image_store: ImageStore | None,
    counters: CrawlCounters | None,
    dry_run: bool,
) -> int:
    upload = not dry_run and has_image_upload_criteria(profile, image_store)
    image_key = profile.image_key() if upload else None

    # Written optimistically; patched back to '' below if the upload fails.
    inmate_id = _insert_inmate(conn, profile, image_key)
    log.debug("Inmate row inserted: id=%s", inmate_id)

    if upload:
        try:
            image_store.put(image_key, profile.image_bytes)  # type: ignore[union-attr, arg-type]
            log.debug("Image uploaded: %s", image_key)
            if counters is not None:
                counters.images_uploaded += 1
        except ObjectStoreError as exc:
            log.warning("Image upload failed for inmate %s: %s", inmate_id, exc)
            conn.execute("UPDATE inmate SET image_url = '' WHERE id = %s", (inmate_id,))
            if counters is not None:
                counters.image_upload_failures += 1
                counters.warnings.append(f"image upload failed for inmate {inmate_id}: {exc}")

    _serialize_aliases(conn, inmate_id, profile.aliases or (), counters)
    _insert_img(conn, inmate_id, profile.image_bytes)
    return inmate_id


# ---------------------------------------------------------------------------
# Record + batch entry points
# ---------------------------------------------------------------------------

def serialize_record(
    conn: psycopg.Connection,
    record: Record,
    image_store: ImageStore | None = None,
    counters: CrawlCounters | None = None,
    dry_run: bool = False,
) -> int:
    """Persist one Record atomically and return the new inmate id.

    Raises StoreError (after rolling back) if any write fails, including the
    unique-constraint violation for an already-persisted inmate.
    """
    core = record.profile.core_attributes
    try:
        inmate_id = _serialize_profile(conn, record.profile, image_store, counters, dry_run)
        for bond in record.bonds:
            _insert_bond(conn, inmate_id, bond)
        for charge in record.charges:
            _insert_charge(conn, inmate_id, charge)

        if dry_run:
            conn.rollback()
        else:
            conn.commit()
    except psycopg.Error as exc:
        conn.rollback()
        raise StoreError(f"failed to serialize {core}: {exc}") from exc
    except Exception:
        conn.rollback()
        raise

    log.debug("Serialized %s as inmate_id=%s", core, inmate_id)
    return inmate_id


def serialize_and_count(
    conn: psycopg.Connection,
    record: Record,
    image_store: ImageStore | None,
    counters: CrawlCounters,
    dry_run: bool = False,
) -> int | None:
    """serialize_record, recording the outcome in counters instead of raising."""
    try:
        inmate_id = serialize_record(conn, record, image_store, counters, dry_run)
    except CrawlerError as exc:
        log.warning("Failed to serialize record %s: %s", record.source_url, exc)
        counters.failed += 1
        counters.warnings.append(f"serialize failed {record.source_url}: {exc}")
        return None
    counters.inserted += 1
    return inmate_id


def serialize_records(
    conn: psycopg.Connection,
    records: Iterable[Record],
    image_store: ImageStore | None,
    counters: CrawlCounters,
    dry_run: bool = False,
) -> None:
    """Serialize each record independently; one failure never stops the batch."""
    log.info("Serializing records...")
    for idx, record in enumerate(records):
        serialize_and_count(conn, record, image_store, counters, dry_run)
        if idx % PROGRESS_EVERY == 0:
            log.info("Processed %d records", idx + 1)

    log.info(
        "Inserted %d records, failed to insert %d records. Total records: %d.",
        counters.inserted, counters.failed, inmate_count(conn),
    )


# ---------------------------------------------------------------------------
# Backfill
# ---------------------------------------------------------------------------

def update_null_img_record(
    conn: psycopg.Connection,
    inmate_id: int,
    record: Record,
    image_store: ImageStore | None,
) -> str:
    """Upload the freshly parsed photo for an existing inmate and set image_url.

    Raises InternalError if there is nothing to upload or nowhere to put it,
    ObjectStoreError if the upload fails, StoreError if the update fails.
    """
    if not record.profile.has_image:
        raise InternalError(
            f"latest parse of {record.source_url} still has no image; nothing to backfill"
        )
    if not has_image_upload_criteria(record.profile, image_store):
        raise InternalError("no image store configured; cannot backfill images")

    image_key = record.profile.image_key()
    image_store.put(image_key, record.profile.image_bytes)  # type: ignore[union-attr, arg-type]
    log.debug("Backfill image uploaded: %s", image_key)

    try:
        conn.execute(
            "UPDATE inmate SET image_url = %s WHERE id = %s",
            (image_key, inmate_id),
        )
        conn.commit()
    except psycopg.Error as exc:
        conn.rollback()
        raise StoreError(f"image_url update failed for inmate {inmate_id}: {exc}") from exc

    log.info("Backfilled image for inmate %s from %s", inmate_id, record.source_url)
    return image_key


def update_null_img_records(
    conn: psycopg.Connection,
    records: Iterable[tuple[int, Record]],
    image_store: ImageStore | None,
    counters: CrawlCounters,
) -> None:
    """Backfill a batch of (inmate_id, Record) pairs.

    Raises InternalError up front when no image store is configured.
    """
    if image_store is None:
        raise InternalError("no image store configured; cannot backfill images")

    log.info("Updating null img records...")
    for inmate_id, record in records:
        backfill_and_count(conn, inmate_id, record, image_store, counters)
    log.info(
        "Updated %d null img records, failed to update %d.",
        counters.backfill_updated, counters.backfill_failed,
    )


def backfill_and_count(
    conn: psycopg.Connection,
    inmate_id: int,
    record: Record,
    image_store: ImageStore | None,
    counters: CrawlCounters,
) -> None:
    try:
        update_null_img_record(conn, inmate_id, record, image_store)
    except CrawlerError as exc:
        log.warning("Skipping image backfill for inmate %s: %s", inmate_id, exc)
        counters.backfill_failed += 1
        counters.warnings.append(f"backfill failed inmate {inmate_id}: {exc}")
        return
    counters.backfill_updated += 1
