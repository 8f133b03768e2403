"""scjail_etl.incremental

Partitions the natural keys of the most recently persisted inmates into
those that are fully synchronized and those still missing a stored image.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import psycopg

from scjail_etl.shared import ArgumentError, StoreError

log = logging.getLogger(__name__)


@dataclass
class KnownKeys:
    """Natural keys already persisted.

    synchronized:   image_url present and non-empty → skip entirely.
    needs_backfill: image_url null or empty → natural_key → inmate id.
    """

    synchronized: set[str] = field(default_factory=set)
    needs_backfill: dict[str, int] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> KnownKeys:
        return cls()

    def __len__(self) -> int:
        return len(self.synchronized) + len(self.needs_backfill)


def fetch_known_keys(conn: psycopg.Connection, n: int) -> KnownKeys:
    """Read the n newest inmate rows (by descending id) and partition them."""
    if n <= 0:
        raise ArgumentError(f"recent window must be positive, got {n}")

    try:
        rows = conn.execute(
            """
            SELECT id, natural_key, image_url
            FROM inmate
            ORDER BY id DESC
            LIMIT %s
            """,
            (n,),
        ).fetchall()
    except psycopg.Error as exc:
        raise StoreError(f"known-keys query failed: {exc}") from exc

    if not rows:
        log.info("No persisted inmates in the last %d rows; every listed key is a candidate.", n)
        return KnownKeys.empty()

    known = KnownKeys()
    for inmate_id, natural_key, image_url in rows:
        if natural_key is None:
            log.warning("Inmate id=%s has no natural key; excluded from incremental check.", inmate_id)
            continue
        if natural_key in known.synchronized or natural_key in known.needs_backfill:
            # Newest row for a key wins; keeps the two sets disjoint.
            continue
        if image_url:
            known.synchronized.add(natural_key)
        else:
            known.needs_backfill[natural_key] = inmate_id

    log.info(
        "Known keys from last %d rows: %d synchronized, %d need image backfill",
        n, len(known.synchronized), len(known.needs_backfill),
    )
    return known


def inmate_count(conn: psycopg.Connection) -> int:
    try:
        row = conn.execute("SELECT COUNT(*) FROM inmate").fetchone()
    except psycopg.Error as exc:
        raise StoreError(f"inmate count failed: {exc}") from exc
    return int(row[0])
