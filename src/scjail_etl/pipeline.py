"""scjail_etl.pipeline

One harvest run: known-keys lookup, walk, enrich, persist, backfill.

Phase 1: Connect + read the recent-window known keys
Phase 2: Walk the listing(s); new records are embedded and serialized as
         they arrive (oldest first)
Phase 3: Backfill photos for persisted inmates that still lack one

Fatal (propagated to the caller): database connect / known-keys failure and
listing fetch or parse failure. Everything else is per-record.
"""

from __future__ import annotations

import logging
from typing import Iterator

import psycopg
import requests

from scjail_etl.crawl import (
    USER_AGENT,
    Candidate,
    ImageFetcher,
    RateLimiter,
    iter_candidate_records,
)
from scjail_etl.embeddings import OpenAIEmbedder, attach_embedding
from scjail_etl.image_store import ImageStore
from scjail_etl.incremental import fetch_known_keys, inmate_count
from scjail_etl.records import Record
from scjail_etl.serialize import serialize_records, update_null_img_records
from scjail_etl.shared import CrawlCounters, StoreError

log = logging.getLogger(__name__)


def _route_candidates(
    candidates: Iterator[Candidate],
    backfills: list[tuple[int, Record]],
    embedder: OpenAIEmbedder | None,
    counters: CrawlCounters,
) -> Iterator[Record]:
    """Yield records to insert; divert backfill candidates into `backfills`."""
    for candidate in candidates:
        if candidate.needs_backfill:
            log.info(
                "Natural key %s needs an image backfill (inmate %s)",
                candidate.natural_key, candidate.backfill_inmate_id,
            )
            backfills.append((candidate.backfill_inmate_id, candidate.record))  # type: ignore[arg-type]
            continue
        yield attach_embedding(candidate.record, embedder, counters)


def run_crawl(
    run_id: str,
    db_dsn: str,
    listing_urls: list[str],
    image_store: ImageStore | None,
    embedder: OpenAIEmbedder | None,
    rate_limiter: RateLimiter,
    counters: CrawlCounters,
    recent_window: int = 200,
    stop_early: bool = False,
    dry_run: bool = False,
    timeout: int = 30,
    session: requests.Session | None = None,
) -> None:
    """Full incremental harvest run."""
    if session is None:
        session = requests.Session()
        session.headers.update({"User-Agent": USER_AGENT})

    # ------------------------------------------------------------------ #
    # Phase 1: Connect + known keys                                        #
    # ------------------------------------------------------------------ #
    try:
        conn = psycopg.connect(db_dsn, autocommit=False)
    except psycopg.Error as exc:
        raise StoreError(f"database connection failed: {exc}") from exc

    try:
        known = fetch_known_keys(conn, recent_window)
        # Close the read transaction before per-record transactions begin.
        conn.rollback()
        log.info("[%s] %d natural keys known from the last %d rows", run_id, len(known), recent_window)

        # -------------------------------------------------------------- #
        # Phase 2: Walk + serialize                                        #
        # -------------------------------------------------------------- #
        backfills: list[tuple[int, Record]] = []
        with ImageFetcher(session, rate_limiter, timeout=timeout) as image_fetcher:
            candidates = iter_candidate_records(
                session, listing_urls, known, rate_limiter, counters,
                image_fetcher=image_fetcher, stop_early=stop_early, timeout=timeout,
            )
            serialize_records(
                conn,
                _route_candidates(candidates, backfills, embedder, counters),
                image_store,
                counters,
                dry_run=dry_run,
            )

        # -------------------------------------------------------------- #
        # Phase 3: Backfill                                                #
        # -------------------------------------------------------------- #
        if backfills:
            if dry_run:
                log.info("[%s] Dry run: skipping %d image backfill(s)", run_id, len(backfills))
            elif image_store is None:
                log.warning(
                    "[%s] %d inmate(s) need an image but no image store is configured",
                    run_id, len(backfills),
                )
                counters.backfill_failed += len(backfills)
                counters.warnings.append(
                    f"{len(backfills)} image backfill(s) skipped: no image store configured"
                )
            else:
                update_null_img_records(conn, backfills, image_store, counters)

        counters.total_known_rows = inmate_count(conn)
        conn.rollback()
    finally:
        conn.close()

    log.info(
        "[%s] Run complete: inserted=%d updated=%d failed=%d total_rows=%s",
        run_id, counters.inserted, counters.backfill_updated,
        counters.failed, counters.total_known_rows,
    )
