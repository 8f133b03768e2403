"""scjail_etl.crawl

Roster discovery + per-record fetch.

Design principles:
  - Polite: exactly one in-flight page request, fixed delay between fetches.
  - Oldest first: listing rows are published newest-first and are reversed,
    so newer bookings receive larger inmate ids.
  - Incremental: synchronized natural keys are never re-fetched; keys whose
    inmate row lacks an image are re-fetched and routed to the backfill path.
  - Isolated failures: a network or parse error on one record is logged and
    counted; only a listing failure aborts the run.
  - No retries.

Processing order per listing:
  1.  Fetch listing page(s)                  → natural keys, oldest first
  2.  For each natural key:
      a.  synchronized?  skip (no fetch)
      b.  Fetch detail page
      c.  Submit photo fetch, parse record   → Candidate
      d.  stop_early?    return after the first processed key
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterator

import requests
from bs4 import BeautifulSoup

from scjail_etl.extract import parse_record
from scjail_etl.incremental import KnownKeys
from scjail_etl.records import Record
from scjail_etl.shared import CrawlCounters, NetworkError, ParseError

log = logging.getLogger(__name__)

DETAIL_ROOT = "https://www.scottcountyiowa.us/sheriff/inmates.php"
DEFAULT_LISTING_URL = f"{DETAIL_ROOT}?comdate=today"
USER_AGENT = "scjail-etl/1.0 (+public roster sync)"

LISTING_TABLE_SELECTOR = ".inmates-table"
LISTING_LINK_SELECTOR = ".inmates-table tr td a[href]"


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

@dataclass
class RateLimiter:
    """Fixed politeness delay between successive outbound fetches."""

    delay: float = 0.075
    _last_fetch: float | None = field(default=None, init=False, repr=False)

    def wait(self) -> None:
        """Block until `delay` seconds have passed since the previous fetch."""
        now = time.monotonic()
        if self._last_fetch is not None:
            remaining = self.delay - (now - self._last_fetch)
            if remaining > 0:
                time.sleep(remaining)
                now = time.monotonic()
        self._last_fetch = now


# ---------------------------------------------------------------------------
# Photo prefetch
# ---------------------------------------------------------------------------

class ImageFetcher:
    """Issues best-effort photo downloads on a single background worker.

    submit() returns a Future resolving to the image bytes, or None when the
    download fails or returns a non-success status.
    """

    def __init__(
        self,
        session: requests.Session,
        rate_limiter: RateLimiter,
        timeout: int = 30,
    ) -> None:
        self._session = session
        self._rate_limiter = rate_limiter
        self._timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="img-fetch")

    def submit(self, url: str) -> Future[bytes | None]:
        self._rate_limiter.wait()
        return self._executor.submit(self._download, url)

    def _download(self, url: str) -> bytes | None:
        try:
            resp = self._session.get(url, timeout=self._timeout)
        except requests.RequestException as exc:
            log.warning("Error fetching image %s: %s; ignoring.", url, exc)
            return None
        if resp.status_code != 200:
            log.warning("Image %s returned status %s; ignoring.", url, resp.status_code)
            return None
        return resp.content or None

    def close(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)

    def __enter__(self) -> ImageFetcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Fetch helpers
# ---------------------------------------------------------------------------

def detail_url(natural_key: str) -> str:
    """Detail pages are the roster root plus the listing href (e.g. '?sysid=...')."""
    return f"{DETAIL_ROOT}{natural_key}"


def fetch_page(
    session: requests.Session,
    url: str,
    rate_limiter: RateLimiter,
    timeout: int = 30,
) -> str:
    """GET url after the politeness delay. Raises NetworkError on any failure."""
    rate_limiter.wait()
    try:
        resp = session.get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise NetworkError(f"GET {url} failed: {exc}") from exc
    log.debug("GET %s → %s", url, resp.status_code)
    if resp.status_code != 200:
        raise NetworkError(f"GET {url} returned status {resp.status_code}")
    return resp.text


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def parse_listing(html: str) -> list[str]:
    """Return natural keys from a listing page, oldest first.

    Raises ParseError if the listing table is missing entirely.
    """
    soup = BeautifulSoup(html, "html.parser")
    if soup.select_one(LISTING_TABLE_SELECTOR) is None:
        raise ParseError("listing page has no inmates table")

    keys: list[str] = []
    for a in reversed(soup.select(LISTING_LINK_SELECTOR)):
        href = (a.get("href") or "").strip()
        if not href:
            log.warning("No natural key found in listing link %s", a)
            continue
        keys.append(href)
    return keys


def discover_natural_keys(
    session: requests.Session,
    listing_urls: list[str],
    rate_limiter: RateLimiter,
    counters: CrawlCounters,
    timeout: int = 30,
) -> list[str]:
    """Fetch every listing page and return de-duplicated natural keys in order.

    NetworkError / ParseError propagate: without candidates there is no run.
    """
    keys: list[str] = []
    seen: set[str] = set()
    for url in listing_urls:
        log.info("Fetching listing %s", url)
        html = fetch_page(session, url, rate_limiter, timeout=timeout)
        counters.listing_pages_fetched += 1
        for key in parse_listing(html):
            if key not in seen:
                seen.add(key)
                keys.append(key)
    counters.candidates_discovered += len(keys)
    log.info("Discovered %d natural keys across %d listing page(s)", len(keys), len(listing_urls))
    return keys


# ---------------------------------------------------------------------------
# Walker
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Candidate:
    natural_key: str
    record: Record
    backfill_inmate_id: int | None = None

    @property
    def needs_backfill(self) -> bool:
        return self.backfill_inmate_id is not None


def fetch_record(
    session: requests.Session,
    natural_key: str,
    rate_limiter: RateLimiter,
    counters: CrawlCounters,
    image_fetcher: ImageFetcher | None = None,
    timeout: int = 30,
) -> Record:
    url = detail_url(natural_key)
    log.info("Building record for %s", url)
    html = fetch_page(session, url, rate_limiter, timeout=timeout)
    counters.detail_pages_fetched += 1
    record = parse_record(
        html,
        natural_key,
        url,
        fetch_image=image_fetcher.submit if image_fetcher is not None else None,
    )
    counters.records_parsed += 1
    if record.profile.has_image:
        counters.images_fetched += 1
    return record


def iter_candidate_records(
    session: requests.Session,
    listing_urls: list[str],
    known: KnownKeys,
    rate_limiter: RateLimiter,
    counters: CrawlCounters,
    image_fetcher: ImageFetcher | None = None,
    stop_early: bool = False,
    timeout: int = 30,
) -> Iterator[Candidate]:
    """Yield a Candidate for every key that is new or needs an image backfill."""
    natural_keys = discover_natural_keys(
        session, listing_urls, rate_limiter, counters, timeout=timeout,
    )

    for natural_key in natural_keys:
        if natural_key in known.synchronized:
            log.info("Skipping synchronized natural key %s", natural_key)
            counters.skipped_synchronized += 1
            continue

        try:
            record = fetch_record(
                session, natural_key, rate_limiter, counters,
                image_fetcher=image_fetcher, timeout=timeout,
            )
        except NetworkError as exc:
            log.error("Network error building record %s: %s. Continuing.", natural_key, exc)
            counters.network_errors += 1
            counters.warnings.append(f"network error {natural_key}: {exc}")
        except ParseError as exc:
            log.error("Parse error building record %s: %s. Continuing.", natural_key, exc)
            counters.parse_errors += 1
            counters.warnings.append(f"parse error {natural_key}: {exc}")
        else:
            yield Candidate(
                natural_key=natural_key,
                record=record,
                backfill_inmate_id=known.needs_backfill.get(natural_key),
            )

        if stop_early:
            log.info("Stop-early requested; stopping after %s", natural_key)
            counters.stopped_early = True
            return
