"""scjail_etl.shared

Shared utilities used by the crawl, serialize and CLI modules.
Includes the error taxonomy, CrawlCounters, and report-writing support.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class CrawlerError(Exception):
    """Base class for all per-record and per-run failures."""


class NetworkError(CrawlerError):
    """Raised when an outbound fetch fails at the transport or HTTP level."""


class ParseError(CrawlerError):
    """Raised when a document lacks a structure the record requires."""


class ArgumentError(CrawlerError):
    """Raised when a caller passes an invalid argument."""


class InternalError(CrawlerError):
    """Raised on logic/contract violations (e.g. enrichment request construction)."""


class StoreError(CrawlerError):
    """Raised when a relational store operation fails."""


class ObjectStoreError(CrawlerError):
    """Raised when an object-storage upload fails."""


# ---------------------------------------------------------------------------
# CrawlCounters
# ---------------------------------------------------------------------------

@dataclass
class CrawlCounters:
    # Crawl / fetch
    listing_pages_fetched: int = 0
    candidates_discovered: int = 0
    skipped_synchronized: int = 0
    detail_pages_fetched: int = 0
    records_parsed: int = 0
    images_fetched: int = 0
    # Persistence
    inserted: int = 0
    failed: int = 0
    images_uploaded: int = 0
    image_upload_failures: int = 0
    aliases_failed: int = 0
    backfill_updated: int = 0
    backfill_failed: int = 0
    embeddings_gathered: int = 0
    embedding_failures: int = 0
    total_known_rows: int | None = None
    # Error buckets
    network_errors: int = 0
    parse_errors: int = 0
    # Stop
    stopped_early: bool = False
    abort_reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def build_crawl_report(counters: CrawlCounters, dry_run: bool) -> str:
    lines = [
        "=== Jail Roster Crawl Report ===",
        f"dry_run          : {dry_run}",
        "",
        "--- Crawl ---",
        f"listing_pages    : {counters.listing_pages_fetched}",
        f"discovered       : {counters.candidates_discovered}",
        f"skipped(synced)  : {counters.skipped_synchronized}",
        f"detail_pages     : {counters.detail_pages_fetched}",
        f"records_parsed   : {counters.records_parsed}",
        f"images_fetched   : {counters.images_fetched}",
        "",
        "--- Persistence ---",
        f"inserted               : {counters.inserted}",
        f"failed                 : {counters.failed}",
        f"backfill_updated       : {counters.backfill_updated}",
        f"backfill_failed        : {counters.backfill_failed}",
        f"images_uploaded        : {counters.images_uploaded}",
        f"image_upload_failures  : {counters.image_upload_failures}",
        f"aliases_failed         : {counters.aliases_failed}",
        f"embeddings_gathered    : {counters.embeddings_gathered}",
        f"embedding_failures     : {counters.embedding_failures}",
        f"total_known_rows       : {counters.total_known_rows}",
        "",
        "--- Errors ---",
        f"network_errors   : {counters.network_errors}",
        f"parse_errors     : {counters.parse_errors}",
    ]
    if counters.stopped_early:
        lines.append("stopped_early    : True")
    if counters.abort_reason:
        lines.append(f"abort_reason     : {counters.abort_reason}")
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)


def write_run_report(
    run_id: str,
    started_at: str,
    dry_run: bool,
    listing_urls: list[str],
    counters: CrawlCounters,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        "listing_urls": listing_urls,
        "counters": counters.to_dict(),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
