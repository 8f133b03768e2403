"""scjail_etl.cli

CLI entrypoint for the jail roster harvester.

One invocation = one batch run: read the recent-window known keys, walk the
listing page(s), persist new bookings, backfill missing photos.

Usage:
    python -m scjail_etl.cli \\
        --db-dsn "$DATABASE_URL" \\
        --gcs-bucket "$GCS_BUCKET"

Usage (local photos, no embeddings, nothing committed):
    python -m scjail_etl.cli \\
        --db-dsn "$DATABASE_URL" \\
        --image-local-dir artifacts/mugshots \\
        --no-embed --dry-run --stop-early

Credentials are read from the environment by the respective SDKs
(GOOGLE_APPLICATION_CREDENTIALS, OPENAI_API_KEY), never from CLI args.
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click

from scjail_etl.crawl import DEFAULT_LISTING_URL, RateLimiter
from scjail_etl.embeddings import DEFAULT_EMBEDDING_MODEL, OpenAIEmbedder
from scjail_etl.image_store import GcsImageStore, ImageStore, LocalImageStore
from scjail_etl.pipeline import run_crawl
from scjail_etl.shared import CrawlCounters, CrawlerError, build_crawl_report, write_run_report


@click.command()
@click.option("--db-dsn", required=True, envvar="DATABASE_URL", help="PostgreSQL DSN")
@click.option(
    "--listing-url",
    "listing_urls",
    multiple=True,
    default=(DEFAULT_LISTING_URL,),
    show_default=True,
    help="Roster listing page; repeat to walk several",
)
@click.option(
    "--request-delay-seconds",
    default=0.075,
    type=float,
    envvar="REQUEST_DELAY_SECONDS",
    show_default=True,
    help="Fixed delay between outbound fetches",
)
@click.option(
    "--recent-window",
    default=200,
    type=click.IntRange(min=1),
    envvar="RECENT_WINDOW",
    show_default=True,
    help="Number of newest inmate rows consulted for already-known natural keys",
)
@click.option("--stop-early", is_flag=True, default=False, envvar="STOP_EARLY", help="Stop after the first processed candidate")
@click.option("--gcs-bucket", default=None, envvar="GCS_BUCKET", help="GCS bucket for booking photos")
@click.option("--image-local-dir", default=None, type=click.Path(), help="Store photos under a local dir instead of GCS")
@click.option("--embed/--no-embed", default=None, help="Gather embeddings (default: when OPENAI_API_KEY is set)")
@click.option("--embedding-model", default=DEFAULT_EMBEDDING_MODEL, show_default=True)
@click.option("--timeout", default=30, type=int, show_default=True, help="Per-request timeout in seconds")
@click.option("--dry-run", is_flag=True, default=False, help="Walk and parse; roll back every write, upload nothing")
@click.option("--run-id", default=None, help="Run id (default: random uuid4)")
@click.option(
    "--log-level",
    default="INFO",
    envvar="LOG_LEVEL",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    db_dsn: str,
    listing_urls: tuple[str, ...],
    request_delay_seconds: float,
    recent_window: int,
    stop_early: bool,
    gcs_bucket: str | None,
    image_local_dir: str | None,
    embed: bool | None,
    embedding_model: str,
    timeout: int,
    dry_run: bool,
    run_id: str | None,
    log_level: str,
) -> None:
    """Incremental Scott County jail roster harvester."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    counters = CrawlCounters()

    # Image store selection
    image_store: ImageStore | None
    if image_local_dir:
        image_store = LocalImageStore(base_dir=Path(image_local_dir))
    elif gcs_bucket:
        image_store = GcsImageStore(bucket_name=gcs_bucket)
    else:
        image_store = None
        click.echo(
            f"[{run_id}] WARNING: no image store configured; photos will not be uploaded. "
            "Provide --gcs-bucket or --image-local-dir.",
            err=True,
        )

    # Embedder selection
    if embed is None:
        embed = bool(os.environ.get("OPENAI_API_KEY"))
    embedder = OpenAIEmbedder(model=embedding_model) if embed else None

    rate_limiter = RateLimiter(delay=request_delay_seconds)
    urls = list(listing_urls)

    click.echo(
        f"[{run_id}] scjail_etl listing_urls={urls} recent_window={recent_window} "
        f"embed={embed} stop_early={stop_early} dry_run={dry_run}"
    )
    try:
        run_crawl(
            run_id=run_id,
            db_dsn=db_dsn,
            listing_urls=urls,
            image_store=image_store,
            embedder=embedder,
            rate_limiter=rate_limiter,
            counters=counters,
            recent_window=recent_window,
            stop_early=stop_early,
            dry_run=dry_run,
            timeout=timeout,
        )
    except CrawlerError as exc:
        counters.abort_reason = f"{type(exc).__name__}: {exc}"
        click.echo(f"[{run_id}] FATAL: {counters.abort_reason}", err=True)

    report = build_crawl_report(counters, dry_run=dry_run)
    click.echo(report)

    report_path = write_run_report(run_id, started_at, dry_run, urls, counters)
    click.echo(f"[{run_id}] Run report: {report_path}")

    if counters.abort_reason:
        sys.exit(1)
    if counters.failed > 0 and not dry_run:
        click.echo(
            f"[{run_id}] {counters.failed} record(s) failed to serialize; exiting non-zero",
            err=True,
        )
        sys.exit(1)
    if dry_run:
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")


if __name__ == "__main__":
    main()
