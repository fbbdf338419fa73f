#!/usr/bin/env python3
"""
Protocoale CLI.

Usage:
    protocoale scrape
    protocoale ingest-dir /path/to/pdfs --dry-run
    protocoale show N030C
    protocoale stats
    protocoale health
    protocoale init-db
    protocoale normalize-title "Protocol terapeutic corespunz ă tor pozi ţ iei nr. 30, cod (N030C): Ranibizumabum"
"""

import json
import logging
import sys
from pathlib import Path

import click

from protocoale import __version__
from protocoale.config import config
from protocoale.errors import ProtocoaleError
from protocoale.models import DocumentStatus, RunStatus


def _get_store():
    """Open the durable store (Postgres)."""
    from protocoale.db.postgres import PostgresStore
    return PostgresStore()


def _abort(message: str):
    click.echo(click.style(f"✗ {message}", fg="red"), err=True)
    sys.exit(1)


def _print_run_summary(result):
    run = result.run
    status_color = "green" if run.status is RunStatus.COMPLETED else "red"

    click.echo(f"\n{'='*50}")
    click.echo(click.style(f"Run {run.id}: {run.status.value.upper()}", fg=status_color, bold=True))
    click.echo(f"Listed:    {result.total}")
    click.echo(f"Found:     {run.protocols_found}")
    click.echo(f"Added:     {run.protocols_added}")
    click.echo(f"Updated:   {run.protocols_updated}")
    click.echo(f"Unchanged: {result.count(DocumentStatus.UNCHANGED)}")
    click.echo(f"Failed:    {run.protocols_failed}")
    click.echo(f"Time:      {result.elapsed_seconds:.1f}s")
    if result.error:
        click.echo(click.style(f"Error: {result.error}", fg="red"))


def _progress_callback(current, total, result):
    status = "✓" if result.success else "✗"
    partial = " (partial)" if result.partial else ""
    click.echo(f"[{current}/{total}] {status} {result.code} {result.status.value}{partial} {result.title[:60]}")


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def cli(verbose: bool):
    """Protocoale - CNAS therapeutic protocol ingestion CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else config.LOG_LEVEL,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


# ============================================================================
# Ingestion Commands
# ============================================================================

@cli.command()
@click.option("--url", default=None, help="Listing page (default: CNAS_PROTOCOLS_URL)")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--no-archive", is_flag=True, help="Do not keep copies of PDFs and images")
def scrape(url: str, workers: int, no_archive: bool):
    """Run a full scrape of the CNAS protocol listing."""
    from protocoale.ingest.extractor import PDFExtractor
    from protocoale.ingest.fetcher import CNASFetcher
    from protocoale.ingest.pipeline import IngestPipeline
    from protocoale.storage import LocalBlobStore

    errors = config.validate()
    if errors:
        _abort("Invalid configuration: " + "; ".join(errors))

    pdf_store = None
    image_store = None
    if not no_archive:
        config.ensure_dirs()
        pdf_store = LocalBlobStore(config.PDF_STORAGE_DIR, url_prefix="/data/pdfs")
        image_store = LocalBlobStore(config.IMAGE_STORAGE_DIR, url_prefix="/data/images")

    store = _get_store()
    try:
        with CNASFetcher(listing_url=url) as fetcher:
            click.echo(f"\nScraping {fetcher.listing_url}")
            pipeline = IngestPipeline(
                fetcher,
                store,
                extractor=PDFExtractor(image_store=image_store),
                pdf_store=pdf_store,
                max_workers=workers,
                progress_callback=_progress_callback,
            )
            result = pipeline.run()
    except ProtocoaleError as e:
        _abort(str(e))
    finally:
        store.close()

    _print_run_summary(result)
    if result.run.status is not RunStatus.COMPLETED:
        sys.exit(1)


@cli.command("ingest-dir")
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--dry-run", is_flag=True, help="Process into an in-memory store, write nothing")
def ingest_dir(directory: str, workers: int, dry_run: bool):
    """Ingest all protocol PDFs in a directory."""
    from protocoale.db.memory import MemoryStore
    from protocoale.ingest.extractor import PDFExtractor
    from protocoale.ingest.fetcher import DirectoryFetcher
    from protocoale.ingest.pipeline import IngestPipeline
    from protocoale.storage import LocalBlobStore

    dir_path = Path(directory)

    if dry_run:
        store = MemoryStore()
        extractor = PDFExtractor()
        pdf_store = None
        click.echo(f"\nDry run over {dir_path} (nothing is persisted)")
    else:
        store = _get_store()
        config.ensure_dirs()
        extractor = PDFExtractor(image_store=LocalBlobStore(config.IMAGE_STORAGE_DIR, url_prefix="/data/images"))
        pdf_store = LocalBlobStore(config.PDF_STORAGE_DIR, url_prefix="/data/pdfs")
        click.echo(f"\nIngesting {dir_path}")

    try:
        pipeline = IngestPipeline(
            DirectoryFetcher(dir_path),
            store,
            extractor=extractor,
            pdf_store=pdf_store,
            max_workers=workers,
            progress_callback=_progress_callback,
        )
        result = pipeline.run()
    except ProtocoaleError as e:
        _abort(str(e))
    finally:
        store.close()

    _print_run_summary(result)
    if result.run.status is not RunStatus.COMPLETED:
        sys.exit(1)


@cli.command("normalize-title")
@click.argument("title")
@click.option("--text-file", type=click.Path(exists=True, dir_okay=False), help="Protocol text used as fallback")
@click.option("--code", default=None, help="Protocol code, enables known-title correction")
def normalize_title(title: str, text_file: str, code: str):
    """Repair, collapse and correct a protocol title."""
    from protocoale.ingest.title_normalizer import TitleNormalizer, is_title_corrupted

    raw_text = Path(text_file).read_text(encoding="utf-8") if text_file else ""
    result = TitleNormalizer().normalize(title, raw_text, code=code)

    click.echo(result)
    if is_title_corrupted(result):
        click.echo(click.style("warning: title still looks corrupted", fg="yellow"), err=True)


# ============================================================================
# Read Commands
# ============================================================================

@cli.command()
@click.argument("code")
@click.option("--versions", default=None, type=int, help="Number of recent versions")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def show(code: str, versions: int, output_json: bool):
    """Show one protocol with its sections, images and versions."""
    store = _get_store()
    try:
        detail = store.get_protocol(code.upper(), versions=versions)
    except ProtocoaleError as e:
        _abort(str(e))
    finally:
        store.close()

    if detail is None:
        _abort(f"Protocol {code.upper()} not found")

    if output_json:
        click.echo(json.dumps(detail.to_dict(), indent=2, ensure_ascii=False))
        return

    p = detail.protocol
    click.echo(click.style(f"\n{p.code} - {p.title}", fg="green", bold=True))
    if p.dci:
        click.echo(f"  DCI: {p.dci}")
    if p.specialty_code:
        click.echo(f"  Specialty: {p.specialty_code}")
    if p.categories:
        click.echo(f"  Categories: {', '.join(p.categories)}")
    if p.last_update_date:
        click.echo(f"  Last update: {p.last_update_date:%Y-%m-%d}")
    click.echo(f"  Extraction quality: {p.extraction_quality:.1f}")

    click.echo(f"\nSections ({len(detail.sections)}):")
    for s in detail.sections:
        heading = s.heading or "(preamble)"
        click.echo(f"  [{s.order}] {heading[:70]} ({len(s.body)} chars)")

    if detail.images:
        click.echo(f"\nImages ({len(detail.images)}):")
        for i in detail.images:
            click.echo(f"  [{i.position}] {i.image_url}")

    click.echo("\nVersions:")
    for v in detail.versions:
        click.echo(f"  v{v.version_number}  {v.recorded_at:%Y-%m-%d %H:%M}  {v.fingerprint[:12]}")


@cli.command()
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def stats(output_json: bool):
    """Show protocol store statistics."""
    store = _get_store()
    try:
        result = store.get_stats()
    except ProtocoaleError as e:
        _abort(str(e))
    finally:
        store.close()

    if output_json:
        click.echo(json.dumps({
            "total_protocols": result.total_protocols,
            "last_update": result.last_update.isoformat() if result.last_update else None,
            "category_counts": result.category_counts,
            "recent_runs": [r.to_dict() for r in result.recent_runs],
        }, indent=2, ensure_ascii=False))
        return

    last_update = f"{result.last_update:%Y-%m-%d %H:%M}" if result.last_update else "never"

    click.echo("\nProtocoale Statistics")
    click.echo("=" * 40)
    click.echo(f"Protocols:         {result.total_protocols:>15,}")
    click.echo(f"Last update:       {last_update:>15}")

    if result.category_counts:
        click.echo("\nCategories:")
        for category, count in result.category_counts.items():
            click.echo(f"  {category:<20} {count:>6,}")

    if result.recent_runs:
        click.echo("\nRecent runs:")
        for run in result.recent_runs:
            started = f"{run.started_at:%Y-%m-%d %H:%M}" if run.started_at else "-"
            click.echo(
                f"  {started}  {run.status.value:<10} found={run.protocols_found} "
                f"added={run.protocols_added} updated={run.protocols_updated} failed={run.protocols_failed}"
            )


@cli.command()
def health():
    """Check store connectivity."""
    store = _get_store()
    try:
        result = store.check_health()
    finally:
        store.close()

    status = result.get("status", "unknown")
    color = {"healthy": "green", "degraded": "yellow"}.get(status, "red")
    click.echo(click.style(f"Store: {status}", fg=color, bold=True))
    if result.get("tables"):
        click.echo(f"  Tables: {', '.join(result['tables'])}")
    if result.get("error"):
        click.echo(f"  Error: {result['error']}")

    if status != "healthy":
        sys.exit(1)


# ============================================================================
# Admin Commands
# ============================================================================

@cli.command("init-db")
def init_db():
    """Initialize database schema."""
    from protocoale.db.postgres import apply_schema, close_pool

    click.echo("\nInitializing Postgres schema...")

    try:
        for name in apply_schema():
            click.echo(f"  Executed {name}")
    except Exception as e:
        _abort(f"Postgres initialization failed: {e}")
    finally:
        close_pool()

    click.echo(click.style("✓ Postgres schema initialized", fg="green"))


# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
