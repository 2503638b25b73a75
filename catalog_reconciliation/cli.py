"""
CLI for the Catalog Reconciliation Tool.

Commands:
- audit: Compare a supplier CSV with the store, optionally apply fixes
- cache-status: Show age of the cached bulk export
- clear-cache: Drop the cached bulk export
- kinds: List mismatch kinds
"""
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import structlog
import typer

from catalog_reconciliation.config import Settings, get_settings
from catalog_reconciliation.clients.shopify_client import ShopifyClient
from catalog_reconciliation.core.cache_store import SqliteCacheStore
from catalog_reconciliation.core.events import EventChannel
from catalog_reconciliation.core.supplier_feed import load_supplier_csv
from catalog_reconciliation.engine.auditor import Auditor
from catalog_reconciliation.engine.bulk_export import BulkExporter, BulkOperationError
from catalog_reconciliation.engine.fetcher import BatchFetcher, FetchAbortedError
from catalog_reconciliation.engine.remediator import Remediator, merge_outcomes
from catalog_reconciliation.models import AuditStatus, MismatchKind

logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="catalog-reconciliation",
    help="Catalog Reconciliation Tool - Audit a supplier feed against the Shopify catalog",
)


def configure_logging(level: str = "INFO", log_format: str = "json") -> None:
    """Configure structlog on top of stdlib logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        stream=sys.stderr,
        force=True,
    )
    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override RECON_LOG_LEVEL"),
):
    settings = get_settings()
    configure_logging(log_level or settings.log_level, settings.log_format)


def parse_kinds(kinds: Optional[List[str]]) -> Optional[List[MismatchKind]]:
    """Validate --kind values."""
    if not kinds:
        return None
    parsed = []
    for kind in kinds:
        try:
            parsed.append(MismatchKind(kind))
        except ValueError:
            valid = ", ".join(k.value for k in MismatchKind)
            raise typer.BadParameter(f"Unknown kind: {kind}. Use one of: {valid}")
    return parsed


async def create_services(settings: Settings, events: EventChannel):
    """Create and connect the client, cache and auditor."""
    client = ShopifyClient(settings)
    cache = SqliteCacheStore(settings.cache_db_path)

    await client.connect()
    await cache.initialize()

    auditor = Auditor(
        fetcher=BatchFetcher.from_settings(client, settings, events),
        exporter=BulkExporter.from_settings(client, cache, settings, events),
        remediator=Remediator.from_settings(client, settings, events),
        events=events,
        excluded_location_id=settings.excluded_location_id,
        clearance_template=settings.clearance_template,
    )
    return client, cache, auditor


async def echo_events(queue: asyncio.Queue) -> None:
    """Print progress events until cancelled."""
    while True:
        event = await queue.get()
        typer.echo(f"  [{event.stage}] {event.message}")


@app.command()
def audit(
    csv_path: Path = typer.Option(..., "--csv", "-c", exists=True, dir_okay=False, help="Supplier CSV file"),
    bulk: bool = typer.Option(False, "--bulk", "-b", help="Compare against a full catalog export"),
    use_cache: bool = typer.Option(False, "--use-cache", help="Reuse the last bulk export if cached"),
    fix: bool = typer.Option(False, "--fix", "-x", help="Apply fixes after the audit"),
    delete_stale: bool = typer.Option(
        False, "--delete-stale", help="Delete store variants missing from the supplier feed"
    ),
    kinds: Optional[List[str]] = typer.Option(None, "--kind", "-k", help="Only fix these mismatch kinds"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output file for the report (JSON)"),
):
    """
    Audit a supplier CSV against the store.

    Classifies every sku as matched, mismatched, missing in the store,
    duplicated in the store, or not in the supplier feed.
    """
    if use_cache and not bulk:
        raise typer.BadParameter("--use-cache only applies to --bulk audits")
    fix_kinds = parse_kinds(kinds)

    supplier_records = load_supplier_csv(csv_path)
    if not supplier_records:
        typer.echo("No products with valid Handle, SKU, Title and Price found in the CSV file.")
        raise typer.Exit(1)

    source_label = csv_path.name
    settings = get_settings()

    async def run():
        events = EventChannel()
        client, cache, auditor = await create_services(settings, events)
        printer = asyncio.create_task(echo_events(events.subscribe()))

        try:
            typer.echo(f"Auditing {len(supplier_records)} supplier records from {source_label}")
            if bulk:
                report = await auditor.run_bulk_audit(supplier_records, source_label, use_cache=use_cache)
            else:
                report = await auditor.run_live_audit(supplier_records, source_label)

            remediation = None
            if fix:
                remediation = await auditor.apply_fixes(report.results, fix_kinds, source_label)
                report = report.model_copy(
                    update={"results": merge_outcomes(report.results, remediation.outcomes)}
                )
            deletion = None
            if delete_stale:
                deletion = await auditor.delete_stale(report.results)
            return report, remediation, deletion
        finally:
            printer.cancel()
            await client.close()
            await cache.close()

    try:
        report, remediation, deletion = asyncio.run(run())
    except BulkOperationError as e:
        typer.echo(f"Bulk export failed with status {e.status.value}: {e}")
        raise typer.Exit(2)
    except FetchAbortedError as e:
        typer.echo(f"Store fetch aborted: {e}")
        raise typer.Exit(2)

    summary = report.summary
    typer.echo("\n" + "=" * 50)
    typer.echo("AUDIT SUMMARY")
    typer.echo("=" * 50)
    typer.echo(f"Source: {report.source_label}")
    typer.echo(f"Matched: {summary.matched}")
    typer.echo(f"Mismatched: {summary.mismatched}")
    typer.echo(f"Missing in store: {summary.missing_in_remote}")
    typer.echo(f"Not in supplier feed: {summary.not_in_supplier_feed}")
    typer.echo(f"Duplicate in store: {summary.duplicate_in_remote}")

    if report.duplicates:
        typer.echo(f"\nDuplicate skus ({len(report.duplicates)}):")
        for dup in report.duplicates[:10]:
            typer.echo(f"  - {dup.sku}: {dup.count} variants")

    mismatched = [r for r in report.results if r.status == AuditStatus.MISMATCHED]
    if mismatched:
        typer.echo(f"\nMismatches ({len(mismatched)}):")
        for result in mismatched[:10]:
            fields = ", ".join(m.field.value for m in result.mismatches)
            typer.echo(f"  - {result.sku} ({result.handle}): {fields}")
        if len(mismatched) > 10:
            typer.echo(f"  ... and {len(mismatched) - 10} more")

    for outcome_report in (remediation, deletion):
        if not outcome_report:
            continue
        typer.echo(f"\n{outcome_report.message}")
        for outcome in [o for o in outcome_report.outcomes if not o.success][:10]:
            label = outcome.field.value if outcome.field else "delete"
            typer.echo(f"  - {outcome.sku} {label}: {outcome.message}")

    if output:
        payload = {"report": report.model_dump(mode="json")}
        if remediation:
            payload["remediation"] = remediation.model_dump(mode="json")
        if deletion:
            payload["deletion"] = deletion.model_dump(mode="json")
        output.write_text(json.dumps(payload, indent=2))
        typer.echo(f"\nResults saved to {output}")


@app.command()
def cache_status():
    """
    Show bulk export cache status.

    Reports whether a cached export exists and how old it is.
    """
    async def run():
        settings = get_settings()
        cache = SqliteCacheStore(settings.cache_db_path)
        await cache.initialize()
        try:
            return await cache.status()
        finally:
            await cache.close()

    status = asyncio.run(run())
    if not status.exists:
        typer.echo("No cached bulk export. A new bulk operation will be started.")
        return
    minutes = (status.age_seconds or 0) / 60
    typer.echo(f"Cached bulk export last updated {status.last_modified.isoformat()} ({minutes:.0f} minutes ago)")


@app.command()
def clear_cache(
    confirm: bool = typer.Option(False, "--confirm", "-y", help="Confirm deletion"),
):
    """
    Delete the cached bulk export.
    """
    if not confirm:
        typer.echo("This will delete the cached bulk export.")
        typer.echo("Use --confirm to proceed.")
        raise typer.Exit(1)

    async def run():
        settings = get_settings()
        cache = SqliteCacheStore(settings.cache_db_path)
        await cache.initialize()
        try:
            return await cache.clear()
        finally:
            await cache.close()

    removed = asyncio.run(run())
    typer.echo("Cache cleared." if removed else "No cache to clear.")


@app.command()
def kinds():
    """
    List mismatch kinds.

    Shows the values accepted by `audit --kind`.
    """
    typer.echo("\nMismatch kinds:")
    for kind in MismatchKind:
        typer.echo(f"  {kind.value}")


if __name__ == "__main__":
    app()
