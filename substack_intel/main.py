"""
Main application entry point for Substack Intelligence.

Provides CLI interface for the pipeline, its triggers and operator actions.
"""

import sys
from datetime import timedelta
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from substack_intel.core.config import get_settings, print_configuration_summary, validate_required_settings
from substack_intel.core.exceptions import ConfigurationError, PipelineLockedError, SubstackIntelError
from substack_intel.core.logging import set_correlation_id, setup_logging
from substack_intel.core.models import RunStatus, TriggerRequest, TriggerType, enum_value
from substack_intel.data.db import get_engine
from substack_intel.data.store import PipelineStore
from substack_intel.services.lock import PipelineLock
from substack_intel.utils.reliability import get_circuit_breaker_status, reset_circuit_breaker
from substack_intel.workflows.pipeline import build_orchestrator, run_pipeline

console = Console()

FAILED_STATUSES = (RunStatus.FAILED.value, RunStatus.CANCELLED.value)


def _store(tenant_id: Optional[str] = None) -> PipelineStore:
    settings = get_settings()
    engine = get_engine(settings.database.url, echo=settings.database.echo)
    return PipelineStore(engine, tenant_id or settings.pipeline.tenant_id)


def _fail(ctx, label: str, error: Exception) -> None:
    console.print(f"[red]{label}:[/red] {error}")
    if ctx.obj and ctx.obj.get("debug"):
        console.print_exception()
    sys.exit(1)


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--dry-run", is_flag=True, help="Fetch only, write nothing")
@click.option("--correlation-id", help="Set correlation ID for request tracing")
@click.pass_context
def main(ctx, debug: bool, dry_run: bool, correlation_id: Optional[str]):
    """Newsletter ingestion and company extraction pipeline.

    Fetches Substack newsletters from Gmail, extracts the companies they
    discuss with an LLM and keeps a deduplicated company database.
    """
    ctx.ensure_object(dict)

    settings = get_settings()
    setup_logging(debug=debug or settings.debug, json_output=settings.log_json)

    if correlation_id:
        set_correlation_id(correlation_id)
    if dry_run:
        settings.dry_run = True

    ctx.obj["debug"] = debug
    ctx.obj["dry_run"] = dry_run
    ctx.obj["correlation_id"] = correlation_id


@main.command()
@click.option("--lookback-days", type=int, default=None, help="Days of mail to fetch (1-90)")
@click.option("--force-refresh", is_flag=True, help="Fetch even if a recent run succeeded")
@click.option("--tenant", help="Tenant to run for (default: PIPELINE_TENANT_ID)")
@click.option("--scheduled", is_flag=True, help="Record the run as a scheduled trigger")
@click.pass_context
def run(ctx, lookback_days: Optional[int], force_refresh: bool, tenant: Optional[str], scheduled: bool):
    """Run the pipeline once."""
    settings = get_settings()
    request = TriggerRequest(
        force_refresh=force_refresh,
        lookback_days=lookback_days,
    )
    try:
        console.print("[blue]Starting pipeline run[/blue]")
        if settings.dry_run:
            console.print("[yellow]DRY RUN MODE - nothing will be written[/yellow]")

        result = run_pipeline(
            settings,
            trigger=TriggerType.SCHEDULED if scheduled else TriggerType.MANUAL,
            request=request,
            tenant_id=tenant,
            correlation_id=ctx.obj["correlation_id"],
        )
        _display_run_result(result)
        sys.exit(1 if enum_value(result.status) in FAILED_STATUSES else 0)

    except PipelineLockedError as e:
        console.print(f"[yellow]Pipeline busy:[/yellow] {e.message} (retry in {e.retry_after}s)")
        sys.exit(1)
    except ConfigurationError as e:
        _fail(ctx, "Configuration Error", e)
    except SubstackIntelError as e:
        _fail(ctx, "Pipeline Error", e)


@main.command()
@click.pass_context
def schedule(ctx):
    """Run the scheduler in the foreground."""
    from substack_intel.workflows.scheduler import setup_scheduler

    settings = get_settings()
    try:
        scheduler = setup_scheduler(settings, blocking=True)
    except ValueError as e:
        _fail(ctx, "Invalid schedule", e)

    console.print(f"[blue]Scheduler started:[/blue] {settings.pipeline.schedule_cron} ({settings.pipeline.schedule_timezone})")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown(wait=False)
        console.print("[yellow]Scheduler stopped[/yellow]")


@main.command()
@click.option("--host", help="Bind address (default: API_HOST)")
@click.option("--port", type=int, help="Port (default: API_PORT)")
@click.option("--with-scheduler", is_flag=True, help="Also run scheduled jobs in this process")
def serve(host: Optional[str], port: Optional[int], with_scheduler: bool):
    """Serve the HTTP trigger API."""
    import uvicorn

    from substack_intel.api.app import build_app

    settings = get_settings()
    app = build_app(settings)

    scheduler = None
    if with_scheduler:
        from substack_intel.workflows.scheduler import setup_scheduler

        scheduler = setup_scheduler(settings, blocking=False)
        scheduler.start()

    try:
        uvicorn.run(
            app,
            host=host or settings.pipeline.api_host,
            port=port or settings.pipeline.api_port,
            reload=False,
        )
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=False)


@main.command("reset-failed")
@click.option("--email-id", "email_ids", type=int, multiple=True, help="Only reset these emails")
@click.option("--tenant", help="Tenant (default: PIPELINE_TENANT_ID)")
@click.pass_context
def reset_failed(ctx, email_ids: Tuple[int, ...], tenant: Optional[str]):
    """Put failed emails back in the queue."""
    try:
        count = _store(tenant).reset_failed(list(email_ids) or None)
        console.print(f"[green]Reset {count} failed email(s) to unprocessed[/green]")
    except SubstackIntelError as e:
        _fail(ctx, "Reset Error", e)


@main.command("recover-stuck")
@click.option("--minutes", type=int, default=None, help="Processing age to treat as stuck")
@click.option("--tenant", help="Tenant (default: PIPELINE_TENANT_ID)")
def recover_stuck(minutes: Optional[int], tenant: Optional[str]):
    """Reset emails stuck in processing."""
    settings = get_settings()
    age = minutes if minutes is not None else settings.pipeline.stuck_minutes
    count = _store(tenant).reset_stuck_processing(timedelta(minutes=age))
    console.print(f"[green]Recovered {count} stuck email(s)[/green]")


@main.command()
@click.option("--tenant", help="Tenant (default: PIPELINE_TENANT_ID)")
def unlock(tenant: Optional[str]):
    """Force-release the pipeline lock."""
    settings = get_settings()
    store = _store(tenant)
    lock = PipelineLock(store.engine, store.tenant_id, settings.pipeline.lock_ttl_seconds)
    if lock.force_unlock():
        console.print(f"[green]Pipeline lock for '{store.tenant_id}' released[/green]")
    else:
        console.print(f"[yellow]No lock held for '{store.tenant_id}'[/yellow]")


@main.command()
@click.option("--tenant", help="Tenant (default: PIPELINE_TENANT_ID)")
@click.option("--runs", default=5, help="Number of recent runs to show")
def status(tenant: Optional[str], runs: int):
    """Show email status counts, the lock and recent runs."""
    settings = get_settings()
    store = _store(tenant)

    counts = store.count_by_status()
    table = Table(title=f"Emails ({store.tenant_id})")
    table.add_column("Status", style="cyan")
    table.add_column("Count", style="white", justify="right")
    for name, count in counts.items():
        table.add_row(name, str(count))
    console.print(table)

    lock = PipelineLock(store.engine, store.tenant_id, settings.pipeline.lock_ttl_seconds).status()
    if lock["locked"]:
        console.print(f"[yellow]Locked by {lock['owner']} ({lock['seconds_remaining']}s left)[/yellow]")
    else:
        console.print("[green]Pipeline idle[/green]")

    history = store.list_runs(limit=runs)
    if history:
        run_table = Table(title="Recent Runs")
        run_table.add_column("ID", style="dim")
        run_table.add_column("Trigger", style="cyan")
        run_table.add_column("Status", style="white")
        run_table.add_column("Started", style="dim")
        run_table.add_column("Completed", justify="right")
        run_table.add_column("Failed", justify="right")
        run_table.add_column("Companies", justify="right")
        for record in history:
            run_table.add_row(
                str(record.id),
                record.trigger,
                _status_text(record.status),
                record.started_at.strftime("%Y-%m-%d %H:%M"),
                str(record.emails_completed),
                str(record.emails_failed),
                str(record.companies_extracted),
            )
        console.print(run_table)


@main.command()
@click.option("--tenant", help="Tenant (default: PIPELINE_TENANT_ID)")
@click.option("--limit", default=10, help="Number of companies to show")
def stats(tenant: Optional[str], limit: int):
    """Show newsletter and company statistics."""
    store = _store(tenant)
    newsletter_stats = store.newsletter_stats()

    console.print(f"Total emails: {newsletter_stats['total_emails']}")
    console.print(f"Emails in the last 7 days: {newsletter_stats['recent_emails']}")

    if newsletter_stats["top_newsletters"]:
        table = Table(title="Top Newsletters (30 days)")
        table.add_column("Newsletter", style="cyan")
        table.add_column("Emails", justify="right")
        for row in newsletter_stats["top_newsletters"]:
            table.add_row(row["name"], str(row["count"]))
        console.print(table)

    companies = store.list_companies(limit=limit)
    if companies:
        table = Table(title="Most Mentioned Companies")
        table.add_column("Company", style="cyan")
        table.add_column("Mentions", justify="right")
        table.add_column("Newsletters", justify="right")
        table.add_column("Funding", style="dim")
        for company in companies:
            table.add_row(
                company.name,
                str(company.mention_count),
                str(company.newsletter_diversity),
                company.funding_status,
            )
        console.print(table)


@main.command()
@click.option("--backfill", type=int, default=0, help="Queue up to N companies missing embeddings")
@click.option("--process", "process_batches", type=int, default=0, help="Process N queue batches")
@click.option("--batch-size", default=5, help="Companies per batch")
@click.option("--similar", "similar_to", type=int, help="Show companies similar to this company id")
@click.pass_context
def embeddings(ctx, backfill: int, process_batches: int, batch_size: int, similar_to: Optional[int]):
    """Manage company embeddings."""
    from substack_intel.intelligence.embeddings import EmbeddingService
    from substack_intel.intelligence.llm_client import OpenAILLMClient

    settings = get_settings()
    store = _store()
    service = EmbeddingService(store.engine, OpenAILLMClient(settings.llm), tenant_id=store.tenant_id)

    try:
        if backfill:
            queued = service.backfill_missing(limit=backfill)
            console.print(f"[green]Queued {queued} companies[/green]")

        for _ in range(process_batches):
            summary = service.process_queue(batch_size=batch_size)
            console.print(
                f"Processed {summary['processed']}: "
                f"[green]{summary['completed']} completed[/green], [red]{summary['failed']} failed[/red]"
            )
            if not summary["processed"]:
                break

        if similar_to is not None:
            matches = service.find_similar(similar_to)
            table = Table(title=f"Similar to company {similar_to}")
            table.add_column("Company", style="cyan")
            table.add_column("Similarity", justify="right")
            for match in matches:
                table.add_row(match["name"], f"{match['similarity']:.3f}")
            console.print(table)
    except SubstackIntelError as e:
        _fail(ctx, "Embedding Error", e)

    coverage = service.stats()
    console.print(
        f"Embeddings: {coverage['companies_with_embeddings']}/{coverage['total_companies']} "
        f"({coverage['coverage_percentage']}%)"
    )
    if coverage["queue"]:
        console.print("Queue: " + ", ".join(f"{k}={v}" for k, v in sorted(coverage["queue"].items())))


@main.command()
@click.pass_context
def config(ctx):
    """Display current configuration."""
    missing = validate_required_settings()
    if missing:
        console.print("[red]Configuration Issues:[/red]")
        for item in missing:
            console.print(f"  - Missing: {item}")
        console.print()
    else:
        console.print("[green]Configuration Valid[/green]")
        console.print()

    print_configuration_summary()
    sys.exit(0 if not missing else 1)


@main.command()
@click.pass_context
def health(ctx):
    """Check system health and connectivity."""
    try:
        console.print("[blue]Checking system health...[/blue]")
        orchestrator = build_orchestrator(get_settings(), correlation_id=ctx.obj["correlation_id"])
        health_results = orchestrator.perform_health_checks()
    except SubstackIntelError as e:
        _fail(ctx, "Health Check Error", e)

    overall_status = health_results.get("overall_status", "unknown")
    if overall_status == "healthy":
        console.print("[green]System is healthy[/green]")
    else:
        console.print("[red]System has issues[/red]")

    table = Table(title="Health Check Results")
    table.add_column("Service", style="cyan")
    table.add_column("Status", style="white")
    table.add_column("Details", style="dim")

    for service in ("database", "gmail"):
        status_info = health_results.get(service, {})
        healthy = status_info.get("status") == "healthy"
        details = status_info.get("error") or status_info.get("user") or ""
        table.add_row(
            service.title(),
            "[green]Healthy[/green]" if healthy else "[red]Unhealthy[/red]",
            str(details)[:60],
        )
    console.print(table)

    breakers = get_circuit_breaker_status()
    if breakers:
        cb_table = Table(title="Circuit Breakers")
        cb_table.add_column("Name", style="cyan")
        cb_table.add_column("State", style="white")
        cb_table.add_column("Failures", style="yellow")
        for name, breaker in breakers.items():
            cb_table.add_row(name, breaker["state"], str(breaker["failure_count"]))
        console.print(cb_table)

    sys.exit(0 if overall_status == "healthy" else 1)


@main.command("reset-breaker")
@click.argument("breaker_name")
def reset_breaker(breaker_name: str):
    """Reset a circuit breaker by name."""
    success = reset_circuit_breaker(breaker_name)
    if success:
        console.print(f"[green]Circuit breaker '{breaker_name}' reset[/green]")
    else:
        console.print(f"[red]Circuit breaker '{breaker_name}' not found[/red]")
    sys.exit(0 if success else 1)


def _status_text(status: str) -> str:
    colors = {"completed": "green", "partial": "yellow", "skipped": "dim", "running": "blue"}
    return f"[{colors.get(status, 'red')}]{status}[/{colors.get(status, 'red')}]"


def _display_run_result(result) -> None:
    """Display pipeline run results."""
    status_value = enum_value(result.status)

    if status_value == RunStatus.COMPLETED.value:
        console.print("[green]Pipeline run completed successfully[/green]")
    elif status_value in FAILED_STATUSES:
        console.print(f"[red]Pipeline run {status_value}[/red]")
    else:
        console.print(f"[yellow]Pipeline run {status_value}[/yellow]")

    table = Table(title="Pipeline Run Results")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")

    table.add_row("Status", _status_text(status_value))
    table.add_row("Trigger", enum_value(result.trigger))
    table.add_row("Duration", f"{result.duration_seconds:.2f}s" if result.duration_seconds else "N/A")
    table.add_row("Emails Fetched", str(result.emails_fetched))
    table.add_row("Emails Processed", str(result.emails_processed))
    table.add_row("Completed", str(result.emails_completed))
    table.add_row("Failed", str(result.emails_failed))
    table.add_row("Companies Extracted", str(result.companies_extracted))
    table.add_row("New Companies", str(result.new_companies))

    if result.skipped_reason:
        table.add_row("Skipped", result.skipped_reason)
    if result.error_message:
        message = result.error_message
        table.add_row("Error", message[:100] + "..." if len(message) > 100 else message)

    console.print(table)


if __name__ == "__main__":
    main()
