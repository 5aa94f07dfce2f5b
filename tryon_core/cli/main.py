"""
CLI interface for Try-On Core.

Operator commands for the credit ledger, generation jobs and scenarios.
"""

import logging
import sqlite3
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from tryon_core.client.poller import JobPoller
from tryon_core.config.loader import AppConfig, default_config, load_config
from tryon_core.core.errors import PollError
from tryon_core.core.jobs import JobStore
from tryon_core.core.service import build_service, build_sweep
from tryon_core.storage.models import (
    BillingStatus,
    PlanTier,
    ProductRecord,
    ScenarioRecord,
    StoreFinancials,
)
from tryon_core.storage.repository import (
    fetch_store_financials,
    initialize_schema,
    insert_products,
    insert_scenarios,
    upsert_store_financials,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def configure_logging(verbose: bool = False) -> None:
    """Route stdlib logging through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _config(ctx: typer.Context) -> AppConfig:
    return ctx.obj if isinstance(ctx.obj, AppConfig) else default_config()


def _no_schema(error: sqlite3.OperationalError) -> None:
    if "no such table" in str(error).lower():
        console.print("[bold yellow]Database not initialized.[/] Run `tryon-core init` first.")
        sys.exit(EXIT_CODE_FAIL)
    raise error


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to YAML configuration file"
    ),
    db: Optional[str] = typer.Option(
        None, "--db", help="Override the database path from the configuration"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Try-On Core CLI."""
    configure_logging(verbose)
    try:
        config = load_config(str(config_path)) if config_path else default_config()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if db:
        config = replace(config, database=replace(config.database, path=db))
    ctx.obj = config

    if ctx.invoked_subcommand is None:
        console.print("Try-On Core - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the database schema."""
    try:
        initialize_schema(_config(ctx).database.path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def provision(
    ctx: typer.Context,
    store_id: str = typer.Argument(..., help="Store to create or update"),
    balance: Optional[int] = typer.Option(None, "--balance", "-b", help="Credit balance"),
    overdraft: Optional[int] = typer.Option(None, "--overdraft", "-o", help="Overdraft limit"),
    plan: str = typer.Option("micro", "--plan", help="Plan tier"),
    frozen: bool = typer.Option(False, "--frozen", help="Freeze billing"),
    sandbox: bool = typer.Option(False, "--sandbox", help="Enable sandbox mode"),
):
    """Create or replace a store's financial record."""
    db_path = _config(ctx).database.path
    try:
        financials = StoreFinancials(
            store_id=store_id,
            credits_balance=balance,
            overdraft_limit=overdraft,
            plan_tier=PlanTier(plan.lower()),
            billing_status=BillingStatus.FROZEN if frozen else BillingStatus.ACTIVE,
            sandbox_mode=sandbox,
        )
        initialize_schema(db_path)
        upsert_store_financials(financials, db_path)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Store {store_id} provisioned")
    _print_financials(financials)


@app.command("import-scenarios")
def import_scenarios(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="YAML file with a list of scenarios"),
):
    """Import background scenarios from a YAML list."""
    db_path = _config(ctx).database.path
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or []
        if not isinstance(raw, list):
            raise ValueError("Scenario file must contain a list")
        scenarios = [_parse_scenario(item, i) for i, item in enumerate(raw)]
        initialize_schema(db_path)
        count = insert_scenarios(scenarios, db_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error importing scenarios:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Imported {count} scenarios")


def _parse_scenario(item, index: int) -> ScenarioRecord:
    if not isinstance(item, dict):
        raise ValueError(f"Scenario #{index} must be a dictionary")
    for key in ("id", "image_url", "category"):
        if not item.get(key):
            raise ValueError(f"Scenario #{index} is missing '{key}'")
    tags = item.get("tags") or []
    if not isinstance(tags, list):
        raise ValueError(f"Scenario #{index} 'tags' must be a list")
    return ScenarioRecord(
        id=str(item["id"]),
        image_url=item["image_url"],
        lighting_prompt=item.get("lighting_prompt") or "",
        category=item["category"],
        tags=tuple(str(t) for t in tags),
        active=bool(item.get("active", True)),
    )


@app.command("import-products")
def import_products(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="YAML file with a list of catalog products"),
):
    """Import catalog products used for scenario matching."""
    db_path = _config(ctx).database.path
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or []
        if not isinstance(raw, list):
            raise ValueError("Product file must contain a list")
        products = [_parse_product(item, i) for i, item in enumerate(raw)]
        initialize_schema(db_path)
        count = insert_products(products, db_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error importing products:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Imported {count} products")


def _parse_product(item, index: int) -> ProductRecord:
    if not isinstance(item, dict):
        raise ValueError(f"Product #{index} must be a dictionary")
    for key in ("id", "name"):
        if not item.get(key):
            raise ValueError(f"Product #{index} is missing '{key}'")
    return ProductRecord(
        id=str(item["id"]),
        name=str(item["name"]),
        category=item.get("category"),
        description=item.get("description"),
    )


@app.command()
def balance(ctx: typer.Context, store_id: str = typer.Argument(...)):
    """Show a store's credit balance."""
    try:
        financials = fetch_store_financials(store_id, _config(ctx).database.path)
    except sqlite3.OperationalError as e:
        _no_schema(e)
    if financials is None:
        console.print(f"[yellow]Store {store_id} has no financial record (sandbox)[/]")
        sys.exit(EXIT_CODE_PASS)
    _print_financials(financials)


def _print_financials(financials: StoreFinancials) -> None:
    table = Table(title=f"Store {financials.store_id}")
    table.add_column("Field")
    table.add_column("Value", justify="right")
    table.add_row("Credits balance", _fmt(financials.credits_balance))
    table.add_row("Overdraft limit", _fmt(financials.overdraft_limit))
    table.add_row("Plan", financials.plan_tier.value)
    table.add_row("Billing", financials.billing_status.value)
    table.add_row("Sandbox", "yes" if financials.sandbox_mode else "no")
    console.print(table)


def _fmt(value: Optional[int]) -> str:
    return "not set" if value is None else f"{value:,}"


@app.command("job-status")
def job_status(ctx: typer.Context, job_id: str = typer.Argument(...)):
    """Show a generation job straight from the database."""
    try:
        job = JobStore(_config(ctx).database.path).get(job_id)
    except sqlite3.OperationalError as e:
        _no_schema(e)
    if job is None:
        console.print(f"[red]Job {job_id} not found[/]")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Job:[/bold] {job.id}")
    console.print(f"Status: {job.status.value}")
    console.print(f"Store: {job.store_id}")
    console.print(f"Reservation: {job.reservation_id}")
    console.print(f"Attempts: {job.retry_count}/{job.max_retries}")
    if job.result:
        console.print(f"Result: {job.result.image_url}")
    if job.error:
        console.print(f"Error: {job.error}")
    console.print(f"Credit committed: {'yes' if job.credit_committed else 'no'}")


@app.command()
def poll(
    ctx: typer.Context,
    job_id: str = typer.Argument(...),
    base_url: str = typer.Option("http://localhost:8000", "--base-url", help="Job API root URL"),
    deadline: Optional[float] = typer.Option(None, "--deadline", help="Seconds to wait (120-300)"),
):
    """Wait for a job to finish through the HTTP API."""
    settings = _config(ctx).poller
    if deadline is not None and not 120 <= deadline <= 300:
        console.print("[red]Error:[/] --deadline must be between 120 and 300")
        sys.exit(EXIT_CODE_FAIL)

    poller = JobPoller(
        base_url,
        interval_seconds=settings.interval_seconds,
        deadline_seconds=deadline or settings.deadline_seconds,
        max_consecutive_errors=settings.max_consecutive_errors,
        backoff_base_seconds=settings.backoff_base_seconds,
        backoff_cap_seconds=settings.backoff_cap_seconds,
        on_status=lambda status, _: console.print(f"[dim]status: {status}[/]"),
    )
    try:
        with poller:
            result = poller.poll(job_id)
    except PollError as e:
        console.print(f"[red]{type(e).__name__}:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/]")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Job {job_id} completed after {result.elapsed_seconds:.1f}s")
    console.print(f"Image: {result.image_url}")


@app.command()
def sweep(ctx: typer.Context):
    """Re-drive stale PENDING and PROCESSING jobs once."""
    config = _config(ctx)
    service = build_service(config)
    try:
        report = build_sweep(service, config).run_once()
    finally:
        service.dispatcher.shutdown(wait=True)

    console.print("\n[bold]Recovery sweep[/bold]")
    console.print("-" * 40)
    console.print(f"Redispatched: {len(report.redispatched)}")
    console.print(f"Requeued: {len(report.requeued)}")
    console.print(f"Failed: {len(report.failed)}")


@app.command()
def serve(
    ctx: typer.Context,
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(8000, "--port"),
):
    """Run the job API."""
    import uvicorn

    from tryon_core.api.app import create_app

    uvicorn.run(create_app(config=_config(ctx)), host=host, port=port)


if __name__ == "__main__":
    app()
