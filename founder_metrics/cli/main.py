"""
CLI interface for Founder Metrics.

Reporting surface for the metrics engine plus the operator's pricing and
feature-flag operations.
"""

import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from founder_metrics.config.loader import load_settings
from founder_metrics.core.aggregation import AggregatedGroup, rank_plans
from founder_metrics.core.errors import DataUnavailable, MalformedRecord, RecordNotFound
from founder_metrics.core.metrics import MetricsReport, MetricsService
from founder_metrics.logging_setup import configure_logging
from founder_metrics.storage.db import Datastore
from founder_metrics.storage.models import BillingUsageType, FlagStrategy, ServiceType
from founder_metrics.storage.repository import (
    DEFAULT_ACTIVITY_LIMIT,
    AccountRepository,
    AuditLogRepository,
    FeatureFlagRepository,
    LedgerReader,
    PlanRepository,
    ServiceRateRepository,
    initialize_schema,
)

app = typer.Typer(help="Founder platform metrics and administration.")
rates_app = typer.Typer(help="Service pricing rates.")
accounts_app = typer.Typer(help="Customer accounts.")
flags_app = typer.Typer(help="Feature flags.")
app.add_typer(accounts_app, name="accounts")
app.add_typer(rates_app, name="rates")
app.add_typer(flags_app, name="flags")

console = Console()
logger = logging.getLogger(__name__)

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

UNAVAILABLE_MESSAGE = "Metrics unavailable, try again"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
):
    """Founder Metrics CLI."""
    try:
        settings = load_settings(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    configure_logging(settings.logging.level)
    ctx.obj = {
        "settings": settings,
        "datastore": Datastore(
            main_path=settings.database.main,
            founder_path=settings.database.founder,
            timeout=settings.database.timeout_seconds,
        ),
    }
    if ctx.invoked_subcommand is None:
        console.print("Founder Metrics - Use --help to see available commands")


def _datastore(ctx: typer.Context) -> Datastore:
    return ctx.obj["datastore"]


def _metrics_service(ctx: typer.Context, days: Optional[int]) -> MetricsService:
    settings = ctx.obj["settings"]
    reader = LedgerReader(
        _datastore(ctx),
        cost_window_days=days or settings.metrics.cost_window_days,
    )
    return MetricsService(reader, timeout=settings.metrics.read_timeout_seconds)


def _fail(message: str, output: str = "table") -> None:
    if output == "json":
        typer.echo(json.dumps({"success": False, "error": message}))
    else:
        console.print(f"[red]{message}[/]")
    sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: Decimal) -> str:
    """Format currency with proper symbols and formatting."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def _format_percent(value: Decimal) -> str:
    return f"{value:,.1f}%"


@app.command()
def init(ctx: typer.Context):
    """Create the database tables if they don't exist."""
    try:
        initialize_schema(_datastore(ctx))
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def report(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(
        None,
        "--days",
        "-d",
        min=1,
        help="Length of the provider cost window in days"
    ),
    output: str = typer.Option(
        "table",
        "--output",
        "-o",
        help="Output format (table, json)"
    ),
):
    """
    Show MRR, ARR, gross margin and the cost and revenue breakdowns.

    If the data cannot be read the command fails; it never reports zeros
    in place of unknown metrics.
    """
    if output not in ("table", "json"):
        _fail(f"Unknown output format: {output}")
    try:
        result = _metrics_service(ctx, days).report()
    except DataUnavailable as e:
        logger.debug("Report failed: %s", e)
        _fail(UNAVAILABLE_MESSAGE, output)
        return

    if output == "json":
        typer.echo(json.dumps({"success": True, "data": result.to_dict()}, indent=2))
    else:
        _display_report(result)
    sys.exit(EXIT_CODE_OK)


@app.command()
def costs(
    ctx: typer.Context,
    by: str = typer.Option(
        "provider",
        "--by",
        "-b",
        help="Group provider costs by 'provider' or 'category'"
    ),
    days: Optional[int] = typer.Option(None, "--days", "-d", min=1, help="Cost window in days"),
):
    """Show provider costs for the cost window."""
    if by not in ("provider", "category"):
        _fail(f"--by must be 'provider' or 'category', not '{by}'")
    try:
        result = _metrics_service(ctx, days).report()
    except DataUnavailable:
        _fail(UNAVAILABLE_MESSAGE)
        return

    groups = result.cost_by_provider if by == "provider" else result.cost_by_category
    title = "Costs by Provider" if by == "provider" else "Costs by Category"
    _print_groups(title, by.capitalize(), "Cost", "Records", groups)


@app.command()
def revenue(ctx: typer.Context):
    """Show monthly revenue by tier for active subscriptions."""
    try:
        result = _metrics_service(ctx, None).report()
    except DataUnavailable:
        _fail(UNAVAILABLE_MESSAGE)
        return
    _print_groups("Revenue by Tier", "Tier", "Revenue", "Accounts", result.revenue_by_tier)


@app.command()
def plans(
    ctx: typer.Context,
    top: bool = typer.Option(False, "--top", help="Rank plans by active accounts instead of listing them"),
):
    """List subscription plans."""
    try:
        if top:
            ranked = rank_plans(LedgerReader(_datastore(ctx)).active_subscriptions())
        else:
            all_plans = PlanRepository(_datastore(ctx)).list_plans()
    except DataUnavailable:
        _fail(UNAVAILABLE_MESSAGE)
        return

    if top:
        table = Table(title="Top Performing Plans")
        table.add_column("Plan", style="cyan")
        table.add_column("Accounts", justify="right")
        table.add_column("Revenue", justify="right")
        for item in ranked:
            table.add_row(item.plan, str(item.accounts), _format_currency(item.revenue))
    else:
        table = Table(title="Subscription Plans")
        table.add_column("Plan", style="cyan")
        table.add_column("Tier")
        table.add_column("Monthly", justify="right")
        table.add_column("Annual", justify="right")
        table.add_column("Active")
        for plan in all_plans:
            table.add_row(
                plan.plan_name,
                plan.tier.value if plan.tier else "-",
                _format_currency(plan.price_monthly),
                _format_currency(plan.price_annually),
                "yes" if plan.is_active else "no",
            )
    console.print(table)


@accounts_app.callback(invoke_without_command=True)
def accounts(ctx: typer.Context):
    """List accounts with their plan and usage."""
    if ctx.invoked_subcommand is not None:
        return
    try:
        summaries = AccountRepository(_datastore(ctx)).list_accounts()
    except DataUnavailable:
        _fail(UNAVAILABLE_MESSAGE)
        return

    table = Table(title="Accounts")
    table.add_column("Name", style="cyan")
    table.add_column("Email")
    table.add_column("Plan")
    table.add_column("Status")
    table.add_column("MRR", justify="right")
    table.add_column("Bots", justify="right")
    table.add_column("Users", justify="right")
    for account in summaries:
        status_style = "green" if account.status == "active" else "yellow"
        table.add_row(
            account.name,
            account.email,
            account.plan,
            f"[{status_style}]{account.status}[/{status_style}]",
            _format_currency(account.mrr),
            str(account.chatbots),
            str(account.users),
        )
    console.print(table)


@accounts_app.command("show")
def show_account(ctx: typer.Context, account_id: str = typer.Argument(..., help="Account id")):
    """Show one account's plan, revenue and usage."""
    try:
        account = AccountRepository(_datastore(ctx)).get_account(account_id)
    except DataUnavailable:
        _fail(UNAVAILABLE_MESSAGE)
        return
    if account is None:
        _fail(f"No account with id {account_id}")
        return

    console.print(f"\n[bold]{account.name}[/bold] ({account.id})")
    console.print(f"Email: {account.email}")
    console.print(f"Plan: {account.plan} ({account.status})")
    console.print(f"MRR: {_format_currency(account.mrr)}")
    console.print(f"Chatbots: {account.chatbots}")
    console.print(f"Users: {account.users}")
    created = account.created_at.strftime("%Y-%m-%d") if account.created_at else "unknown"
    console.print(f"Created: {created}")


@app.command()
def activity(
    ctx: typer.Context,
    limit: int = typer.Option(DEFAULT_ACTIVITY_LIMIT, "--limit", "-l", min=1, help="Number of events to show"),
):
    """Show the most recent account activity."""
    try:
        entries = AuditLogRepository(_datastore(ctx)).recent(limit=limit)
    except DataUnavailable:
        _fail(UNAVAILABLE_MESSAGE)
        return

    if not entries:
        console.print("[dim]No recent activity.[/]")
        return
    now = datetime.now(timezone.utc)
    table = Table(title="Recent Activity")
    table.add_column("Account", style="cyan")
    table.add_column("Activity")
    table.add_column("When", justify="right")
    for entry in entries:
        table.add_row(entry.account_name, entry.description, _format_time_ago(entry.created_at, now))
    console.print(table)


def _format_time_ago(moment: Optional[datetime], now: datetime) -> str:
    if moment is None:
        return "Just now"
    minutes = int((now - moment).total_seconds() // 60)
    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''} ago"


@rates_app.command("list")
def list_rates(ctx: typer.Context):
    """List active service rates."""
    try:
        rates = ServiceRateRepository(_datastore(ctx)).list_active()
    except DataUnavailable as e:
        _fail(f"Could not read service rates: {e}")
        return

    table = Table(title="Service Rates")
    table.add_column("ID", style="dim")
    table.add_column("Service", style="cyan")
    table.add_column("Usage")
    table.add_column("Rate/unit", justify="right")
    table.add_column("Currency")
    for rate in rates:
        table.add_row(rate.id[:8], rate.service_type.value, rate.usage_type.value,
                      f"{rate.rate_per_unit:f}", rate.currency)
    console.print(table)


@rates_app.command("create")
def create_rate(
    ctx: typer.Context,
    service: ServiceType = typer.Argument(..., help="Service type"),
    usage: BillingUsageType = typer.Argument(..., help="Usage type"),
    rate: str = typer.Argument(..., help="Rate per unit"),
    currency: str = typer.Option("CREDITS", "--currency", help="Currency of the rate"),
):
    """Set the active rate for a service and usage type."""
    amount = _parse_rate(rate)
    try:
        created = ServiceRateRepository(_datastore(ctx)).create(service, usage, amount, currency)
    except (DataUnavailable, ValueError) as e:
        _fail(f"Could not create service rate: {e}")
        return
    console.print(f"[green]✓[/] {created.service_type.value}/{created.usage_type.value} "
                  f"now {created.rate_per_unit:f} {created.currency} ({created.id})")


@rates_app.command("update")
def update_rate(
    ctx: typer.Context,
    rate_id: str = typer.Argument(..., help="Rate id"),
    rate: Optional[str] = typer.Option(None, "--rate", help="New rate per unit"),
    active: Optional[bool] = typer.Option(None, "--active/--inactive", help="Activate or deactivate"),
):
    """Change an existing rate."""
    amount = _parse_rate(rate) if rate is not None else None
    try:
        updated = ServiceRateRepository(_datastore(ctx)).update(rate_id, rate_per_unit=amount, is_active=active)
    except RecordNotFound:
        _fail(f"No service rate with id {rate_id}")
        return
    except (DataUnavailable, MalformedRecord, ValueError) as e:
        _fail(f"Could not update service rate: {e}")
        return
    state = "active" if updated.is_active else "inactive"
    console.print(f"[green]✓[/] Rate {updated.id} is {updated.rate_per_unit:f} ({state})")


def _parse_rate(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation:
        _fail(f"Invalid rate: {value}")
    if not amount.is_finite() or amount < 0:
        _fail(f"Invalid rate: {value}")
    return amount


@flags_app.command("list")
def list_flags(ctx: typer.Context):
    """List feature flags."""
    try:
        flags = FeatureFlagRepository(_datastore(ctx)).list_flags()
    except DataUnavailable as e:
        _fail(f"Could not read feature flags: {e}")
        return

    table = Table(title="Feature Flags")
    table.add_column("Key", style="cyan")
    table.add_column("Name")
    table.add_column("Strategy")
    table.add_column("Enabled")
    for flag in flags:
        enabled = "[green]on[/green]" if flag.is_enabled else "[red]off[/red]"
        table.add_row(flag.key, flag.name, flag.strategy.value, enabled)
    console.print(table)


@flags_app.command("create")
def create_flag(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Flag key"),
    name: str = typer.Argument(..., help="Display name"),
    description: Optional[str] = typer.Option(None, "--description", help="What the flag controls"),
    strategy: FlagStrategy = typer.Option(FlagStrategy.GLOBAL, "--strategy", help="Rollout strategy"),
    value: Optional[str] = typer.Option(None, "--value", help="Flag value as a JSON object"),
    enabled: bool = typer.Option(True, "--enabled/--disabled", help="Initial state"),
):
    """Create a feature flag."""
    parsed = _parse_flag_value(value)
    try:
        flag = FeatureFlagRepository(_datastore(ctx)).create(
            key, name, description=description, strategy=strategy, value=parsed, is_enabled=enabled
        )
    except (DataUnavailable, ValueError) as e:
        _fail(f"Could not create feature flag: {e}")
        return
    console.print(f"[green]✓[/] Created {flag.key} ({flag.strategy.value})")


def _parse_flag_value(value: Optional[str]) -> Optional[dict]:
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except ValueError:
        _fail("--value must be valid JSON")
    if not isinstance(parsed, dict):
        _fail("--value must be a JSON object")
    return parsed


def _set_flag(ctx: typer.Context, key: str, enabled: bool) -> None:
    try:
        FeatureFlagRepository(_datastore(ctx)).set_enabled(key, enabled)
    except RecordNotFound:
        _fail(f"No feature flag '{key}'")
        return
    except (DataUnavailable, MalformedRecord) as e:
        _fail(f"Could not update feature flag: {e}")
        return
    console.print(f"[green]✓[/] {key} {'enabled' if enabled else 'disabled'}")


@flags_app.command("enable")
def enable_flag(ctx: typer.Context, key: str = typer.Argument(..., help="Flag key")):
    """Turn a feature flag on."""
    _set_flag(ctx, key, True)


@flags_app.command("disable")
def disable_flag(ctx: typer.Context, key: str = typer.Argument(..., help="Flag key")):
    """Turn a feature flag off."""
    _set_flag(ctx, key, False)


@flags_app.command("set")
def set_flag(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Flag key"),
    strategy: Optional[FlagStrategy] = typer.Option(None, "--strategy", help="Rollout strategy"),
    value: Optional[str] = typer.Option(None, "--value", help="Flag value as a JSON object"),
):
    """Change a flag's rollout strategy or value."""
    parsed = _parse_flag_value(value)
    try:
        flag = FeatureFlagRepository(_datastore(ctx)).update(key, strategy=strategy, value=parsed)
    except RecordNotFound:
        _fail(f"No feature flag '{key}'")
        return
    except (DataUnavailable, MalformedRecord) as e:
        _fail(f"Could not update feature flag: {e}")
        return
    console.print(f"[green]✓[/] {flag.key}: strategy={flag.strategy.value} value={json.dumps(flag.value)}")


def _print_groups(title: str, key_label: str, amount_label: str, count_label: str,
                  groups: List[AggregatedGroup]) -> None:
    if not groups:
        console.print(f"\n[dim]{title}: no data for this period.[/]")
        return
    table = Table(title=title)
    table.add_column(key_label, style="cyan")
    table.add_column(amount_label, justify="right")
    table.add_column("Share", justify="right")
    table.add_column(count_label, justify="right")
    for group in groups:
        table.add_row(
            group.key,
            _format_currency(group.total_amount),
            _format_percent(group.percentage_of_total),
            str(group.count),
        )
    console.print(table)


def _display_report(result: MetricsReport) -> None:
    """Display the metrics report in a clean, financial format."""
    snapshot = result.snapshot
    console.print("\n[bold]Platform Metrics[/bold]")
    console.print("-" * 40)
    console.print(f"MRR: {_format_currency(snapshot.mrr)}")
    console.print(f"ARR: {_format_currency(snapshot.arr)}")
    console.print(f"Active accounts: {snapshot.active_account_count}")
    window = ""
    if result.window_start is not None and result.window_end is not None:
        days = (result.window_end - result.window_start) / timedelta(days=1)
        window = f" (last {days:g} days)"
    console.print(f"Provider cost{window}: {_format_currency(snapshot.total_provider_cost)}")
    console.print(f"Gross margin: {_format_percent(snapshot.gross_margin_pct)}")
    if result.skipped_records:
        console.print(f"[yellow]Skipped {result.skipped_records} malformed record(s)[/]")

    _print_groups("Costs by Provider", "Provider", "Cost", "Records", result.cost_by_provider)
    _print_groups("Costs by Category", "Category", "Cost", "Records", result.cost_by_category)
    _print_groups("Revenue by Tier", "Tier", "Revenue", "Accounts", result.revenue_by_tier)


if __name__ == "__main__":
    app()
