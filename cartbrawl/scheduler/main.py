"""
Command-line entry point for the background jobs.

Meant to be invoked by an external scheduler, e.g. cron:

    * * * * *    cartbrawl-jobs run-all --no-revenue
    */5 * * * *  cartbrawl-jobs sync
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import typer
from rich.console import Console
from rich.table import Table

from cartbrawl.core.database import init_database, close_database
from cartbrawl.core.exceptions import PartialBatchFailure
from cartbrawl.core.logging import setup_logging, get_logger
from cartbrawl.scheduler.jobs import BackgroundJobRunner
from cartbrawl.services.shopify_client import close_shopify_client
from cartbrawl.services.whop_client import close_whop_client

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="CartBrawl background jobs")


def _parse_now(now: Optional[str]) -> Optional[datetime]:
    if not now:
        return None
    try:
        parsed = datetime.fromisoformat(now.replace("Z", "+00:00"))
    except ValueError:
        raise typer.BadParameter("--now must be an ISO-8601 timestamp")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _run(job: str, action: Callable[[BackgroundJobRunner], Awaitable[Any]], strict: bool) -> Dict[str, Any]:
    async def _main() -> Dict[str, Any]:
        setup_logging()
        await init_database()
        try:
            result = await action(BackgroundJobRunner())
        finally:
            await close_whop_client()
            await close_shopify_client()
            await close_database()
        return result if isinstance(result, dict) else result.to_dict()

    result = asyncio.run(_main())
    console.print_json(json.dumps(result, default=str))

    failed = _failed_units(result)
    if strict and failed:
        error = PartialBatchFailure(job, _succeeded_units(result), failed)
        logger.warning("Batch finished with failures", job=job, failed=failed)
        console.print(f"❌ {error.message}")
        raise typer.Exit(code=1)
    return result


def _failed_units(result: Dict[str, Any]) -> int:
    if "failed" in result:
        return int(result["failed"])
    return sum(int(part.get("failed", 0)) for part in result.values() if isinstance(part, dict))


def _succeeded_units(result: Dict[str, Any]) -> int:
    keys = ("started", "ended", "notified", "updated", "paid")
    if any(key in result for key in keys):
        return sum(int(result.get(key, 0)) for key in keys)
    return sum(_succeeded_units(part) for part in result.values() if isinstance(part, dict))


@app.command("run-all")
def run_all(
    now: Optional[str] = typer.Option(None, help="Override the current time (ISO-8601, UTC)"),
    revenue: bool = typer.Option(True, "--revenue/--no-revenue", help="Include the revenue sync"),
    strict: bool = typer.Option(False, help="Exit non-zero when any unit failed")
):
    """Run every background job once."""
    moment = _parse_now(now)
    _run("run-all", lambda runner: runner.run_all(moment, sync_revenue=revenue), strict)


@app.command()
def advance(
    now: Optional[str] = typer.Option(None, help="Override the current time (ISO-8601, UTC)"),
    strict: bool = typer.Option(False, help="Exit non-zero when any unit failed")
):
    """Advance competition statuses."""
    moment = _parse_now(now)
    _run("advance", lambda runner: runner.lifecycle.advance_statuses(moment), strict)


@app.command()
def notify(
    now: Optional[str] = typer.Option(None, help="Override the current time (ISO-8601, UTC)"),
    strict: bool = typer.Option(False, help="Exit non-zero when any unit failed")
):
    """Send starting-soon and ending-soon notices."""
    moment = _parse_now(now)

    async def _notify(runner: BackgroundJobRunner):
        starting = await runner.lifecycle.notify_upcoming_starts(moment)
        ending = await runner.lifecycle.notify_ending_soon(moment)
        return dict(starting_soon=starting.to_dict(), ending_soon=ending.to_dict())

    _run("notify", _notify, strict)


@app.command()
def sync(
    competition_id: Optional[str] = typer.Option(None, "--competition", help="Only sync this competition"),
    strict: bool = typer.Option(False, help="Exit non-zero when any unit failed")
):
    """Recompute participant revenue."""
    _run("sync", lambda runner: runner.sync_revenue(competition_id), strict)


@app.command()
def settle(
    competition_id: Optional[str] = typer.Option(None, "--competition", help="Settle this competition"),
    strict: bool = typer.Option(False, help="Exit non-zero when any unit failed")
):
    """Settle one competition, or retry every pending payout."""
    if competition_id:
        async def _settle(runner: BackgroundJobRunner):
            outcome = await runner.settlement.settle(competition_id)
            return dict(
                success=outcome.success,
                failed=0 if outcome.success else 1,
                data=outcome.data,
                error=outcome.error,
                error_code=outcome.error_code,
            )
        _run("settle", _settle, strict)
    else:
        _run("settle", lambda runner: runner.settlement.retry_pending_payouts(), strict)


@app.command()
def status():
    """Show competition counts."""
    async def _status():
        setup_logging()
        await init_database()
        try:
            return await BackgroundJobRunner().lifecycle.get_job_status()
        finally:
            await close_whop_client()
            await close_shopify_client()
            await close_database()

    result = asyncio.run(_status())

    table = Table(title="Competitions")
    table.add_column("Status", style="cyan")
    table.add_column("Count", style="green")
    for key, value in result["statistics"].items():
        table.add_row(key, str(value))
    console.print(table)

    for competition in result["active_competitions"]:
        console.print(
            f"🏁 {competition['title']} ({competition['id']}) "
            f"ends {competition['end_date']}, {competition['participant_count']} stores"
        )
    for competition in result["upcoming_competitions"]:
        console.print(f"⏳ {competition['title']} ({competition['id']}) starts {competition['start_date']}")


if __name__ == "__main__":
    app()
