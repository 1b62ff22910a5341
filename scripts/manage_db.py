#!/usr/bin/env python3
"""
Database management script for the CartBrawl backend.
"""

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy import func, select

from alembic import command
from alembic.config import Config
from cartbrawl.core.database import init_database, close_database, get_async_session, DatabaseManager
from cartbrawl.core.logging import setup_logging, get_logger
from cartbrawl.models import Competition, Participant, Winner

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Database management commands")

ALEMBIC_INI = Path(__file__).resolve().parent.parent / "alembic.ini"


def _alembic_config() -> Config:
    cfg = Config(str(ALEMBIC_INI))
    cfg.set_main_option("script_location", str(ALEMBIC_INI.parent / "alembic"))
    return cfg


@app.command()
def init():
    """Create all tables directly from the models."""
    async def _init():
        setup_logging()
        await init_database()
        try:
            await DatabaseManager.create_tables()
        finally:
            await close_database()
        console.print("✅ Database initialized successfully!")

    asyncio.run(_init())


@app.command()
def migrate(message: str = typer.Option(..., prompt="Migration message")):
    """Create a new autogenerated migration."""
    command.revision(_alembic_config(), message=message, autogenerate=True)
    console.print(f"✅ Migration created: {message}")


@app.command()
def upgrade(revision: str = "head"):
    """Apply migrations."""
    command.upgrade(_alembic_config(), revision)
    console.print(f"✅ Database upgraded to: {revision}")


@app.command()
def downgrade(revision: str):
    """Downgrade database to specific revision."""
    command.downgrade(_alembic_config(), revision)
    console.print(f"⬇️ Database downgraded to: {revision}")


@app.command()
def current():
    """Show current database revision."""
    command.current(_alembic_config())


@app.command()
def history():
    """Show migration history."""
    command.history(_alembic_config())


@app.command()
def reset():
    """Reset database (drop all tables)."""
    if not typer.confirm("Are you sure you want to drop all tables?"):
        console.print("❌ Operation cancelled")
        return

    async def _reset():
        setup_logging()
        await init_database()
        try:
            await DatabaseManager.drop_tables()
        finally:
            await close_database()
        console.print("🗑️ All tables dropped!")

    asyncio.run(_reset())


@app.command()
def health():
    """Check database health."""
    async def _health() -> bool:
        setup_logging()
        await init_database()
        try:
            return await DatabaseManager.health_check()
        finally:
            await close_database()

    if asyncio.run(_health()):
        console.print("✅ Database is healthy!")
    else:
        console.print("❌ Database health check failed!")
        raise typer.Exit(code=1)


@app.command()
def status():
    """Show database connectivity and row counts."""
    table = Table(title="Database Status")
    table.add_column("Component", style="cyan")
    table.add_column("Status", style="green")

    async def _status():
        setup_logging()
        await init_database()
        try:
            is_healthy = await DatabaseManager.health_check()
            table.add_row("Database", "✅ Connected" if is_healthy else "❌ Disconnected")
            if not is_healthy:
                return

            async with get_async_session() as db:
                for label, model in (
                    ("Competitions", Competition),
                    ("Participants", Participant),
                    ("Winners", Winner),
                ):
                    count = (await db.execute(select(func.count()).select_from(model))).scalar_one()
                    table.add_row(label, str(count))
        finally:
            await close_database()

    asyncio.run(_status())
    console.print(table)


if __name__ == "__main__":
    app()
