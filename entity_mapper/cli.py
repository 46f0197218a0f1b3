import contextlib
import logging
import typing

import typer

from entity_mapper.config import get_settings
from entity_mapper.connection import Connection
from entity_mapper.migrations import Migrator


app = typer.Typer(name="entity-mapper", help="entity-mapper command line tools", no_args_is_help=True)
migrate_app = typer.Typer(help="Schema migrations", no_args_is_help=True)
app.add_typer(migrate_app, name="migrate")

DatabaseUrl = typer.Option(None, "--database-url", "-d", help="Overrides ENTITY_MAPPER_DATABASE_URL")
MigrationsPath = typer.Option(None, "--path", "-p", help="Overrides ENTITY_MAPPER_MIGRATIONS_PATH")


@app.callback()
def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@contextlib.contextmanager
def _migrator(database_url: typing.Optional[str], path: typing.Optional[str]) -> typing.Iterator[Migrator]:
    settings = get_settings()
    connection = Connection(database_url or settings.database_url, echo=settings.echo_sql)
    try:
        yield Migrator(connection, path or settings.migrations_path, table=settings.migrations_table)
    finally:
        connection.disconnect()


def _report(names: typing.List[str], label: str, nothing: str) -> None:
    if not names:
        typer.echo(nothing)
        return
    for name in names:
        typer.echo(f"{label}: {name}")


@migrate_app.command("make")
def make(name: str = typer.Argument(..., help="Migration class name, e.g. CreateUsersTable"), path: str = MigrationsPath) -> None:
    """Write a new migration stub."""
    settings = get_settings()
    migrator = Migrator(Connection(settings.database_url), path or settings.migrations_path)
    typer.echo(f"Created {migrator.make(name)}")


@migrate_app.command("up")
def up(
    steps: int = typer.Option(0, "--steps", "-s", help="Apply only the first N pending migrations"),
    database_url: str = DatabaseUrl,
    path: str = MigrationsPath,
) -> None:
    """Apply pending migrations as one batch."""
    with _migrator(database_url, path) as migrator:
        pending = migrator.pending_migrations()
        applied = migrator.migrate(steps)
    _report(applied, "Migrated", "Nothing to migrate.")
    if len(applied) < (min(steps, len(pending)) if steps > 0 else len(pending)):
        raise typer.Exit(1)


@migrate_app.command("down")
def down(
    steps: int = typer.Option(1, "--steps", "-s", help="Number of batches to roll back"),
    all_batches: bool = typer.Option(False, "--all", help="Roll back every batch"),
    database_url: str = DatabaseUrl,
    path: str = MigrationsPath,
) -> None:
    """Roll back the latest batches."""
    with _migrator(database_url, path) as migrator:
        reverted = migrator.rollback(steps=steps, all=all_batches)
    _report(reverted, "Rolled back", "Nothing to roll back.")


@migrate_app.command("status")
def status(database_url: str = DatabaseUrl, path: str = MigrationsPath) -> None:
    """List migrations and the batch each one ran in."""
    with _migrator(database_url, path) as migrator:
        statuses = migrator.status()
    if not statuses:
        typer.echo("No migrations found.")
        return
    for item in statuses:
        if item.is_executed:
            typer.echo(f"[x] {item.name}  batch {item.batch}  {item.executed_at}")
        else:
            typer.echo(f"[ ] {item.name}  pending")


@migrate_app.command("fresh")
def fresh(
    force: bool = typer.Option(False, "--force", "-f", help="Do not ask for confirmation"),
    database_url: str = DatabaseUrl,
    path: str = MigrationsPath,
) -> None:
    """Drop every table, then apply all migrations."""
    if not force:
        typer.confirm("This drops every table in the database. Continue?", abort=True)
    with _migrator(database_url, path) as migrator:
        applied = migrator.fresh()
    _report(applied, "Migrated", "Nothing to migrate.")


@migrate_app.command("refresh")
def refresh(database_url: str = DatabaseUrl, path: str = MigrationsPath) -> None:
    """Roll back every batch, then apply all migrations."""
    with _migrator(database_url, path) as migrator:
        applied = migrator.refresh()
    _report(applied, "Migrated", "Nothing to migrate.")
