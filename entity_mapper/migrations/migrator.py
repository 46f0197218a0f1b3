import importlib.util
import inspect
import logging
import re
import typing
from datetime import datetime
from pathlib import Path

import attr
import inflection
from sqlalchemy import MetaData

from entity_mapper.connection import Connection
from entity_mapper.errors import MigrationError
from entity_mapper.migrations.migration import Migration
from entity_mapper.migrations.schema import SchemaBuilder, TableBlueprint
from entity_mapper.query_builder import QueryBuilder
from entity_mapper.type_casting import to_storage


logger = logging.getLogger(__name__)

MIGRATION_NAME = re.compile(r"^(?P<timestamp>\d{14})_(?P<name>[A-Za-z_][A-Za-z0-9_]*)$")
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

MIGRATION_TEMPLATE = '''from entity_mapper.migrations import Migration, SchemaBuilder, TableBlueprint


class {class_name}(Migration):
    def up(self, schema: SchemaBuilder) -> None:
        def define(table: TableBlueprint) -> None:
            table.id()
            table.timestamps()

        schema.create_table("{table_name}", define)

    def down(self, schema: SchemaBuilder) -> None:
        schema.drop_table_if_exists("{table_name}")
'''


@attr.s(auto_attribs=True, frozen=True)
class MigrationStatus:
    name: str
    batch: typing.Optional[int] = None
    executed_at: typing.Optional[str] = None

    @property
    def is_executed(self) -> bool:
        return self.batch is not None


class Migrator:
    """Applies and reverts migration files named ``YYYYMMDDHHMMSS_Name.py``.

    Executed migrations are journaled in ``table`` together with the batch they
    ran in; :meth:`rollback` reverts whole batches, newest first.
    """

    def __init__(self, connection: Connection, migrations_path: typing.Union[str, Path], table: str = "migrations") -> None:
        self.connection = connection
        self.migrations_path = Path(migrations_path)
        self.table = table
        self.schema = SchemaBuilder(connection)

    def _ensure_journal(self) -> None:
        if self.schema.has_table(self.table):
            return

        def define(table: TableBlueprint) -> None:
            table.id()
            table.string("migration").unique()
            table.integer("batch")
            table.string("executed_at", length=19)

        self.schema.create_table(self.table, define)

    def _journal(self) -> typing.List[typing.Dict[str, typing.Any]]:
        self._ensure_journal()
        return (
            QueryBuilder(self.connection)
            .select("migration", "batch", "executed_at")
            .from_(self.table)
            .order_by("migration")
            .fetch_all()
        )

    def all_migrations(self) -> typing.List[str]:
        if not self.migrations_path.is_dir():
            return []
        return sorted(path.stem for path in self.migrations_path.glob("*.py") if MIGRATION_NAME.match(path.stem))

    def executed_migrations(self) -> typing.List[str]:
        return [row["migration"] for row in self._journal()]

    def pending_migrations(self) -> typing.List[str]:
        executed = set(self.executed_migrations())
        return [name for name in self.all_migrations() if name not in executed]

    def next_batch_number(self) -> int:
        self._ensure_journal()
        last = QueryBuilder(self.connection).from_(self.table).max("batch")
        return int(last or 0) + 1

    def _load(self, name: str) -> Migration:
        path = self.migrations_path / f"{name}.py"
        if not path.is_file():
            raise MigrationError(f"Migration file {path} does not exist")
        module_spec = importlib.util.spec_from_file_location(f"entity_mapper_migrations_{name}", path)
        module = importlib.util.module_from_spec(module_spec)
        module_spec.loader.exec_module(module)

        candidates = [
            obj
            for obj in vars(module).values()
            if inspect.isclass(obj)
            and issubclass(obj, Migration)
            and obj.__module__ == module.__name__
            and not inspect.isabstract(obj)
        ]
        if len(candidates) != 1:
            raise MigrationError(f"{path} must define exactly one Migration subclass, found {len(candidates)}")
        return candidates[0]()

    def run_up(self, name: str, batch: typing.Optional[int] = None) -> bool:
        try:
            migration = self._load(name)
            batch = batch or self.next_batch_number()
            with self.connection.transaction():
                migration.up(self.schema)
                QueryBuilder(self.connection).insert(
                    self.table,
                    {"migration": name, "batch": batch, "executed_at": to_storage(datetime.now())},
                ).execute()
        except Exception:
            logger.exception("Migration %s failed to apply", name)
            return False
        logger.info("Applied %s (batch %d)", name, batch)

        try:
            migration.post_up(self.connection)
        except Exception:
            logger.exception("post_up of %s failed, the migration stays applied", name)
        return True

    def run_down(self, name: str) -> bool:
        try:
            migration = self._load(name)
            with self.connection.transaction():
                migration.down(self.schema)
                QueryBuilder(self.connection).delete(self.table).where("migration", "=", name).execute()
        except Exception:
            logger.exception("Migration %s failed to revert", name)
            return False
        logger.info("Reverted %s", name)
        return True

    def migrate(self, steps: int = 0) -> typing.List[str]:
        """Applies pending migrations (all, or the first ``steps``) as one batch, stopping at the first failure."""
        pending = self.pending_migrations()
        if steps > 0:
            pending = pending[:steps]
        if not pending:
            return []

        batch = self.next_batch_number()
        applied = []
        for name in pending:
            if not self.run_up(name, batch):
                break
            applied.append(name)
        return applied

    def _batches(self) -> typing.List[int]:
        self._ensure_journal()
        rows = QueryBuilder(self.connection).select("batch").distinct().from_(self.table).order_by("batch", "DESC").fetch_all()
        return [int(row["batch"]) for row in rows]

    def rollback(self, steps: int = 1, all: bool = False) -> typing.List[str]:
        batches = self._batches()
        if not all:
            batches = batches[: max(steps, 0)]

        reverted = []
        for batch in batches:
            names = [
                row["migration"]
                for row in QueryBuilder(self.connection)
                .select("migration")
                .from_(self.table)
                .where("batch", "=", batch)
                .order_by("migration", "DESC")
                .fetch_all()
            ]
            for name in names:
                if not self.run_down(name):
                    return reverted
                reverted.append(name)
        return reverted

    def status(self) -> typing.List[MigrationStatus]:
        journal = {row["migration"]: row for row in self._journal()}
        names = sorted(set(self.all_migrations()) | set(journal))
        return [
            MigrationStatus(
                name=name,
                batch=int(journal[name]["batch"]) if name in journal else None,
                executed_at=journal[name]["executed_at"] if name in journal else None,
            )
            for name in names
        ]

    def make(self, name: str) -> Path:
        class_name = inflection.camelize(inflection.underscore(name))
        stem = f"{datetime.now().strftime(TIMESTAMP_FORMAT)}_{class_name}"
        if not MIGRATION_NAME.match(stem):
            raise MigrationError(f"Invalid migration name {name!r}")
        table_name = inflection.underscore(re.sub(r"^Create|Table$", "", class_name)) or "items"

        self.migrations_path.mkdir(parents=True, exist_ok=True)
        path = self.migrations_path / f"{stem}.py"
        if path.exists():
            raise MigrationError(f"Migration file {path} already exists")
        path.write_text(MIGRATION_TEMPLATE.format(class_name=class_name, table_name=table_name))
        logger.info("Created migration %s", path)
        return path

    def fresh(self) -> typing.List[str]:
        """Drops every table in the database, the journal included, then applies all migrations."""
        with self.connection.transaction():
            metadata = MetaData()
            metadata.reflect(bind=self.connection.connect())
            metadata.drop_all(bind=self.connection.connect())
        logger.info("Dropped all tables")
        return self.migrate()

    def refresh(self) -> typing.List[str]:
        self.rollback(all=True)
        return self.migrate()
