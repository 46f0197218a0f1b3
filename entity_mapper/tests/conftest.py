import typing

import attr
import pytest
from _pytest.config.argparsing import Parser
from _pytest.fixtures import SubRequest
from sqlalchemy import event

from entity_mapper.connection import Connection
from entity_mapper.migrations.schema import SchemaBuilder, TableBlueprint
from entity_mapper.query_builder import QueryBuilder
from entity_mapper.registry import registry


TABLES = ("post_tag", "avatars", "posts", "tags", "users")


def pytest_addoption(parser: Parser) -> None:
    parser.addoption("--database-url", action="store", default="sqlite://")


@pytest.fixture(autouse=True)
def clear_metadata() -> typing.Generator[None, None, None]:
    registry.clear()
    yield
    registry.clear()


@pytest.fixture()
def connection(request: SubRequest) -> typing.Generator[Connection, None, None]:
    connection = Connection(request.config.getoption("--database-url"))
    yield connection
    connection.disconnect()
    connection.engine.dispose()


def _users(table: TableBlueprint) -> None:
    table.id("user_id")
    table.string("name", length=50)
    table.string("email_address").nullable()
    table.boolean("is_active").default(True)
    table.json("profile").nullable()
    table.timestamps()


def _posts(table: TableBlueprint) -> None:
    table.id()
    table.string("title")
    table.integer("author_id").nullable()


def _tags(table: TableBlueprint) -> None:
    table.id()
    table.string("name")


def _post_tag(table: TableBlueprint) -> None:
    table.integer("post_id")
    table.integer("tag_id")


def _avatars(table: TableBlueprint) -> None:
    table.id()
    table.integer("user_id")
    table.string("url")


@pytest.fixture()
def schema(connection: Connection) -> typing.Generator[SchemaBuilder, None, None]:
    builder = SchemaBuilder(connection)
    for name in TABLES:
        builder.drop_table_if_exists(name)
    builder.create_table("users", _users)
    builder.create_table("posts", _posts)
    builder.create_table("tags", _tags)
    builder.create_table("post_tag", _post_tag)
    builder.create_table("avatars", _avatars)
    yield builder
    for name in TABLES:
        builder.drop_table_if_exists(name)


@attr.s(auto_attribs=True)
class StatementLog:
    statements: typing.List[str] = attr.Factory(list)

    def __len__(self) -> int:
        return len(self.statements)

    def selects(self) -> typing.List[str]:
        return [statement for statement in self.statements if statement.lstrip().upper().startswith("SELECT")]

    def reset(self) -> None:
        self.statements.clear()


@pytest.fixture()
def statements(connection: Connection, schema: SchemaBuilder) -> typing.Generator[StatementLog, None, None]:
    log = StatementLog()

    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany) -> None:
        log.statements.append(statement)

    event.listen(connection.engine, "before_cursor_execute", before_cursor_execute)
    yield log
    event.remove(connection.engine, "before_cursor_execute", before_cursor_execute)


Seed = typing.Callable[[str, typing.Iterable[typing.Mapping[str, typing.Any]]], None]


@pytest.fixture()
def seed(connection: Connection, schema: SchemaBuilder) -> Seed:
    def insert_rows(table: str, rows: typing.Iterable[typing.Mapping[str, typing.Any]]) -> None:
        for row in rows:
            QueryBuilder(connection).insert(table, row).execute()

    return insert_rows
