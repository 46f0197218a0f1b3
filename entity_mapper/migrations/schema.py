import logging
import typing

import attr
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    inspect,
)
from sqlalchemy.schema import CreateTable, DropTable

from entity_mapper.connection import Connection
from entity_mapper.errors import QueryBuildError


logger = logging.getLogger(__name__)


def _server_default(value: typing.Any) -> typing.Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


@attr.s(auto_attribs=True)
class _ColumnSpec:
    name: str
    type_: typing.Any
    kwargs: typing.Dict[str, typing.Any] = attr.Factory(dict)

    def materialize(self) -> Column:
        return Column(self.name, self.type_, **self.kwargs)


@attr.s(auto_attribs=True)
class TableBlueprint:
    """Collects column definitions for :meth:`SchemaBuilder.create_table`.

    Modifiers (``nullable``, ``default``, ``unique``) apply to the column added last.
    Columns are NOT NULL unless marked otherwise.
    """

    name: str
    columns: typing.List[_ColumnSpec] = attr.Factory(list)

    def _add(self, name: str, type_: typing.Any, **kwargs: typing.Any) -> "TableBlueprint":
        kwargs.setdefault("nullable", False)
        self.columns.append(_ColumnSpec(name, type_, kwargs))
        return self

    def _last(self) -> _ColumnSpec:
        if not self.columns:
            raise QueryBuildError(f"No column defined yet on {self.name!r} to apply a modifier to")
        return self.columns[-1]

    def id(self, name: str = "id") -> "TableBlueprint":
        return self._add(
            name, BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
        )

    def string(self, name: str, length: int = 255) -> "TableBlueprint":
        return self._add(name, String(length))

    def text(self, name: str) -> "TableBlueprint":
        return self._add(name, Text())

    def integer(self, name: str) -> "TableBlueprint":
        return self._add(name, Integer())

    def big_integer(self, name: str) -> "TableBlueprint":
        return self._add(name, BigInteger())

    def float(self, name: str) -> "TableBlueprint":
        return self._add(name, Float())

    def boolean(self, name: str) -> "TableBlueprint":
        return self._add(name, Boolean())

    def timestamp(self, name: str) -> "TableBlueprint":
        return self._add(name, DateTime())

    def timestamps(self, created_at: str = "created_at", updated_at: str = "updated_at") -> "TableBlueprint":
        self._add(created_at, DateTime(), nullable=True)
        return self._add(updated_at, DateTime(), nullable=True)

    def json(self, name: str) -> "TableBlueprint":
        return self._add(name, JSON())

    def nullable(self, is_nullable: bool = True) -> "TableBlueprint":
        self._last().kwargs["nullable"] = is_nullable
        return self

    def default(self, value: typing.Any) -> "TableBlueprint":
        self._last().kwargs["server_default"] = _server_default(value)
        return self

    def unique(self) -> "TableBlueprint":
        self._last().kwargs["unique"] = True
        return self

    def materialize(self, metadata: typing.Optional[MetaData] = None) -> Table:
        if not self.columns:
            raise QueryBuildError(f"Table {self.name!r} has no columns")
        return Table(self.name, metadata or MetaData(), *(column.materialize() for column in self.columns))


class SchemaBuilder:
    def __init__(self, connection: Connection) -> None:
        self.connection = connection

    def create_table(self, name: str, callback: typing.Callable[[TableBlueprint], typing.Any]) -> Table:
        blueprint = TableBlueprint(name)
        callback(blueprint)
        table = blueprint.materialize()
        self.connection.execute(CreateTable(table))
        logger.info("Created table %s", name)
        return table

    def drop_table(self, name: str) -> None:
        self.connection.execute(DropTable(Table(name, MetaData())))
        logger.info("Dropped table %s", name)

    def drop_table_if_exists(self, name: str) -> None:
        self.connection.execute(DropTable(Table(name, MetaData()), if_exists=True))

    def has_table(self, name: str) -> bool:
        return inspect(self.connection.connect()).has_table(name)

    def table_names(self) -> typing.List[str]:
        return inspect(self.connection.connect()).get_table_names()
