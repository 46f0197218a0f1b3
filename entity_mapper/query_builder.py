"""Fluent statement builder executed through :class:`entity_mapper.connection.Connection`.

Statements are assembled as SQLAlchemy Core constructs (``table()``/``column()``
with ``select``/``insert``/``update``/``delete``), so identifiers are quoted and
LIMIT/OFFSET rendered for the connection's dialect. Values never end up in the
SQL text, every one of them is bound through a named parameter: ``param0,
param1...`` for conditions, ``insert_<column>`` for inserted values and
``set_<column>`` for updated ones.

Column references are plain names, ``qualifier.name`` where the qualifier is
the FROM table, its alias or a joined table, or ``*``. Anything else (function
calls, ``... AS label``) is passed through as a literal SQL fragment.
"""
import logging
import re
import typing

import attr
from sqlalchemy import and_, bindparam, column, delete, func, insert, literal_column, or_, select, table, text, update
from sqlalchemy.sql import operators
from sqlalchemy.sql.expression import ColumnElement, Executable, FromClause

from entity_mapper.connection import Connection
from entity_mapper.errors import QueryBuildError


logger = logging.getLogger(__name__)

COMPARISONS = {
    "=": operators.eq,
    "!=": operators.ne,
    "<>": operators.ne,
    "<": operators.lt,
    "<=": operators.le,
    ">": operators.gt,
    ">=": operators.ge,
    "LIKE": operators.like_op,
    "NOT LIKE": operators.not_like_op,
}
OPERATORS = frozenset(COMPARISONS)
JOIN_KINDS = frozenset(["INNER", "LEFT", "RIGHT"])
DIRECTIONS = frozenset(["ASC", "DESC"])
BOOLEANS = frozenset(["AND", "OR"])

REFERENCE = re.compile(r"^(?:(?P<qualifier>[A-Za-z_][A-Za-z0-9_]*)\.)?(?P<name>[A-Za-z_][A-Za-z0-9_]*)$")

Sources = typing.Dict[str, FromClause]


@attr.s(auto_attribs=True, frozen=True)
class Condition:
    """One WHERE/HAVING predicate; ``operator`` is a comparison or IN, NOT IN, IS NULL, IS NOT NULL."""

    boolean: str
    column: str
    operator: str
    parameters: typing.Tuple[str, ...] = ()


@attr.s(auto_attribs=True, frozen=True)
class Join:
    kind: str
    table: str
    first: str
    operator: str
    second: str


@attr.s(auto_attribs=True, frozen=True)
class Aggregate:
    function: str
    column: str


def _check_operator(operator: str) -> str:
    normalized = operator.strip().upper()
    if normalized not in OPERATORS:
        raise QueryBuildError(f"Unsupported comparison operator: {operator!r}")
    return normalized


def _check_boolean(boolean: str) -> str:
    normalized = boolean.strip().upper()
    if normalized not in BOOLEANS:
        raise QueryBuildError(f"Invalid boolean {boolean!r}, must be AND or OR")
    return normalized


def _resolve(reference: str, sources: Sources) -> ColumnElement:
    match = REFERENCE.match(reference)
    if match is None:
        return literal_column(reference)
    qualifier, name = match.group("qualifier"), match.group("name")
    if qualifier is None:
        return column(name)
    if qualifier in sources:
        return sources[qualifier].c[name]
    return literal_column(reference)


def _combine(expressions: typing.List[typing.Tuple[str, ColumnElement]]) -> ColumnElement:
    # AND binds tighter than OR, the same way the conditions read
    groups: typing.List[typing.List[ColumnElement]] = []
    for boolean, expression in expressions:
        if boolean == "OR" or not groups:
            groups.append([expression])
        else:
            groups[-1].append(expression)
    return or_(*(and_(*group) for group in groups))


class QueryBuilder:
    def __init__(self, connection: typing.Optional[Connection] = None) -> None:
        self.connection = connection
        self.reset()

    def reset(self) -> "QueryBuilder":
        self._query_type: typing.Optional[str] = None
        self._columns: typing.List[typing.Union[str, Aggregate]] = ["*"]
        self._distinct = False
        self._table: typing.Optional[str] = None
        self._alias: typing.Optional[str] = None
        self._joins: typing.List[Join] = []
        self._wheres: typing.List[Condition] = []
        self._group_by: typing.List[str] = []
        self._havings: typing.List[Condition] = []
        self._orders: typing.List[typing.Tuple[str, str]] = []
        self._limit: typing.Optional[int] = None
        self._offset: typing.Optional[int] = None
        self._data: typing.Dict[str, typing.Any] = {}
        self._parameters: typing.Dict[str, typing.Any] = {}
        self._parameter_count = 0
        return self

    def _bind(self, value: typing.Any) -> str:
        name = f"param{self._parameter_count}"
        self._parameter_count += 1
        self._parameters[name] = value
        return name

    # SELECT

    def select(self, *columns: str) -> "QueryBuilder":
        self._query_type = "SELECT"
        self._columns = list(columns) or ["*"]
        return self

    def distinct(self) -> "QueryBuilder":
        self._distinct = True
        return self

    def from_(self, table: str, alias: typing.Optional[str] = None) -> "QueryBuilder":
        if self._query_type is None:
            self._query_type = "SELECT"
        self._table = table
        self._alias = alias
        return self

    def join(self, table: str, first: str, operator: str, second: str, kind: str = "INNER") -> "QueryBuilder":
        normalized = kind.strip().upper()
        if normalized not in JOIN_KINDS:
            raise QueryBuildError(f"Unsupported join type: {kind!r}")
        self._joins.append(Join(normalized, table, first, _check_operator(operator), second))
        return self

    def left_join(self, table: str, first: str, operator: str, second: str) -> "QueryBuilder":
        return self.join(table, first, operator, second, kind="LEFT")

    def where(self, column: str, operator: str, value: typing.Any, boolean: str = "AND") -> "QueryBuilder":
        condition = Condition(_check_boolean(boolean), column, _check_operator(operator))
        self._wheres.append(attr.evolve(condition, parameters=(self._bind(value),)))
        return self

    def or_where(self, column: str, operator: str, value: typing.Any) -> "QueryBuilder":
        return self.where(column, operator, value, boolean="OR")

    def where_in(
        self, column: str, values: typing.Iterable[typing.Any], boolean: str = "AND", negate: bool = False
    ) -> "QueryBuilder":
        boolean = _check_boolean(boolean)
        parameters = tuple(self._bind(value) for value in values)
        self._wheres.append(Condition(boolean, column, "NOT IN" if negate else "IN", parameters))
        return self

    def where_not_in(self, column: str, values: typing.Iterable[typing.Any]) -> "QueryBuilder":
        return self.where_in(column, values, negate=True)

    def where_null(self, column: str, boolean: str = "AND", negate: bool = False) -> "QueryBuilder":
        self._wheres.append(Condition(_check_boolean(boolean), column, "IS NOT NULL" if negate else "IS NULL"))
        return self

    def where_not_null(self, column: str) -> "QueryBuilder":
        return self.where_null(column, negate=True)

    def group_by(self, *columns: str) -> "QueryBuilder":
        self._group_by.extend(columns)
        return self

    def having(self, column: str, operator: str, value: typing.Any, boolean: str = "AND") -> "QueryBuilder":
        condition = Condition(_check_boolean(boolean), column, _check_operator(operator))
        self._havings.append(attr.evolve(condition, parameters=(self._bind(value),)))
        return self

    def order_by(self, column: str, direction: str = "ASC") -> "QueryBuilder":
        normalized = direction.strip().upper()
        if normalized not in DIRECTIONS:
            raise QueryBuildError(f"Invalid ORDER BY direction: {direction!r}, must be ASC or DESC")
        self._orders.append((column, normalized))
        return self

    def limit(self, limit: int) -> "QueryBuilder":
        if limit < 0:
            raise QueryBuildError("LIMIT must be a non-negative integer")
        self._limit = limit
        return self

    def offset(self, offset: int) -> "QueryBuilder":
        if offset < 0:
            raise QueryBuildError("OFFSET must be a non-negative integer")
        self._offset = offset
        return self

    # INSERT / UPDATE / DELETE

    def insert(self, table: str, data: typing.Mapping[str, typing.Any]) -> "QueryBuilder":
        if not data:
            raise QueryBuildError("Cannot insert an empty data set")
        self._query_type = "INSERT"
        self._table = table
        self._data = dict(data)
        return self

    def update(self, table: str, data: typing.Mapping[str, typing.Any]) -> "QueryBuilder":
        if not data:
            raise QueryBuildError("Cannot update with an empty data set")
        self._query_type = "UPDATE"
        self._table = table
        self._data = dict(data)
        return self

    def delete(self, table: str) -> "QueryBuilder":
        self._query_type = "DELETE"
        self._table = table
        return self

    # building

    def build(self) -> Executable:
        """Returns the statement as a SQLAlchemy construct, parameters bound."""
        if self._query_type == "SELECT":
            return self._build_select()
        if self._query_type == "INSERT":
            return self._build_insert()
        if self._query_type == "UPDATE":
            return self._build_update()
        if self._query_type == "DELETE":
            return self._build_delete()
        raise QueryBuildError("Query type not set, call select(), insert(), update() or delete() first")

    def get_sql(self) -> str:
        """Renders the statement as generic SQL with named placeholders."""
        return str(self.build())

    def get_parameters(self) -> typing.Dict[str, typing.Any]:
        if self._query_type == "INSERT":
            return {f"insert_{column}": value for column, value in self._data.items()}
        if self._query_type == "UPDATE":
            parameters = {f"set_{column}": value for column, value in self._data.items()}
            parameters.update(self._parameters)
            return parameters
        return dict(self._parameters)

    def _references(self) -> typing.Iterator[str]:
        for selected in self._columns:
            yield selected.column if isinstance(selected, Aggregate) else selected
        for join in self._joins:
            yield join.first
            yield join.second
        for condition in self._wheres + self._havings:
            yield condition.column
        yield from self._group_by
        for reference, _ in self._orders:
            yield reference

    def _sources(self) -> Sources:
        entries = {self._alias or self._table: self._table}
        for join in self._joins:
            entries.setdefault(join.table, join.table)

        columns: typing.Dict[str, typing.List[str]] = {key: [] for key in entries}
        for reference in self._references():
            match = REFERENCE.match(reference)
            if match is None or match.group("qualifier") not in columns:
                continue
            names = columns[match.group("qualifier")]
            if match.group("name") not in names:
                names.append(match.group("name"))

        sources = {}
        for key, name in entries.items():
            clause = table(name, *(column(column_name) for column_name in columns[key]))
            sources[key] = clause.alias(key) if key != name else clause
        return sources

    def _condition(self, condition: Condition, sources: Sources) -> ColumnElement:
        target = _resolve(condition.column, sources)
        binds = [bindparam(name, self._parameters[name]) for name in condition.parameters]
        if condition.operator == "IS NULL":
            return target.is_(None)
        if condition.operator == "IS NOT NULL":
            return target.is_not(None)
        if condition.operator in ("IN", "NOT IN"):
            if not binds:
                # an empty set matches nothing, NOT IN an empty set matches everything
                return text("1 = 1" if condition.operator == "NOT IN" else "1 = 0")
            return target.not_in(binds) if condition.operator == "NOT IN" else target.in_(binds)
        return COMPARISONS[condition.operator](target, binds[0])

    def _conditions(self, conditions: typing.List[Condition], sources: Sources) -> ColumnElement:
        return _combine([(condition.boolean, self._condition(condition, sources)) for condition in conditions])

    def _selected(self, selected: typing.Union[str, Aggregate], sources: Sources) -> ColumnElement:
        if isinstance(selected, Aggregate):
            argument = literal_column("*") if selected.column == "*" else _resolve(selected.column, sources)
            return getattr(func, selected.function.lower())(argument).label("aggregate")
        if selected == "*":
            return literal_column("*")
        return _resolve(selected, sources)

    def _build_select(self) -> Executable:
        if not self._table:
            raise QueryBuildError("Cannot build a SELECT query without a FROM table")
        sources = self._sources()

        from_clause = sources[self._alias or self._table]
        for join in self._joins:
            target = sources[join.table]
            on_clause = COMPARISONS[join.operator](_resolve(join.first, sources), _resolve(join.second, sources))
            if join.kind == "RIGHT":
                from_clause = target.join(from_clause, on_clause, isouter=True)
            else:
                from_clause = from_clause.join(target, on_clause, isouter=join.kind == "LEFT")

        statement = select(*(self._selected(selected, sources) for selected in self._columns)).select_from(from_clause)
        if self._distinct:
            statement = statement.distinct()
        if self._wheres:
            statement = statement.where(self._conditions(self._wheres, sources))
        if self._group_by:
            statement = statement.group_by(*(_resolve(reference, sources) for reference in self._group_by))
        if self._havings:
            statement = statement.having(self._conditions(self._havings, sources))
        for reference, direction in self._orders:
            target = _resolve(reference, sources)
            statement = statement.order_by(target.desc() if direction == "DESC" else target.asc())
        if self._limit is not None:
            statement = statement.limit(self._limit)
        if self._offset is not None:
            statement = statement.offset(self._offset)
        return statement

    def _target(self) -> FromClause:
        return table(self._table, *(column(name) for name in self._data))

    def _build_insert(self) -> Executable:
        target = self._target()
        return insert(target).values(
            {target.c[name]: bindparam(f"insert_{name}", value) for name, value in self._data.items()}
        )

    def _build_update(self) -> Executable:
        if not self._wheres:
            raise QueryBuildError("UPDATE statement must have a WHERE clause, call where() first")
        target = self._target()
        return (
            update(target)
            .values({target.c[name]: bindparam(f"set_{name}", value) for name, value in self._data.items()})
            .where(self._conditions(self._wheres, {}))
        )

    def _build_delete(self) -> Executable:
        if not self._wheres:
            raise QueryBuildError("DELETE statement must have a WHERE clause, call where() first")
        return delete(table(self._table)).where(self._conditions(self._wheres, {}))

    # execution

    def _require_connection(self) -> Connection:
        if self.connection is None:
            raise QueryBuildError("QueryBuilder has no connection to execute on")
        return self.connection

    def _run_select(self) -> typing.List[typing.Dict[str, typing.Any]]:
        if self._query_type != "SELECT":
            raise QueryBuildError("Only SELECT queries can be fetched")
        connection = self._require_connection()
        try:
            statement = self.build()
            return connection.execute(statement).rows
        finally:
            self.reset()

    def fetch_one(self) -> typing.Optional[typing.Dict[str, typing.Any]]:
        self.limit(1)
        rows = self._run_select()
        return rows[0] if rows else None

    def fetch_all(self) -> typing.List[typing.Dict[str, typing.Any]]:
        return self._run_select()

    def fetch_scalar(self) -> typing.Any:
        row = self.fetch_one()
        return next(iter(row.values())) if row else None

    def _aggregate(self, function: str, column: str) -> typing.Any:
        self._columns = [Aggregate(function, column)]
        self._query_type = "SELECT"
        return self.fetch_scalar()

    def count(self, column: str = "*") -> int:
        return int(self._aggregate("COUNT", column) or 0)

    def max(self, column: str) -> typing.Any:
        return self._aggregate("MAX", column)

    def min(self, column: str) -> typing.Any:
        return self._aggregate("MIN", column)

    def sum(self, column: str) -> typing.Any:
        return self._aggregate("SUM", column)

    def avg(self, column: str) -> typing.Any:
        return self._aggregate("AVG", column)

    def execute(self) -> bool:
        if self._query_type not in ("INSERT", "UPDATE", "DELETE"):
            raise QueryBuildError("execute() is only available for INSERT, UPDATE and DELETE queries")
        connection = self._require_connection()
        query_type = self._query_type
        try:
            result = connection.execute(self.build())
        finally:
            self.reset()
        logger.debug("%s affected %s rows", query_type, result.rowcount)
        return True
