import contextlib
import logging
import typing

import attr
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine import Connection as SaConnection
from sqlalchemy.exc import DBAPIError
from sqlalchemy.sql.expression import Executable

from entity_mapper.errors import QueryExecutionError


logger = logging.getLogger(__name__)

Statement = typing.Union[str, Executable]


@attr.s(auto_attribs=True, frozen=True)
class ExecutionResult:
    rows: typing.List[typing.Dict[str, typing.Any]] = attr.Factory(list)
    rowcount: int = -1
    lastrowid: typing.Optional[typing.Any] = None

    def first(self) -> typing.Optional[typing.Dict[str, typing.Any]]:
        return self.rows[0] if self.rows else None

    def scalar(self) -> typing.Any:
        row = self.first()
        return next(iter(row.values())) if row else None


class Connection:
    """One SQLAlchemy connection, committing every statement unless inside :meth:`transaction`."""

    def __init__(self, url_or_engine: typing.Union[str, Engine], echo: bool = False) -> None:
        if isinstance(url_or_engine, Engine):
            self.engine = url_or_engine
        else:
            self.engine = create_engine(url_or_engine, echo=echo)
        self._connection: typing.Optional[SaConnection] = None
        self._in_transaction = False
        self._last_inserted_identifier: typing.Optional[typing.Any] = None

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.closed

    def connect(self) -> SaConnection:
        if not self.is_connected:
            self._connection = self.engine.connect()
            logger.debug("Connected to %s", self.engine.url.render_as_string(hide_password=True))
        return self._connection

    def disconnect(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def __enter__(self) -> "Connection":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.disconnect()

    def execute(
        self, statement: Statement, params: typing.Optional[typing.Mapping[str, typing.Any]] = None
    ) -> ExecutionResult:
        connection = self.connect()
        if isinstance(statement, str):
            sql, executable, logged_params = statement, text(statement), params
        else:
            # constructs carry their own bound values, compiled here for logs and errors only
            compiled = statement.compile(dialect=self.engine.dialect)
            sql, executable = str(compiled), statement
            logged_params = params if params is not None else compiled.params
        is_insert = sql.lstrip()[:6].upper() == "INSERT"
        if is_insert:
            self._last_inserted_identifier = None
        logger.debug("Executing %s with %s", sql, logged_params)
        try:
            if params:
                cursor = connection.execute(executable, dict(params))
            else:
                cursor = connection.execute(executable)
            rows = [dict(row) for row in cursor.mappings()] if cursor.returns_rows else []
            lastrowid = cursor.lastrowid if is_insert else None
            result = ExecutionResult(rows=rows, rowcount=cursor.rowcount, lastrowid=lastrowid)
            if not self._in_transaction:
                connection.commit()
        except DBAPIError as e:
            if not self._in_transaction:
                connection.rollback()
            raise QueryExecutionError(str(e.orig), sql, logged_params) from e

        if is_insert:
            self._last_inserted_identifier = result.lastrowid
        return result

    def last_inserted_identifier(self) -> typing.Optional[typing.Any]:
        return self._last_inserted_identifier

    @contextlib.contextmanager
    def transaction(self) -> typing.Iterator["Connection"]:
        # nested calls join the outer transaction
        if self._in_transaction:
            yield self
            return
        connection = self.connect()
        if connection.in_transaction():
            connection.commit()
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            connection.rollback()
            raise
        else:
            connection.commit()
        finally:
            self._in_transaction = False
