import typing


class MappingError(TypeError):
    pass


class QueryBuildError(ValueError):
    pass


class MigrationError(Exception):
    pass


class QueryExecutionError(Exception):
    def __init__(self, message: str, sql: str, params: typing.Optional[typing.Mapping[str, typing.Any]] = None) -> None:
        super().__init__(f"{message}\nSQL: {sql}\nParams: {dict(params or {})}")
        self.sql = sql
        self.params = dict(params or {})
