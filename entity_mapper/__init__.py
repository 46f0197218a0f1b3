from entity_mapper.connection import Connection, ExecutionResult
from entity_mapper.entity import Entity
from entity_mapper.errors import MappingError, MigrationError, QueryBuildError, QueryExecutionError
from entity_mapper.mapping import (
    Identity,
    Length,
    NotNull,
    Violation,
    belongs_to,
    column,
    created_at,
    has_many,
    has_one,
    many_to_many,
    primary_key,
    updated_at,
)
from entity_mapper.query_builder import QueryBuilder
from entity_mapper.registry import get_metadata
from entity_mapper.repository import Repository
from entity_mapper.type_casting import LogicalType

__all__ = [
    "Connection",
    "Entity",
    "ExecutionResult",
    "Identity",
    "Length",
    "LogicalType",
    "MappingError",
    "MigrationError",
    "NotNull",
    "QueryBuildError",
    "QueryBuilder",
    "QueryExecutionError",
    "Repository",
    "Violation",
    "belongs_to",
    "column",
    "created_at",
    "get_metadata",
    "has_many",
    "has_one",
    "many_to_many",
    "primary_key",
    "updated_at",
]
