import logging
import typing

from entity_mapper.connection import Connection
from entity_mapper.eager_loading import RelationLoader
from entity_mapper.entity import Entity
from entity_mapper.errors import MappingError, QueryExecutionError
from entity_mapper.metadata import EntityMetadata, known_entities
from entity_mapper.query_builder import QueryBuilder
from entity_mapper.type_casting import to_logical, to_storage


logger = logging.getLogger(__name__)

EntityType = typing.TypeVar("EntityType", bound=Entity)

Criteria = typing.Mapping[str, typing.Any]
OrderBy = typing.Mapping[str, str]


class Repository(typing.Generic[EntityType]):
    """Data access for one entity class.

    Finders never raise for missing rows and log execution failures instead of
    propagating them; ``save`` and ``delete`` report the outcome as a bool.
    Relations requested through :meth:`with_` are eager loaded by the next
    finder call only.
    """

    def __init__(self, connection: Connection, entity_cls: typing.Type[EntityType]) -> None:
        if not known_entities.is_entity(entity_cls):
            raise MappingError(f"{entity_cls!r} is not an entity class")
        self.connection = connection
        self.entity_cls = entity_cls
        self._eager_relations: typing.List[str] = []

    @property
    def metadata(self) -> EntityMetadata:
        return self.entity_cls.metadata()

    def with_(self, *relations: typing.Union[str, typing.Iterable[str]]) -> "Repository[EntityType]":
        for relation in relations:
            names = [relation] if isinstance(relation, str) else list(relation)
            for name in names:
                if name not in self.metadata.relations:
                    raise MappingError(f"{self.entity_cls.__name__} has no relation {name!r}")
                if name not in self._eager_relations:
                    self._eager_relations.append(name)
        return self

    def _storage_column(self, name: str) -> str:
        metadata = self.metadata
        return metadata.columns[metadata.resolve_field(name)].storage_name

    def _apply_criteria(self, query: QueryBuilder, criteria: Criteria) -> None:
        for name, value in criteria.items():
            column = self._storage_column(name)
            if isinstance(value, (list, tuple, set, frozenset)):
                query.where_in(column, [to_storage(item) for item in value])
            elif value is None:
                query.where_null(column)
            else:
                query.where(column, "=", to_storage(value))

    def _hydrate(self, rows: typing.List[typing.Dict[str, typing.Any]]) -> typing.List[EntityType]:
        metadata = self.metadata
        key_type = metadata.primary_key.logical_type
        seen: typing.Dict[typing.Any, EntityType] = {}
        entities = []
        for row in rows:
            key = to_logical(row.get(metadata.primary_key_storage_name), key_type)
            if key is not None and key in seen:
                continue
            entity = self.entity_cls.from_row(row)
            if key is not None:
                seen[key] = entity
            entities.append(entity)
        return entities

    def find(self, primary_key: typing.Any) -> typing.Optional[EntityType]:
        if primary_key is None:
            self._eager_relations = []
            return None
        found = self.find_by({self.metadata.primary_key_field: primary_key}, limit=1)
        return found[0] if found else None

    def find_all(self) -> typing.List[EntityType]:
        return self.find_by({})

    def find_by(
        self,
        criteria: Criteria,
        order_by: typing.Optional[OrderBy] = None,
        limit: typing.Optional[int] = None,
        offset: typing.Optional[int] = None,
    ) -> typing.List[EntityType]:
        relations, self._eager_relations = self._eager_relations, []
        try:
            return self.load_by(criteria, order_by, limit, offset, relations=relations)
        except QueryExecutionError:
            logger.exception("Loading %s by %r failed", self.entity_cls.__name__, dict(criteria))
            return []

    def load_by(
        self,
        criteria: Criteria,
        order_by: typing.Optional[OrderBy] = None,
        limit: typing.Optional[int] = None,
        offset: typing.Optional[int] = None,
        relations: typing.Sequence[str] = (),
    ) -> typing.List[EntityType]:
        """Same as :meth:`find_by` but lets :class:`QueryExecutionError` propagate."""
        query = QueryBuilder(self.connection).select().from_(self.metadata.table_name)
        self._apply_criteria(query, criteria)
        for name, direction in (order_by or {}).items():
            query.order_by(self._storage_column(name), direction)
        if limit is not None:
            query.limit(limit)
        if offset is not None:
            query.offset(offset)

        entities = self._hydrate(query.fetch_all())
        RelationLoader(self.connection, self._repository_for).load(relations, entities)
        return entities

    def find_one_by(self, criteria: Criteria, order_by: typing.Optional[OrderBy] = None) -> typing.Optional[EntityType]:
        found = self.find_by(criteria, order_by=order_by, limit=1)
        return found[0] if found else None

    def count(self, criteria: typing.Optional[Criteria] = None) -> int:
        query = QueryBuilder(self.connection).from_(self.metadata.table_name)
        self._apply_criteria(query, criteria or {})
        return query.count()

    def _repository_for(self, entity_cls: type) -> "Repository":
        return Repository(self.connection, entity_cls)

    def _check_instance(self, entity: Entity) -> None:
        if not isinstance(entity, self.entity_cls):
            raise TypeError(f"Entity must be an instance of {self.entity_cls.__name__}, got {type(entity).__name__}")

    def _exists(self, primary_key: typing.Any) -> bool:
        metadata = self.metadata
        row = (
            QueryBuilder(self.connection)
            .select(metadata.primary_key_storage_name)
            .from_(metadata.table_name)
            .where(metadata.primary_key_storage_name, "=", to_storage(primary_key))
            .fetch_one()
        )
        return row is not None

    def _is_new(self, entity: EntityType) -> bool:
        primary_key = entity.get_primary_key()
        if primary_key is None:
            return True
        return not self._exists(primary_key)

    def save(self, entity: EntityType) -> bool:
        self._check_instance(entity)
        violations = entity.validate()
        if violations:
            logger.warning(
                "Not saving %s, validation failed: %s",
                self.entity_cls.__name__,
                "; ".join(violation.message for violation in violations),
            )
            return False

        try:
            is_new = self._is_new(entity)
            entity.touch_timestamps(is_new)
            saved = self._insert(entity) if is_new else self._update(entity)
        except QueryExecutionError:
            logger.exception("Saving %s failed", self.entity_cls.__name__)
            return False

        if saved:
            entity.mark_pristine()
        return saved

    def _insert(self, entity: EntityType) -> bool:
        metadata = self.metadata
        data = entity.all_for_storage()
        if not data:
            logger.warning("Nothing to insert for %s", self.entity_cls.__name__)
            return False

        QueryBuilder(self.connection).insert(metadata.table_name, data).execute()
        if metadata.primary_key_auto_assigned and entity.get_primary_key() is None:
            identifier = self.connection.last_inserted_identifier()
            if identifier is not None:
                entity.set_primary_key(identifier)
        return True

    def _update(self, entity: EntityType) -> bool:
        if not entity.is_dirty():
            return True
        metadata = self.metadata
        data = entity.dirty_for_storage()
        data.pop(metadata.primary_key_storage_name, None)
        if not data:
            return True

        (
            QueryBuilder(self.connection)
            .update(metadata.table_name, data)
            .where(metadata.primary_key_storage_name, "=", to_storage(entity.get_primary_key()))
            .execute()
        )
        return True

    def delete(self, entity: EntityType) -> bool:
        self._check_instance(entity)
        primary_key = entity.get_primary_key()
        if primary_key is None:
            logger.warning("Cannot delete %s without a primary key value", self.entity_cls.__name__)
            return False

        metadata = self.metadata
        try:
            return (
                QueryBuilder(self.connection)
                .delete(metadata.table_name)
                .where(metadata.primary_key_storage_name, "=", to_storage(primary_key))
                .execute()
            )
        except QueryExecutionError:
            logger.exception("Deleting %s %r failed", self.entity_cls.__name__, primary_key)
            return False
