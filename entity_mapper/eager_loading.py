"""Batched relation loading.

Every relation kind costs a fixed number of queries for the whole batch of
parents: one for BelongsTo, HasOne and HasMany, two for ManyToMany (join rows,
then related entities). Related rows sharing a primary key are materialised
once, so parents pointing at the same row share the same instance. A relation
whose queries fail is logged and left unloaded on every parent.
"""
import collections
import logging
import typing

from entity_mapper.entity import Entity
from entity_mapper.errors import QueryExecutionError
from entity_mapper.metadata import BelongsTo, HasMany, HasOne, ManyToMany, RelationVisitor
from entity_mapper.query_builder import QueryBuilder
from entity_mapper.type_casting import LogicalType, to_logical, to_storage

if typing.TYPE_CHECKING:
    from entity_mapper.connection import Connection
    from entity_mapper.repository import Repository


logger = logging.getLogger(__name__)


def _distinct(values: typing.Iterable[typing.Any]) -> typing.List[typing.Any]:
    seen = set()
    result = []
    for value in values:
        if value is None or value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def _logical_type_of(entity_cls: typing.Type[Entity], name: str) -> typing.Optional[LogicalType]:
    metadata = entity_cls.metadata()
    return metadata.columns[metadata.resolve_field(name)].logical_type


class RelationLoader(RelationVisitor):
    def __init__(
        self, connection: "Connection", repository_for: typing.Callable[[type], "Repository"]
    ) -> None:
        self.connection = connection
        self.repository_for = repository_for

    def load(self, relation_names: typing.Iterable[str], parents: typing.List[Entity]) -> None:
        if not parents:
            return
        metadata = type(parents[0]).metadata()
        for name in relation_names:
            try:
                metadata.relations[name].accept(self, parents)
            except QueryExecutionError:
                # relations are assigned only once every query succeeded
                logger.exception("Eager loading %s.%s failed, leaving it unloaded", type(parents[0]).__name__, name)

    def visit_belongs_to(self, relation: BelongsTo, parents: typing.List[Entity]) -> None:
        key_type = _logical_type_of(relation.related, relation.owner_key)
        keys = _distinct(to_logical(parent.get(relation.foreign_key_field), key_type) for parent in parents)
        if not keys:
            for parent in parents:
                parent.set(relation.field_name, None)
            return

        owner_field = relation.related.metadata().resolve_field(relation.owner_key)
        related = self.repository_for(relation.related).load_by({relation.owner_key: keys})
        by_owner_key = {entity.get(owner_field): entity for entity in related}
        for parent in parents:
            key = to_logical(parent.get(relation.foreign_key_field), key_type)
            parent.set(relation.field_name, by_owner_key.get(key))

    def _group_children(
        self, relation: typing.Union[HasOne, HasMany], parents: typing.List[Entity]
    ) -> typing.Dict[typing.Any, typing.List[Entity]]:
        parent_metadata = type(parents[0]).metadata()
        key_type = parent_metadata.columns[relation.local_key_field].logical_type
        keys = _distinct(parent.get(relation.local_key_field) for parent in parents)
        if not keys:
            return {}

        foreign_key_field = relation.related.metadata().resolve_field(relation.foreign_key)
        children = self.repository_for(relation.related).load_by({relation.foreign_key: keys})
        grouped = collections.defaultdict(list)
        for child in children:
            grouped[to_logical(child.get(foreign_key_field), key_type)].append(child)
        return grouped

    def visit_has_many(self, relation: HasMany, parents: typing.List[Entity]) -> None:
        grouped = self._group_children(relation, parents)
        for parent in parents:
            parent.set(relation.field_name, grouped.get(parent.get(relation.local_key_field), []))

    def visit_has_one(self, relation: HasOne, parents: typing.List[Entity]) -> None:
        grouped = self._group_children(relation, parents)
        for parent in parents:
            matches = grouped.get(parent.get(relation.local_key_field), [])
            if len(matches) > 1:
                logger.warning(
                    "%s.%s matched %d %s rows for %r, keeping the first one",
                    type(parent).__name__,
                    relation.field_name,
                    len(matches),
                    relation.related.__name__,
                    parent.get(relation.local_key_field),
                )
            parent.set(relation.field_name, matches[0] if matches else None)

    def visit_many_to_many(self, relation: ManyToMany, parents: typing.List[Entity]) -> None:
        parent_metadata = type(parents[0]).metadata()
        related_metadata = relation.related.metadata()
        local_type = parent_metadata.primary_key.logical_type
        related_type = related_metadata.primary_key.logical_type

        keys = _distinct(parent.get_primary_key() for parent in parents)
        pairs = []
        if keys:
            rows = (
                QueryBuilder(self.connection)
                .select(relation.join_local_key, relation.join_foreign_key)
                .from_(relation.join_table)
                .where_in(relation.join_local_key, [to_storage(key, local_type) for key in keys])
                .fetch_all()
            )
            pairs = [
                (to_logical(row[relation.join_local_key], local_type), to_logical(row[relation.join_foreign_key], related_type))
                for row in rows
            ]

        related_keys = _distinct(related_key for _, related_key in pairs)
        by_primary_key = {}
        if related_keys:
            related = self.repository_for(relation.related).load_by({related_metadata.primary_key_field: related_keys})
            by_primary_key = {entity.get_primary_key(): entity for entity in related}

        for parent in parents:
            parent_key = parent.get_primary_key()
            parent.set(
                relation.field_name,
                [
                    by_primary_key[related_key]
                    for local_key, related_key in pairs
                    if local_key == parent_key and related_key in by_primary_key
                ],
            )
