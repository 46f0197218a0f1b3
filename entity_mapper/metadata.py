import logging
import typing
from datetime import date, datetime
from types import MappingProxyType, UnionType

import attr
import inflection

from entity_mapper.errors import MappingError
from entity_mapper.mapping import (
    ColumnDeclaration,
    Identity,
    RelationDeclaration,
    RelationKind,
    ValidationRule,
    declaration_of,
)
from entity_mapper.type_casting import LogicalType


logger = logging.getLogger(__name__)

_NATIVE_TYPES = {
    int: LogicalType.INT,
    str: LogicalType.STRING,
    float: LogicalType.FLOAT,
    bool: LogicalType.BOOL,
    datetime: LogicalType.TIMESTAMP,
    date: LogicalType.TIMESTAMP,
    dict: LogicalType.STRUCTURED,
    list: LogicalType.STRUCTURED,
}

_UNION_TYPES = (typing.Union, UnionType)


@attr.s(auto_attribs=True)
class EntityRegistry:
    """Entity classes by name, used to resolve relation targets given as strings."""

    entities_by_name: typing.Dict[str, type] = attr.Factory(dict)
    entity_classes: typing.Set[type] = attr.Factory(set)

    def register(self, entity_cls: type) -> None:
        self.entities_by_name[entity_cls.__name__] = entity_cls
        self.entity_classes.add(entity_cls)

    def resolve(self, name: str) -> typing.Optional[type]:
        return self.entities_by_name.get(name)

    def is_entity(self, candidate: typing.Any) -> bool:
        return isinstance(candidate, type) and candidate in self.entity_classes


known_entities = EntityRegistry()


def _get_wrapped_type(wrapped_type: typing.Any) -> typing.Any:
    return typing.get_args(wrapped_type)[0]


def _is_field_nullable(field_type: typing.Any) -> bool:
    return typing.get_origin(field_type) in _UNION_TYPES and type(None) in typing.get_args(field_type)


def _is_list(field_type: typing.Any) -> bool:
    return typing.get_origin(field_type) in (list, tuple, set, frozenset)


def _resolve_forward(field_type: typing.Any) -> typing.Any:
    if isinstance(field_type, typing.ForwardRef):
        field_type = field_type.__forward_arg__
    if isinstance(field_type, str):
        return known_entities.resolve(field_type) or field_type
    return field_type


def _unwrap(field_type: typing.Any) -> typing.Tuple[typing.Any, bool]:
    """Strips ``Optional`` and ``Identity`` wrappers, reporting whether ``Identity`` was seen."""
    is_identity = False
    while True:
        field_type = _resolve_forward(field_type)
        if Identity.is_identity(field_type):
            field_type = _get_wrapped_type(field_type)
            is_identity = True
        elif _is_field_nullable(field_type):
            non_null = [arg for arg in typing.get_args(field_type) if arg is not type(None)]
            field_type = non_null[0] if len(non_null) == 1 else typing.Any
        else:
            return field_type, is_identity


def _is_entity_or_list_of_entities(field_type: typing.Any) -> bool:
    if known_entities.is_entity(field_type):
        return True
    return _is_list(field_type) and known_entities.is_entity(_resolve_forward(_get_wrapped_type(field_type)))


def _infer_logical_type(field_type: typing.Any) -> typing.Optional[LogicalType]:
    if _is_entity_or_list_of_entities(field_type):
        return None
    try:
        if field_type in _NATIVE_TYPES:
            return _NATIVE_TYPES[field_type]
    except TypeError:  # unhashable annotation
        return None
    if typing.get_origin(field_type) in (dict, list):
        return LogicalType.STRUCTURED
    return None


def _type_hints(entity_cls: type) -> typing.Dict[str, typing.Any]:
    try:
        return typing.get_type_hints(entity_cls, localns=dict(known_entities.entities_by_name))
    except (NameError, TypeError):
        # classes declared inside functions cannot resolve their string annotations
        logger.debug("Falling back to raw annotations for %s", entity_cls.__name__)
        return {field.name: field.type for field in attr.fields(entity_cls)}


@attr.s(auto_attribs=True, frozen=True)
class ColumnDescriptor:
    field_name: str
    storage_name: str
    logical_type: typing.Optional[LogicalType]
    is_primary_key: bool = False
    is_created_at: bool = False
    is_updated_at: bool = False


class RelationVisitor:
    def visit_belongs_to(self, relation: "BelongsTo", parents: typing.List[typing.Any]) -> None:
        pass

    def visit_has_one(self, relation: "HasOne", parents: typing.List[typing.Any]) -> None:
        pass

    def visit_has_many(self, relation: "HasMany", parents: typing.List[typing.Any]) -> None:
        pass

    def visit_many_to_many(self, relation: "ManyToMany", parents: typing.List[typing.Any]) -> None:
        pass


@attr.s(auto_attribs=True, frozen=True)
class BelongsTo:
    field_name: str
    related: type
    foreign_key: str
    foreign_key_field: str
    owner_key: str

    kind: typing.ClassVar[RelationKind] = RelationKind.BELONGS_TO
    is_to_many: typing.ClassVar[bool] = False

    def accept(self, visitor: RelationVisitor, parents: typing.List[typing.Any]) -> None:
        visitor.visit_belongs_to(self, parents)


@attr.s(auto_attribs=True, frozen=True)
class HasOne:
    field_name: str
    related: type
    foreign_key: str
    local_key: str
    local_key_field: str

    kind: typing.ClassVar[RelationKind] = RelationKind.HAS_ONE
    is_to_many: typing.ClassVar[bool] = False

    def accept(self, visitor: RelationVisitor, parents: typing.List[typing.Any]) -> None:
        visitor.visit_has_one(self, parents)


@attr.s(auto_attribs=True, frozen=True)
class HasMany:
    field_name: str
    related: type
    foreign_key: str
    local_key: str
    local_key_field: str

    kind: typing.ClassVar[RelationKind] = RelationKind.HAS_MANY
    is_to_many: typing.ClassVar[bool] = True

    def accept(self, visitor: RelationVisitor, parents: typing.List[typing.Any]) -> None:
        visitor.visit_has_many(self, parents)


@attr.s(auto_attribs=True, frozen=True)
class ManyToMany:
    field_name: str
    related: type
    join_table: str
    join_local_key: str
    join_foreign_key: str

    kind: typing.ClassVar[RelationKind] = RelationKind.MANY_TO_MANY
    is_to_many: typing.ClassVar[bool] = True

    def accept(self, visitor: RelationVisitor, parents: typing.List[typing.Any]) -> None:
        visitor.visit_many_to_many(self, parents)


Relation = typing.Union[BelongsTo, HasOne, HasMany, ManyToMany]


@attr.s(auto_attribs=True, frozen=True)
class EntityMetadata:
    entity_cls: type
    table_name: str
    columns: typing.Mapping[str, ColumnDescriptor]
    relations: typing.Mapping[str, Relation]
    field_validations: typing.Mapping[str, typing.Tuple[ValidationRule, ...]]
    fields: typing.Mapping[str, attr.Attribute]
    primary_key_field: str
    primary_key_storage_name: str
    primary_key_auto_assigned: bool = True
    created_at_field: typing.Optional[str] = None
    created_at_storage_name: typing.Optional[str] = None
    updated_at_field: typing.Optional[str] = None
    updated_at_storage_name: typing.Optional[str] = None

    @property
    def primary_key(self) -> ColumnDescriptor:
        return self.columns[self.primary_key_field]

    def is_column(self, field_name: str) -> bool:
        return field_name in self.columns

    def is_relation(self, field_name: str) -> bool:
        return field_name in self.relations

    def column_for_field(self, field_name: str) -> typing.Optional[str]:
        column = self.columns.get(field_name)
        return column.storage_name if column else None

    def field_for_column(self, storage_name: str) -> typing.Optional[str]:
        for column in self.columns.values():
            if column.storage_name == storage_name:
                return column.field_name
        return None

    def resolve_field(self, name: str) -> str:
        """Maps a column field name or a storage column name to the column field name."""
        if name in self.columns:
            return name
        field_name = self.field_for_column(name)
        if field_name is None:
            raise MappingError(f"{self.entity_cls.__name__} has no column {name!r}")
        return field_name


def _resolve_target(target: typing.Union[str, type], owner: type, field_name: str) -> type:
    related = known_entities.resolve(target) if isinstance(target, str) else target
    if not known_entities.is_entity(related):
        raise MappingError(f"{owner.__name__}.{field_name}: relation target {target!r} is not a known entity")
    return related


def _column_field(columns: typing.Mapping[str, ColumnDescriptor], name: str) -> typing.Optional[str]:
    if name in columns:
        return name
    for column in columns.values():
        if column.storage_name == name:
            return column.field_name
    return None


def _declares_column(entity_cls: type, key: str) -> bool:
    """Checks ``key`` against the columns ``entity_cls`` declares, without building its metadata."""
    hints = _type_hints(entity_cls)
    for field in attr.fields(entity_cls):
        declaration = declaration_of(field)
        if isinstance(declaration, RelationDeclaration):
            continue
        if declaration is None and not _unwrap(hints.get(field.name, field.type))[1] and field.name != "id":
            continue
        storage_name = (declaration.name if declaration is not None else None) or inflection.underscore(field.name)
        if key in (field.name, storage_name):
            return True
    return False


def build(entity_cls: type, lookup: typing.Callable[[type], EntityMetadata]) -> EntityMetadata:
    """Describes ``entity_cls``; ``lookup`` fetches (possibly builds) metadata of related entities."""
    table_name = getattr(entity_cls, "__tablename__", None) or inflection.underscore(entity_cls.__name__) + "s"
    hints = _type_hints(entity_cls)
    fields = {field.name: field for field in attr.fields(entity_cls)}

    columns: typing.Dict[str, ColumnDescriptor] = {}
    validations: typing.Dict[str, typing.Tuple[ValidationRule, ...]] = {}
    primary_key: typing.Optional[str] = None
    auto_assigned = True
    created_at: typing.Optional[str] = None
    updated_at: typing.Optional[str] = None

    for field in fields.values():
        declaration = declaration_of(field)
        if isinstance(declaration, RelationDeclaration):
            continue

        field_type, is_identity = _unwrap(hints.get(field.name, field.type))
        if declaration is None and is_identity:
            declaration = ColumnDeclaration(primary_key=True)
        if declaration is None:
            continue

        storage_name = declaration.name or inflection.underscore(field.name)
        logical_type = declaration.type or _infer_logical_type(field_type)

        is_primary_key = declaration.primary_key or is_identity
        if is_primary_key:
            if primary_key is not None:
                raise MappingError(f"Multiple primary keys for {entity_cls.__name__}: {primary_key}, {field.name}")
            primary_key = field.name
            auto_assigned = declaration.auto_increment

        if declaration.created_at:
            if created_at is not None:
                raise MappingError(f"Multiple created-at fields for {entity_cls.__name__}")
            created_at = field.name
            logical_type = logical_type or LogicalType.TIMESTAMP

        if declaration.updated_at:
            if updated_at is not None:
                raise MappingError(f"Multiple updated-at fields for {entity_cls.__name__}")
            updated_at = field.name
            logical_type = logical_type or LogicalType.TIMESTAMP

        if declaration.validators:
            validations[field.name] = declaration.validators

        columns[field.name] = ColumnDescriptor(
            field_name=field.name,
            storage_name=storage_name,
            logical_type=logical_type,
            is_primary_key=is_primary_key,
            is_created_at=declaration.created_at,
            is_updated_at=declaration.updated_at,
        )

    if primary_key is None:
        if "id" not in fields:
            raise MappingError(f"No primary key declared and no 'id' field found for {entity_cls.__name__}")
        primary_key = "id"
        auto_assigned = True
        if "id" in columns:
            columns["id"] = attr.evolve(columns["id"], is_primary_key=True)
        else:
            columns["id"] = ColumnDescriptor(
                field_name="id",
                storage_name="id",
                logical_type=_infer_logical_type(_unwrap(hints.get("id", fields["id"].type))[0]),
                is_primary_key=True,
            )

    primary_key_storage_name = columns[primary_key].storage_name
    relations: typing.Dict[str, Relation] = {}

    for field in fields.values():
        declaration = declaration_of(field)
        if not isinstance(declaration, RelationDeclaration):
            continue
        related = _resolve_target(declaration.target, entity_cls, field.name)
        where = f"{entity_cls.__name__}.{field.name}"

        if declaration.kind is RelationKind.BELONGS_TO:
            foreign_key = declaration.foreign_key or inflection.underscore(related.__name__) + "_id"
            foreign_key_field = _column_field(columns, foreign_key)
            if foreign_key_field is None:
                raise MappingError(f"{where}: foreign key {foreign_key!r} is not a declared column")
            owner_key = declaration.owner_key
            if owner_key:
                if not _declares_column(related, owner_key):
                    raise MappingError(f"{where}: owner key {owner_key!r} is not a column of {related.__name__}")
            elif related is entity_cls:
                owner_key = primary_key_storage_name
            else:
                owner_key = lookup(related).primary_key_storage_name
            relations[field.name] = BelongsTo(
                field_name=field.name,
                related=related,
                foreign_key=columns[foreign_key_field].storage_name,
                foreign_key_field=foreign_key_field,
                owner_key=owner_key,
            )

        elif declaration.kind in (RelationKind.HAS_ONE, RelationKind.HAS_MANY):
            if not declaration.foreign_key:
                raise MappingError(f"{where}: foreign key must be declared")
            local_key = declaration.local_key or primary_key_storage_name
            local_key_field = _column_field(columns, local_key)
            if local_key_field is None:
                raise MappingError(f"{where}: local key {local_key!r} is not a declared column")
            relation_cls = HasOne if declaration.kind is RelationKind.HAS_ONE else HasMany
            relations[field.name] = relation_cls(
                field_name=field.name,
                related=related,
                foreign_key=declaration.foreign_key,
                local_key=columns[local_key_field].storage_name,
                local_key_field=local_key_field,
            )

        else:
            if not (declaration.join_table and declaration.local_key and declaration.foreign_key):
                raise MappingError(f"{where}: join table and both join keys must be declared")
            relations[field.name] = ManyToMany(
                field_name=field.name,
                related=related,
                join_table=declaration.join_table,
                join_local_key=declaration.local_key,
                join_foreign_key=declaration.foreign_key,
            )

    return EntityMetadata(
        entity_cls=entity_cls,
        table_name=table_name,
        columns=MappingProxyType(columns),
        relations=MappingProxyType(relations),
        field_validations=MappingProxyType(validations),
        fields=MappingProxyType(fields),
        primary_key_field=primary_key,
        primary_key_storage_name=primary_key_storage_name,
        primary_key_auto_assigned=auto_assigned,
        created_at_field=created_at,
        created_at_storage_name=columns[created_at].storage_name if created_at else None,
        updated_at_field=updated_at,
        updated_at_storage_name=columns[updated_at].storage_name if updated_at else None,
    )
