import abc
import typing
from datetime import datetime

import attr

from entity_mapper.mapping import Violation
from entity_mapper.metadata import EntityMetadata, known_entities
from entity_mapper.registry import registry
from entity_mapper.type_casting import STORAGE_DATETIME_FORMAT, to_logical, to_storage, values_differ


class FieldAccessor:
    """Routes attribute access on an entity through :meth:`Entity.get` / :meth:`Entity.set`."""

    def __init__(self, name: str) -> None:
        self.name = name

    def __get__(self, instance: typing.Optional["Entity"], owner: type) -> typing.Any:
        if instance is None:
            return self
        return instance.get(self.name)

    def __set__(self, instance: "Entity", value: typing.Any) -> None:
        instance.set(self.name, value)


class EntityMeta(abc.ABCMeta):
    def __new__(mcs, name: str, bases: tuple, namespace: dict):
        cls = super().__new__(mcs, name, bases, namespace)
        if not any(isinstance(base, EntityMeta) for base in bases):
            return cls
        attr_cls = attr.s(auto_attribs=True, init=False, eq=False, kw_only=True)(cls)
        for field in attr.fields(attr_cls):
            setattr(attr_cls, field.name, FieldAccessor(field.name))
        known_entities.register(attr_cls)
        return attr_cls


def _default_of(field: attr.Attribute, instance: "Entity") -> typing.Any:
    default = field.default
    if default is attr.NOTHING:
        return None
    if isinstance(default, attr.Factory):
        return default.factory(instance) if default.takes_self else default.factory()
    return default


class Entity(metaclass=EntityMeta):
    """Base class of mapped entities.

    Column values live in two layers: the baseline (last known persisted
    values) and an overlay holding only the fields whose value differs from
    the baseline. Relation fields are kept apart and are not dirty tracked.
    """

    def __init__(self, **values: typing.Any) -> None:
        self._baseline: typing.Dict[str, typing.Any] = {}
        self._overlay: typing.Dict[str, typing.Any] = {}
        self._relations: typing.Dict[str, typing.Any] = {}
        self._transient: typing.Dict[str, typing.Any] = {}
        self._defaults: typing.Dict[str, typing.Any] = {}
        for name, value in values.items():
            self.set(name, value)

    @classmethod
    def metadata(cls) -> EntityMetadata:
        return registry.get(cls)

    @classmethod
    def from_row(cls, row: typing.Mapping[str, typing.Any]) -> "Entity":
        """Builds a pristine entity from a storage row keyed by column names."""
        entity = cls()
        metadata = cls.metadata()
        for storage_name, value in row.items():
            field_name = metadata.field_for_column(storage_name)
            if field_name is not None:
                entity.set(field_name, value)
        entity.mark_pristine()
        return entity

    def _default(self, name: str) -> typing.Any:
        if name not in self._defaults:
            self._defaults[name] = _default_of(self.metadata().fields[name], self)
        return self._defaults[name]

    def get(self, name: str) -> typing.Any:
        metadata = self.metadata()
        if name in metadata.relations:
            return self._relations.get(name)
        if name in self._overlay:
            return self._overlay[name]
        if name in self._baseline:
            return self._baseline[name]
        column = metadata.columns.get(name)
        if column is not None:
            return to_logical(self._default(name), column.logical_type)
        if name in metadata.fields:
            if name not in self._transient:
                self._transient[name] = self._default(name)
            return self._transient[name]
        raise AttributeError(f"{type(self).__name__} has no field {name!r}")

    def set(self, name: str, value: typing.Any) -> None:
        metadata = self.metadata()
        relation = metadata.relations.get(name)
        if relation is not None:
            if relation.is_to_many and value is not None:
                if isinstance(value, relation.related) or not isinstance(value, (list, tuple)):
                    raise TypeError(f"{type(self).__name__}.{name} expects a list of {relation.related.__name__}")
                value = list(value)
            elif value is not None and not isinstance(value, relation.related):
                raise TypeError(f"{type(self).__name__}.{name} expects {relation.related.__name__} or None")
            self._relations[name] = value
            return

        column = metadata.columns.get(name)
        if column is None:
            if name not in metadata.fields:
                raise AttributeError(f"{type(self).__name__} has no field {name!r}")
            self._transient[name] = value
            return

        value = to_logical(value, column.logical_type)
        if name not in self._baseline or values_differ(self._baseline[name], value, column.logical_type):
            self._overlay[name] = value
        else:
            self._overlay.pop(name, None)

    def is_relation_loaded(self, name: str) -> bool:
        if name not in self.metadata().relations:
            raise AttributeError(f"{type(self).__name__} has no relation {name!r}")
        return name in self._relations

    def get_primary_key(self) -> typing.Any:
        return self.get(self.metadata().primary_key_field)

    def set_primary_key(self, value: typing.Any) -> None:
        self.set(self.metadata().primary_key_field, value)

    def is_persisted(self) -> bool:
        """True once a primary key value was loaded from or written to storage."""
        return self.metadata().primary_key_field in self._baseline

    def original(self, name: str) -> typing.Any:
        return self._baseline.get(name)

    def is_dirty(self) -> bool:
        return bool(self._overlay)

    def dirty_properties(self) -> typing.Dict[str, typing.Any]:
        return dict(self._overlay)

    def dirty_for_storage(self) -> typing.Dict[str, typing.Any]:
        columns = self.metadata().columns
        return {
            columns[name].storage_name: to_storage(value, columns[name].logical_type)
            for name, value in self._overlay.items()
            if name in columns
        }

    def all_for_storage(self) -> typing.Dict[str, typing.Any]:
        metadata = self.metadata()
        data = {}
        for name, column in metadata.columns.items():
            value = self.get(name)
            if column.is_primary_key and value is None and metadata.primary_key_auto_assigned:
                continue
            data[column.storage_name] = to_storage(value, column.logical_type)
        return data

    def mark_pristine(self) -> None:
        self._baseline.update(self._overlay)
        self._overlay.clear()

    def touch_timestamps(self, is_new: bool = False) -> None:
        metadata = self.metadata()
        now = datetime.now()
        if is_new and metadata.created_at_field and self.get(metadata.created_at_field) is None:
            self.set(metadata.created_at_field, now)
        if metadata.updated_at_field:
            self.set(metadata.updated_at_field, now)

    def validate(self) -> typing.List[Violation]:
        violations = []
        for name, rules in self.metadata().field_validations.items():
            value = self.get(name)
            for rule in rules:
                violation = rule.check(name, value)
                if violation is not None:
                    violations.append(violation)
        return violations

    def to_dict(self) -> typing.Dict[str, typing.Any]:
        data = {}
        for name, column in self.metadata().columns.items():
            value = self.get(name)
            if isinstance(value, datetime):
                value = value.strftime(STORAGE_DATETIME_FORMAT)
            data[column.storage_name] = value
        return data
