"""Declarations used in entity class bodies.

Every helper returns an ``attr.ib`` whose ``metadata`` carries a declaration
object; :func:`entity_mapper.metadata.build` reads them back when it describes
an entity class::

    class Post(Entity):
        __tablename__ = "posts"

        id: Identity[int]
        title: str = column(validators=[NotNull(), Length(max=120)])
        author_id: typing.Optional[int] = column()
        author: typing.Optional["User"] = belongs_to("User", foreign_key="author_id")
        created_at: typing.Optional[datetime] = created_at()
"""
import enum
import typing

import attr

from entity_mapper.errors import MappingError
from entity_mapper.type_casting import LogicalType


DECLARATION_KEY = "entity_mapper"

T = typing.TypeVar("T")


class Identity(typing.Generic[T]):
    """Marks an auto-assigned primary key in an annotation, e.g. ``id: Identity[int]``."""

    @classmethod
    def is_identity(cls, field_type: typing.Any) -> bool:
        return getattr(field_type, "__origin__", None) is cls


@attr.s(auto_attribs=True, frozen=True)
class Violation:
    field: str
    message: str


@attr.s(auto_attribs=True, frozen=True)
class NotNull:
    message: typing.Optional[str] = None

    def check(self, field_name: str, value: typing.Any) -> typing.Optional[Violation]:
        if value is None:
            return Violation(field_name, self.message or f"{field_name} must not be null")
        return None


@attr.s(auto_attribs=True, frozen=True)
class Length:
    min: typing.Optional[int] = None
    max: typing.Optional[int] = None
    message: typing.Optional[str] = None

    def __attrs_post_init__(self) -> None:
        if self.min is None and self.max is None:
            raise MappingError("Either min or max length must be specified for Length")
        if self.min is not None and self.min < 0:
            raise MappingError("Minimum length cannot be negative")
        if self.max is not None and self.max < 0:
            raise MappingError("Maximum length cannot be negative")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise MappingError("Minimum length cannot be greater than maximum length")

    def check(self, field_name: str, value: typing.Any) -> typing.Optional[Violation]:
        # null values are NotNull's business
        if value is None:
            return None
        length = len(value) if isinstance(value, (str, bytes, list, dict)) else len(str(value))
        if self.min is not None and length < self.min:
            return Violation(field_name, self.message or f"{field_name} must be at least {self.min} characters long")
        if self.max is not None and length > self.max:
            return Violation(field_name, self.message or f"{field_name} must be at most {self.max} characters long")
        return None


ValidationRule = typing.Union[NotNull, Length]


def _optional_logical_type(value: typing.Any) -> typing.Optional[LogicalType]:
    return None if value is None else LogicalType.parse(value)


@attr.s(auto_attribs=True, frozen=True)
class ColumnDeclaration:
    name: typing.Optional[str] = None
    type: typing.Optional[LogicalType] = attr.ib(default=None, converter=_optional_logical_type)
    primary_key: bool = False
    auto_increment: bool = True
    created_at: bool = False
    updated_at: bool = False
    validators: typing.Tuple[ValidationRule, ...] = attr.ib(default=(), converter=tuple)


class RelationKind(enum.Enum):
    BELONGS_TO = "BelongsTo"
    HAS_ONE = "HasOne"
    HAS_MANY = "HasMany"
    MANY_TO_MANY = "ManyToMany"


@attr.s(auto_attribs=True, frozen=True)
class RelationDeclaration:
    kind: RelationKind
    target: typing.Union[str, type]
    foreign_key: typing.Optional[str] = None
    owner_key: typing.Optional[str] = None
    local_key: typing.Optional[str] = None
    join_table: typing.Optional[str] = None


def _declare(declaration: typing.Any, default: typing.Any = None, repr: bool = True) -> typing.Any:
    return attr.ib(default=default, repr=repr, metadata={DECLARATION_KEY: declaration})


def declaration_of(field: attr.Attribute) -> typing.Any:
    return field.metadata.get(DECLARATION_KEY)


def column(
    name: typing.Optional[str] = None,
    type: typing.Optional[typing.Union[str, LogicalType]] = None,
    default: typing.Any = None,
    validators: typing.Iterable[ValidationRule] = (),
) -> typing.Any:
    return _declare(ColumnDeclaration(name=name, type=type, validators=validators), default)


def primary_key(
    name: typing.Optional[str] = None,
    type: typing.Optional[typing.Union[str, LogicalType]] = None,
    auto_increment: bool = True,
    default: typing.Any = None,
) -> typing.Any:
    return _declare(ColumnDeclaration(name=name, type=type, primary_key=True, auto_increment=auto_increment), default)


def created_at(name: typing.Optional[str] = None, type: typing.Optional[typing.Union[str, LogicalType]] = None) -> typing.Any:
    return _declare(ColumnDeclaration(name=name, type=type, created_at=True))


def updated_at(name: typing.Optional[str] = None, type: typing.Optional[typing.Union[str, LogicalType]] = None) -> typing.Any:
    return _declare(ColumnDeclaration(name=name, type=type, updated_at=True))


def belongs_to(
    target: typing.Union[str, type], foreign_key: typing.Optional[str] = None, owner_key: typing.Optional[str] = None
) -> typing.Any:
    return _declare(
        RelationDeclaration(RelationKind.BELONGS_TO, target, foreign_key=foreign_key, owner_key=owner_key), repr=False
    )


def has_one(target: typing.Union[str, type], foreign_key: str, local_key: typing.Optional[str] = None) -> typing.Any:
    return _declare(
        RelationDeclaration(RelationKind.HAS_ONE, target, foreign_key=foreign_key, local_key=local_key), repr=False
    )


def has_many(target: typing.Union[str, type], foreign_key: str, local_key: typing.Optional[str] = None) -> typing.Any:
    return _declare(
        RelationDeclaration(RelationKind.HAS_MANY, target, foreign_key=foreign_key, local_key=local_key), repr=False
    )


def many_to_many(target: typing.Union[str, type], join_table: str, local_key: str, foreign_key: str) -> typing.Any:
    return _declare(
        RelationDeclaration(
            RelationKind.MANY_TO_MANY, target, foreign_key=foreign_key, local_key=local_key, join_table=join_table
        ),
        repr=False,
    )
