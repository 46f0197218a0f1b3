import typing
from datetime import datetime

import pytest

from entity_mapper import Entity, Identity, MappingError, belongs_to, column, created_at, has_many, primary_key
from entity_mapper.metadata import BelongsTo, HasMany, HasOne, ManyToMany
from entity_mapper.registry import get_metadata
from entity_mapper.tests.entities import Avatar, Post, Tag, User
from entity_mapper.type_casting import LogicalType


def test_columns_and_storage_names():
    metadata = get_metadata(User)

    assert metadata.table_name == "users"
    assert metadata.primary_key_field == "id"
    assert metadata.primary_key_storage_name == "user_id"
    assert metadata.primary_key_auto_assigned
    assert metadata.column_for_field("email") == "email_address"
    assert metadata.field_for_column("email_address") == "email"
    assert metadata.columns["is_active"].logical_type is LogicalType.BOOL
    assert metadata.columns["profile"].logical_type is LogicalType.STRUCTURED
    assert metadata.created_at_storage_name == "created_at"
    assert metadata.updated_at_field == "updated_at"
    assert set(metadata.relations) == {"posts", "avatar"}
    assert "posts" not in metadata.columns


def test_table_name_is_inferred_from_class_name():
    assert get_metadata(Avatar).table_name == "avatars"


def test_belongs_to_owner_key_defaults_to_related_primary_key_column():
    relation = get_metadata(Post).relations["author"]

    assert isinstance(relation, BelongsTo)
    assert relation.related is User
    assert relation.foreign_key == "author_id"
    assert relation.owner_key == "user_id"


def test_has_many_and_has_one_local_key_defaults_to_primary_key():
    metadata = get_metadata(User)

    posts = metadata.relations["posts"]
    assert isinstance(posts, HasMany)
    assert (posts.foreign_key, posts.local_key, posts.local_key_field) == ("author_id", "user_id", "id")
    assert isinstance(metadata.relations["avatar"], HasOne)


def test_many_to_many():
    relation = get_metadata(Post).relations["tags"]

    assert isinstance(relation, ManyToMany)
    assert relation.related is Tag
    assert (relation.join_table, relation.join_local_key, relation.join_foreign_key) == ("post_tag", "post_id", "tag_id")


def test_id_field_is_the_fallback_primary_key():
    metadata = get_metadata(Tag)

    assert metadata.primary_key_field == "id"
    assert metadata.primary_key.is_primary_key
    assert metadata.primary_key.logical_type is LogicalType.INT


def test_identity_annotation_declares_primary_key():
    class Invoice(Entity):
        number: Identity[int]
        total: float = column()

    metadata = get_metadata(Invoice)
    assert metadata.primary_key_field == "number"
    assert metadata.columns["total"].logical_type is LogicalType.FLOAT


def test_non_auto_increment_primary_key():
    class Country(Entity):
        code: str = primary_key(auto_increment=False)

    metadata = get_metadata(Country)
    assert metadata.primary_key_storage_name == "code"
    assert not metadata.primary_key_auto_assigned


def test_camel_case_fields_get_underscored_column_names():
    class Event(Entity):
        id: Identity[int]
        startsAt: typing.Optional[datetime] = column()

    assert get_metadata(Event).column_for_field("startsAt") == "starts_at"


def test_missing_primary_key_is_a_mapping_error():
    class Keyless(Entity):
        name: str = column()

    with pytest.raises(MappingError):
        get_metadata(Keyless)


def test_multiple_primary_keys_are_a_mapping_error():
    class TwoKeys(Entity):
        first: int = primary_key()
        second: int = primary_key()

    with pytest.raises(MappingError):
        get_metadata(TwoKeys)


def test_multiple_created_at_fields_are_a_mapping_error():
    class TwoStamps(Entity):
        id: Identity[int]
        created: typing.Optional[datetime] = created_at()
        also_created: typing.Optional[datetime] = created_at(name="also_created")

    with pytest.raises(MappingError):
        get_metadata(TwoStamps)


def test_unresolvable_relation_target_is_a_mapping_error():
    class Orphan(Entity):
        id: Identity[int]
        parent_id: typing.Optional[int] = column()
        parent: typing.Any = belongs_to("NoSuchEntity", foreign_key="parent_id")

    with pytest.raises(MappingError):
        get_metadata(Orphan)


def test_belongs_to_foreign_key_must_be_a_column():
    class Comment(Entity):
        id: Identity[int]
        post: typing.Optional[Post] = belongs_to(Post, foreign_key="missing_id")

    with pytest.raises(MappingError):
        get_metadata(Comment)


def test_has_many_requires_foreign_key():
    class Blog(Entity):
        id: Identity[int]
        posts: typing.List[Post] = has_many(Post, foreign_key="")

    with pytest.raises(MappingError):
        get_metadata(Blog)


def test_self_referencing_belongs_to_uses_own_primary_key():
    class Category(Entity):
        id: int = primary_key(name="category_id")
        parent_id: typing.Optional[int] = column()
        parent: typing.Optional["Category"] = belongs_to("Category", foreign_key="parent_id")

    assert get_metadata(Category).relations["parent"].owner_key == "category_id"


def test_explicit_owner_key_must_be_a_related_column():
    class Comment(Entity):
        id: Identity[int]
        post_id: typing.Optional[int] = column()
        post: typing.Optional[Post] = belongs_to(Post, foreign_key="post_id", owner_key="slug")

    with pytest.raises(MappingError):
        get_metadata(Comment)


def test_explicit_owner_key_accepts_field_and_storage_names():
    class Account(Entity):
        id: int = primary_key(name="account_id")
        login: str = column(name="login_name")

    class Session(Entity):
        id: Identity[int]
        account_id: typing.Optional[int] = column()
        by_key: typing.Optional[Account] = belongs_to(Account, foreign_key="account_id", owner_key="account_id")
        by_login: typing.Optional[Account] = belongs_to(Account, foreign_key="account_id", owner_key="login")

    relations = get_metadata(Session).relations
    assert relations["by_key"].owner_key == "account_id"
    assert relations["by_login"].owner_key == "login"
