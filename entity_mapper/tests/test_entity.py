import typing
from datetime import datetime

import attr
import pytest

from entity_mapper import Entity, Identity, Violation, column
from entity_mapper.tests.entities import Post, Tag, User


class Member(Entity):
    id: Identity[int]
    is_active: typing.Optional[bool] = column()
    age: typing.Optional[int] = column()
    nickname: typing.Optional[str] = column()
    tags: typing.List[str] = attr.Factory(list)


def test_row_is_cast_and_pristine():
    member = Member.from_row({"id": "1", "is_active": "1", "age": "30"})

    assert not member.is_dirty()
    assert member.get("id") == 1
    assert member.get("is_active") is True
    assert member.get("age") == 30
    assert member.age == 30


def test_unknown_row_columns_are_ignored():
    member = Member.from_row({"id": 1, "not_a_column": "x"})

    assert member.to_dict() == {"id": 1, "is_active": None, "age": None, "nickname": None}


def test_constructed_entity_is_dirty():
    member = Member(age="41", nickname="ace")

    assert member.is_dirty()
    assert member.dirty_properties() == {"age": 41, "nickname": "ace"}


@pytest.mark.parametrize("field, value", [("is_active", "1"), ("age", "30"), ("id", 1)])
def test_setting_the_baseline_value_again_is_not_dirty(field, value):
    member = Member.from_row({"id": "1", "is_active": "1", "age": "30", "nickname": "ace"})
    member.nickname = "changed"
    member.nickname = "ace"

    member.set(field, value)

    assert not member.is_dirty()
    assert member.dirty_properties() == {}


def test_reverting_a_change_clears_the_dirty_flag():
    member = Member.from_row({"id": 1, "age": 30})
    member.age = 31
    assert member.dirty_properties() == {"age": 31}

    member.age = "30"
    assert not member.is_dirty()


def test_dirty_round_trip_after_mark_pristine():
    member = Member.from_row({"id": 1, "age": 10})
    member.set("age", 20)
    member.set("age", 30)
    member.mark_pristine()

    member.set("age", 20)

    assert member.is_dirty()
    assert member.dirty_properties() == {"age": 20}
    assert member.original("age") == 30


def test_storage_representations():
    user = User.from_row({"user_id": 3, "name": "Ann", "is_active": 0, "created_at": "2023-01-01 10:00:00"})
    user.email = "ann@example.com"
    user.profile = {"theme": "dark"}
    user.is_active = True

    assert user.dirty_for_storage() == {"email_address": "ann@example.com", "profile": '{"theme":"dark"}', "is_active": 1}
    stored = user.all_for_storage()
    assert stored["user_id"] == 3
    assert stored["created_at"] == "2023-01-01 10:00:00"
    assert stored["is_active"] == 1


def test_all_for_storage_omits_missing_auto_assigned_primary_key():
    assert "user_id" not in User(name="Ann").all_for_storage()
    assert User(name="Ann").all_for_storage()["is_active"] == 1


def test_defaults_are_used_until_set():
    user = User(name="Ann")

    assert user.is_active is True
    assert "is_active" not in user.dirty_properties()


def test_factory_defaults_for_transient_fields_are_per_instance():
    first, second = Member(), Member()
    first.tags.append("x")

    assert first.tags == ["x"]
    assert second.tags == []
    assert "tags" not in first.to_dict()


def test_primary_key_accessors():
    user = User()
    assert user.get_primary_key() is None

    user.set_primary_key("12")
    assert user.id == 12
    assert user.dirty_properties() == {"id": 12}


def test_relations_start_unloaded_and_are_not_dirty_tracked():
    post = Post.from_row({"id": 1, "title": "Hello", "author_id": 2})
    assert not post.is_relation_loaded("author")
    assert post.author is None

    post.author = User.from_row({"user_id": 2, "name": "Ann"})
    assert post.is_relation_loaded("author")
    assert not post.is_dirty()

    post.author = None
    assert post.is_relation_loaded("author")


def test_relation_values_are_type_checked():
    post = Post()
    with pytest.raises(TypeError):
        post.author = Tag()
    with pytest.raises(TypeError):
        post.tags = Tag()

    post.tags = (Tag(name="a"),)
    assert isinstance(post.tags, list)


def test_unknown_fields_raise_attribute_error():
    with pytest.raises(AttributeError):
        Member().get("missing")
    with pytest.raises(AttributeError):
        Member(missing=1)


def test_touch_timestamps():
    user = User(name="Ann")
    user.touch_timestamps(is_new=True)
    assert isinstance(user.created_at, datetime)
    assert isinstance(user.updated_at, datetime)

    existing = User.from_row({"user_id": 1, "name": "Ann", "created_at": "2020-01-01 00:00:00"})
    existing.touch_timestamps(is_new=True)
    assert existing.created_at == datetime(2020, 1, 1)
    assert "updated_at" in existing.dirty_properties()


def test_validate():
    assert User(name="Ann").validate() == []
    assert User().validate() == [Violation("name", "name must not be null")]
    assert User(name="A").validate()[0].message == "name must be at least 2 characters long"


def test_to_dict_uses_storage_names_and_renders_timestamps():
    user = User.from_row({"user_id": 1, "name": "Ann", "created_at": "2023-01-01 10:00:00"})

    data = user.to_dict()
    assert data["user_id"] == 1
    assert data["created_at"] == "2023-01-01 10:00:00"
    assert "posts" not in data


def test_repr_lists_column_fields_only():
    text = repr(Post.from_row({"id": 1, "title": "Hello"}))

    assert "title='Hello'" in text
    assert "author" not in text.replace("author_id", "")
    assert "tags" not in text
