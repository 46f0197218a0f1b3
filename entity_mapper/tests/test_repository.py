import logging
import typing
from datetime import datetime

import pytest

from entity_mapper import Entity, Identity, MappingError, Repository, column, primary_key
from entity_mapper.tests.entities import Avatar, Post, Tag, User


@pytest.fixture()
def users(connection, schema) -> Repository[User]:
    return Repository(connection, User)


@pytest.fixture()
def posts(connection, schema) -> Repository[Post]:
    return Repository(connection, Post)


@pytest.fixture()
def people(seed):
    seed(
        "users",
        [
            {"user_id": 1, "name": "Ann", "email_address": "ann@example.com", "is_active": 1},
            {"user_id": 2, "name": "Bob", "email_address": None, "is_active": 0},
            {"user_id": 3, "name": "Cid", "email_address": "cid@example.com", "is_active": 1},
        ],
    )


def test_find(users, people):
    user = users.find(2)

    assert user.id == 2
    assert user.name == "Bob"
    assert user.is_active is False
    assert not user.is_dirty()


def test_find_missing_returns_none(users, people):
    assert users.find(99) is None
    assert users.find(None) is None


def test_find_all(users, people):
    assert [user.id for user in users.find_all()] == [1, 2, 3]


def test_find_by_field_and_column_names(users, people):
    assert [user.id for user in users.find_by({"is_active": True})] == [1, 3]
    assert [user.id for user in users.find_by({"email_address": "cid@example.com"})] == [3]
    assert [user.id for user in users.find_by({"email": None})] == [2]
    assert [user.id for user in users.find_by({"id": [3, 1]}, order_by={"id": "DESC"})] == [3, 1]


def test_find_by_limit_and_offset(users, people):
    found = users.find_by({}, order_by={"name": "ASC"}, limit=1, offset=1)

    assert [user.name for user in found] == ["Bob"]


def test_find_one_by(users, people):
    assert users.find_one_by({"is_active": True}, order_by={"name": "DESC"}).name == "Cid"
    assert users.find_one_by({"name": "Nobody"}) is None


def test_unknown_criteria_raise_mapping_error(users, people):
    with pytest.raises(MappingError):
        users.find_by({"nickname": "x"})


def test_count(users, people):
    assert users.count() == 3
    assert users.count({"is_active": False}) == 1


def test_execution_failures_are_logged_and_swallowed_by_finders(connection, caplog):
    users = Repository(connection, User)

    with caplog.at_level(logging.ERROR, logger="entity_mapper.repository"):
        assert users.find_all() == []
        assert users.find(1) is None

    assert "Loading User" in caplog.text


def test_insert_assigns_generated_primary_key(users):
    user = User(name="Dee", email="dee@example.com", profile={"theme": "dark"})

    assert users.save(user) is True

    assert user.id is not None
    assert not user.is_dirty()
    assert isinstance(user.created_at, datetime)
    stored = users.find(user.id)
    assert stored.email == "dee@example.com"
    assert stored.profile == {"theme": "dark"}
    assert stored.is_active is True
    assert stored.created_at == user.created_at.replace(microsecond=0)


def test_update_writes_dirty_columns_only(users, people, statements):
    user = users.find(1)
    user.name = "Anne"
    statements.reset()

    assert users.save(user) is True

    update = [statement for statement in statements.statements if statement.startswith("UPDATE")]
    assert len(update) == 1
    assert "SET name=?" in update[0]
    assert "user_id =" not in update[0].split("WHERE")[0]
    assert users.find(1).name == "Anne"
    assert not user.is_dirty()


def test_saving_a_clean_entity_is_a_no_op(connection, seed, statements):
    seed("tags", [{"id": 1, "name": "python"}])
    tags = Repository(connection, Tag)
    tag = tags.find(1)
    statements.reset()

    assert tags.save(tag) is True
    assert not [statement for statement in statements.statements if statement.startswith(("UPDATE", "INSERT"))]


def test_saving_refreshes_updated_at(users, people):
    user = users.find(1)
    assert user.updated_at is None

    assert users.save(user) is True
    assert isinstance(users.find(1).updated_at, datetime)


def test_entity_with_unknown_generated_key_is_inserted(users):
    user = User(id=50, name="Eve")

    assert users.save(user) is True
    assert users.find(50).name == "Eve"


def test_invalid_entity_is_not_saved(users, caplog):
    with caplog.at_level(logging.WARNING, logger="entity_mapper.repository"):
        assert users.save(User(name="X")) is False

    assert "validation failed" in caplog.text
    assert users.count() == 0


def test_save_failure_returns_false(connection, caplog):
    users = Repository(connection, User)

    with caplog.at_level(logging.ERROR):
        assert users.save(User(name="Dee")) is False


def test_wrong_entity_class_is_rejected(users):
    with pytest.raises(TypeError):
        users.save(Tag(name="x"))
    with pytest.raises(TypeError):
        users.delete(Tag(id=1))


def test_delete(users, people):
    assert users.delete(users.find(2)) is True
    assert users.find(2) is None
    assert users.count() == 2


def test_delete_without_primary_key(users, caplog):
    with caplog.at_level(logging.WARNING):
        assert users.delete(User(name="Ann")) is False
    assert "without a primary key" in caplog.text


def test_non_auto_increment_primary_key(connection, schema):
    class Country(Entity):
        __tablename__ = "countries"

        code: str = primary_key(auto_increment=False)
        name: typing.Optional[str] = column()

    schema.create_table("countries", lambda table: table.string("code", length=2).unique().string("name"))
    countries = Repository(connection, Country)

    country = Country(code="PL", name="Poland")
    assert countries.save(country) is True
    country.name = "Polska"
    assert countries.save(country) is True

    assert countries.find("PL").name == "Polska"
    assert countries.count() == 1
    schema.drop_table("countries")


def test_detached_entity_with_an_existing_natural_key_is_updated(connection, schema):
    class Country(Entity):
        __tablename__ = "countries"

        code: str = primary_key(auto_increment=False)
        name: typing.Optional[str] = column()

    schema.create_table("countries", lambda table: table.string("code", length=2).unique().string("name"))
    connection.execute("INSERT INTO countries (code, name) VALUES ('PL', 'Poland')")
    countries = Repository(connection, Country)

    assert countries.save(Country(code="PL", name="Polska")) is True

    assert countries.find("PL").name == "Polska"
    assert countries.count() == 1
    schema.drop_table("countries")


def test_reserved_words_as_column_names(connection, schema):
    class Item(Entity):
        __tablename__ = "items"

        id: Identity[int] = primary_key()
        order: typing.Optional[int] = column()
        group: typing.Optional[str] = column()

    schema.create_table("items", lambda table: table.id().integer("order").string("group"))
    items = Repository(connection, Item)

    assert items.save(Item(order=3, group="b")) is True
    assert items.save(Item(order=5, group="a")) is True

    found = items.find_one_by({"order": 5})
    assert found.group == "a"
    assert [item.group for item in items.find_by({}, order_by={"group": "ASC"})] == ["a", "b"]
    found.order = 6
    assert items.save(found) is True
    assert items.count({"order": 6}) == 1
    assert items.delete(found) is True
    schema.drop_table("items")


def test_with_rejects_unknown_relations(users):
    with pytest.raises(MappingError):
        users.with_("friends")


def test_pending_relations_are_cleared_after_each_fetch(users, people, seed):
    seed("posts", [{"id": 1, "title": "Hello", "author_id": 1}])

    loaded = users.with_("posts").find(1)
    assert loaded.is_relation_loaded("posts")

    assert not users.find(1).is_relation_loaded("posts")

    with pytest.raises(MappingError):
        users.with_("posts").find_by({"nope": 1})
    assert not users.find(1).is_relation_loaded("posts")


def test_rows_sharing_a_primary_key_are_materialised_once(connection, seed):
    seed("avatars", [{"id": 1, "user_id": 1, "url": "a.png"}])
    rows = connection.execute("SELECT * FROM avatars UNION ALL SELECT * FROM avatars").rows

    avatars = Repository(connection, Avatar)._hydrate(rows)

    assert len(avatars) == 1
