import typing
from datetime import datetime

from entity_mapper import (
    Entity,
    Identity,
    Length,
    NotNull,
    belongs_to,
    column,
    created_at,
    has_many,
    has_one,
    many_to_many,
    primary_key,
    updated_at,
)


class User(Entity):
    __tablename__ = "users"

    id: Identity[int] = primary_key(name="user_id")
    name: typing.Optional[str] = column(validators=[NotNull(), Length(min=2, max=50)])
    email: typing.Optional[str] = column(name="email_address")
    is_active: bool = column(default=True)
    profile: typing.Optional[dict] = column()
    posts: typing.List["Post"] = has_many("Post", foreign_key="author_id")
    avatar: typing.Optional["Avatar"] = has_one("Avatar", foreign_key="user_id")
    created_at: typing.Optional[datetime] = created_at()
    updated_at: typing.Optional[datetime] = updated_at()


class Post(Entity):
    id: Identity[int]
    title: typing.Optional[str] = column(validators=[NotNull()])
    author_id: typing.Optional[int] = column()
    author: typing.Optional[User] = belongs_to(User, foreign_key="author_id")
    tags: typing.List["Tag"] = many_to_many("Tag", join_table="post_tag", local_key="post_id", foreign_key="tag_id")


class Tag(Entity):
    id: int = column()
    name: typing.Optional[str] = column()


class Avatar(Entity):
    id: Identity[int]
    user_id: typing.Optional[int] = column()
    url: typing.Optional[str] = column()
