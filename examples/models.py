from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy import orm


class Base(orm.DeclarativeBase):
    pass


user_roles = sa.Table(
    "user_roles",
    Base.metadata,
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), primary_key=True),
    sa.Column("role_id", sa.Integer, sa.ForeignKey("roles.id"), primary_key=True),
)


class User(Base):
    __tablename__ = "users"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))

    # relationships
    posts: orm.Mapped[list[Post]] = orm.relationship(back_populates="author", lazy="raise")
    roles: orm.Mapped[list[Role]] = orm.relationship(secondary=user_roles, lazy="raise")


class Post(Base):
    __tablename__ = "posts"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    title: orm.Mapped[str] = orm.mapped_column(sa.String(200))
    author_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("users.id"))
    category_id: orm.Mapped[int | None] = orm.mapped_column(sa.ForeignKey("categories.id"))

    # relationships
    author: orm.Mapped[User] = orm.relationship(back_populates="posts", lazy="raise")
    # joined into every statement that loads posts
    category: orm.Mapped[Category | None] = orm.relationship(lazy="joined")
    comments: orm.Mapped[list[Comment]] = orm.relationship(back_populates="post", lazy="raise")


class Comment(Base):
    __tablename__ = "comments"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    text: orm.Mapped[str] = orm.mapped_column(sa.Text)
    post_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("posts.id"))

    post: orm.Mapped[Post] = orm.relationship(back_populates="comments", lazy="raise")


class Role(Base):
    __tablename__ = "roles"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(50))
    level: orm.Mapped[int] = orm.mapped_column(default=0)


class Category(Base):
    __tablename__ = "categories"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))
    parent_id: orm.Mapped[int | None] = orm.mapped_column(sa.ForeignKey("categories.id"))

    parent: orm.Mapped[Category | None] = orm.relationship(
        back_populates="children", remote_side=[id], lazy="raise"
    )
    children: orm.Mapped[list[Category]] = orm.relationship(back_populates="parent", lazy="raise")
