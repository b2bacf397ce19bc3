from __future__ import annotations

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from sqla_eagerloads import EagerContext, EagerLoadError, InvalidModelInstanceError, add_conditions, eager_load

from ..models import Base, Comment, Post, Role, Tag, User

pytestmark = pytest.mark.anyio


class TestQueryClosures:
    async def test_add_conditions(self, session: AsyncSession, seed_data: dict[str, list[Base]], fetch) -> None:
        users = await fetch(User)
        await eager_load(users, {"roles": add_conditions(Role.level > 3)}, session)

        assert sorted(r.name for r in users[0].roles) == ["admin", "editor"]
        assert [r.name for r in users[1].roles] == ["editor"]
        assert users[2].roles == []

    async def test_closure_ordering(self, session: AsyncSession, seed_data: dict[str, list[Base]], fetch) -> None:
        def newest_first(query: sa.Select, context: EagerContext) -> sa.Select:
            return query.order_by(Post.id.desc())

        users = await fetch(User)
        await eager_load(users, {"posts": newest_first}, session)

        assert [p.id for p in users[0].posts] == [3, 2, 1]

    async def test_closure_returning_none(self, session: AsyncSession, seed_data: dict[str, list[Base]], fetch) -> None:
        calls: list[type] = []

        def inspect_only(query: sa.Select, context: EagerContext) -> None:
            calls.append(context.target)

        users = await fetch(User)
        await eager_load(users, {"posts": inspect_only}, session)

        assert calls == [Post]
        assert sorted(p.id for p in users[0].posts) == [1, 2, 3]

    async def test_closure_on_nested_path(self, session: AsyncSession, seed_data: dict[str, list[Base]], fetch) -> None:
        users = await fetch(User)
        await eager_load(users, {"posts.comments": add_conditions(Comment.text != "Nice work")}, session)

        post1 = next(p for p in users[0].posts if p.id == 1)
        assert [c.text for c in post1.comments] == ["Great post!"]


class TestContextOperations:
    async def test_filter_parents(self, session: AsyncSession, seed_data: dict[str, list[Base]], fetch) -> None:
        def alice_only(query: sa.Select, context: EagerContext) -> None:
            context.filter(lambda user: user.name == "alice")

        users = await fetch(User)
        await eager_load(users, {"mine:posts": alice_only}, session)

        assert len(users[0].mine) == 3
        assert not hasattr(users[1], "mine")
        assert not hasattr(users[2], "mine")

    async def test_load_with(self, session: AsyncSession, seed_data: dict[str, list[Base]], fetch) -> None:
        def with_comments(query: sa.Select, context: EagerContext) -> None:
            context.load_with("comments")
            context.load_with({"tags": add_conditions(Tag.name == "python")})

        users = await fetch(User, User.id == 1)
        await eager_load(users, {"posts": with_comments}, session)

        post1 = next(p for p in users[0].posts if p.id == 1)
        assert len(post1.comments) == 2
        assert [t.name for t in post1.tags] == ["python"]

    async def test_additional_models(self, session: AsyncSession, seed_data: dict[str, list[Base]], fetch) -> None:
        (bob_post,) = await fetch(Post, Post.id == 4)

        def with_bob_post(query: sa.Select, context: EagerContext) -> None:
            context.additional_models([bob_post])

        users = await fetch(User, User.id == 1)
        await eager_load(users, [{"posts": with_bob_post}, "posts.comments"], session)

        assert [c.text for c in bob_post.comments] == ["First!"]
        assert bob_post not in users[0].posts

    async def test_additional_models_wrong_class(self, session: AsyncSession, seed_data: dict[str, list[Base]], fetch) -> None:
        users = await fetch(User)

        def wrong(query: sa.Select, context: EagerContext) -> None:
            context.additional_models(users)

        with pytest.raises(InvalidModelInstanceError):
            await eager_load(users, {"posts": wrong}, session)


class TestRawRows:
    async def test_raw_collection(self, session: AsyncSession, seed_data: dict[str, list[Base]], fetch) -> None:
        def raw(query: sa.Select, context: EagerContext) -> None:
            context.load_raw()

        users = await fetch(User)
        await eager_load(users, {"raw_posts:posts": raw}, session)

        rows = users[0].raw_posts
        assert all(isinstance(row, dict) for row in rows)
        assert sorted(row["title"] for row in rows) == ["Alice Post 1", "Alice Post 2", "Alice Post 3"]
        assert set(rows[0]) == {"id", "title", "author_id", "category_id"}
        assert users[2].raw_posts == []

    async def test_raw_multiplicity_override(self, session: AsyncSession, seed_data: dict[str, list[Base]], fetch) -> None:
        def first_raw(query: sa.Select, context: EagerContext) -> sa.Select:
            context.load_raw(multi=False)
            return query.order_by(Post.id)

        users = await fetch(User)
        await eager_load(users, {"first_post:posts": first_raw}, session)

        assert users[0].first_post["id"] == 1
        assert users[2].first_post is None

    async def test_raw_many_to_many_strips_junction(self, session: AsyncSession, seed_data: dict[str, list[Base]], fetch) -> None:
        def raw(query: sa.Select, context: EagerContext) -> None:
            context.load_raw()

        users = await fetch(User)
        await eager_load(users, {"role_rows:roles": raw}, session)

        assert sorted(row["name"] for row in users[0].role_rows) == ["admin", "editor"]
        for row in users[0].role_rows:
            assert set(row) == {"id", "name", "level"}

    async def test_raw_custom_projection(self, session: AsyncSession, seed_data: dict[str, list[Base]], fetch) -> None:
        def titles(query: sa.Select, context: EagerContext) -> sa.Select:
            context.load_raw()
            return query.with_only_columns(Post.author_id, Post.title)

        users = await fetch(User, User.id == 2)
        await eager_load(users, {"titles:posts": titles}, session)

        assert users[0].titles == [{"author_id": 2, "title": "Bob Post 1"}]

    async def test_raw_nested_relations_warn(self, session: AsyncSession, seed_data: dict[str, list[Base]], fetch) -> None:
        def raw(query: sa.Select, context: EagerContext) -> None:
            context.load_raw()
            context.load_with("comments")

        users = await fetch(User)
        with pytest.warns(UserWarning, match="not loaded"):
            await eager_load(users, {"raw_posts:posts": raw}, session)

    async def test_raw_on_mapped_attribute_raises(self, session: AsyncSession, seed_data: dict[str, list[Base]], fetch) -> None:
        def raw(query: sa.Select, context: EagerContext) -> None:
            context.load_raw()

        users = await fetch(User)
        with pytest.raises(EagerLoadError, match="raw rows"):
            await eager_load(users, {"posts": raw}, session)
