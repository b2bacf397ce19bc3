"""Basic sqla-eagerloads usage examples.

Demonstrates initialization, nested paths, aliases, closures, per-parent
limits and raw rows.

NOTE: This file is illustrative: it won't run standalone
without a database and seeded data.
"""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from sqla_eagerloads import (
    EagerContext,
    add_conditions,
    add_lateral,
    eager_load,
    get_node,
    init_node,
    use_session,
)

from .models import Base, Category, Post, Role, User


# ── 1. Initialize once at startup ────────────────────────────────────

engine = create_async_engine("sqlite+aiosqlite:///:memory:")


async def setup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Call once: collects the relationships of every mapped class
    init_node(get_node(Base))


async def all_users(session: AsyncSession) -> list[User]:
    return list((await session.scalars(sa.select(User))).all())


# ── 2. Relations and nested paths ───────────────────────────────────


async def get_users_with_posts(session: AsyncSession) -> list[User]:
    # one query, whatever the number of users
    return await eager_load(await all_users(session), "posts", session)


async def get_users_deep(session: AsyncSession) -> list[User]:
    # one query per level: posts, then comments
    return await eager_load(await all_users(session), ["posts.comments", "roles"], session)


async def get_posts_with_author(session: AsyncSession) -> list[Post]:
    posts = list((await session.scalars(sa.select(Post))).all())
    return await eager_load(posts, "author", session)


# ── 3. Conditions and aliases ────────────────────────────────────────


async def get_users_with_senior_roles(session: AsyncSession) -> list[User]:
    return await eager_load(
        await all_users(session),
        {"senior_roles:roles": add_conditions(Role.level > 3)},  # noqa: PLR2004
        session,
    )


# ── 4. Per-parent limits (LATERAL) ───────────────────────────────────


async def get_users_latest_3_posts(session: AsyncSession) -> list[User]:
    # user.latest holds the three newest posts of each user
    return await eager_load(await all_users(session), {"latest:posts": add_lateral(3)}, session)


# ── 5. Closures ──────────────────────────────────────────────────────


def titles_only(query: sa.Select, context: EagerContext) -> sa.Select:
    context.load_raw()
    context.filter(lambda user: user.name != "deleted")
    return query.with_only_columns(Post.author_id, Post.title)


async def get_users_post_titles(session: AsyncSession) -> list[User]:
    # user.titles is a list of {"author_id": ..., "title": ...} dicts
    return await eager_load(await all_users(session), {"titles:posts": titles_only}, session)


# ── 6. Already loaded relations and scoped sessions ─────────────────


async def get_category_tree(session: AsyncSession) -> list[Category]:
    roots = list((await session.scalars(sa.select(Category).where(Category.parent_id.is_(None)))).all())

    with use_session(session):
        await eager_load(roots, "children")
        # children are attached already: only grandchildren are queried
        await eager_load(roots, "children-.children")

    return roots
