from __future__ import annotations

import os
from collections.abc import AsyncIterator, Callable, Iterator
from typing import Final

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    create_async_engine,
)

from sqla_eagerloads import set_default_session, sqla_cache_clear
from sqla_eagerloads.node import Node, get_node, init_node

from .models import (
    Base,
    Category,
    Comment,
    Post,
    PostVersion,
    Profile,
    Role,
    Tag,
    User,
    VersionNote,
    post_tags,
    user_roles,
)


LATERAL_BACKENDS: Final[frozenset[str]] = frozenset({"postgres"})

pytestmark = pytest.mark.anyio


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["sqlite", "postgres"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def supports_lateral(db_backend: str) -> bool:
    return db_backend in LATERAL_BACKENDS


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session", autouse=True)
def _init_node() -> None:
    """Initialize the Node singleton with model relationships.

    Sync, no DB needed -- safe to run for all tests including unit tests.
    """
    try:
        Node()
    except RuntimeError:
        Node.reset()
        init_node(get_node(Base))


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+asyncpg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    return create_async_engine(db_config, echo=False)


@pytest.fixture(scope="session")
async def _create_tables(engine: AsyncEngine) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def connection(
    engine: AsyncEngine, _create_tables: None
) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


@pytest.fixture
async def session(connection: AsyncConnection) -> AsyncIterator[AsyncSession]:
    sess = AsyncSession(bind=connection, expire_on_commit=False)
    yield sess
    await sess.close()


@pytest.fixture
def statements(engine: AsyncEngine) -> Iterator[list[str]]:
    """SQL statements executed on *engine* while the test runs."""
    executed: list[str] = []

    def _record(conn, cursor, statement, parameters, context, executemany) -> None:  # noqa: ANN001
        executed.append(statement)

    sa.event.listen(engine.sync_engine, "before_cursor_execute", _record)
    yield executed
    sa.event.remove(engine.sync_engine, "before_cursor_execute", _record)


@pytest.fixture
async def seed_data(session: AsyncSession) -> dict[str, list[Base]]:
    alice = User(id=1, name="alice", active=True)
    bob = User(id=2, name="bob", active=True)
    charlie = User(id=3, name="charlie", active=False)
    session.add_all([alice, bob, charlie])
    await session.flush()

    news = Category(id=1, name="news", parent_id=None)
    tech = Category(id=2, name="tech", parent_id=1)
    science = Category(id=3, name="science", parent_id=1)
    session.add_all([news, tech, science])
    await session.flush()

    post1 = Post(id=1, title="Alice Post 1", author_id=1, category_id=2)
    post2 = Post(id=2, title="Alice Post 2", author_id=1, category_id=3)
    post3 = Post(id=3, title="Alice Post 3", author_id=1, category_id=None)
    post4 = Post(id=4, title="Bob Post 1", author_id=2, category_id=2)
    orphan = Post(id=5, title="Anonymous", author_id=None, category_id=None)
    session.add_all([post1, post2, post3, post4, orphan])
    await session.flush()

    tag_python = Tag(id=1, name="python")
    tag_sqlalchemy = Tag(id=2, name="sqlalchemy")
    tag_testing = Tag(id=3, name="testing")
    session.add_all([tag_python, tag_sqlalchemy, tag_testing])
    await session.flush()

    await session.execute(
        post_tags.insert().values([
            {"post_id": 1, "tag_id": 1},
            {"post_id": 1, "tag_id": 2},
            {"post_id": 2, "tag_id": 1},
            {"post_id": 4, "tag_id": 3},
        ])
    )

    comment1 = Comment(id=1, text="Great post!", post_id=1)
    comment2 = Comment(id=2, text="Nice work", post_id=1)
    comment3 = Comment(id=3, text="Thanks", post_id=2)
    comment4 = Comment(id=4, text="First!", post_id=4)
    session.add_all([comment1, comment2, comment3, comment4])
    await session.flush()

    admin = Role(id=1, name="admin", level=10)
    editor = Role(id=2, name="editor", level=5)
    viewer = Role(id=3, name="viewer", level=1)
    session.add_all([admin, editor, viewer])
    await session.flush()

    await session.execute(
        user_roles.insert().values([
            {"user_id": 1, "role_id": 1},
            {"user_id": 1, "role_id": 2},
            {"user_id": 2, "role_id": 2},
            {"user_id": 2, "role_id": 3},
        ])
    )

    profile_alice = Profile(id=1, bio="Alice bio", user_id=1)
    profile_bob = Profile(id=2, bio="Bob bio", user_id=2)
    session.add_all([profile_alice, profile_bob])
    await session.flush()

    v11 = PostVersion(post_id=1, number=1, summary="draft")
    v12 = PostVersion(post_id=1, number=2, summary="published")
    v21 = PostVersion(post_id=2, number=1, summary="draft")
    session.add_all([v11, v12, v21])
    await session.flush()

    note1 = VersionNote(id=1, text="typo", post_id=1, version_number=1)
    note2 = VersionNote(id=2, text="layout", post_id=1, version_number=2)
    note3 = VersionNote(id=3, text="title", post_id=1, version_number=2)
    note4 = VersionNote(id=4, text="intro", post_id=2, version_number=1)
    session.add_all([note1, note2, note3, note4])
    await session.flush()

    session.expunge_all()

    return {
        "users": [alice, bob, charlie],
        "categories": [news, tech, science],
        "posts": [post1, post2, post3, post4, orphan],
        "tags": [tag_python, tag_sqlalchemy, tag_testing],
        "comments": [comment1, comment2, comment3, comment4],
        "roles": [admin, editor, viewer],
        "profiles": [profile_alice, profile_bob],
        "versions": [v11, v12, v21],
        "notes": [note1, note2, note3, note4],
    }


@pytest.fixture
def fetch(session: AsyncSession) -> Callable[..., object]:
    """Select every row of a model, ordered by primary key, as fresh instances."""

    async def _fetch(model: type[Base], *criteria: sa.ColumnExpressionArgument[bool]) -> list[Base]:
        query = sa.select(model).where(*criteria).order_by(*sa.inspect(model).primary_key)
        result = await session.scalars(query)

        return list(result.unique().all())

    return _fetch


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    sqla_cache_clear()


@pytest.fixture(autouse=True)
def _reset_default_session() -> Iterator[None]:
    yield
    set_default_session(None)


@pytest.fixture
def reset_node_singleton() -> Iterator[None]:
    saved = Node._Node__instance  # type: ignore[attr-defined]
    yield
    Node._Node__instance = saved  # type: ignore[attr-defined]


# Multi-dialect: auto-skip @pytest.mark.lateral on non-lateral backends

@pytest.fixture(autouse=True)
def _skip_lateral(request: pytest.FixtureRequest, supports_lateral: bool) -> None:
    if request.node.get_closest_marker("lateral") and not supports_lateral:
        pytest.skip("LATERAL not supported on this backend")
