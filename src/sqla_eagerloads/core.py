from __future__ import annotations

import asyncio
import logging
import sys
import warnings
from collections.abc import Awaitable, Iterable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar


if sys.version_info >= (3, 11):
    from typing import TypedDict, Unpack
else:
    from typing_extensions import TypedDict, Unpack

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.orm.attributes import set_committed_value

from .context import get_current_session
from .exc import EagerLoadError
from .keys import extract_keys, key_of, loaded_value, unloaded_fields
from .node import Node
from .parsing import flatten_relations, parse_relations
from .query import DEFAULT_CHUNK_SIZE, RelationQuery, include_eager
from .relations import resolve_relation


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from .parsing import ParsedRelation, RelationSpec
    from .relations import Relation

T = TypeVar("T")

logger = logging.getLogger(__name__)


class _LoadOptionsType(TypedDict, total=False):
    model: type[orm.DeclarativeBase] | None
    node: Node | None
    chunk_size: int


class EagerLoader:
    """State of one :func:`eager_load` call.

    The session, the relation metadata and the lock serialising statements on
    the session are passed down the recursion explicitly. Sibling relations
    are resolved concurrently, but an ``AsyncSession`` runs one statement at a
    time, so every execution goes through :attr:`lock`.
    """

    __slots__ = ("chunk_size", "lock", "node", "session")

    def __init__(
        self,
        session: AsyncSession,
        node: Node,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")

        self.session = session
        self.node = node
        self.chunk_size = chunk_size
        self.lock = asyncio.Lock()

    async def load(
        self,
        entities: Sequence[T],
        relations: RelationSpec,
        model: type[orm.DeclarativeBase] | None = None,
    ) -> Sequence[T]:
        """Resolve *relations* on *entities* and return *entities*."""
        if not entities:
            return entities

        requests = parse_relations(relations)
        if not requests:
            return entities

        if model is None:
            model = orm.object_mapper(entities[0]).class_

        # unknown relations fail before any statement of this level runs
        plans = [
            (request, resolve_relation(model, request.relation, self.node, request.alias))
            for request in requests.values()
        ]
        await _gather(self._load_relation(entities, model, request, relation) for request, relation in plans)

        return entities

    async def _load_relation(
        self,
        entities: Sequence[Any],
        model: type[orm.DeclarativeBase],
        request: ParsedRelation,
        relation: Relation,
    ) -> None:
        if request.is_skip:
            await self._load_attached(entities, relation, request)
            return

        query = RelationQuery(relation, self.node, model, request.closure)
        context = query.context
        parents = [entity for entity in entities if context.accepts(entity)]
        await self._refresh_keys(parents, query.parent_fields)
        keys = extract_keys(parents, query.parent_fields)

        relations: list[RelationSpec] = [request.relations, *context.relations]
        if not query.raw:
            include_eager(self.node, relation.target, relations)

        logger.debug(
            "Loading %s.%s as %r (%s%s) for %d parent(s), %d key(s)",
            model.__name__,
            relation.name,
            request.alias,
            relation.kind.value,
            ", lateral" if query.lateral else "",
            len(parents),
            len(keys),
        )

        if keys:
            records, dictionary = await query.fetch(
                self.session, self.lock, keys, relations, self.chunk_size
            )
        else:
            records, dictionary = [], {}

        multi = query.multi
        for parent in parents:
            key = key_of(parent, query.parent_fields)
            matched = dictionary.get(key, []) if key is not None else []
            value = list(matched) if multi else (matched[0] if matched else None)
            attach(parent, request.alias, value, raw=query.raw)

        if query.raw:
            if any(flatten_relations(spec) for spec in relations):
                warnings.warn(
                    f"Nested relations of raw relation {model.__name__}.{request.alias} are not loaded.",
                    stacklevel=2,
                )
            return

        await self.load([*records, *context.models], relations, relation.target)

    async def _refresh_keys(self, entities: Sequence[Any], fields: Sequence[str]) -> None:
        """Reload expired key attributes of *entities* so their join keys are known.

        Raises:
            EagerLoadError: If an entity with unloaded keys is detached.
        """
        for entity in entities:
            if not (names := unloaded_fields(entity, fields)):
                continue

            state = sa.inspect(entity)
            if state.detached:
                raise EagerLoadError(
                    f"Cannot read unloaded key attributes {', '.join(names)} of detached "
                    f"{type(entity).__name__} instance"
                )

            logger.debug("Refreshing %s of %r", names, entity)
            async with self.lock:
                await self.session.refresh(entity, attribute_names=list(names))

    async def _load_attached(
        self,
        entities: Sequence[Any],
        relation: Relation,
        request: ParsedRelation,
    ) -> None:
        """Recurse into values already attached to *entities* without querying."""
        values: list[Any] = []

        for entity in entities:
            value = loaded_value(entity, request.alias)
            if value is None and request.alias != relation.name:
                value = loaded_value(entity, relation.name)
                if value is not None:
                    attach(entity, request.alias, list(value) if relation.multi else value)

            if value is None:
                continue
            if relation.multi:
                values.extend(item for item in value if item is not None)
            else:
                values.append(value)

        logger.debug(
            "Relation %s.%s already attached, recursing into %d record(s)",
            relation.parent.__name__,
            request.alias,
            len(values),
        )

        await self.load(values, request.relations, relation.target)


def attach(entity: Any, alias: str, value: Any, *, raw: bool = False) -> None:
    """Attach *value* to *entity* under *alias*, replacing what was there.

    Mapped relationships are set as committed state, so the assignment is not
    a pending change of the session. Any other alias is set as a plain
    attribute.

    Raises:
        EagerLoadError: If *alias* is a mapped attribute that cannot hold
            *value* (a column, or a relationship receiving raw rows).
    """
    mapper = orm.object_mapper(entity)
    if alias in mapper.attrs:
        if raw or alias not in mapper.relationships:
            raise EagerLoadError(
                f"Cannot attach {'raw rows' if raw else 'records'} to mapped attribute "
                f"{mapper.class_.__name__}.{alias}; use an alias"
            )
        set_committed_value(entity, alias, value)
    else:
        setattr(entity, alias, value)


async def _gather(coroutines: Iterable[Awaitable[None]]) -> None:
    """Run *coroutines* concurrently; on the first failure cancel the rest and re-raise."""
    tasks = [asyncio.ensure_future(coroutine) for coroutine in coroutines]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def eager_load(
    entities: Sequence[T] | T | None,
    relations: RelationSpec,
    session: AsyncSession | None = None,
    **params: Unpack[_LoadOptionsType],
) -> list[T]:
    """Load *relations* onto *entities* in batched queries.

    Each relation level costs one query per chunk of distinct join keys,
    whatever the number of entities. Nested paths are resolved on the fetched
    records in turn. Results are attached in place and the same entities are
    returned for chaining.

    Args:
        entities: Mapped instances of one class, a single instance, or ``None``.
        relations: Relation specification: a path string, a mapping of paths
            to closures, or a list/tuple mixing both.
        session: Session to run the queries on. Defaults to the session bound
            by ``use_session()``, then to ``set_default_session()``.
        **params:
            model: Model class of *entities*, if not the class of the first.
            node: ``Node`` providing relationship metadata (default: singleton).
            chunk_size: Maximum number of keys per query (default 500).

    Returns:
        The entities as a list: *entities* itself when a list was passed.

    Raises:
        SessionNotConfiguredError: If no session can be resolved.
        SpecificationParseError: If *relations* is malformed.
        RelationNotFoundError: If a path names an unknown relation.

    Example:
        >>> users = (await session.scalars(sa.select(User))).all()
        >>> await eager_load(users, ["posts.comments", "profile"], session)
        >>> await eager_load(users, {"latest:posts": add_lateral(3)}, session)
    """
    if entities is None:
        return []
    if isinstance(entities, tuple):
        entities = list(entities)
    elif not isinstance(entities, list):
        entities = [entities]  # type: ignore[list-item]
    if not entities:
        return entities

    loader = EagerLoader(
        get_current_session(session),
        params.get("node") or Node(),
        chunk_size=params.get("chunk_size", DEFAULT_CHUNK_SIZE),
    )
    await loader.load(entities, relations, params.get("model"))

    return entities


def sqla_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    from .tools import _get_primary_keys

    return {fn.__name__: fn.cache_info() for fn in (resolve_relation, _get_primary_keys)}


def sqla_cache_clear() -> None:
    """Clear all internal LRU caches."""
    from .tools import _get_primary_keys

    for fn in (resolve_relation, _get_primary_keys):
        fn.cache_clear()
