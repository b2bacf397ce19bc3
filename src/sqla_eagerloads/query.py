from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, Final

import sqlalchemy as sa
from funcy import chunks
from sqlalchemy import orm

from .context import EagerContext
from .exc import RelationNotFoundError
from .keys import JoinKey, group_by
from .parsing import parse_relations
from .tools import get_primary_keys, get_table_names


if TYPE_CHECKING:
    import asyncio

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.orm.strategy_options import _AbstractLoad

    from .node import Node
    from .parsing import EagerClosure, RelationSpec
    from .relations import Relation

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE: Final[int] = 500
LATERAL_ORDERING_LABEL: Final[str] = "lateral_ordering"
OUTER_KEY_LABEL: Final[str] = "_eager_outer_{}"


class RelationQuery:
    """Builder state for fetching one relation for a batch of parents.

    Holds the relation, the ``Select`` as left by the relation closure and the
    instructions the closure recorded on its :class:`EagerContext`. From there
    it builds one statement per chunk of parent keys, either as a plain
    ``IN`` restriction or as a LATERAL subquery correlated to each parent,
    executes them and groups the rows by join key.
    """

    __slots__ = ("context", "model", "node", "query", "relation")

    def __init__(
        self,
        relation: Relation,
        node: Node,
        model: type[orm.DeclarativeBase],
        closure: EagerClosure | None = None,
    ) -> None:
        self.relation = relation
        self.node = node
        self.model = model
        self.context = EagerContext(target=relation.target)
        self.query = build_base(relation)

        if closure is not None and (query := closure(self.query, self.context)) is not None:
            self.query = query

    @property
    def lateral(self) -> bool:
        return self.context.lateral_callback is not None

    @property
    def raw(self) -> bool:
        return self.context.raw

    @property
    def multi(self) -> bool:
        return self.relation.multi if self.context.multi is None else self.context.multi

    @property
    def parent_fields(self) -> tuple[str, ...]:
        """Parent attributes the batch is keyed on."""
        return get_primary_keys(self.model) if self.lateral else self.relation.parent_keys

    @property
    def child_fields(self) -> tuple[str, ...]:
        """Names the fetched rows are grouped on, aligned with ``parent_fields``."""
        if self.lateral:
            return tuple(OUTER_KEY_LABEL.format(i) for i in range(len(self.parent_fields)))

        return self.relation.child_keys

    @property
    def keyed_rows(self) -> bool:
        """Rows carry their join key in extra labelled columns."""
        return self.lateral or self.relation.is_junction

    def build(self, keys: Sequence[JoinKey], relations: list[RelationSpec] | None = None) -> sa.Select[Any]:
        """Build the statement fetching the related rows of *keys*.

        Args:
            keys: Parent join keys (``parent_fields`` values).
            relations: Nested specification; its ``+`` entries become
                loader options on the statement.
        """
        if self.lateral:
            query, entity = self._build_lateral(keys)
        else:
            query = self.query
            if self.raw:
                query = project_raw(query, self.relation.target)
            query = restrict(query, self.relation.child_columns(), keys)
            entity = self.relation.target

        if relations and not self.raw:
            if options := joined_loads(self.node, self.relation.target, relations, entity=entity):
                query = query.options(*options)

        return query

    def _build_lateral(self, keys: Sequence[JoinKey]) -> tuple[sa.Select[Any], Any]:
        relation = self.relation
        context = self.context
        assert context.lateral_callback is not None

        outer = orm.aliased(self.model, name=context.lateral_alias)
        inner = self.query.where(*(
            column == getattr(outer, key)
            for column, key in zip(relation.child_columns(), relation.parent_keys)
        )).correlate(outer)
        if self.raw:
            inner = project_raw(inner, relation.target)

        if (subquery := context.lateral_callback(inner, outer)) is not None:
            inner = subquery

        lateral_name = relation.name
        if lateral_name == context.lateral_alias or lateral_name in get_table_names(inner):
            lateral_name = f"{lateral_name}_alias"

        # ORDER BY is not kept once the subquery is wrapped; number the rows instead.
        ordered = bool(inner._order_by_clauses) and inner._limit != 1  # noqa: SLF001
        if ordered:
            inner_sq = inner.subquery()
            inner = sa.select(*inner_sq.c, sa.func.row_number().over().label(LATERAL_ORDERING_LABEL))

        lateral = inner.lateral(name=lateral_name)
        entity: Any = relation.target if self.raw else orm.aliased(relation.target, lateral)
        # junction labels are not part of a raw row
        hidden = {LATERAL_ORDERING_LABEL, *(relation.child_keys if relation.is_junction else ())}
        projection = [column for column in lateral.c if column.key not in hidden] if self.raw else [entity]
        outer_keys = [getattr(outer, key) for key in self.parent_fields]

        query = (
            sa.select(
                *projection,
                *(column.label(label) for column, label in zip(outer_keys, self.child_fields)),
            )
            .select_from(outer)
            .join(lateral, sa.true())
        )
        query = restrict(query, outer_keys, keys)
        if ordered:
            query = query.order_by(lateral.c[LATERAL_ORDERING_LABEL])

        return query, entity

    async def fetch(
        self,
        session: AsyncSession,
        lock: asyncio.Lock,
        keys: Sequence[JoinKey],
        relations: list[RelationSpec] | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> tuple[list[Any], dict[JoinKey, list[Any]]]:
        """Execute the statements for *keys* and group the rows.

        An empty *keys* returns ``([], {})`` without touching *session*.

        Returns:
            The distinct fetched records, and the records grouped by join key.
        """
        records: list[Any] = []
        junctions: list[list[dict[str, Any]]] = []
        positions: dict[int, int] = {}
        fields = self.child_fields

        for chunk in chunks(chunk_size, keys):
            statement = self.build(chunk, relations)
            async with lock:
                result = await session.execute(statement)

            if self.raw:
                rows = [dict(row) for row in result.mappings()]
                records.extend(rows)
            elif self.keyed_rows:
                rows = result.unique().all()
                for row in rows:
                    entity = row[0]
                    position = positions.setdefault(id(entity), len(records))
                    if position == len(records):
                        records.append(entity)
                        junctions.append([])
                    junctions[position].append(dict(zip(fields, row[1:])))
            else:
                rows = result.unique().scalars().all()
                records.extend(rows)

            logger.debug(
                "Fetched %d row(s) of %s.%s for %d key(s)",
                len(rows),
                self.model.__name__,
                self.relation.name,
                len(chunk),
            )

        if not self.keyed_rows or self.raw:
            dictionary = group_by(records, fields)
        else:
            dictionary = group_by(records, fields, junctions)

        if self.raw and self.keyed_rows:
            for record in records:
                for field in fields:
                    record.pop(field, None)

        return records, dictionary


def build_base(relation: Relation) -> sa.Select[Any]:
    """Starting ``Select`` of a relation, before the closure runs.

    Many-to-many relations inner-join the junction table and select its
    parent-side columns under the relation's junction labels.
    """
    query = sa.select(relation.target)
    if relation.is_junction:
        assert relation.secondary is not None
        query = query.join(relation.secondary, relation.property.secondaryjoin).add_columns(
            *(
                column.label(label)
                for column, label in zip(relation.junction_columns, relation.child_keys)
            )
        )

    return query


def restrict(
    query: sa.Select[Any],
    columns: Sequence[sa.ColumnElement[Any]],
    keys: Sequence[JoinKey],
) -> sa.Select[Any]:
    """Restrict *query* to rows whose *columns* match one of *keys*.

    Values are sent as expanding bound parameters, never inlined.
    """
    if len(columns) == 1:
        return query.where(columns[0].in_([key[0] for key in keys]))

    return query.where(sa.tuple_(*columns).in_(keys))


def project_raw(query: sa.Select[Any], model: type[Any]) -> sa.Select[Any]:
    """Replace a whole-entity projection of *model* by its columns.

    Columns are labelled by attribute key so raw rows can be grouped the same
    way as instances. Queries the closure already re-projected are returned
    unchanged.
    """
    descriptions = query.column_descriptions
    if not descriptions or descriptions[0].get("expr") is not model:
        return query

    columns = [getattr(model, attr.key).label(attr.key) for attr in sa.inspect(model).column_attrs]
    extras = [description["expr"] for description in descriptions[1:]]

    return query.with_only_columns(*columns, *extras, maintain_column_froms=True)


def include_eager(node: Node, model: type[orm.DeclarativeBase], relations: list[RelationSpec]) -> None:
    """Prepend ``"name+"`` for eager relationships of *model* nobody asked for."""
    requested = {request.relation for request in parse_relations(relations).values()}
    for relationship in reversed(node.eager(model)):
        if relationship.key not in requested:
            relations.insert(0, f"{relationship.key}+")


def joined_loads(
    node: Node,
    model: type[orm.DeclarativeBase],
    relations: list[RelationSpec],
    *,
    entity: Any = None,
    parent: _AbstractLoad | None = None,
    path: frozenset[orm.RelationshipProperty[Any]] = frozenset(),
) -> list[_AbstractLoad]:
    """Turn the ``+`` entries of *relations* into chained loader options.

    To-one relationships are joined, collections use ``selectinload``. The
    target's own eager relationships are followed as well; a relationship
    already on the current path is not joined again.

    Raises:
        RelationNotFoundError: If a ``+`` entry names an unknown relation.
    """
    options: list[_AbstractLoad] = []

    for request in parse_relations(relations).values():
        if not request.is_join:
            continue

        relationship = node.find(model, request.relation)
        if relationship is None:
            raise RelationNotFoundError(model, request.alias, request.relation)
        if relationship in path:
            continue

        strategy = orm.selectinload if relationship.uselist else orm.joinedload
        attribute = getattr(entity if parent is None and entity is not None else model, relationship.key)
        load = _construct_strategy(strategy, attribute, parent)

        target = relationship.mapper.class_
        nested: list[RelationSpec] = [request.relations]
        include_eager(node, target, nested)

        options.append(load)
        options.extend(
            joined_loads(node, target, nested, parent=load, path=path | {relationship})
        )

    return options


def _construct_strategy(
    strategy: Callable[..., _AbstractLoad],
    attribute: Any,
    current: _AbstractLoad | None = None,
) -> _AbstractLoad:
    """Create or chain a loader strategy option.

    If ``current`` is ``None``, creates a top-level strategy (e.g. ``orm.joinedload(attr)``).
    Otherwise chains onto the existing option (e.g. ``current.joinedload(attr)``).
    """
    if current is None:
        return strategy(attribute)

    return getattr(current, strategy.__name__)(attribute)
