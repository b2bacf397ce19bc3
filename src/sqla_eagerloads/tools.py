from __future__ import annotations

from collections.abc import Sequence
from functools import lru_cache
from typing import TYPE_CHECKING, Any, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm

from .context import DEFAULT_LATERAL_ALIAS


if TYPE_CHECKING:
    from .context import EagerContext
    from .parsing import EagerClosure


T = TypeVar("T", bound=orm.DeclarativeBase)


@lru_cache
def _get_primary_keys(model: type[T]) -> tuple[str, ...]:
    """Attribute keys of the primary-key columns of *model* (cached)."""
    mapper = sa.inspect(model)
    return tuple(mapper.get_property_by_column(column).key for column in mapper.primary_key)


def get_primary_keys(model: type[T]) -> tuple[str, ...]:
    """Get the attribute names of the primary key of a SQLAlchemy model.

    Args:
        model: SQLAlchemy model class.

    Returns:
        Attribute keys, one per primary-key column, in mapper order.
    """
    return _get_primary_keys(model)


def get_table_names(query: sa.Select[Any]) -> Sequence[str]:
    """Extract all table and alias names from a SQLAlchemy select query.

    Traverses the query's FROM clause, including joins, aliases and
    LATERAL subqueries.
    """
    seen: set[str] = set()
    out: list[str] = []

    def add(name: str | None) -> None:
        if name and name not in seen:
            seen.add(name)
            out.append(name)

    for root in query.get_final_froms():
        stack: list[Any] = [root]
        while stack:
            node = stack.pop()

            if isinstance(node, sa.Table):
                add(node.name)
                continue

            if isinstance(node, sa.Join):
                stack.extend([node.left, node.right])
                continue

            add(getattr(node, "name", None))
            if hasattr(node, "element"):
                stack.append(node.element)

    return out


def add_conditions(*conditions: sa.ColumnExpressionArgument[bool]) -> EagerClosure:
    """Create a relation closure that adds WHERE conditions to the related query.

    Example:
        >>> await eager_load(users, {"roles": add_conditions(Role.level > 3)})
    """

    def _add(query: sa.Select[Any], context: EagerContext) -> sa.Select[Any]:
        return query.where(*conditions)

    return _add


def apply_order_by(
    query: sa.Select[Any],
    model: type[Any],
    order_by: tuple[str, ...] | None = None,
) -> sa.Select[Any]:
    """Apply descending ORDER BY on *order_by* columns, defaulting to the primary key."""
    ob = (
        (getattr(model, by).desc() for by in order_by)
        if order_by
        else (getattr(model, key).desc() for key in get_primary_keys(model))
    )

    return query.order_by(*ob)


def add_lateral(
    limit: int | None,
    order_by: tuple[str, ...] | None = None,
    *conditions: sa.ColumnExpressionArgument[bool],
    alias: str = DEFAULT_LATERAL_ALIAS,
) -> EagerClosure:
    """Create a relation closure loading the top *limit* related rows per parent.

    Rows are ordered descending by *order_by* (primary key by default) inside
    a LATERAL subquery correlated to each parent, so the limit applies per
    parent rather than to the whole batch.

    Example:
        >>> # latest two posts of every user
        >>> await eager_load(users, {"posts": add_lateral(2)})
    """

    def _add(query: sa.Select[Any], context: EagerContext) -> sa.Select[Any]:
        target = context.target

        def _callback(subquery: sa.Select[Any], outer: Any) -> sa.Select[Any]:
            return apply_order_by(subquery, target, order_by).limit(limit)

        context.lateral(_callback, alias)

        return query.where(*conditions) if conditions else query

    return _add
