from __future__ import annotations

import enum
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Final

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.orm.exc import UnmappedColumnError
from sqlalchemy.orm.interfaces import MANYTOMANY, MANYTOONE, ONETOMANY

from .exc import RelationNotFoundError, UnsupportedCardinalityError
from .node import Node


JUNCTION_LABEL: Final[str] = "_eager_junction_{}"


class RelationKind(str, enum.Enum):
    MANY_TO_ONE = "many-to-one"
    ONE_TO_MANY = "one-to-many"
    ONE_TO_ONE_OWNER = "one-to-one-owner"
    ONE_TO_ONE = "one-to-one"
    MANY_TO_MANY = "many-to-many"


@dataclass(frozen=True, slots=True)
class Relation:
    """Join-key semantics of one relationship, seen from its parent model.

    ``parent_keys`` and ``child_keys`` are index-aligned. For many-to-many the
    child keys are the labels under which junction columns are selected, not
    attributes of the related model.
    """

    property: orm.RelationshipProperty[Any]
    kind: RelationKind
    parent_keys: tuple[str, ...]
    child_keys: tuple[str, ...]
    junction_columns: tuple[sa.ColumnElement[Any], ...] = ()

    @property
    def name(self) -> str:
        return self.property.key

    @property
    def parent(self) -> type[orm.DeclarativeBase]:
        return self.property.parent.class_

    @property
    def target(self) -> type[orm.DeclarativeBase]:
        return self.property.mapper.class_

    @property
    def multi(self) -> bool:
        return bool(self.property.uselist)

    @property
    def is_junction(self) -> bool:
        return self.kind is RelationKind.MANY_TO_MANY

    @property
    def secondary(self) -> sa.FromClause | None:
        return self.property.secondary

    def child_columns(self) -> tuple[sa.ColumnElement[Any], ...]:
        """Columns the batch restriction is applied to."""
        if self.is_junction:
            return self.junction_columns

        return tuple(getattr(self.target, key) for key in self.child_keys)


def _kind(relationship: orm.RelationshipProperty[Any]) -> RelationKind:
    direction = relationship.direction
    if direction is MANYTOMANY:
        return RelationKind.MANY_TO_MANY

    if direction is ONETOMANY:
        return RelationKind.ONE_TO_MANY if relationship.uselist else RelationKind.ONE_TO_ONE

    if direction is MANYTOONE:
        reverse = relationship._reverse_property  # noqa: SLF001
        if any(not rel.uselist for rel in reverse):
            return RelationKind.ONE_TO_ONE_OWNER

        return RelationKind.MANY_TO_ONE

    raise UnsupportedCardinalityError(
        relationship.parent.class_, relationship.key, f"unknown direction {direction!r}"
    )


def _property_key(mapper: orm.Mapper[Any], column: sa.ColumnElement[Any]) -> str:
    return mapper.get_property_by_column(column).key


@lru_cache(maxsize=1024)
def resolve_relation(
    model: type[orm.DeclarativeBase],
    relation: str,
    node: Node,
    alias: str | None = None,
) -> Relation:
    """Resolve *relation* on *model* into its cardinality and join keys.

    ===================  ==========================================
    cardinality          parent key  <->  child key
    ===================  ==========================================
    many-to-one          parent FK   <->  child referenced column
    one-to-one (owner)   parent FK   <->  child referenced column
    one-to-many          parent ref  <->  child FK
    one-to-one           parent ref  <->  child FK
    many-to-many         parent ref  <->  junction FK (labelled)
    ===================  ==========================================

    Raises:
        RelationNotFoundError: If *model* declares no relationship *relation*.
        UnsupportedCardinalityError: If no column pairs can be derived.
    """
    relationship = node.find(model, relation)
    if relationship is None:
        raise RelationNotFoundError(model, alias or relation, relation)

    kind = _kind(relationship)
    parent_mapper = relationship.parent
    target_mapper = relationship.mapper

    try:
        if kind is RelationKind.MANY_TO_MANY:
            pairs = relationship.synchronize_pairs
            if not pairs or not relationship.secondary_synchronize_pairs:
                raise UnsupportedCardinalityError(
                    model, relation, "many-to-many without junction column pairs"
                )

            return Relation(
                property=relationship,
                kind=kind,
                parent_keys=tuple(_property_key(parent_mapper, local) for local, _ in pairs),
                child_keys=tuple(JUNCTION_LABEL.format(i) for i in range(len(pairs))),
                junction_columns=tuple(junction for _, junction in pairs),
            )

        pairs = relationship.local_remote_pairs or ()
        if not pairs:
            raise UnsupportedCardinalityError(model, relation, "no local/remote column pairs")

        return Relation(
            property=relationship,
            kind=kind,
            parent_keys=tuple(_property_key(parent_mapper, local) for local, _ in pairs),
            child_keys=tuple(_property_key(target_mapper, remote) for _, remote in pairs),
        )
    except UnmappedColumnError as exc:
        raise UnsupportedCardinalityError(model, relation, str(exc)) from exc
