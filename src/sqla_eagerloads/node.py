from __future__ import annotations

from collections.abc import Mapping, Sequence
from types import MappingProxyType
from typing import ClassVar, Final, final

from sqlalchemy import orm


EAGER_STRATEGIES: Final[frozenset[str]] = frozenset({"joined", "selectin", "subquery", "immediate"})

_Relationships = Mapping[
    type[orm.DeclarativeBase], Sequence[orm.RelationshipProperty[orm.DeclarativeBase]]
]


@final
class Node:
    """Singleton registry of every mapped class and its relationships.

    This is the metadata provider the loader consults: given a model it
    answers which relationships exist, which one a relation name refers to
    and which ones the model declares as always-eager.
    """

    __instance: ClassVar[Node | None] = None
    _node: _Relationships

    def __new__(cls, node: _Relationships | None = None) -> Node:
        if cls.__instance is None:
            instance = super().__new__(cls)
            if node is not None:
                instance.set_node(node)

            cls.__instance = instance

        if not getattr(cls.__instance, "_node", None):
            raise RuntimeError("Node is not initialized or empty")

        return cls.__instance

    def get(
        self, model: type[orm.DeclarativeBase]
    ) -> Sequence[orm.RelationshipProperty[orm.DeclarativeBase]]:
        """Relationships of *model*, or an empty sequence for unknown models."""
        return self.node.get(model, ())

    def find(
        self, model: type[orm.DeclarativeBase], key: str
    ) -> orm.RelationshipProperty[orm.DeclarativeBase] | None:
        """Look up the relationship named *key* on *model*.

        Args:
            model: Mapped class owning the relationship.
            key: Relationship attribute name.

        Returns:
            The relationship property, or ``None`` if *model* has no such key.
        """
        return next((rel for rel in self.get(model) if rel.key == key), None)

    def eager(
        self, model: type[orm.DeclarativeBase]
    ) -> Sequence[orm.RelationshipProperty[orm.DeclarativeBase]]:
        """Relationships *model* declares as always loaded (``lazy="joined"`` etc.)."""
        return tuple(rel for rel in self.get(model) if rel.lazy in EAGER_STRATEGIES)

    @property
    def node(self) -> _Relationships:
        """The underlying model-to-relationships mapping (read-only)."""
        return self._node

    def set_node(self, node: _Relationships) -> None:
        self._node = node

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, allowing re-initialization (primarily for tests)."""
        cls._node = {}
        cls.__instance = None


def get_node(base: type[orm.DeclarativeBase]) -> _Relationships:
    """Collect the relationships of every mapper registered on *base*.

    Args:
        base: SQLAlchemy declarative base class.

    Returns:
        Read-only mapping of model classes to their relationship properties.

    Raises:
        AssertionError: If base is not a direct subclass of orm.DeclarativeBase.
    """
    assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
        "base must be a subclass of orm.DeclarativeBase"
    )

    return MappingProxyType({
        mapper.class_: tuple(mapper.relationships.values()) for mapper in base.registry.mappers
    })


def init_node(node: _Relationships) -> None:
    """Initialize the global Node singleton; call once at application startup.

    Example:
        >>> from myapp.models import Base
        >>> init_node(get_node(Base))
    """
    Node(node)
