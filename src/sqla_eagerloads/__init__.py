"""Batched relation loading for SQLAlchemy async sessions.

sqla_eagerloads resolves relation paths on already-fetched entities with one
query per relation level, whatever the number of entities.  Initialize a
``Node`` singleton at startup with your declarative base, then call
``await eager_load(entities, "posts.comments")``.  Closures can filter,
limit per parent through LATERAL subqueries or return raw rows.
"""

from ._version import __version__, __version_tuple__
from .context import EagerContext, get_current_session, set_default_session, use_session
from .core import EagerLoader, eager_load, sqla_cache_clear, sqla_cache_info
from .exc import (
    EagerLoadError,
    InvalidModelInstanceError,
    RelationNotFoundError,
    SessionNotConfiguredError,
    SpecificationParseError,
    UnsupportedCardinalityError,
)
from .node import Node, get_node, init_node
from .parsing import ParsedRelation, parse_relations
from .relations import Relation, RelationKind, resolve_relation
from .tools import add_conditions, add_lateral, get_primary_keys, get_table_names


__all__ = (
    "EagerContext",
    "EagerLoadError",
    "EagerLoader",
    "InvalidModelInstanceError",
    "Node",
    "ParsedRelation",
    "Relation",
    "RelationKind",
    "RelationNotFoundError",
    "SessionNotConfiguredError",
    "SpecificationParseError",
    "UnsupportedCardinalityError",
    "__version__",
    "__version_tuple__",
    "add_conditions",
    "add_lateral",
    "eager_load",
    "get_current_session",
    "get_node",
    "get_primary_keys",
    "get_table_names",
    "init_node",
    "parse_relations",
    "resolve_relation",
    "set_default_session",
    "sqla_cache_clear",
    "sqla_cache_info",
    "use_session",
)
