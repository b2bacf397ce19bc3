from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final, Literal, Union, cast


if TYPE_CHECKING:
    import sqlalchemy as sa

    from .context import EagerContext

from .exc import SpecificationParseError


Modifier = Literal["+", "-", "#"]
EagerClosure = Callable[["sa.Select[Any]", "EagerContext"], "sa.Select[Any] | None"]
RelationMapping = Mapping[str, Union[EagerClosure, None]]
RelationSpec = Union[str, RelationMapping, "list[RelationSpec]", "tuple[RelationSpec, ...]"]

_DEFINITION: Final[re.Pattern[str]] = re.compile(
    r"^(?:(?P<alias>[^:.]+):)?(?P<relation>[^.:]+?)(?P<modifier>[-+#])?(?:\.(?P<nested>.*))?$"
)


@dataclass(slots=True)
class ParsedRelation:
    """One requested relation, keyed by the alias it is attached under.

    ``relations`` collects the nested specification of every entry sharing
    the alias; it is the only part mutated after parsing.
    """

    alias: str
    relation: str
    modifier: Modifier | None = None
    relations: dict[str, EagerClosure | None] = field(default_factory=dict)
    closure: EagerClosure | None = None

    @property
    def is_skip(self) -> bool:
        """Relation is already populated on the parents; recurse without querying."""
        return self.modifier in ("+", "-") and self.closure is None

    @property
    def is_join(self) -> bool:
        return self.modifier == "+"


def flatten_relations(relations: RelationSpec) -> dict[str, EagerClosure | None]:
    """Flatten a string, sequence or mapping specification into one mapping.

    Sequences merge left to right. A later closure replaces an earlier one
    for the same path, a later bare entry keeps it.

    Example:
        >>> flatten_relations(["posts", {"roles": fn}, ("profile", "posts.comments")])
        {'posts': None, 'roles': fn, 'profile': None, 'posts.comments': None}
    """
    if isinstance(relations, str):
        return {relations: None}

    if isinstance(relations, Mapping):
        return dict(relations)

    if isinstance(relations, (list, tuple)):
        out: dict[str, EagerClosure | None] = {}
        for item in relations:
            for key, closure in flatten_relations(item).items():
                if closure is not None or key not in out:
                    out[key] = closure
        return out

    raise SpecificationParseError(repr(relations))


def parse_relations(relations: RelationSpec) -> dict[str, ParsedRelation]:
    """Parse a relation specification into requests keyed by alias.

    Each path follows ``[alias:]relation[modifier][.nested]``. Entries sharing
    an alias are merged: their remainders accumulate into the nested
    specification, a closure on an entry without remainder becomes the
    request's closure.

    Raises:
        SpecificationParseError: If a path does not match the grammar.
    """
    parsed: dict[str, ParsedRelation] = {}

    for definition, closure in flatten_relations(relations).items():
        match = _DEFINITION.match(definition)
        if match is None:
            raise SpecificationParseError(definition)

        relation = match["relation"]
        alias = match["alias"] or relation
        request = parsed.get(alias)
        if request is None:
            request = parsed[alias] = ParsedRelation(alias=alias, relation=relation)

        if modifier := match["modifier"]:
            request.modifier = cast("Modifier", modifier)

        if nested := match["nested"]:
            request.relations[nested] = closure
        elif closure is not None:
            request.closure = closure

    return parsed
