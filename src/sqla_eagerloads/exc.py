"""Exceptions raised while resolving relation specifications.

Errors coming from the database driver or from SQLAlchemy itself while a
query executes are never wrapped: they propagate to the caller unchanged.
"""

from __future__ import annotations

from sqlalchemy.exc import InvalidRequestError


class EagerLoadError(InvalidRequestError):
    """Base exception for all sqla_eagerloads errors."""


class SpecificationParseError(EagerLoadError, ValueError):
    """A relation path does not match ``[alias:]relation[modifier][.nested]``."""

    def __init__(self, definition: str) -> None:
        self.definition = definition
        super().__init__(f"Invalid relation definition: {definition!r}")


class RelationNotFoundError(EagerLoadError, LookupError):
    """The requested relation is not declared on the model."""

    def __init__(self, model: type, alias: str, relation: str) -> None:
        self.model = model
        self.alias = alias
        self.relation = relation
        name = f"{alias}:{relation}" if alias != relation else relation
        super().__init__(f"Relation {name} for {model.__name__} not found")


class UnsupportedCardinalityError(EagerLoadError):
    """The relationship has a shape the loader has no join strategy for."""

    def __init__(self, model: type, relation: str, detail: str) -> None:
        self.model = model
        self.relation = relation
        super().__init__(f"Relation {model.__name__}.{relation} is not supported: {detail}")


class InvalidModelInstanceError(EagerLoadError, TypeError):
    """A closure injected models that are not instances of the related class."""

    def __init__(self, expected: type, got: object) -> None:
        self.expected = expected
        self.got = got
        super().__init__(
            f"Invalid model {type(got).__name__}. Must be instance of {expected.__name__}"
        )


class SessionNotConfiguredError(EagerLoadError):
    """No session was passed, bound to the current context or set as default."""

    def __init__(self) -> None:
        super().__init__(
            "Session not configured. Pass `session=`, use `use_session()` "
            "or call `set_default_session()` at startup."
        )
