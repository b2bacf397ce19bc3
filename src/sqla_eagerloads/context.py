"""Closure context and session resolution.

A loader call needs an ``AsyncSession``. It is looked up, in order, from the
explicit ``session=`` argument, the session bound to the current context by
:func:`use_session`, and the process-wide default set by
:func:`set_default_session`.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

from .exc import InvalidModelInstanceError, SessionNotConfiguredError


if TYPE_CHECKING:
    import sqlalchemy as sa
    from sqlalchemy import orm
    from sqlalchemy.ext.asyncio import AsyncSession

    from .parsing import RelationSpec

    LateralCallback = Callable[
        [sa.Select[Any], orm.util.AliasedClass[Any]], "sa.Select[Any] | None"
    ]

DEFAULT_LATERAL_ALIAS: Final[str] = "outer_lateral"

_current_session: ContextVar[AsyncSession | None] = ContextVar("eager_session", default=None)
_default_session: AsyncSession | None = None


def set_default_session(session: AsyncSession | None) -> None:
    """Set (or clear, with ``None``) the process-wide fallback session."""
    global _default_session  # noqa: PLW0603
    _default_session = session


@contextmanager
def use_session(session: AsyncSession) -> Iterator[AsyncSession]:
    """Bind *session* to the current context for nested loader calls.

    Example::

        with use_session(session):
            await eager_load(users, "posts.comments")
    """
    token = _current_session.set(session)
    try:
        yield session
    finally:
        _current_session.reset(token)


def get_current_session(session: AsyncSession | None = None) -> AsyncSession:
    """Resolve the session for a loader call.

    Raises:
        SessionNotConfiguredError: If no session is found anywhere.
    """
    for resolved in (session, _current_session.get(), _default_session):
        if resolved is not None:
            return resolved

    raise SessionNotConfiguredError


@dataclass(slots=True)
class EagerContext:
    """Second argument of a relation closure.

    The closure receives the relation's ``Select`` and this context, and may
    return a replacement ``Select``. The context methods record instructions
    the loader applies around the query.
    """

    target: type[Any]
    relations: list[RelationSpec] = field(default_factory=list)
    predicates: list[Callable[[Any], bool]] = field(default_factory=list)
    lateral_callback: LateralCallback | None = None
    lateral_alias: str = DEFAULT_LATERAL_ALIAS
    raw: bool = False
    multi: bool | None = None
    models: list[Any] = field(default_factory=list)

    def load_with(self, relations: RelationSpec) -> None:
        """Load *relations* on the fetched records as well."""
        self.relations.append(relations)

    def filter(self, predicate: Callable[[Any], bool]) -> None:
        """Only resolve the relation for parents matching *predicate*."""
        self.predicates.append(predicate)

    def lateral(self, callback: LateralCallback, alias: str = DEFAULT_LATERAL_ALIAS) -> None:
        """Fetch through a per-parent LATERAL subquery.

        *callback* receives the correlated subquery and the aliased parent
        (named *alias*) and may add ordering and a limit, e.g. "latest three
        posts per user".
        """
        self.lateral_callback = callback
        self.lateral_alias = alias

    def load_raw(self, multi: bool | None = None) -> None:
        """Attach raw row mappings instead of mapped instances."""
        self.raw = True
        if multi is not None:
            self.multi = multi

    def additional_models(self, models: Iterable[Any]) -> None:
        """Recurse into *models* together with the fetched records.

        Raises:
            InvalidModelInstanceError: If a model is not a *target* instance.
        """
        checked = []
        for model in models:
            if not isinstance(model, self.target):
                raise InvalidModelInstanceError(self.target, model)
            checked.append(model)

        self.models = checked

    def accepts(self, entity: Any) -> bool:
        return all(predicate(entity) for predicate in self.predicates)
