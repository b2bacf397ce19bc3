from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import sqlalchemy as sa


JoinKey = tuple[Any, ...]


def loaded_value(obj: Any, field: str) -> Any:
    """Read *field* from a record without triggering a lazy load.

    Mapped instances are read from their loaded state, so an expired or
    never-loaded attribute reads as ``None``. Raw rows are read as mappings.
    """
    if isinstance(obj, Mapping):
        return obj.get(field)

    state = sa.inspect(obj, raiseerr=False)
    if state is not None and hasattr(state, "dict"):
        return state.dict.get(field)

    return getattr(obj, field, None)


def unloaded_fields(obj: Any, fields: Sequence[str]) -> tuple[str, ...]:
    """Fields of a persisted instance that are expired or were never loaded."""
    if isinstance(obj, Mapping):
        return ()

    state = sa.inspect(obj, raiseerr=False)
    if state is None or getattr(state, "key", None) is None:
        return ()

    unloaded = state.unloaded
    return tuple(field for field in fields if field in unloaded)


def key_of(obj: Any, fields: Sequence[str]) -> JoinKey | None:
    """Join key of *obj*, or ``None`` if any component is missing."""
    key = tuple(loaded_value(obj, field) for field in fields)
    if any(value is None for value in key):
        return None

    return key


def extract_keys(entities: Iterable[Any], fields: Sequence[str]) -> list[JoinKey]:
    """Collect the distinct join keys of *entities*, in first-seen order.

    Composite keys are deduplicated through a trie keyed component by
    component; entities with a ``None`` component are skipped.
    """
    keys: list[JoinKey] = []
    trie: dict[Any, Any] = {}

    for entity in entities:
        key = key_of(entity, fields)
        if key is None:
            continue

        level = trie
        added = False
        for value in key:
            if value not in level:
                level[value] = {}
                added = True
            level = level[value]

        if added:
            keys.append(key)

    return keys


def group_by(
    records: Sequence[Any],
    fields: Sequence[str],
    junctions: Sequence[Sequence[Mapping[str, Any]]] | None = None,
) -> dict[JoinKey, list[Any]]:
    """Group fetched records by their join key.

    Args:
        records: Fetched related records (instances or raw row mappings).
        fields: Child-side key names.
        junctions: Optional, aligned with *records*: the junction rows each
            record was fetched through. Every junction row contributes one
            key, so a record may be grouped under several parents.

    Returns:
        Mapping of join key to the records carrying it, in fetch order.
    """
    groups: dict[JoinKey, list[Any]] = {}

    for index, record in enumerate(records):
        sources: Sequence[Any] = junctions[index] if junctions is not None else (record,)
        for source in sources:
            key = key_of(source, fields)
            if key is not None:
                groups.setdefault(key, []).append(record)

    return groups
