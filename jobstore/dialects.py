"""Single-statement upserts for the supported database dialects."""

from typing import Any, Callable, Dict, Mapping, Sequence, Union

from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.orm import Session

from jobstore.errors import ConfigurationError

_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
    "mysql": mysql.insert,
    "mariadb": mysql.insert,
}

UpdateSpec = Union[Sequence[str], Callable[[Any], Dict[str, Any]]]


def _insert_for(session: Session, model):
    dialect = session.get_bind().dialect.name
    try:
        return dialect, _INSERTS[dialect](model)
    except KeyError:
        raise ConfigurationError(f"Dialect {dialect!r} has no atomic upsert support")


def upsert(
    session: Session,
    model,
    values: Mapping[str, Any],
    index_elements: Sequence[str],
    update: UpdateSpec,
):
    """Insert a row or, if it collides on index_elements, update it.

    ``update`` is either the column names to copy from the proposed row, or a
    callable receiving the proposed-row namespace (``excluded`` / ``inserted``)
    and returning the SET clause.
    """
    dialect, stmt = _insert_for(session, model)
    stmt = stmt.values(**values)

    proposed = stmt.inserted if dialect in ("mysql", "mariadb") else stmt.excluded
    if callable(update):
        set_ = update(proposed)
    else:
        set_ = {name: proposed[name] for name in update}

    if dialect in ("mysql", "mariadb"):
        stmt = stmt.on_duplicate_key_update(**set_)
    else:
        stmt = stmt.on_conflict_do_update(index_elements=list(index_elements), set_=set_)
    return session.execute(stmt)


def insert_ignore(session: Session, model, values: Mapping[str, Any], index_elements: Sequence[str]) -> bool:
    """Insert a row unless it collides on index_elements; True if inserted."""
    dialect, stmt = _insert_for(session, model)
    stmt = stmt.values(**values)

    if dialect in ("mysql", "mariadb"):
        stmt = stmt.prefix_with("IGNORE")
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(index_elements))
    return session.execute(stmt).rowcount == 1
