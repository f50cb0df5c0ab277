"""
Insert-if-absent helper for rows keyed by a unique constraint.

PostgreSQL and SQLite use INSERT ... ON CONFLICT DO NOTHING, so racing
writers converge on one row without an error. Other dialects fall back to
a SAVEPOINT and swallow the IntegrityError raised by the losing insert.
"""

import logging
from typing import Any, Dict, List

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def insert_if_absent(
    session: Session,
    model,
    values: Dict[str, Any],
    index_elements: List[str],
) -> bool:
    """
    Insert `values` into `model`'s table unless the unique key already exists.

    Returns:
        True if this call inserted the row, False if it already existed
    """
    dialect = session.get_bind().dialect.name

    if dialect in ("postgresql", "sqlite"):
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
        result = session.execute(stmt)
        return result.rowcount == 1

    try:
        with session.begin_nested():
            session.add(model(**values))
    except IntegrityError:
        logger.debug("insert_if_absent.conflict", extra={"table": model.__tablename__})
        return False
    return True
