"""Test support utilities for calsync.

Exports an in-memory :class:`~calsync.store.CalendarStore` for unit tests and
the structural inspection helpers used by migration integration tests.  None
of these depend on pytest, so they can be imported from any test context.
"""

from __future__ import annotations

from calsync.testing.memory_store import InMemoryCalendarStore, make_connection
from calsync.testing.migration import (
    constraint_exists,
    create_migration_db,
    get_column_info,
    index_exists,
    migration_db_name,
    table_exists,
)

__all__ = [
    "InMemoryCalendarStore",
    "constraint_exists",
    "create_migration_db",
    "get_column_info",
    "index_exists",
    "make_connection",
    "migration_db_name",
    "table_exists",
]
