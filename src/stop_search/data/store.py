"""Contract the search engine needs from the backing store."""

from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

QueryParams = Sequence[Any] | Mapping[str, Any]
Rows = list[Mapping[str, Any]]


@runtime_checkable
class StopStore(Protocol):
    """Anything that can run a SQL query and return rows as mappings.

    A store may also provide ``query_with_timeout(sql, params, timeout_ms)``.
    Without it, queries run with no server-side timeout and the engine relies
    on its own budget bookkeeping.
    """

    async def query(self, sql: str, params: QueryParams = ()) -> Rows: ...


async def run_query(store: StopStore, sql: str, params: QueryParams, timeout_ms: int) -> Rows:
    """Run a query with a timeout when the store supports one.

    Args:
        store: Backing store.
        sql: Query text.
        params: Positional or named parameters.
        timeout_ms: Upper bound for the query in milliseconds.

    Returns:
        Result rows (empty list if the store returned nothing).
    """
    query_with_timeout = getattr(store, "query_with_timeout", None)
    if callable(query_with_timeout):
        rows = await query_with_timeout(sql, params, timeout_ms)
    else:
        rows = await store.query(sql, params)
    return list(rows or [])
