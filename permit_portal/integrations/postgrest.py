"""
Query-string builder for the stores' REST query dialect.

Every store (portal, PermitFlow, ReviewWorks) speaks the same dialect:

    GET {base}/rest/v1/{table}?select=a,b&col=eq.V&col2=in.(1,2)
        &or=(title.ilike."x",title.ilike."y")&order=col.desc.nullslast&limit=N

``StoreQuery`` collects those parameters as an ordered list of
``(name, value)`` pairs, because ``order`` (and in principle any filter)
may repeat. The list is handed to ``requests`` as ``params`` unchanged.

Usage:
    query = (
        StoreQuery()
        .select("id", "title")
        .eq("data_source_system", "project-portal")
        .order("last_updated", descending=True, nulls_last=True)
        .limit(1)
    )
    rows = portal_store.fetch_list("project", query, "projects")
"""

from __future__ import annotations

from typing import Any, Iterable


def quote_filter_value(value: str) -> str:
    """Wrap *value* in double quotes, doubling any embedded quote."""
    return '"' + value.replace('"', '""') + '"'


def _format_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class StoreQuery:
    """Fluent builder for filter / order / select / limit parameters."""

    def __init__(self) -> None:
        self._params: list[tuple[str, str]] = []

    # ── Projection ───────────────────────────────────────────────────────

    def select(self, *columns: str) -> "StoreQuery":
        self._params.append(("select", ",".join(columns)))
        return self

    # ── Filters ──────────────────────────────────────────────────────────

    def eq(self, column: str, value: Any) -> "StoreQuery":
        self._params.append((column, f"eq.{_format_scalar(value)}"))
        return self

    def in_(self, column: str, values: Iterable[Any]) -> "StoreQuery":
        joined = ",".join(_format_scalar(v) for v in values)
        self._params.append((column, f"in.({joined})"))
        return self

    def ilike(self, column: str, value: str) -> "StoreQuery":
        self._params.append((column, f"ilike.{quote_filter_value(value)}"))
        return self

    def ilike_any(self, column: str, values: Iterable[str]) -> "StoreQuery":
        """``or=(col.ilike."v1",col.ilike."v2",...)`` case-insensitive match on any value."""
        clauses = ",".join(f"{column}.ilike.{quote_filter_value(v)}" for v in values)
        self._params.append(("or", f"({clauses})"))
        return self

    # ── Ordering / paging ────────────────────────────────────────────────

    def order(self, column: str, *, descending: bool = False, nulls_last: bool = False) -> "StoreQuery":
        clause = f"{column}.{'desc' if descending else 'asc'}"
        if nulls_last:
            clause += ".nullslast"
        self._params.append(("order", clause))
        return self

    def limit(self, count: int) -> "StoreQuery":
        self._params.append(("limit", str(int(count))))
        return self

    def on_conflict(self, column: str) -> "StoreQuery":
        self._params.append(("on_conflict", column))
        return self

    # ── Output ───────────────────────────────────────────────────────────

    @property
    def params(self) -> list[tuple[str, str]]:
        return list(self._params)

    def get(self, name: str) -> list[str]:
        """All values recorded for parameter *name*, in insertion order."""
        return [value for key, value in self._params if key == name]

    def __bool__(self) -> bool:
        return bool(self._params)

    def __repr__(self) -> str:
        return "StoreQuery(" + "&".join(f"{k}={v}" for k, v in self._params) + ")"
