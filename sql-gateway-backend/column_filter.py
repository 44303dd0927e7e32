"""
QueryGuard - Column Filter
==========================

Last line of defense: project result rows down to allowlisted columns.

A table may be allowlisted for only some of its columns (cost, PII). The
validator's table check cannot see that, so every row leaving the gateway is
stripped to the allowlist here. Well-known aggregate output names are kept so
that `SELECT count(*) ...` still returns its value.
"""

from typing import Any, Dict, Iterable, List, Mapping

AGGREGATE_OUTPUT_NAMES = frozenset({
    "count", "sum", "avg", "min", "max", "total", "total_revenue",
})


def filter_rows(rows: Iterable[Mapping[str, Any]], allowed_columns: Iterable[str]) -> List[Dict[str, Any]]:
    """
    Keep only allowlisted (or aggregate-named) fields of every row.

    Matching is case-insensitive; original key spelling is preserved.
    Filtering twice with the same allowlist is a no-op.
    """
    permitted = {c.lower() for c in allowed_columns} | AGGREGATE_OUTPUT_NAMES
    return [
        {key: value for key, value in row.items() if str(key).lower() in permitted}
        for row in rows
    ]
