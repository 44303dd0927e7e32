"""
QueryGuard - AST Table Extractor
================================

Walks a parsed SQL statement and returns every relation it touches.

The walk is shape-agnostic: instead of enumerating grammar productions
(FROM, JOIN, subquery, CTE, set operation, predicate...), every argument of
every node is visited. A relation is recognized only by its marker node
(sqlglot ``exp.Table``). Tables hidden inside subqueries, CTE bodies, join
trees or ``IN (SELECT ...)`` predicates are therefore found without special
cases.

SCHEMA QUALIFICATION:
    strict  - unqualified base tables raise UnqualifiedTableError
    lenient - unqualified base tables are qualified with a default schema

References to a CTE defined in the same statement are not base tables and
are skipped (the CTE body itself is still walked).
"""

import logging
from dataclasses import dataclass
from typing import Any, FrozenSet, Optional, Set

from sqlglot import exp

logger = logging.getLogger(__name__)


class TableExtractionError(Exception):
    """Raised when the statement tree cannot be reduced to a table set."""


class UnqualifiedTableError(TableExtractionError):
    """Raised in strict mode for a table without a schema qualifier."""

    def __init__(self, table_name: str):
        self.table_name = table_name
        super().__init__(
            f'Unqualified table reference detected: "{table_name}". '
            f"Fully qualified schema.table is required."
        )


@dataclass(frozen=True, order=True)
class TableReference:
    """A relation referenced by a query, lower-cased for comparison."""
    schema: Optional[str]
    name: str

    @property
    def qualified_name(self) -> str:
        if self.schema:
            return f"{self.schema}.{self.name}"
        return self.name

    def __str__(self) -> str:
        return self.qualified_name


def _cte_names(node: exp.Expression) -> Set[str]:
    """Names of every CTE declared anywhere in the statement."""
    names = set()
    for cte in node.find_all(exp.CTE):
        alias = cte.alias
        if alias:
            names.add(alias.lower())
    return names


def extract_tables(
    node: Any,
    require_schema: bool = True,
    default_schema: Optional[str] = None,
) -> FrozenSet[TableReference]:
    """
    Return the exhaustive set of tables referenced by ``node``.

    Args:
        node: Parsed statement (sqlglot Expression). Any other value yields
              an empty set.
        require_schema: Strict mode. Unqualified base tables raise
              UnqualifiedTableError.
        default_schema: Schema assigned to unqualified tables in lenient mode.

    Returns:
        frozenset of TableReference (duplicates collapse)
    """
    tables: Set[TableReference] = set()
    cte_names = _cte_names(node) if isinstance(node, exp.Expression) else set()

    def visit(item: Any, path: str) -> None:
        if isinstance(item, (list, tuple)):
            for index, child in enumerate(item):
                visit(child, f"{path}[{index}]")
            return

        # Scalars, enums and None terminate the branch
        if not isinstance(item, exp.Expression):
            return

        if isinstance(item, exp.Table):
            _record_table(item, path)

        for key, value in item.args.items():
            visit(value, f"{path}.{key}" if path else key)

    def _record_table(table: exp.Table, path: str) -> None:
        if not isinstance(table.this, exp.Identifier) or not table.name:
            logger.warning(f"[EXTRACTOR] Relation without a name at {path}, skipping")
            return

        name = table.name.lower()
        schema = table.db.lower() if table.db else None

        if schema is None and name in cte_names:
            return

        if schema is None:
            if require_schema:
                raise UnqualifiedTableError(table.name)
            schema = default_schema.lower() if default_schema else None

        tables.add(TableReference(schema=schema, name=name))

    visit(node, "")
    return frozenset(tables)
