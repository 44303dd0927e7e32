"""
QueryGuard - SQL Policy Validator
=================================

Decides whether an untrusted SQL string may run, and if not, why.

PIPELINE (short-circuits on the first failure):
    1. Parse (sqlglot)                    -> InvalidSyntax
    2. Exactly one statement              -> BatchNotAllowed
    3. SELECT only (incl. nested DML)     -> ForbiddenStatementType
       Denylisted server functions        -> ForbiddenFunction
    4. Table extraction                   -> ExtractionFailed
    5. Artifact: only `artifact`          -> OutOfScopeTable
       Database: allowlisted tables only  -> TableNotAllowed
       Database: allowlisted columns only -> ColumnNotAllowed
    6. Database: every JOIN has ON        -> ImplicitJoinRejected
    7. LIMIT unless purely aggregate      -> LimitRequired

Validation outcomes are values (SafetyDecision), never exceptions. The
validator holds only the immutable allowlist and is safe to share across
threads.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from ast_table_extractor import (
    TableExtractionError,
    TableReference,
    UnqualifiedTableError,
    extract_tables,
)
from schema_allowlist import SchemaAllowlist

logger = logging.getLogger(__name__)

ARTIFACT_TABLE = "artifact"
ARTIFACT_DIALECT = "sqlite"
VALIDATION_CATEGORY = "SQL_VALIDATION_ERROR"
POLICY_CATEGORY = "QUERY_POLICY_ERROR"

AGGREGATE_FUNCTIONS = frozenset({"count", "sum", "avg", "min", "max"})

# Server-side functions that read files, sleep, open connections or mutate
# session state. Matched case-insensitively against every call in the tree.
BLOCKED_FUNCTIONS = frozenset({
    "pg_read_file", "pg_read_binary_file", "pg_ls_dir", "pg_stat_file",
    "pg_sleep", "pg_sleep_for", "pg_sleep_until",
    "pg_terminate_backend", "pg_cancel_backend", "pg_reload_conf",
    "lo_import", "lo_export", "lo_get", "lo_put",
    "dblink", "dblink_exec", "dblink_connect",
    "set_config", "current_setting", "query_to_xml", "txid_current",
    "load_extension", "readfile", "writefile",
})

_MUTATING_NODE_NAMES = (
    "Insert", "Update", "Delete", "Merge", "Create", "Drop", "Alter",
    "AlterTable", "TruncateTable", "Command", "Copy", "Grant",
)
MUTATING_NODES = tuple(
    getattr(exp, name) for name in _MUTATING_NODE_NAMES if hasattr(exp, name)
)

SELECT_NODES = (exp.Select, exp.Union, exp.Intersect, exp.Except)


class QueryMode(Enum):
    ARTIFACT = "artifact"
    DATABASE = "database"


class ErrorKind(Enum):
    """Error taxonomy shared by the validator and the gateway."""
    INVALID_SYNTAX = "InvalidSyntax"
    BATCH_NOT_ALLOWED = "BatchNotAllowed"
    FORBIDDEN_STATEMENT_TYPE = "ForbiddenStatementType"
    FORBIDDEN_FUNCTION = "ForbiddenFunction"
    OUT_OF_SCOPE_TABLE = "OutOfScopeTable"
    TABLE_NOT_ALLOWED = "TableNotAllowed"
    COLUMN_NOT_ALLOWED = "ColumnNotAllowed"
    IMPLICIT_JOIN_REJECTED = "ImplicitJoinRejected"
    LIMIT_REQUIRED = "LimitRequired"
    EXTRACTION_FAILED = "ExtractionFailed"
    ARTIFACT_NOT_FOUND = "ArtifactNotFound"
    UNSUPPORTED_FILE_FORMAT = "UnsupportedFileFormat"
    SCHEMA_IDENTIFICATION_FAILED = "SchemaIdentificationFailed"
    RESULT_TOO_LARGE = "ResultTooLarge"
    POLICY_MISSING = "PolicyMissing"
    INTERNAL_ALLOWLIST_LOOKUP_FAILURE = "InternalAllowlistLookupFailure"


@dataclass(frozen=True)
class SafetyDecision:
    """
    Verdict of one validation pass.

    Attributes:
        ok: True only if every check passed
        error_kind: Failing check (None when ok)
        error: Human-readable reason (None when ok)
        hint: Actionable fix for the caller (None when ok)
        tables: Tables the statement references (empty on early rejection)
    """
    ok: bool
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    hint: Optional[str] = None
    tables: FrozenSet[TableReference] = field(default_factory=frozenset)

    @classmethod
    def accept(cls, tables: Iterable[TableReference] = ()) -> "SafetyDecision":
        return cls(ok=True, tables=frozenset(tables))

    @classmethod
    def reject(cls, kind: ErrorKind, error: str, hint: str) -> "SafetyDecision":
        return cls(ok=False, error_kind=kind, error=error, hint=hint)

    def to_response(self) -> Dict[str, str]:
        return {
            "error": self.error,
            "hint": self.hint,
            "category": VALIDATION_CATEGORY,
            "kind": self.error_kind.value if self.error_kind else None,
        }


class GatewayPolicyError(Exception):
    """
    Post-validation policy rejection (missing artifact, unknown schema,
    oversized result...). Converted to an {error, hint, category} response at
    the gateway boundary; infrastructure faults never use this class.
    """

    kind = ErrorKind.POLICY_MISSING
    category = POLICY_CATEGORY

    def __init__(self, message: str, hint: str = "", kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint
        if kind is not None:
            self.kind = kind

    def to_response(self) -> Dict[str, str]:
        return {
            "error": self.message,
            "hint": self.hint,
            "category": self.category,
            "kind": self.kind.value,
        }


def _statement_kind(statement: exp.Expression) -> str:
    if isinstance(statement, exp.Command):
        return str(statement.this).upper()
    return statement.key.upper()


def _function_name(node: exp.Func) -> str:
    if isinstance(node, exp.Anonymous):
        return str(node.name).lower()
    return node.sql_name().lower()


def _is_aggregate_projection(projection: exp.Expression) -> bool:
    node = projection.unalias()
    if isinstance(node, exp.AggFunc):
        return True
    if isinstance(node, exp.Anonymous):
        return str(node.name).lower() in AGGREGATE_FUNCTIONS
    return False


def is_pure_aggregate(statement: exp.Expression) -> bool:
    """True iff every selected expression is an aggregate function call."""
    if not isinstance(statement, exp.Select):
        return False
    projections = statement.expressions
    return bool(projections) and all(_is_aggregate_projection(p) for p in projections)


def _has_limit(statement: exp.Expression) -> bool:
    return statement.args.get("limit") is not None


def _scope_of(node: exp.Expression) -> Optional[exp.Expression]:
    """Nearest enclosing SELECT or set operation."""
    parent = node.parent
    while parent is not None and not isinstance(parent, SELECT_NODES):
        parent = parent.parent
    return parent


def _clause_of(node: exp.Expression, scope: exp.Expression) -> str:
    while node.parent is not scope:
        node = node.parent
    return node.arg_key


def _is_star(projection: exp.Expression) -> bool:
    return isinstance(projection, exp.Star) or (
        isinstance(projection, exp.Column) and isinstance(projection.this, exp.Star)
    )


def _alias_columns(node: exp.Expression) -> Optional[Set[str]]:
    """Column names from an alias list such as `t(a, b)`, or None."""
    alias = node.args.get("alias")
    if isinstance(alias, exp.TableAlias) and alias.columns:
        return {c.name.lower() for c in alias.columns}
    return None


class ColumnResolver:
    """
    Resolves column references scope by scope, innermost first, the way the
    database does.

    RULES:
        - a qualified column `q.c` is looked up in the nearest SELECT whose
          FROM/JOIN list binds `q`
        - an unqualified column is looked up in the sources of its own SELECT
          (outer SELECTs only when its own has no FROM)
        - an output alias resolves a column only as a bare ORDER BY item of
          the SELECT that defines it, never in its SELECT list, WHERE, JOIN,
          GROUP BY or HAVING
        - base tables expose their allowlisted columns; derived tables and
          CTEs expose their output names (`*` expands to what their own
          sources expose)
        - a base table renamed with a column alias list exposes nothing
    """

    def __init__(
        self,
        statement: exp.Expression,
        per_table: Dict[TableReference, Set[str]],
        default_schema: Optional[str],
    ):
        self.per_table = per_table
        self.default_schema = default_schema.lower() if default_schema else None
        self.ctes: Dict[str, exp.CTE] = {}
        for cte in statement.find_all(exp.CTE):
            if cte.alias:
                self.ctes[cte.alias.lower()] = cte

    def allows(self, column: exp.Column) -> bool:
        name = column.name.lower()
        qualifier = column.table.lower() if column.table else ""
        scope = _scope_of(column)
        if scope is None:
            return False

        if not isinstance(scope, exp.Select):
            # ORDER BY of a set operation names its output columns
            return not qualifier and name in self.exposed(scope)

        if qualifier:
            while scope is not None:
                if isinstance(scope, exp.Select):
                    sources = self.sources(scope)
                    if qualifier in sources:
                        return name in sources[qualifier]
                scope = _scope_of(scope)
            return False

        if self._is_order_alias(column, scope, name):
            return True

        while scope is not None:
            if isinstance(scope, exp.Select):
                sources = self.sources(scope)
                if sources:
                    return any(name in columns for columns in sources.values())
            scope = _scope_of(scope)
        return False

    @staticmethod
    def _is_order_alias(column: exp.Column, scope: exp.Select, name: str) -> bool:
        if _clause_of(column, scope) != "order" or not isinstance(column.parent, exp.Ordered):
            return False
        return any(
            isinstance(p, exp.Alias) and p.alias.lower() == name
            for p in scope.expressions
        )

    def sources(self, select: exp.Select, seen: FrozenSet[str] = frozenset()) -> Dict[str, Set[str]]:
        """qualifier -> exposed columns, for one SELECT's FROM and JOINs."""
        found: Dict[str, Set[str]] = {}
        for child in select.iter_expressions():
            if isinstance(child, exp.From):
                candidates = [child.this, *child.expressions]
            elif isinstance(child, exp.Join):
                candidates = [child.this]
            else:
                continue
            for source in candidates:
                if source is None:
                    continue
                qualifier, columns = self._source(source, seen)
                # Unaliased derived tables can only be reached unqualified
                found[qualifier or f"#{len(found)}"] = columns
        return found

    def _source(self, source: exp.Expression, seen: FrozenSet[str]) -> Tuple[str, Set[str]]:
        alias = source.alias.lower() if source.alias else ""

        if isinstance(source, exp.Table):
            if not isinstance(source.this, exp.Identifier) or not source.name:
                return alias, set()
            name = source.name.lower()
            qualifier = alias or name
            if not source.db and name in self.ctes:
                renamed = _alias_columns(source)
                return qualifier, renamed if renamed is not None else self._cte_columns(name, seen)
            if _alias_columns(source) is not None:
                return qualifier, set()
            schema = source.db.lower() if source.db else self.default_schema
            return qualifier, set(self.per_table.get(TableReference(schema=schema, name=name), set()))

        renamed = _alias_columns(source)
        if renamed is not None:
            return alias, renamed
        if isinstance(source, exp.Subquery):
            return alias, self.exposed(source.this, seen)
        return alias, set()

    def _cte_columns(self, name: str, seen: FrozenSet[str]) -> Set[str]:
        if name in seen:
            return set()
        cte = self.ctes[name]
        renamed = _alias_columns(cte)
        if renamed is not None:
            return renamed
        return self.exposed(cte.this, seen | {name})

    def exposed(self, node: exp.Expression, seen: FrozenSet[str] = frozenset()) -> Set[str]:
        """Output column names of a SELECT or set operation."""
        while isinstance(node, exp.Subquery):
            node = node.this
        if isinstance(node, SELECT_NODES) and not isinstance(node, exp.Select):
            return self.exposed(node.this, seen)
        if not isinstance(node, exp.Select):
            return set()

        names: Set[str] = set()
        for projection in node.expressions:
            if _is_star(projection):
                for columns in self.sources(node, seen).values():
                    names |= columns
            elif projection.alias_or_name:
                names.add(projection.alias_or_name.lower())
        return names


class SQLPolicyValidator:
    """
    Validates agent-issued SQL against the gateway policy.

    Usage:
        validator = SQLPolicyValidator(allowlist)
        decision = validator.validate(sql, QueryMode.DATABASE)
        if not decision.ok:
            return decision.to_response()
    """

    def __init__(
        self,
        allowlist: Optional[SchemaAllowlist],
        require_schema: bool = True,
        default_schema: Optional[str] = "public",
        db_dialect: str = "postgres",
    ):
        self.allowlist = allowlist
        self.require_schema = require_schema
        self.default_schema = default_schema
        self.db_dialect = db_dialect

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _dialect(self, mode: QueryMode) -> str:
        return ARTIFACT_DIALECT if mode is QueryMode.ARTIFACT else self.db_dialect

    def parse(self, sql: str, mode: QueryMode) -> Tuple[Optional[List[exp.Expression]], Optional[SafetyDecision]]:
        """Parse into statements, or return the InvalidSyntax decision."""
        if not sql or not sql.strip():
            return None, SafetyDecision.reject(
                ErrorKind.INVALID_SYNTAX,
                "Invalid SQL syntax",
                "The query is empty",
            )
        try:
            statements = sqlglot.parse(sql, read=self._dialect(mode))
        except SqlglotError as e:
            return None, SafetyDecision.reject(
                ErrorKind.INVALID_SYNTAX,
                "Invalid SQL syntax",
                str(e).splitlines()[0] if str(e) else "Parser rejected the query",
            )
        return [s for s in statements if s is not None], None

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, sql: str, mode: QueryMode) -> SafetyDecision:
        statements, failure = self.parse(sql, mode)
        if failure:
            return self._log(failure, mode)

        if len(statements) != 1:
            if not statements:
                decision = SafetyDecision.reject(
                    ErrorKind.INVALID_SYNTAX,
                    "Invalid SQL syntax",
                    "The query contains no statement",
                )
            else:
                decision = SafetyDecision.reject(
                    ErrorKind.BATCH_NOT_ALLOWED,
                    f"Only a single statement is allowed (found {len(statements)})",
                    "Split your logic into multiple queries",
                )
            return self._log(decision, mode)

        statement = statements[0]
        for check in (self._check_statement_type, self._check_functions):
            decision = check(statement)
            if decision:
                return self._log(decision, mode)

        try:
            if mode is QueryMode.ARTIFACT:
                tables = extract_tables(statement, require_schema=False, default_schema=None)
            else:
                tables = extract_tables(
                    statement,
                    require_schema=self.require_schema,
                    default_schema=self.default_schema,
                )
        except UnqualifiedTableError as e:
            return self._log(SafetyDecision.reject(
                ErrorKind.EXTRACTION_FAILED,
                str(e),
                f"Qualify the table with its schema, e.g. {self._example_table()}",
            ), mode)
        except TableExtractionError as e:
            return self._log(SafetyDecision.reject(
                ErrorKind.EXTRACTION_FAILED,
                f"Could not determine referenced tables: {e}",
                "Simplify the query",
            ), mode)

        if mode is QueryMode.ARTIFACT:
            decision = self._check_artifact_tables(tables)
        else:
            decision = (
                self._check_allowlisted_tables(tables)
                or self._check_allowlisted_columns(statement)
                or self._check_joins(statement)
            )
        if decision:
            return self._log(decision, mode)

        decision = self._check_limit(statement)
        if decision:
            return self._log(decision, mode)

        logger.debug(f"[VALIDATOR] {mode.value} query accepted: {sorted(str(t) for t in tables)}")
        return SafetyDecision.accept(tables)

    def check_column_references(self, sql: str, allowed_columns: Iterable[str], mode: QueryMode) -> SafetyDecision:
        """
        Column-level check for an already validated query whose column
        allowlist only becomes known later (artifact fingerprinting).
        """
        statements, failure = self.parse(sql, mode)
        if failure:
            return failure
        allowed = {c.lower() for c in allowed_columns}
        table = TableReference(schema=None, name=ARTIFACT_TABLE)
        for statement in statements:
            decision = self._column_decision(statement, {table: allowed}, default_schema=None)
            if decision:
                return self._log(decision, mode)
        return SafetyDecision.accept({table})

    # ------------------------------------------------------------------
    # Individual checks (return a rejection or None)
    # ------------------------------------------------------------------

    def _check_statement_type(self, statement: exp.Expression) -> Optional[SafetyDecision]:
        if not isinstance(statement, SELECT_NODES):
            kind = _statement_kind(statement)
            return SafetyDecision.reject(
                ErrorKind.FORBIDDEN_STATEMENT_TYPE,
                f"Forbidden statement type: {kind}",
                "Only SELECT queries are allowed",
            )

        for node in statement.find_all(*MUTATING_NODES):
            kind = _statement_kind(node)
            return SafetyDecision.reject(
                ErrorKind.FORBIDDEN_STATEMENT_TYPE,
                f"Forbidden statement type: {kind} nested inside SELECT",
                "Only read-only SELECT queries are allowed",
            )

        for select in statement.find_all(exp.Select):
            if select.args.get("into") is not None:
                return SafetyDecision.reject(
                    ErrorKind.FORBIDDEN_STATEMENT_TYPE,
                    "Forbidden statement type: SELECT INTO",
                    "Remove the INTO clause; results are returned, never stored",
                )
        return None

    def _check_functions(self, statement: exp.Expression) -> Optional[SafetyDecision]:
        for node in statement.find_all(exp.Func):
            name = _function_name(node)
            if name in BLOCKED_FUNCTIONS:
                return SafetyDecision.reject(
                    ErrorKind.FORBIDDEN_FUNCTION,
                    f"Forbidden function: {name.upper()} is not allowed",
                    "Remove server-side system functions from the query",
                )
        return None

    def _check_artifact_tables(self, tables: FrozenSet[TableReference]) -> Optional[SafetyDecision]:
        for table in sorted(tables, key=str):
            if table.schema is not None or table.name != ARTIFACT_TABLE:
                return SafetyDecision.reject(
                    ErrorKind.OUT_OF_SCOPE_TABLE,
                    f"Query must reference only the '{ARTIFACT_TABLE}' table (found '{table}')",
                    "Remove references to other tables",
                )
        return None

    def _check_allowlisted_tables(self, tables: FrozenSet[TableReference]) -> Optional[SafetyDecision]:
        if self.allowlist is None:
            return SafetyDecision.reject(
                ErrorKind.INTERNAL_ALLOWLIST_LOOKUP_FAILURE,
                "Allowlist is not loaded",
                "The gateway is misconfigured; contact the administrator",
            )
        for table in sorted(tables, key=str):
            if table not in self.allowlist:
                return SafetyDecision.reject(
                    ErrorKind.TABLE_NOT_ALLOWED,
                    f"Table not allowed: {table}",
                    f"Allowed tables: {', '.join(self.allowlist.table_names)}",
                )
        return None

    def _check_allowlisted_columns(self, statement: exp.Expression) -> Optional[SafetyDecision]:
        per_table = {}
        for table in self._base_tables(statement, self._schema_for_bare()):
            columns = self.allowlist.lookup(table) or {}
            per_table[table] = set(columns)
        return self._column_decision(statement, per_table, self._schema_for_bare())

    def _check_joins(self, statement: exp.Expression) -> Optional[SafetyDecision]:
        for join in statement.find_all(exp.Join):
            if join.args.get("on") is None:
                return SafetyDecision.reject(
                    ErrorKind.IMPLICIT_JOIN_REJECTED,
                    "JOIN without ON clause",
                    "Use explicit JOIN ... ON syntax for every join",
                )
        return None

    def _check_limit(self, statement: exp.Expression) -> Optional[SafetyDecision]:
        if _has_limit(statement) or is_pure_aggregate(statement):
            return None
        return SafetyDecision.reject(
            ErrorKind.LIMIT_REQUIRED,
            "Query must include a LIMIT clause",
            "Add LIMIT 100 or similar",
        )

    # ------------------------------------------------------------------
    # Column resolution
    # ------------------------------------------------------------------

    def _schema_for_bare(self) -> Optional[str]:
        return None if self.require_schema else self.default_schema

    @staticmethod
    def _base_tables(statement: exp.Expression, default_schema: Optional[str]) -> Set[TableReference]:
        """Every base table the statement reads (CTE references excluded)."""
        cte_names = {cte.alias.lower() for cte in statement.find_all(exp.CTE) if cte.alias}
        found = set()
        for table in statement.find_all(exp.Table):
            if not isinstance(table.this, exp.Identifier) or not table.name:
                continue
            name = table.name.lower()
            schema = table.db.lower() if table.db else None
            if schema is None and name in cte_names:
                continue
            if schema is None and default_schema:
                schema = default_schema.lower()
            found.add(TableReference(schema=schema, name=name))
        return found

    def _column_decision(
        self,
        statement: exp.Expression,
        per_table: Dict[TableReference, Set[str]],
        default_schema: Optional[str],
    ) -> Optional[SafetyDecision]:
        resolver = ColumnResolver(statement, per_table, default_schema)

        for column in statement.find_all(exp.Column):
            if isinstance(column.this, exp.Star) or not column.name:
                continue
            if resolver.allows(column):
                continue

            merged: Set[str] = set()
            for columns in per_table.values():
                merged |= columns
            qualifier = f"{column.table.lower()}." if column.table else ""
            return SafetyDecision.reject(
                ErrorKind.COLUMN_NOT_ALLOWED,
                f"Column not allowed: {qualifier}{column.name.lower()}",
                f"Allowed columns: {', '.join(sorted(merged))}",
            )
        return None

    # ------------------------------------------------------------------

    def _example_table(self) -> str:
        if self.allowlist is not None and len(self.allowlist):
            return self.allowlist.table_names[0]
        return "schema.table_name"

    @staticmethod
    def _log(decision: SafetyDecision, mode: QueryMode) -> SafetyDecision:
        logger.warning(
            f"[VALIDATOR] {mode.value} query rejected: "
            f"{decision.error_kind.value} - {decision.error}"
        )
        return decision
