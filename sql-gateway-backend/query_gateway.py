"""
QueryGuard - Query Execution Orchestrators
==========================================

Composes validator, allowlist, fingerprinting, governor and column filter
into the two request handlers exposed to the agent.

ARTIFACT FLOW (analyze_artifact):
    audit -> resolve file -> validate (artifact mode) -> load into ephemeral
    SQLite -> fingerprint headers -> column check -> run -> governor
    -> overflow: delivery slip | fit: column filter -> rows

DATABASE FLOW (read_query):
    audit -> validate (database mode) -> merge allowlists -> run read-only
    on a pooled connection -> governor (overflow is a hard rejection)
    -> column filter -> rows

The audit entry is always written first, before the verdict is known.

ERROR CHANNELS:
    - validator rejections   -> SafetyDecision.to_response()  (SQL_VALIDATION_ERROR)
    - post-validation policy -> GatewayPolicyError.to_response() (QUERY_POLICY_ERROR)
    - infrastructure faults  -> propagate to the caller unchanged
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from artifact_store import (
    SLIP_NOTE,
    ArtifactQueryStore,
    resolve_artifact,
    write_delivery_slip,
)
from audit_log import AuditLogger
from column_filter import filter_rows
from config import GatewaySettings
from database import DatabaseManager
from row_limit_governor import compute_row_limit
from schema_allowlist import PolicyMissingError, SchemaAllowlist, load_allowlist
from schema_fingerprint import identify_table
from sql_policy_validator import (
    ErrorKind,
    GatewayPolicyError,
    QueryMode,
    SQLPolicyValidator,
)

logger = logging.getLogger(__name__)

MIN_JUSTIFICATION_LENGTH = 20


class QueryGateway:
    """
    Process-scoped gateway. Build once at startup and share; holds no
    per-request state.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        allowlist: SchemaAllowlist,
        audit: AuditLogger,
        database: Optional[DatabaseManager] = None,
    ):
        self.settings = settings
        self.allowlist = allowlist
        self.audit = audit
        self.database = database
        self.validator = SQLPolicyValidator(
            allowlist,
            require_schema=settings.require_schema_qualified,
            default_schema=settings.default_schema,
            db_dialect=settings.sql_dialect,
        )

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "QueryGateway":
        """
        Build every process-wide collaborator.

        Raises:
            AllowlistConfigError: policy document missing or malformed (fatal)
        """
        allowlist = load_allowlist(settings.allowlist_path)
        database = None
        if settings.database_url:
            database = DatabaseManager.from_url(
                settings.database_url,
                pool_size=settings.db_pool_size,
                pool_timeout=settings.db_pool_timeout,
            )
        else:
            logger.warning("DATABASE_URL not set - read_query is disabled")
        audit = AuditLogger(settings.audit_log_path, actor_id=settings.actor_id)
        return cls(settings, allowlist, audit, database)

    def close(self) -> None:
        if self.database is not None:
            self.database.dispose()

    # ------------------------------------------------------------------
    # analyze_artifact
    # ------------------------------------------------------------------

    def analyze_artifact(self, file_id: str, sql_query: str, justification: str) -> Dict[str, Any]:
        self.audit.record("analyze_artifact", file_id, justification)

        try:
            path = resolve_artifact(self.settings.artifact_dir, file_id)

            decision = self.validator.validate(sql_query, QueryMode.ARTIFACT)
            if not decision.ok:
                return decision.to_response()

            with ArtifactQueryStore(path) as store:
                table = identify_table(store.headers, self.allowlist)
                if table is None:
                    raise GatewayPolicyError(
                        "Could not identify which allowlisted table this artifact belongs to",
                        hint="Artifact headers must clearly match exactly one allowlisted table",
                        kind=ErrorKind.SCHEMA_IDENTIFICATION_FAILED,
                    )
                allowed = self.allowlist.lookup(table)
                if allowed is None:
                    raise GatewayPolicyError(
                        f"Allowlist lookup failed for {table}",
                        hint="The gateway is misconfigured; contact the administrator",
                        kind=ErrorKind.INTERNAL_ALLOWLIST_LOOKUP_FAILURE,
                    )

                column_decision = self.validator.check_column_references(
                    sql_query, allowed, QueryMode.ARTIFACT
                )
                if not column_decision.ok:
                    return column_decision.to_response()

                rows = store.execute(sql_query)

            analyzed = self._artifact_result(rows, list(allowed))
            return {"ok": True, "analyzed": analyzed}

        except GatewayPolicyError as e:
            logger.warning(f"[GATEWAY] analyze_artifact rejected: {e.kind.value} - {e.message}")
            return e.to_response()

    def _artifact_result(self, rows: List[Dict[str, Any]], allowed: List[str]) -> Dict[str, Any]:
        if not rows:
            return {"rows": 0, "data": []}

        limit = compute_row_limit(rows[0], token_budget=self.settings.token_budget)
        data = filter_rows(rows, allowed)

        if limit.overflows(len(rows)):
            columns = list(data[0].keys())
            slip_id = write_delivery_slip(self.settings.artifact_dir, data, columns=columns)
            return {
                "delivery_slip": {
                    "file_id": slip_id,
                    "rows": len(rows),
                    "allowed_rows": limit.allowed_rows,
                    "note": SLIP_NOTE,
                }
            }

        return {"rows": len(data), "data": data}

    # ------------------------------------------------------------------
    # read_query
    # ------------------------------------------------------------------

    def read_query(self, sql_query: str, justification: str) -> Dict[str, Any]:
        self.audit.record("read_query", sql_query, justification)

        decision = self.validator.validate(sql_query, QueryMode.DATABASE)
        if not decision.ok:
            return decision.to_response()

        try:
            try:
                allowed = self.allowlist.merge_allowlists(decision.tables)
            except PolicyMissingError as e:
                raise GatewayPolicyError(
                    str(e),
                    hint=f"Allowed tables: {', '.join(self.allowlist.table_names)}",
                    kind=ErrorKind.POLICY_MISSING,
                ) from e

            if self.database is None:
                raise RuntimeError("Database mode is not configured (DATABASE_URL missing)")

            rows = self.database.execute_read_only(sql_query)
            if not rows:
                return {"ok": True, "result": {"rows": 0, "data": []}}

            limit = compute_row_limit(rows[0], token_budget=self.settings.token_budget)
            if limit.overflows(len(rows)):
                raise GatewayPolicyError(
                    f"Result too large: {len(rows)} rows exceed the safe limit of {limit.allowed_rows}",
                    hint=f"Add a tighter LIMIT (at most {limit.allowed_rows}) or select fewer columns",
                    kind=ErrorKind.RESULT_TOO_LARGE,
                )

            data = filter_rows(rows, allowed)
            return {"ok": True, "result": {"rows": len(data), "data": data}}

        except GatewayPolicyError as e:
            logger.warning(f"[GATEWAY] read_query rejected: {e.kind.value} - {e.message}")
            return e.to_response()

    # ------------------------------------------------------------------
    # describe_schema
    # ------------------------------------------------------------------

    def describe_schema(self) -> Dict[str, Any]:
        """Allowlisted tables, with live column types where available."""
        tables = []
        for table, columns in self.allowlist.items():
            entry = {
                "table": table,
                "columns": [{"name": c, "description": d} for c, d in columns.items()],
            }
            if self.database is not None:
                schema, _, name = table.partition(".")
                try:
                    live = self.database.get_live_columns(schema or None, name)
                    entry["columns"] = self.allowlist.safe_schema(table, live)
                except Exception as e:
                    logger.warning(f"Live schema unavailable for {table}: {e}")
            tables.append(entry)

        return {"table_count": len(tables), "tables": tables}


def build_gateway(settings: Optional[GatewaySettings] = None) -> QueryGateway:
    settings = settings or GatewaySettings.from_env()
    Path(settings.artifact_dir).mkdir(parents=True, exist_ok=True)
    return QueryGateway.from_settings(settings)
