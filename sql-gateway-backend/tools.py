"""
QueryGuard Tools - Agent-facing tool bindings
=============================================

Wraps the gateway operations as LlamaIndex FunctionTools so an agent can call
them directly. Every tool returns a JSON string; rejections come back as
{error, hint, category} payloads the agent can act on.

Tools:
1. analyze_artifact - SQL over an uploaded CSV/Parquet artifact
2. read_query       - SELECT-only SQL over the production database
3. get_schema       - allowlisted tables and columns
"""

import json
import logging
from typing import List

from llama_index.core.tools import FunctionTool

from query_gateway import MIN_JUSTIFICATION_LENGTH, QueryGateway

logger = logging.getLogger(__name__)


def _justification_error(justification: str):
    if not justification or len(justification.strip()) < MIN_JUSTIFICATION_LENGTH:
        return {
            "error": f"justification must be at least {MIN_JUSTIFICATION_LENGTH} characters",
            "hint": "Explain why the user needs this data",
            "category": "INPUT_VALIDATION_ERROR",
        }
    return None


def create_artifact_tool(gateway: QueryGateway) -> FunctionTool:
    """Create artifact analysis tool"""

    def analyze_artifact(file_id: str, sql_query: str, justification: str) -> str:
        """
        Run a safe, AST-validated SQL query on a server-side artifact.

        Args:
            file_id: Artifact file name (CSV or Parquet)
            sql_query: SELECT over the table named `artifact`, with LIMIT
            justification: Why the user needs this data (20+ characters)

        Returns:
            JSON string with rows, a delivery slip, or an error
        """
        error = _justification_error(justification)
        if error:
            return json.dumps(error)
        result = gateway.analyze_artifact(file_id, sql_query, justification)
        return json.dumps(result, default=str)

    description = """Run a safe, AST-validated SQL query on a server-side artifact.

The artifact is exposed as a single table named `artifact`:
- ✅ CORRECT: SELECT sku, qty FROM artifact LIMIT 50
- ❌ WRONG: SELECT * FROM orders

If the result is too large you receive a delivery_slip; query the slip's
file_id with a narrower follow-up query."""

    return FunctionTool.from_defaults(
        fn=analyze_artifact,
        name="analyze_artifact",
        description=description,
    )


def create_read_query_tool(gateway: QueryGateway) -> FunctionTool:
    """Create read-only database query tool"""

    def read_query(sql_query: str, justification: str) -> str:
        """
        Execute a SELECT-only SQL query on the production database.

        Args:
            sql_query: SELECT over allowlisted schema.table names, with LIMIT
            justification: Why the user needs this data (20+ characters)

        Returns:
            JSON string with rows or an error
        """
        error = _justification_error(justification)
        if error:
            return json.dumps(error)
        result = gateway.read_query(sql_query, justification)
        return json.dumps(result, default=str)

    tables = gateway.allowlist.table_names
    example_table = tables[0] if tables else "schema.table_name"
    description = f"""Safely execute a SELECT-only SQL query on the production database.

CRITICAL: tables MUST be schema-qualified and allowlisted:
- ✅ CORRECT: SELECT id FROM {example_table} LIMIT 10
- ❌ WRONG: SELECT id FROM {example_table.split('.')[-1]}

Allowed tables: {', '.join(tables)}
Every JOIN needs an ON clause. Add LIMIT unless the query only aggregates."""

    return FunctionTool.from_defaults(
        fn=read_query,
        name="read_query",
        description=description,
    )


def create_schema_tool(gateway: QueryGateway) -> FunctionTool:
    """Create schema information tool"""

    def get_schema() -> str:
        """
        Get the allowlisted schema.

        Returns:
            JSON string of tables and their permitted columns
        """
        return json.dumps(gateway.describe_schema(), default=str)

    return FunctionTool.from_defaults(
        fn=get_schema,
        name="get_schema",
        description="Get allowlisted tables and the columns the gateway may return.",
    )


def create_gateway_tools(gateway: QueryGateway) -> List[FunctionTool]:
    """
    Initialize all tools

    Returns:
        List of FunctionTools bound to the gateway
    """
    tools = [
        create_artifact_tool(gateway),
        create_read_query_tool(gateway),
        create_schema_tool(gateway),
    ]
    logger.info(f"Initialized {len(tools)} tools")
    return tools
