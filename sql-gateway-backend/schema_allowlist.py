"""
QueryGuard - Schema Allowlist Store
===================================

Loads the administrator policy document and answers "which columns of this
table may leave the gateway?".

POLICY DOCUMENT (JSON):

    {
      "allowlist": {
        "app_data": {
          "users": {
            "id":       {"description": "Surrogate key"},
            "username": {"description": "Public handle"}
          }
        }
      }
    }

Anything not listed is denied. The document is parsed once at startup into
pydantic models; a missing file, a missing root key or a table with an empty
column map is a fatal AllowlistConfigError.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ValidationError, field_validator

from ast_table_extractor import TableReference

logger = logging.getLogger(__name__)

ROOT_KEY = "allowlist"


class AllowlistConfigError(Exception):
    """Policy document is absent or structurally invalid."""


class PolicyMissingError(Exception):
    """None of the referenced tables has an allowlist entry."""

    def __init__(self, tables: Iterable[TableReference]):
        self.tables = sorted(str(t) for t in tables)
        super().__init__(f"No allowlist policy found for: {', '.join(self.tables) or '(no tables)'}")


class ColumnPolicy(BaseModel):
    description: str


class PolicyDocument(BaseModel):
    """Typed view of the policy document: schema -> table -> column -> policy."""
    allowlist: Dict[str, Dict[str, Dict[str, ColumnPolicy]]]

    @field_validator("allowlist")
    @classmethod
    def _tables_have_columns(cls, value):
        for schema, tables in value.items():
            for table, columns in tables.items():
                if not columns:
                    raise ValueError(f"table {schema}.{table} has an empty column allowlist")
        return value


class SchemaAllowlist:
    """
    Read-only allowlist index keyed by lower-cased ``schema.table``.

    Built once per process and shared by every request.
    """

    def __init__(self, document: PolicyDocument):
        self._tables: Dict[str, Dict[str, str]] = {}
        for schema, tables in document.allowlist.items():
            for table, columns in tables.items():
                key = f"{schema}.{table}".lower()
                self._tables[key] = {
                    column.lower(): policy.description
                    for column, policy in columns.items()
                }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchemaAllowlist":
        if not isinstance(data, dict) or ROOT_KEY not in data:
            raise AllowlistConfigError(f"Policy document is missing root key '{ROOT_KEY}'")
        try:
            document = PolicyDocument.model_validate(data)
        except ValidationError as e:
            raise AllowlistConfigError(f"Malformed policy document: {e}") from e
        return cls(document)

    @property
    def table_names(self) -> List[str]:
        return sorted(self._tables)

    def __contains__(self, table: Union[TableReference, str]) -> bool:
        return self._key(table) in self._tables

    def __len__(self) -> int:
        return len(self._tables)

    @staticmethod
    def _key(table: Union[TableReference, str]) -> str:
        if isinstance(table, TableReference):
            return table.qualified_name
        return str(table).lower()

    def lookup(self, table: Union[TableReference, str]) -> Optional[Dict[str, str]]:
        """Allowed columns (column -> description) for a table, or None."""
        columns = self._tables.get(self._key(table))
        return dict(columns) if columns is not None else None

    def items(self):
        for key in sorted(self._tables):
            yield key, dict(self._tables[key])

    def merge_allowlists(self, tables: Iterable[TableReference]) -> Dict[str, str]:
        """
        Union the column allowlists of every referenced table.

        Raises:
            PolicyMissingError: if none of the tables has an entry
        """
        tables = list(tables)
        merged: Dict[str, str] = {}
        found = False
        for table in tables:
            columns = self.lookup(table)
            if columns is None:
                logger.debug(f"No allowlist entry for {table}")
                continue
            found = True
            for column, description in columns.items():
                merged.setdefault(column, description)

        if not found:
            raise PolicyMissingError(tables)
        return merged

    def safe_schema(self, table: Union[TableReference, str], live_columns: Iterable[Dict[str, Any]]) -> List[Dict[str, str]]:
        """
        Intersect the allowlist with the live table definition.

        Only columns that are allowlisted AND present in the database are
        described; allowlisted columns missing from the live table are dropped.
        """
        allowed = self.lookup(table) or {}
        live_types = {str(col["name"]).lower(): str(col["type"]) for col in live_columns}

        safe = []
        for column, description in allowed.items():
            column_type = live_types.get(column)
            if not column_type:
                continue
            safe.append({"name": column, "type": column_type, "description": description})
        return safe

    def describe(self) -> Dict[str, List[Dict[str, str]]]:
        """Allowlisted tables and their column descriptions, for agent prompts."""
        return {
            table: [{"name": c, "description": d} for c, d in columns.items()]
            for table, columns in self.items()
        }


def load_allowlist(path: Union[str, Path]) -> SchemaAllowlist:
    """
    Load the policy document from disk.

    Raises:
        AllowlistConfigError: file missing, not JSON, or structurally invalid
    """
    path = Path(path)
    if not path.is_file():
        raise AllowlistConfigError(f"Allowlist policy document not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise AllowlistConfigError(f"Allowlist policy document is not valid JSON: {e}") from e

    allowlist = SchemaAllowlist.from_dict(data)
    logger.info(f"Allowlist loaded: {len(allowlist)} tables from {path}")
    return allowlist
