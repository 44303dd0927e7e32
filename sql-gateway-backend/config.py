"""
QueryGuard - Configuration
==========================

Environment-driven settings, read once at startup (after load_dotenv) and
passed explicitly to the gateway. Nothing else reads os.environ.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GatewaySettings:
    database_url: Optional[str] = None
    allowlist_path: str = "allowlist.json"
    artifact_dir: str = "/tmp/artifacts"
    audit_log_path: str = "./audit.log"
    token_budget: int = 128_000
    db_pool_size: int = 10
    db_pool_timeout: float = 30.0
    require_schema_qualified: bool = True
    default_schema: str = "public"
    sql_dialect: str = "postgres"
    actor_id: str = "mcp_agent"

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "GatewaySettings":
        load_dotenv(dotenv_path)
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            allowlist_path=os.getenv("ALLOWLIST_PATH", cls.allowlist_path),
            artifact_dir=os.getenv("ARTIFACT_DIR", cls.artifact_dir),
            audit_log_path=os.getenv("AUDIT_LOG_PATH", cls.audit_log_path),
            token_budget=int(os.getenv("TOKEN_BUDGET", cls.token_budget)),
            db_pool_size=int(os.getenv("DB_POOL_SIZE", cls.db_pool_size)),
            db_pool_timeout=float(os.getenv("DB_POOL_TIMEOUT", cls.db_pool_timeout)),
            require_schema_qualified=_env_bool("REQUIRE_SCHEMA_QUALIFIED", cls.require_schema_qualified),
            default_schema=os.getenv("DEFAULT_SCHEMA", cls.default_schema),
            sql_dialect=os.getenv("SQL_DIALECT", cls.sql_dialect),
            actor_id=os.getenv("ACTOR_ID", cls.actor_id),
        )
