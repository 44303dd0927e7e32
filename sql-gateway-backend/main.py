"""
QueryGuard - Guarded SQL Gateway API
====================================

HTTP transport for the two agent operations:

    POST /tools/analyze_artifact  - SQL over an uploaded CSV/Parquet artifact
    POST /tools/read_query        - SELECT-only SQL over the production database
    GET  /schema                  - allowlisted tables/columns
    GET  /health

Rejections are ordinary 200 responses carrying {error, hint, category} so the
agent can correct itself. Infrastructure faults (pool exhaustion, driver or
file errors) are logged and returned as HTTP 500; nothing is retried.

Author: QueryGuard Team
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from env_guard import validate_environment
from query_gateway import MIN_JUSTIFICATION_LENGTH, QueryGateway, build_gateway

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


# Pydantic Models
class AnalyzeArtifactRequest(BaseModel):
    file_id: str = Field(..., min_length=1)
    sql_query: str = Field(..., min_length=1)
    justification: str = Field(..., min_length=MIN_JUSTIFICATION_LENGTH)


class ReadQueryRequest(BaseModel):
    sql_query: str = Field(..., min_length=1)
    justification: str = Field(..., min_length=MIN_JUSTIFICATION_LENGTH)


def create_app(gateway: Optional[QueryGateway] = None) -> FastAPI:
    """
    Build the API. Tests pass a ready gateway; production builds one from
    the environment during startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize gateway on startup, release the pool on shutdown"""
        if gateway is not None:
            app.state.gateway = gateway
        else:
            try:
                logger.info("Initializing QueryGuard...")
                validate_environment(strict=True)
                app.state.gateway = build_gateway()
                logger.info(f"✓ Allowlist: {len(app.state.gateway.allowlist)} tables")
                logger.info(f"✓ Database mode: {'enabled' if app.state.gateway.database else 'disabled'}")
            except Exception as e:
                logger.error(f"Startup failed: {str(e)}")
                raise

        yield

        logger.info("Shutting down QueryGuard...")
        app.state.gateway.close()

    app = FastAPI(
        title="QueryGuard SQL Gateway",
        description="Allowlist-enforcing SQL gateway for autonomous agents",
        version="1.0.0",
        lifespan=lifespan,
    )

    def _gateway(request: Request) -> QueryGateway:
        return request.app.state.gateway

    @app.get("/health")
    def health(request: Request) -> Dict[str, Any]:
        gw = _gateway(request)
        return {
            "status": "ok",
            "tables": len(gw.allowlist),
            "database": gw.database is not None,
        }

    @app.post("/tools/analyze_artifact")
    def analyze_artifact(body: AnalyzeArtifactRequest, request: Request) -> Dict[str, Any]:
        try:
            return _gateway(request).analyze_artifact(body.file_id, body.sql_query, body.justification)
        except Exception as e:
            logger.exception(f"analyze_artifact failed: {e}")
            raise HTTPException(status_code=500, detail="analyze_artifact failed")

    @app.post("/tools/read_query")
    def read_query(body: ReadQueryRequest, request: Request) -> Dict[str, Any]:
        try:
            return _gateway(request).read_query(body.sql_query, body.justification)
        except Exception as e:
            logger.exception(f"read_query failed: {e}")
            raise HTTPException(status_code=500, detail="read_query failed")

    @app.get("/schema")
    def schema(request: Request) -> Dict[str, Any]:
        return _gateway(request).describe_schema()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
