"""
QueryGuard - Artifact Store
===========================

Server-side artifacts (uploaded CSV/Parquet files, delivery slips) live in a
single directory. Each analyze_artifact request loads its file into a private
in-memory SQLite database as the table `artifact`, runs the validated query,
and throws the database away.

Delivery slips are written back into the same directory as ordinary CSV
artifacts, so following up on a slip re-enters the full artifact pipeline.
"""

import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd
from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

from database import DRIVER_SQL_OPTIONS
from sql_policy_validator import ARTIFACT_TABLE, ErrorKind, GatewayPolicyError

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".csv", ".parquet")
SLIP_NOTE = "Result exceeds safe token limits. Use analyze_artifact on the slip"


class ArtifactNotFoundError(GatewayPolicyError):
    kind = ErrorKind.ARTIFACT_NOT_FOUND


class UnsupportedFileFormatError(GatewayPolicyError):
    kind = ErrorKind.UNSUPPORTED_FILE_FORMAT


def resolve_artifact(artifact_dir: Union[str, Path], file_id: str) -> Path:
    """
    Map a caller-supplied file_id to a file inside the artifact directory.

    Raises:
        ArtifactNotFoundError: missing file, or an id escaping the directory
    """
    root = Path(artifact_dir).resolve()
    candidate = (root / file_id).resolve()

    if root not in candidate.parents or not candidate.is_file():
        raise ArtifactNotFoundError("Artifact not found", hint="Invalid file_id")
    return candidate


def _load_frame(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return pd.read_csv(path)
    if suffix == ".parquet":
        return pd.read_parquet(path)
    raise UnsupportedFileFormatError(
        "Unsupported file format",
        hint="Only CSV or Parquet are supported",
    )


class ArtifactQueryStore:
    """
    Ephemeral, single-request SQLite database holding one artifact.

    Usage:
        with ArtifactQueryStore(path) as store:
            headers = store.headers
            rows = store.execute(sql)
    """

    def __init__(self, path: Path):
        self.path = path
        self.headers: List[str] = []
        self._engine = None

    def __enter__(self) -> "ArtifactQueryStore":
        frame = _load_frame(self.path)
        self.headers = [str(c) for c in frame.columns]

        self._engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        frame.to_sql(ARTIFACT_TABLE, self._engine, index=False)

        @event.listens_for(self._engine, "begin")
        def _read_only(conn):
            conn.exec_driver_sql("PRAGMA query_only = ON")

        logger.info(f"[ARTIFACT] Loaded {self.path.name}: {len(frame)} rows, {len(self.headers)} columns")
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
        return False

    def execute(self, sql: str) -> List[Dict[str, Any]]:
        with self._engine.connect() as conn:
            result = conn.exec_driver_sql(sql, execution_options=DRIVER_SQL_OPTIONS)
            rows = [dict(row._mapping) for row in result.fetchall()]
            conn.rollback()
        return rows


def write_delivery_slip(
    artifact_dir: Union[str, Path],
    rows: List[Dict[str, Any]],
    columns: Optional[List[str]] = None,
) -> str:
    """
    Persist an overflowing result as a new CSV artifact.

    Returns:
        file_id of the new artifact
    """
    root = Path(artifact_dir)
    root.mkdir(parents=True, exist_ok=True)

    file_id = f"result_{uuid.uuid4()}.csv"
    frame = pd.DataFrame(rows, columns=columns)
    frame.to_csv(root / file_id, index=False)

    logger.info(f"[ARTIFACT] Delivery slip {file_id} written ({len(rows)} rows)")
    return file_id
