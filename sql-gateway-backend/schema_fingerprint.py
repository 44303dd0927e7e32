"""
QueryGuard - Schema Fingerprint Matcher
=======================================

Infers which allowlisted table an uploaded artifact corresponds to.

Each allowlisted table is scored by how many of the artifact's (trimmed,
lower-cased) headers appear in its column allowlist. A strict unique maximum
wins. Ties and all-zero scores return None so that ambiguous uploads fail
closed instead of inheriting a guessed policy.
"""

import logging
from typing import Dict, Iterable, Optional

from schema_allowlist import SchemaAllowlist

logger = logging.getLogger(__name__)


def normalize_headers(headers: Iterable[str]) -> set:
    return {str(h).strip().lower() for h in headers if str(h).strip()}


def score_tables(headers: Iterable[str], allowlist: SchemaAllowlist) -> Dict[str, int]:
    """Header overlap per allowlisted table."""
    normalized = normalize_headers(headers)
    return {
        table: len(normalized & set(columns))
        for table, columns in allowlist.items()
    }


def identify_table(headers: Iterable[str], allowlist: SchemaAllowlist) -> Optional[str]:
    """
    Match artifact headers to a single allowlisted table.

    Returns:
        "schema.table" of the unique best match, or None
    """
    scores = score_tables(headers, allowlist)
    if not scores:
        return None

    best = max(scores.values())
    if best == 0:
        logger.info("[FINGERPRINT] No allowlisted table shares a column with the artifact")
        return None

    winners = sorted(t for t, s in scores.items() if s == best)
    if len(winners) > 1:
        logger.warning(f"[FINGERPRINT] Ambiguous artifact schema, tie between {winners}")
        return None

    logger.info(f"[FINGERPRINT] Artifact matched {winners[0]} ({best} columns)")
    return winners[0]
