"""
SQLite persistence for buurtcheck caches.

No ORM, just raw sqlite3.  Three tables, all of them caches:

  report_cache    finished report JSON keyed by rounded coordinates + radius
  source_cache    per-provider JSON payloads (CBS rows, Luchtmeetnet stations)
  overpass_cache  raw Overpass responses keyed by query hash, with stale
                  fallback when Overpass is unavailable

Cache errors are logged and swallowed so they never break a report.
"""

import sqlite3
import os
import hashlib
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("BUURTCHECK_DB_PATH", "buurtcheck.db")


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS report_cache (
            cache_key    TEXT PRIMARY KEY,
            report_json  TEXT NOT NULL,
            created_at   TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS source_cache (
            namespace    TEXT NOT NULL,
            cache_key    TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            created_at   TEXT NOT NULL,
            PRIMARY KEY (namespace, cache_key)
        );
        CREATE INDEX IF NOT EXISTS idx_source_cache_created ON source_cache(created_at);

        -- Overpass API response cache (persists across reports)
        CREATE TABLE IF NOT EXISTS overpass_cache (
            cache_key     TEXT PRIMARY KEY,
            response_json TEXT NOT NULL,
            created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
    """)
    conn.commit()
    conn.close()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_expired(created_str: Optional[str], ttl: timedelta) -> bool:
    """True when *created_str* is older than *ttl*.

    Unparseable timestamps count as fresh; the payload is still returned.
    """
    if not created_str:
        return False
    try:
        created = datetime.fromisoformat(created_str)
    except (ValueError, TypeError):
        return False
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - created > ttl


# ---------------------------------------------------------------------------
# Report cache
# ---------------------------------------------------------------------------

def get_report_cache(cache_key: str, ttl_minutes: int) -> Optional[str]:
    """Return the cached report JSON if younger than *ttl_minutes*, else None."""
    try:
        conn = _get_db()
        row = conn.execute(
            "SELECT report_json, created_at FROM report_cache WHERE cache_key = ?",
            (cache_key,),
        ).fetchone()
        conn.close()
        if not row:
            return None
        if _is_expired(row["created_at"], timedelta(minutes=ttl_minutes)):
            return None
        return row["report_json"]
    except Exception:
        logger.warning("Report cache lookup failed", exc_info=True)
        return None


def set_report_cache(cache_key: str, report_json: str) -> None:
    try:
        conn = _get_db()
        conn.execute(
            """INSERT OR REPLACE INTO report_cache (cache_key, report_json, created_at)
               VALUES (?, ?, ?)""",
            (cache_key, report_json, _now_iso()),
        )
        conn.commit()
        conn.close()
    except Exception:
        logger.warning("Report cache write failed", exc_info=True)


# ---------------------------------------------------------------------------
# Source cache (per-provider payloads)
# ---------------------------------------------------------------------------

def get_source_cache(namespace: str, cache_key: str, ttl_minutes: int) -> Optional[str]:
    """Look up a cached provider payload.

    *namespace* separates providers ("cbs:neighborhood", "luchtmeetnet:stations").
    Returns the raw JSON string if found and younger than TTL, else None.
    """
    try:
        conn = _get_db()
        row = conn.execute(
            """SELECT payload_json, created_at FROM source_cache
               WHERE namespace = ? AND cache_key = ?""",
            (namespace, cache_key),
        ).fetchone()
        conn.close()
        if not row:
            return None
        if _is_expired(row["created_at"], timedelta(minutes=ttl_minutes)):
            return None
        return row["payload_json"]
    except Exception:
        logger.warning("Source cache lookup failed [%s]", namespace, exc_info=True)
        return None


def set_source_cache(namespace: str, cache_key: str, payload_json: str) -> None:
    try:
        conn = _get_db()
        conn.execute(
            """INSERT OR REPLACE INTO source_cache
               (namespace, cache_key, payload_json, created_at)
               VALUES (?, ?, ?, ?)""",
            (namespace, cache_key, payload_json, _now_iso()),
        )
        conn.commit()
        conn.close()
    except Exception:
        logger.warning("Source cache write failed [%s]", namespace, exc_info=True)


def purge_expired_cache(older_than_days: int = 30) -> int:
    """Delete cache rows older than *older_than_days*. Returns rows removed."""
    cutoff = (datetime.now(timezone.utc) - timedelta(days=older_than_days)).isoformat()
    removed = 0
    try:
        conn = _get_db()
        for table in ("report_cache", "source_cache", "overpass_cache"):
            cur = conn.execute(
                f"DELETE FROM {table} WHERE created_at < ?", (cutoff,)
            )
            removed += cur.rowcount
        conn.commit()
        conn.close()
    except Exception:
        logger.warning("Cache purge failed", exc_info=True)
    return removed


# ---------------------------------------------------------------------------
# Overpass API response cache
# ---------------------------------------------------------------------------

_OVERPASS_CACHE_TTL_DAYS = 7


def overpass_cache_key(query_string: str) -> str:
    """Generate a deterministic cache key from an Overpass query string."""
    return hashlib.sha256(query_string.encode()).hexdigest()


def get_overpass_cache(cache_key: str, ttl_days: Optional[int] = None) -> Optional[str]:
    """Look up a cached Overpass response by key.

    Returns the raw JSON string if found and younger than TTL, else None.
    """
    if ttl_days is None:
        ttl_days = _OVERPASS_CACHE_TTL_DAYS
    try:
        conn = _get_db()
        row = conn.execute(
            "SELECT response_json, created_at FROM overpass_cache WHERE cache_key = ?",
            (cache_key,),
        ).fetchone()
        conn.close()
        if not row:
            return None
        if _is_expired(row["created_at"], timedelta(days=ttl_days)):
            return None
        return row["response_json"]
    except Exception:
        logger.warning("Overpass cache lookup failed", exc_info=True)
        return None


def get_overpass_cache_stale(cache_key: str) -> Optional[Tuple[str, str]]:
    """Return (response_json, created_at) regardless of age, or None."""
    try:
        conn = _get_db()
        row = conn.execute(
            "SELECT response_json, created_at FROM overpass_cache WHERE cache_key = ?",
            (cache_key,),
        ).fetchone()
        conn.close()
        if not row:
            return None
        return row["response_json"], row["created_at"]
    except Exception:
        logger.warning("Overpass stale cache lookup failed", exc_info=True)
        return None


def set_overpass_cache(cache_key: str, response_json: str) -> None:
    try:
        conn = _get_db()
        conn.execute(
            """INSERT OR REPLACE INTO overpass_cache (cache_key, response_json, created_at)
               VALUES (?, ?, ?)""",
            (cache_key, response_json, _now_iso()),
        )
        conn.commit()
        conn.close()
    except Exception:
        logger.warning("Overpass cache write failed", exc_info=True)
