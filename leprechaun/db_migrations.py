from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional


def _migration_1(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS records (
            asset TEXT NOT NULL,
            cost TEXT NOT NULL,
            id TEXT PRIMARY KEY,
            price TEXT NOT NULL,
            close_id TEXT NOT NULL DEFAULT '',
            closed INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT '',
            timestamp TEXT,
            volume TEXT NOT NULL,
            type TEXT NOT NULL,
            trigger_price TEXT NOT NULL
        )
        """
    )


def _migration_1_down(conn):
    conn.cursor().execute("DROP TABLE IF EXISTS records")


def _migration_2(conn):
    """Counter currency and settlement fees, filled in after the order completes."""
    cur = conn.cursor()
    cur.execute("ALTER TABLE records ADD COLUMN counter_currency TEXT NOT NULL DEFAULT ''")
    cur.execute("ALTER TABLE records ADD COLUMN asset_fee TEXT NOT NULL DEFAULT '0'")
    cur.execute("ALTER TABLE records ADD COLUMN counter_fee TEXT NOT NULL DEFAULT '0'")


def _migration_2_down(conn):
    # sqlite only learned DROP COLUMN in 3.35; rebuild the table instead
    cur = conn.cursor()
    cur.execute(
        "CREATE TABLE records_v1 AS SELECT asset, cost, id, price, close_id, closed, status, "
        "timestamp, volume, type, trigger_price FROM records"
    )
    cur.execute("DROP TABLE records")
    _migration_1(conn)
    cur.execute("INSERT INTO records SELECT * FROM records_v1")
    cur.execute("DROP TABLE records_v1")


def _migration_3(conn):
    """Index for the per-round sweep lookups."""
    conn.cursor().execute("CREATE INDEX IF NOT EXISTS idx_records_asset_type ON records(asset, type)")


def _migration_3_down(conn):
    conn.cursor().execute("DROP INDEX IF EXISTS idx_records_asset_type")


MIGRATIONS: Dict[int, Callable] = {
    1: _migration_1,
    2: _migration_2,
    3: _migration_3,
}

MIGRATION_DOWNS: Dict[int, Callable] = {
    1: _migration_1_down,
    2: _migration_2_down,
    3: _migration_3_down,
}


def applied_versions(conn) -> Dict[int, str]:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()
    cur.execute("SELECT version, applied_at FROM schema_migrations ORDER BY version")
    return {row[0]: row[1] for row in cur.fetchall()}


def pending_versions(conn) -> List[int]:
    applied = applied_versions(conn)
    return sorted(v for v in MIGRATIONS if v not in applied)


def apply_migrations(conn) -> List[int]:
    """Apply pending migrations to the given sqlite3 connection.

    Returns the list of applied migration versions.
    """
    cur = conn.cursor()
    applied_now = []
    for v in pending_versions(conn):
        try:
            conn.execute("BEGIN IMMEDIATE")
            MIGRATIONS[v](conn)
            cur.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES(?, ?)",
                (v, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
            applied_now.append(v)
        except Exception:
            conn.rollback()
            raise

    return applied_now


def rollback_migration(conn, version: int) -> None:
    """Rollback a specific migration version if a down migration is registered."""
    if version not in MIGRATION_DOWNS:
        raise RuntimeError(f"No down migration registered for version {version}")

    cur = conn.cursor()
    try:
        conn.execute("BEGIN IMMEDIATE")
        MIGRATION_DOWNS[version](conn)
        cur.execute("DELETE FROM schema_migrations WHERE version = ?", (version,))
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def rollback_last(conn) -> Optional[int]:
    """Rollback the latest applied migration if possible; returns rolled-back version or None."""
    applied = applied_versions(conn)
    if not applied:
        return None
    v = max(applied)
    rollback_migration(conn, v)
    return v
