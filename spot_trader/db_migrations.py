from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional


def _migration_1(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS trades (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            token_name TEXT NOT NULL,
            token_address TEXT,
            amount TEXT NOT NULL,
            buy_price TEXT NOT NULL,
            buy_time INTEGER NOT NULL,
            order_id TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'closed')),
            sell_price TEXT,
            sell_time INTEGER,
            sell_order_id TEXT,
            profit_loss TEXT
        )
        """
    )


def _migration_1_down(conn):
    cur = conn.cursor()
    cur.execute("DROP TABLE IF EXISTS trades")


def _migration_2(conn):
    """Indexes for the open-position scan, plus uniqueness guards."""
    cur = conn.cursor()
    cur.execute("CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status)")
    cur.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_trades_order_id ON trades(order_id)")
    # at most one open trade per token
    cur.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_trades_open_token ON trades(token_name) WHERE status = 'open'"
    )


def _migration_2_down(conn):
    cur = conn.cursor()
    cur.execute("DROP INDEX IF EXISTS idx_trades_status")
    cur.execute("DROP INDEX IF EXISTS idx_trades_order_id")
    cur.execute("DROP INDEX IF EXISTS idx_trades_open_token")


MIGRATIONS: Dict[int, Callable] = {
    1: _migration_1,
    2: _migration_2,
}

MIGRATION_DOWNS: Dict[int, Callable] = {
    1: _migration_1_down,
    2: _migration_2_down,
}


def apply_migrations(conn) -> List[int]:
    """Apply pending migrations to the given sqlite3 connection.

    Returns the list of applied migration versions.
    """
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

    cur.execute("SELECT version FROM schema_migrations ORDER BY version")
    applied = {row[0] for row in cur.fetchall()}

    to_apply = sorted(v for v in MIGRATIONS.keys() if v not in applied)
    applied_now = []
    for v in to_apply:
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
    """Rollback the latest applied migration; returns rolled-back version or None."""
    cur = conn.cursor()
    cur.execute("SELECT version FROM schema_migrations ORDER BY version DESC LIMIT 1")
    row = cur.fetchone()
    if not row:
        return None
    v = row[0]
    rollback_migration(conn, v)
    return v
