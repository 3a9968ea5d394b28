import json
import logging
import os
import sqlite3
from datetime import datetime, timezone

from .config import DB_PATH

logger = logging.getLogger("Telebox")


def utcnow_iso():
    return datetime.now(timezone.utc).isoformat()


def get_db_connection():
    """Get a database connection."""
    db_path = os.getenv("DB_PATH", DB_PATH)
    if db_path.startswith("file:"):
        conn = sqlite3.connect(db_path, uri=True, check_same_thread=False)
    else:
        conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.execute("PRAGMA busy_timeout = 5000;")
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.row_factory = sqlite3.Row
    return conn


def _ensure_columns(cursor, table, columns):
    cols = {row["name"] for row in cursor.execute(f"PRAGMA table_info({table})").fetchall()}
    for name, ddl in columns:
        if name not in cols:
            cursor.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")


def init_db(logger=logger):
    """Initialize the database and create tables if they don't exist."""
    conn = get_db_connection()
    cursor = conn.cursor()

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS catalog (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entry_key TEXT NOT NULL UNIQUE,
            tvg_id TEXT,
            name TEXT NOT NULL,
            group_title TEXT,
            logo TEXT,
            url TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'channel',
            quality TEXT DEFAULT 'SD',
            region TEXT DEFAULT '',
            import_uuid TEXT,
            active INTEGER DEFAULT 1,
            tmdb_id INTEGER,
            original_title TEXT,
            description TEXT,
            poster_url TEXT,
            backdrop_url TEXT,
            year INTEGER,
            rating REAL,
            genres TEXT,
            metadata TEXT,
            created_at TEXT,
            updated_at TEXT
        )
    ''')

    # Forward-compatible column migration for existing installations.
    _ensure_columns(cursor, "catalog", [
        ("region", "TEXT DEFAULT ''"),
        ("genres", "TEXT"),
        ("metadata", "TEXT"),
    ])

    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_catalog_type
        ON catalog(type)
    ''')

    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_catalog_name_type
        ON catalog(name, type)
    ''')

    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_catalog_import_uuid
        ON catalog(import_uuid)
    ''')

    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_catalog_group
        ON catalog(group_title)
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS content (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            type TEXT NOT NULL,
            poster_url TEXT,
            genres TEXT DEFAULT '[]',
            available INTEGER DEFAULT 1,
            stream_url TEXT,
            tmdb_id INTEGER,
            original_title TEXT,
            description TEXT,
            backdrop_url TEXT,
            trailer_url TEXT,
            year INTEGER,
            rating REAL,
            country TEXT,
            created_at TEXT,
            updated_at TEXT,
            UNIQUE (name, type)
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS tmdb_pending (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            type TEXT NOT NULL,
            status TEXT DEFAULT 'pending',
            attempts INTEGER DEFAULT 0,
            last_error TEXT,
            content_id INTEGER,
            created_at TEXT,
            processed_at TEXT,
            UNIQUE (name, type)
        )
    ''')

    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_tmdb_pending_status
        ON tmdb_pending(status)
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS programmes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            channel_id TEXT NOT NULL,
            channel_name TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            category TEXT,
            start TEXT NOT NULL,
            stop TEXT,
            start_ts INTEGER NOT NULL,
            stop_ts INTEGER,
            UNIQUE (channel_id, start_ts)
        )
    ''')

    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_programmes_start
        ON programmes(start_ts)
    ''')

    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_programmes_stop
        ON programmes(stop_ts)
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS epg_cache (
            channel_name TEXT NOT NULL,
            programme_date TEXT NOT NULL,
            programmes TEXT NOT NULL DEFAULT '[]',
            expires_at REAL,
            updated_at TEXT,
            PRIMARY KEY (channel_name, programme_date)
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS profiles (
            user_id TEXT PRIMARY KEY,
            name TEXT,
            email TEXT,
            favorite_team TEXT,
            created_at TEXT,
            updated_at TEXT
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            type TEXT NOT NULL,
            message TEXT NOT NULL,
            channel_name TEXT,
            programme_start TEXT,
            status TEXT DEFAULT 'unread',
            sent_at TEXT,
            created_at TEXT
        )
    ''')

    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_notifications_user
        ON notifications(user_id, type, channel_name)
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS system_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            level TEXT NOT NULL DEFAULT 'info',
            message TEXT NOT NULL,
            context TEXT,
            created_at TEXT
        )
    ''')

    conn.commit()
    conn.close()
    logger.info("Database initialized")


def log_event(level, message, context=None, conn=None):
    """Record an operational event in system_logs. Failures are only logged."""
    own_conn = conn is None
    try:
        if own_conn:
            conn = get_db_connection()
        conn.execute(
            "INSERT INTO system_logs (level, message, context, created_at) VALUES (?, ?, ?, ?)",
            (level, message, json.dumps(context or {}, default=str), utcnow_iso()),
        )
        conn.commit()
    except sqlite3.Error as e:
        logger.warning(f"Failed to write system log '{message}': {e}")
    finally:
        if own_conn and conn is not None:
            conn.close()


def recent_events(conn, limit=100):
    rows = conn.execute(
        "SELECT id, level, message, context, created_at FROM system_logs ORDER BY id DESC LIMIT ?",
        (int(limit),),
    ).fetchall()
    return [
        {
            "id": row["id"],
            "level": row["level"],
            "message": row["message"],
            "context": json.loads(row["context"]) if row["context"] else {},
            "created_at": row["created_at"],
        }
        for row in rows
    ]


def vacuum_db():
    """VACUUM the main database."""
    conn = get_db_connection()
    conn.execute("VACUUM")
    conn.close()
