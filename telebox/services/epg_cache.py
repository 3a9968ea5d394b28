import json
from datetime import datetime, timezone

from ..db import utcnow_iso


def _programme_date(ts):
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%d")


def rebuild_epg_cache(conn, now, ttl_hours=6):
    """Group stored programmes per (channel, UTC day) into cache rows."""
    rows = conn.execute(
        """
        SELECT channel_name, title, description, category, start, stop, start_ts
        FROM programmes
        ORDER BY channel_name, start_ts
        """
    ).fetchall()

    grouped = {}
    for row in rows:
        key = (row["channel_name"], _programme_date(row["start_ts"]))
        grouped.setdefault(key, []).append(
            {
                "title": row["title"],
                "description": row["description"],
                "category": row["category"],
                "start": row["start"],
                "stop": row["stop"],
            }
        )

    expires_at = now + ttl_hours * 3600
    updated_at = utcnow_iso()
    conn.executemany(
        """
        INSERT INTO epg_cache (channel_name, programme_date, programmes, expires_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(channel_name, programme_date) DO UPDATE SET
            programmes = excluded.programmes,
            expires_at = excluded.expires_at,
            updated_at = excluded.updated_at
        """,
        [
            (channel, date, json.dumps(items), expires_at, updated_at)
            for (channel, date), items in grouped.items()
        ],
    )
    conn.commit()
    return len(grouped)


def cleanup_epg_cache(conn, now):
    cursor = conn.execute("DELETE FROM epg_cache WHERE expires_at < ?", (now,))
    conn.commit()
    return cursor.rowcount or 0


def cache_entries(conn, channel_name=None):
    if channel_name:
        rows = conn.execute(
            "SELECT * FROM epg_cache WHERE channel_name = ? ORDER BY programme_date",
            (channel_name,),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM epg_cache ORDER BY channel_name, programme_date"
        ).fetchall()
    return [
        {
            "channel_name": row["channel_name"],
            "programme_date": row["programme_date"],
            "programmes": json.loads(row["programmes"] or "[]"),
            "expires_at": row["expires_at"],
            "updated_at": row["updated_at"],
        }
        for row in rows
    ]
