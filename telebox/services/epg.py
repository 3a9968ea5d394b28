import gzip
import io
import logging
import re
import sqlite3
import time
import xml.etree.ElementTree as ET
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

import requests

from ..db import log_event
from ..exceptions import EPGFetchError
from .catalog import upsert_in_batches
from .epg_cache import rebuild_epg_cache

logger = logging.getLogger("Telebox")

DEFAULT_TITLE = "Programme"

_CHANNEL_NAME_FIXES = (
    (re.compile(r"tv\.globo", re.IGNORECASE), "Globo"),
    (re.compile(r"sbt", re.IGNORECASE), "SBT"),
    (re.compile(r"record", re.IGNORECASE), "Record"),
    (re.compile(r"band", re.IGNORECASE), "Band"),
    (re.compile(r"culture", re.IGNORECASE), "TV Cultura"),
)


@dataclass
class Programme:
    channel_id: str
    channel_name: str
    title: str
    start_ts: int
    stop_ts: int = None
    description: str = ""
    category: str = ""

    @property
    def start(self):
        return _iso(self.start_ts)

    @property
    def stop(self):
        return _iso(self.stop_ts)

    def to_row(self):
        row = asdict(self)
        row["start"] = self.start
        row["stop"] = self.stop
        return row


def _iso(ts):
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


def parse_xmltv_time(value):
    """Parse ``YYYYMMDDHHMMSS [+-]HHMM`` to UTC epoch seconds, or None."""
    if not value:
        return None
    try:
        parts = value.strip().split(" ")
        dt = datetime.strptime(parts[0][:14], "%Y%m%d%H%M%S")
        if len(parts) > 1 and parts[1]:
            tz_str = parts[1]
            if tz_str[0] not in "+-":
                return None
            tz_sign = 1 if tz_str[0] == "+" else -1
            tz_hours = int(tz_str[1:3])
            tz_mins = int(tz_str[3:5]) if len(tz_str) >= 5 else 0
            tz_offset = timedelta(hours=tz_sign * tz_hours, minutes=tz_sign * tz_mins)
            dt = dt.replace(tzinfo=timezone(tz_offset))
        else:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    except (ValueError, AttributeError, IndexError):
        return None


def clean_channel_name(channel_id):
    name = re.sub(r"\.br$", "", channel_id or "")
    for pattern, replacement in _CHANNEL_NAME_FIXES:
        name = pattern.sub(replacement, name, count=1)
    return name.replace("_", " ").replace("-", " ").strip()


def fetch_xmltv(url, user_agent, timeout=30, session=None):
    http = session or requests
    try:
        response = http.get(url, headers={"User-Agent": user_agent}, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise EPGFetchError(f"Failed to fetch XMLTV from {url}: {e}") from e

    data = response.content or b""
    if url.endswith(".gz") or data[:2] == b"\x1f\x8b":
        try:
            data = gzip.decompress(data)
        except OSError as e:
            raise EPGFetchError(f"Invalid gzip XMLTV from {url}: {e}") from e
    if not data.strip():
        raise EPGFetchError(f"Empty XMLTV response from {url}")
    return data


def parse_xmltv(data, now, past_hours=0, future_hours=24):
    """Parse XMLTV bytes, keeping programmes that start inside the window around ``now``."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    window_start = now - past_hours * 3600
    window_end = now + future_hours * 3600

    display_names = {}
    kept = []
    try:
        for _, elem in ET.iterparse(io.BytesIO(data), events=("end",)):
            if elem.tag == "channel":
                cid = (elem.get("id") or "").strip()
                names = [dn.text.strip() for dn in elem.findall("display-name") if dn.text and dn.text.strip()]
                if cid and names:
                    display_names[cid] = names[0]
                elem.clear()
                continue

            if elem.tag != "programme":
                continue

            channel_id = (elem.get("channel") or "").strip()
            start_ts = parse_xmltv_time(elem.get("start"))
            if not channel_id or start_ts is None:
                elem.clear()
                continue
            if start_ts < window_start or start_ts > window_end:
                elem.clear()
                continue

            kept.append(
                Programme(
                    channel_id=channel_id,
                    channel_name="",
                    title=(elem.findtext("title") or "").strip() or DEFAULT_TITLE,
                    start_ts=start_ts,
                    stop_ts=parse_xmltv_time(elem.get("stop")),
                    description=(elem.findtext("desc") or "").strip(),
                    category=(elem.findtext("category") or "").strip(),
                )
            )
            elem.clear()
    except ET.ParseError as e:
        raise EPGFetchError(f"Malformed XMLTV: {e}") from e

    # <channel> elements may follow the programmes that reference them
    for programme in kept:
        programme.channel_name = display_names.get(programme.channel_id) or clean_channel_name(
            programme.channel_id
        )
    return kept


def purge_programmes(conn, cutoff_ts):
    cursor = conn.execute(
        """
        DELETE FROM programmes
        WHERE COALESCE(stop_ts, start_ts) < ?
        """,
        (int(cutoff_ts),),
    )
    conn.commit()
    return cursor.rowcount or 0


def store_programmes(
    conn,
    programmes,
    now,
    *,
    retention_hours=24,
    batch_size=500,
    max_attempts=3,
    base_delay=2.0,
    logger=logger,
):
    purged = purge_programmes(conn, now - retention_hours * 3600)
    if purged:
        logger.info("EPG: purged %s programmes older than %sh", purged, retention_hours)

    def write_batch(batch):
        try:
            conn.executemany(
                """
                INSERT INTO programmes (
                    channel_id, channel_name, title, description, category,
                    start, stop, start_ts, stop_ts
                )
                VALUES (
                    :channel_id, :channel_name, :title, :description, :category,
                    :start, :stop, :start_ts, :stop_ts
                )
                ON CONFLICT(channel_id, start_ts) DO UPDATE SET
                    channel_name = excluded.channel_name,
                    title = excluded.title,
                    description = excluded.description,
                    category = excluded.category,
                    stop = excluded.stop,
                    stop_ts = excluded.stop_ts
                """,
                batch,
            )
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise

    return upsert_in_batches(
        [p.to_row() for p in programmes],
        write_batch,
        batch_size=batch_size,
        max_attempts=max_attempts,
        base_delay=base_delay,
        logger=logger,
        label="EPG batch",
    )


def refresh_epg(get_db_connection, settings, logger=logger, now=None, session=None):
    now = int(now if now is not None else time.time())
    url = (settings.get("epg xmltv url") or "").strip()
    if not url:
        logger.info("EPG: no XMLTV URL configured, skipping refresh")
        return {"status": "skipped", "programmes": 0}

    started = time.time()
    logger.info(f"EPG: fetching {url}")
    data = fetch_xmltv(
        url,
        settings.get("epg user agent", "Mozilla/5.0 (compatible; TELEBOX/1.0)"),
        timeout=settings.get("epg timeout", 30),
        session=session,
    )
    programmes = parse_xmltv(
        data,
        now,
        past_hours=settings.get("epg past hours", 0),
        future_hours=settings.get("epg future hours", 24),
    )

    if not programmes:
        logger.warning("EPG: XMLTV contained no programmes in the window; keeping existing guide")
        log_event("warning", "EPG refresh returned no programmes", {"url": url})
        return {"status": "empty", "programmes": 0}

    conn = get_db_connection()
    try:
        outcome = store_programmes(
            conn,
            programmes,
            now,
            retention_hours=settings.get("epg retention hours", 24),
            batch_size=500,
            max_attempts=settings.get("import max attempts", 3),
            base_delay=settings.get("import retry base delay", 2.0),
            logger=logger,
        )
        cache_entries = rebuild_epg_cache(conn, now, settings.get("epg cache ttl hours", 6))
    finally:
        conn.close()

    summary = {
        "status": "completed" if not outcome.failed_batches else "partial",
        "programmes": len(programmes),
        "written": outcome.written,
        "failed_batches": outcome.failed_batches,
        "channels": len({p.channel_id for p in programmes}),
        "cache_entries": cache_entries,
        "duration": round(time.time() - started, 2),
    }
    logger.info(
        "EPG: %s programmes stored for %s channels (%s failed batches)",
        summary["written"], summary["channels"], summary["failed_batches"],
    )
    log_event("info" if not outcome.failed_batches else "warning", "EPG refresh completed", summary)
    return summary


def upcoming_programmes(conn, now, hours=24, channel=None, limit=500):
    params = [int(now), int(now + hours * 3600)]
    channel_clause = ""
    if channel:
        channel_clause = "AND channel_name = ?"
        params.append(channel)
    params.append(int(limit))
    rows = conn.execute(
        f"""
        SELECT channel_id, channel_name, title, description, category, start, stop, start_ts, stop_ts
        FROM programmes
        WHERE COALESCE(stop_ts, start_ts) > ? AND start_ts <= ?
        {channel_clause}
        ORDER BY start_ts, channel_name
        LIMIT ?
        """,
        params,
    ).fetchall()
    return [dict(row) for row in rows]


def epg_summary(conn):
    row = conn.execute(
        """
        SELECT COUNT(*) AS programmes,
               COUNT(DISTINCT channel_id) AS channels,
               MIN(start_ts) AS first_start,
               MAX(COALESCE(stop_ts, start_ts)) AS last_stop
        FROM programmes
        """
    ).fetchone()
    return {
        "programmes": row["programmes"],
        "channels": row["channels"],
        "first_start": _iso(row["first_start"]),
        "last_stop": _iso(row["last_stop"]),
    }
