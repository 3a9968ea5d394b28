import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import defaultSettings
from ..db import log_event

logger = logging.getLogger("Telebox")

NOTIFICATION_TYPE = "game"
DEFAULT_MESSAGE = defaultSettings["team notification message"]


def _split_csv(value):
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _iso(ts):
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


def _zone(name, logger=logger):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown notification timezone '{name}', using UTC")
        return timezone.utc


def render_message(template, logger=logger, **fields):
    """Fill the admin-editable template; a broken one falls back to the default."""
    try:
        return template.format(**fields)
    except (KeyError, IndexError, ValueError, AttributeError) as e:
        logger.warning(f"Invalid team notification message template '{template}': {e!r}")
        return DEFAULT_MESSAGE.format(**fields)


def _find_team(text, teams):
    for team in teams:
        if team.lower() in text:
            return team
    return None


def fan_out_team_notifications(conn, now, settings, logger=logger):
    """Create one unread notification per user and channel airing their team's game."""
    window_hours = settings.get("team notifications window hours", 24)
    dedupe_hours = settings.get("team notifications dedupe hours", 24)
    require_sport = settings.get("team notifications require sport keywords", False)
    sport_keywords = [k.lower() for k in _split_csv(settings.get("sport keywords"))]
    template = settings.get("team notification message") or DEFAULT_MESSAGE
    tz = _zone(settings.get("notification timezone") or "UTC", logger)

    profiles = conn.execute(
        """
        SELECT user_id, favorite_team FROM profiles
        WHERE favorite_team IS NOT NULL AND TRIM(favorite_team) != ''
        """
    ).fetchall()
    programmes = conn.execute(
        """
        SELECT channel_name, title, description, start_ts FROM programmes
        WHERE start_ts >= ? AND start_ts <= ?
        ORDER BY start_ts
        """,
        (int(now), int(now + window_hours * 3600)),
    ).fetchall()
    logger.info(
        "Team notifications: %s profiles, %s upcoming programmes", len(profiles), len(programmes)
    )

    created_at = _iso(now)
    dedupe_cutoff = _iso(now - dedupe_hours * 3600)
    created = 0

    for profile in profiles:
        teams = _split_csv(profile["favorite_team"])
        for programme in programmes:
            text = f"{programme['title'] or ''} {programme['description'] or ''}".lower()
            team = _find_team(text, teams)
            if team is None:
                continue
            if require_sport and not any(k in text for k in sport_keywords):
                continue

            existing = conn.execute(
                """
                SELECT id FROM notifications
                WHERE user_id = ? AND type = ? AND channel_name = ? AND created_at >= ?
                LIMIT 1
                """,
                (profile["user_id"], NOTIFICATION_TYPE, programme["channel_name"], dedupe_cutoff),
            ).fetchone()
            if existing:
                continue

            kickoff = datetime.fromtimestamp(programme["start_ts"], timezone.utc).astimezone(tz)
            message = render_message(
                template,
                logger,
                team=team,
                time=kickoff.strftime("%H:%M"),
                channel=programme["channel_name"],
            )
            conn.execute(
                """
                INSERT INTO notifications (
                    user_id, type, message, channel_name, programme_start, status, created_at
                )
                VALUES (?, ?, ?, ?, ?, 'unread', ?)
                """,
                (
                    profile["user_id"],
                    NOTIFICATION_TYPE,
                    message,
                    programme["channel_name"],
                    _iso(programme["start_ts"]),
                    created_at,
                ),
            )
            conn.commit()
            created += 1
            logger.info("Team notifications: notified %s about %s", profile["user_id"], team)

    summary = {"profiles_checked": len(profiles), "notifications_created": created}
    log_event("info", "Team notifications processed", summary, conn=conn)
    return summary


def list_notifications(conn, user_id, status=None):
    params = [user_id]
    status_clause = ""
    if status:
        status_clause = "AND status = ?"
        params.append(status)
    rows = conn.execute(
        f"""
        SELECT id, user_id, type, message, channel_name, programme_start, status, sent_at, created_at
        FROM notifications
        WHERE user_id = ? {status_clause}
        ORDER BY created_at DESC, id DESC
        """,
        params,
    ).fetchall()
    return [dict(row) for row in rows]


def mark_read(conn, notification_id):
    cursor = conn.execute(
        "UPDATE notifications SET status = 'read' WHERE id = ?", (notification_id,)
    )
    conn.commit()
    return cursor.rowcount > 0


def set_favorite_team(conn, user_id, favorite_team, name=None, email=None):
    now = datetime.now(timezone.utc).isoformat()
    conn.execute(
        """
        INSERT INTO profiles (user_id, name, email, favorite_team, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            name = COALESCE(excluded.name, profiles.name),
            email = COALESCE(excluded.email, profiles.email),
            favorite_team = excluded.favorite_team,
            updated_at = excluded.updated_at
        """,
        (user_id, name, email, (favorite_team or "").strip(), now, now),
    )
    conn.commit()
    row = conn.execute("SELECT * FROM profiles WHERE user_id = ?", (user_id,)).fetchone()
    return dict(row)
