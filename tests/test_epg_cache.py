import logging

from telebox.services.epg import Programme, store_programmes
from telebox.services.epg_cache import cache_entries, cleanup_epg_cache, rebuild_epg_cache

NOW = 1_750_000_000  # 2025-06-15 15:06:40 UTC

log = logging.getLogger("Telebox.tests")


def _seed(conn):
    store_programmes(
        conn,
        [
            Programme("globo", "Globo", "Jornal", start_ts=NOW + 600, stop_ts=NOW + 3600),
            Programme("globo", "Globo", "Novela", start_ts=NOW + 3600, stop_ts=NOW + 7200),
            # 2025-06-16 01:00 UTC
            Programme("globo", "Globo", "Madrugada", start_ts=NOW + 35600, stop_ts=NOW + 39200),
            Programme("sbt", "SBT", "Programa", start_ts=NOW + 600, stop_ts=NOW + 3600),
        ],
        NOW,
        logger=log,
    )


def test_rebuild_groups_by_channel_and_day(conn):
    _seed(conn)

    count = rebuild_epg_cache(conn, NOW, ttl_hours=6)

    assert count == 3
    globo = cache_entries(conn, "Globo")
    assert [e["programme_date"] for e in globo] == ["2025-06-15", "2025-06-16"]
    assert [p["title"] for p in globo[0]["programmes"]] == ["Jornal", "Novela"]
    assert globo[0]["expires_at"] == NOW + 6 * 3600
    assert len(cache_entries(conn)) == 3


def test_rebuild_overwrites_existing_rows(conn):
    _seed(conn)
    rebuild_epg_cache(conn, NOW, ttl_hours=6)

    rebuild_epg_cache(conn, NOW + 100, ttl_hours=1)

    entries = cache_entries(conn, "SBT")
    assert len(entries) == 1
    assert entries[0]["expires_at"] == NOW + 100 + 3600


def test_cleanup_removes_expired_rows(conn):
    _seed(conn)
    rebuild_epg_cache(conn, NOW, ttl_hours=1)

    assert cleanup_epg_cache(conn, NOW + 1800) == 0
    assert cleanup_epg_cache(conn, NOW + 7200) == 3
    assert cache_entries(conn) == []
