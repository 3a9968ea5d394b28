import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field

from ..db import log_event, utcnow_iso
from ..exceptions import ImportNotFoundError
from .classify import CHANNEL, CONTENT_TYPES, MOVIE, SERIES, classify_entry, parse_region_codes
from .m3u import normalize_channel

logger = logging.getLogger("Telebox")


@dataclass
class BatchOutcome:
    written: int = 0
    failed_batches: int = 0
    total_batches: int = 0
    errors: list = field(default_factory=list)


@dataclass
class ImportResult:
    import_uuid: str
    total: int = 0
    processed: int = 0
    failed_batches: int = 0
    total_batches: int = 0
    enrichment_queued: int = 0
    cleaned: int = 0
    duration: float = 0.0
    stats: dict = field(default_factory=dict)
    errors: list = field(default_factory=list)

    @property
    def success(self):
        return self.failed_batches == 0

    def to_dict(self):
        return {
            "success": self.success,
            "import_uuid": self.import_uuid,
            "total": self.total,
            "processed": self.processed,
            "failed_batches": self.failed_batches,
            "total_batches": self.total_batches,
            "enrichment_queued": self.enrichment_queued,
            "cleaned": self.cleaned,
            "duration": f"{self.duration:.2f}s",
            "stats": self.stats,
            "errors": self.errors,
        }


def upsert_in_batches(rows, write_batch, *, batch_size=1000, max_attempts=3, base_delay=2.0, logger=logger, label="batch"):
    """Write rows in fixed-size batches, retrying each failed batch with exponential backoff.

    A batch that still fails after max_attempts is counted and skipped; later
    batches are still attempted.
    """
    batch_size = max(1, int(batch_size))
    max_attempts = max(1, int(max_attempts))
    outcome = BatchOutcome()
    outcome.total_batches = (len(rows) + batch_size - 1) // batch_size

    for index in range(outcome.total_batches):
        batch = rows[index * batch_size:(index + 1) * batch_size]
        for attempt in range(1, max_attempts + 1):
            try:
                write_batch(batch)
            except Exception as exc:
                if attempt >= max_attempts:
                    logger.error(
                        "%s %s/%s failed after %s attempts: %s",
                        label, index + 1, outcome.total_batches, attempt, exc,
                    )
                    outcome.failed_batches += 1
                    outcome.errors.append(f"{label} {index + 1}: {exc}")
                    break
                delay = base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "%s %s/%s attempt %s failed (retry in %ss): %s",
                    label, index + 1, outcome.total_batches, attempt, delay, exc,
                )
                time.sleep(delay)
                continue
            outcome.written += len(batch)
            logger.info(
                "%s %s/%s written (%s rows)", label, index + 1, outcome.total_batches, len(batch)
            )
            break

    return outcome


class CatalogIngestor:
    def __init__(self, conn, settings, logger=logger):
        self.conn = conn
        self.settings = settings
        self.logger = logger
        self.region_codes = parse_region_codes(settings.get("region codes"))

    def build_rows(self, channels, import_uuid):
        """Normalize and classify channels, de-duplicated on entry_key (last wins)."""
        now = utcnow_iso()
        rows = {}
        for raw in channels:
            channel = normalize_channel(raw)
            if not channel["url"]:
                continue
            name = channel["name"] or "Untitled"
            tags = classify_entry(name, channel["group_title"], channel["url"], self.region_codes)
            entry_key = channel["tvg_id"] or channel["url"]
            rows[entry_key] = {
                "entry_key": entry_key,
                "tvg_id": channel["tvg_id"] or None,
                "name": name,
                "group_title": channel["group_title"] or None,
                "logo": channel["tvg_logo"] or None,
                "url": channel["url"],
                "type": tags["type"],
                "quality": tags["quality"],
                "region": tags["region"],
                "import_uuid": import_uuid,
                "metadata": json.dumps(raw, default=str),
                "now": now,
            }
        return list(rows.values())

    def _write_catalog_batch(self, batch):
        try:
            self.conn.executemany(
                """
                INSERT INTO catalog (
                    entry_key, tvg_id, name, group_title, logo, url, type, quality, region,
                    import_uuid, active, metadata, created_at, updated_at
                )
                VALUES (
                    :entry_key, :tvg_id, :name, :group_title, :logo, :url, :type, :quality, :region,
                    :import_uuid, 1, :metadata, :now, :now
                )
                ON CONFLICT(entry_key) DO UPDATE SET
                    tvg_id = excluded.tvg_id,
                    name = excluded.name,
                    group_title = excluded.group_title,
                    logo = excluded.logo,
                    url = excluded.url,
                    type = excluded.type,
                    quality = excluded.quality,
                    region = excluded.region,
                    import_uuid = excluded.import_uuid,
                    active = 1,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at
                """,
                batch,
            )
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            raise

    def _upsert_content(self, rows):
        unique = {}
        for row in rows:
            if row["type"] == CHANNEL:
                continue
            unique.setdefault((row["name"], row["type"]), row)
        if not unique:
            return
        now = utcnow_iso()
        self.conn.executemany(
            """
            INSERT INTO content (name, type, poster_url, genres, available, stream_url, created_at, updated_at)
            VALUES (?, ?, ?, ?, 1, ?, ?, ?)
            ON CONFLICT(name, type) DO UPDATE SET
                poster_url = COALESCE(content.poster_url, excluded.poster_url),
                available = 1,
                stream_url = excluded.stream_url,
                updated_at = excluded.updated_at
            """,
            [
                (
                    name,
                    ctype,
                    row["logo"],
                    json.dumps([row["group_title"]] if row["group_title"] else []),
                    row["url"],
                    now,
                    now,
                )
                for (name, ctype), row in unique.items()
            ],
        )
        self.conn.commit()

    def queue_enrichment(self, rows):
        pairs = {(r["name"], r["type"]) for r in rows if r["type"] in (MOVIE, SERIES)}
        if not pairs:
            return 0
        now = utcnow_iso()
        before = self.conn.total_changes
        self.conn.executemany(
            """
            INSERT OR IGNORE INTO tmdb_pending (name, type, status, attempts, created_at)
            VALUES (?, ?, 'pending', 0, ?)
            """,
            [(name, ctype, now) for name, ctype in sorted(pairs)],
        )
        self.conn.commit()
        return self.conn.total_changes - before

    def ingest(self, channels, import_uuid=None, metadata=None, finalize=True):
        started = time.time()
        import_uuid = import_uuid or str(uuid.uuid4())
        result = ImportResult(import_uuid=import_uuid, total=len(channels))

        if metadata:
            log_event(
                "info",
                "Import started with metadata",
                {
                    "import_uuid": import_uuid,
                    "total_channels": metadata.get("total_channels"),
                    "generated_at": metadata.get("generated_at"),
                    "converter": metadata.get("converter"),
                },
                conn=self.conn,
            )

        rows = self.build_rows(channels, import_uuid)
        self.logger.info(
            "Importing %s catalog entries (%s unique) as %s", len(channels), len(rows), import_uuid
        )

        outcome = upsert_in_batches(
            rows,
            self._write_catalog_batch,
            batch_size=self.settings.get("import batch size", 1000),
            max_attempts=self.settings.get("import max attempts", 3),
            base_delay=self.settings.get("import retry base delay", 2.0),
            logger=self.logger,
            label="Catalog batch",
        )
        result.processed = outcome.written
        result.failed_batches = outcome.failed_batches
        result.total_batches = outcome.total_batches
        result.errors = outcome.errors
        result.stats = {t: sum(1 for r in rows if r["type"] == t) for t in CONTENT_TYPES}

        try:
            self._upsert_content(rows)
            result.enrichment_queued = self.queue_enrichment(rows)
        except sqlite3.Error as e:
            self.conn.rollback()
            self.logger.warning(f"Failed to queue catalog content for enrichment: {e}")

        if (
            finalize
            and result.success
            and result.processed
            and self.settings.get("import cleanup previous", True)
        ):
            result.cleaned = self.finalize(import_uuid)
        elif finalize and not result.success:
            self.logger.warning(
                "Import %s had %s failed batches; keeping previous catalog rows",
                import_uuid, result.failed_batches,
            )

        result.duration = time.time() - started
        log_event(
            "info" if result.success else "warning",
            "Catalog import completed" if finalize else "Catalog chunk processed",
            {
                "import_uuid": import_uuid,
                "total_channels": result.total,
                "processed": result.processed,
                "failed_batches": result.failed_batches,
                "enrichment_queued": result.enrichment_queued,
                "has_metadata": bool(metadata),
            },
            conn=self.conn,
        )
        return result

    def finalize(self, import_uuid):
        """Drop catalog rows left over from earlier imports.

        Refuses an import that wrote no rows, so a mistyped UUID or a fully
        failed chunked import cannot empty the catalog.
        """
        written = self.conn.execute(
            "SELECT 1 FROM catalog WHERE import_uuid = ? LIMIT 1", (import_uuid,)
        ).fetchone()
        if written is None:
            raise ImportNotFoundError(f"Import {import_uuid} has no catalog rows")
        cursor = self.conn.execute(
            "DELETE FROM catalog WHERE import_uuid IS NULL OR import_uuid != ?", (import_uuid,)
        )
        self.conn.commit()
        deleted = cursor.rowcount or 0
        self.logger.info("Import %s finalized: %s stale catalog rows removed", import_uuid, deleted)
        return deleted

    def clear(self):
        cursor = self.conn.execute("DELETE FROM catalog")
        self.conn.commit()
        deleted = cursor.rowcount or 0
        self.logger.info("Catalog cleared: %s rows removed", deleted)
        log_event("info", "Catalog cleared", {"deleted": deleted}, conn=self.conn)
        return deleted


def browse_catalog(conn, *, content_type=None, quality=None, group=None, query=None, limit=50, offset=0):
    clauses = ["active = 1"]
    params = []
    if content_type:
        clauses.append("type = ?")
        params.append(content_type)
    if quality:
        clauses.append("quality = ?")
        params.append(quality)
    if group:
        clauses.append("group_title = ?")
        params.append(group)
    if query:
        clauses.append("name LIKE ?")
        params.append(f"%{query}%")
    where = " AND ".join(clauses)

    total = conn.execute(f"SELECT COUNT(*) FROM catalog WHERE {where}", params).fetchone()[0]
    rows = conn.execute(
        f"""
        SELECT id, tvg_id, name, group_title, logo, url, type, quality, region,
               tmdb_id, poster_url, backdrop_url, description, year, rating, genres
        FROM catalog
        WHERE {where}
        ORDER BY name COLLATE NOCASE
        LIMIT ? OFFSET ?
        """,
        [*params, int(limit), int(offset)],
    ).fetchall()
    items = []
    for row in rows:
        item = dict(row)
        item["genres"] = json.loads(row["genres"]) if row["genres"] else []
        items.append(item)
    return {"total": total, "items": items}


def catalog_summary(conn):
    by_type = {t: 0 for t in CONTENT_TYPES}
    for row in conn.execute("SELECT type, COUNT(*) AS n FROM catalog GROUP BY type").fetchall():
        by_type[row["type"]] = row["n"]
    groups = conn.execute(
        "SELECT COUNT(DISTINCT group_title) FROM catalog WHERE group_title IS NOT NULL"
    ).fetchone()[0]
    enriched = conn.execute("SELECT COUNT(*) FROM catalog WHERE tmdb_id IS NOT NULL").fetchone()[0]
    return {
        "total": sum(by_type.values()),
        "by_type": by_type,
        "groups": groups,
        "enriched": enriched,
    }
