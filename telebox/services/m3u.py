"""M3U / JSON catalog parsing.

Playlists are read line by line: an ``#EXTINF`` line opens an entry and the
next URL line closes it. Catalog documents and upload chunks use the JSON
shape produced by ``build_catalog_document``.
"""
import gzip
import json
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from ..exceptions import PlaylistFormatError

_DURATION_RE = re.compile(r"#EXTINF:([^,\s]+)")
_NAME_RE = re.compile(r",([^,]+)$")
_ATTRIBUTE_RE = re.compile(r'(\w+(?:-\w+)*)="([^"]*)"')

CATALOG_VERSION = "1.0"


@dataclass
class PlaylistEntry:
    name: str
    url: str
    duration: str = "-1"
    tvg_id: str = ""
    tvg_name: str = ""
    tvg_logo: str = ""
    group_title: str = ""
    attributes: dict = field(default_factory=dict)

    def to_dict(self):
        data = asdict(self)
        data.pop("attributes", None)
        return data


def parse_extinf(line):
    """Parse an ``#EXTINF`` line into a dict of duration, name and attributes."""
    entry = {}

    duration_match = _DURATION_RE.search(line)
    entry["duration"] = duration_match.group(1) if duration_match else "-1"

    name_match = _NAME_RE.search(line)
    if name_match:
        entry["name"] = name_match.group(1).strip()

    for match in _ATTRIBUTE_RE.finditer(line):
        key = match.group(1).replace("-", "_")
        entry[key] = match.group(2)

    return entry


def _is_url_line(line):
    return line.startswith("http") or "://" in line


def parse_m3u(text):
    lines = [line.strip() for line in (text or "").splitlines()]
    entries = []
    current = None

    for line in lines:
        if not line:
            continue
        if line.startswith("#EXTINF:"):
            current = parse_extinf(line)
            continue
        if line.startswith("#"):
            continue
        if not _is_url_line(line) or current is None:
            continue
        if not current.get("name"):
            current = None
            continue

        known = {
            "duration": current.get("duration") or "-1",
            "name": current["name"],
            "tvg_id": current.get("tvg_id", ""),
            "tvg_name": current.get("tvg_name", ""),
            "tvg_logo": current.get("tvg_logo", ""),
            "group_title": current.get("group_title", ""),
        }
        extra = {k: v for k, v in current.items() if k not in known}
        entries.append(PlaylistEntry(url=line, attributes=extra, **known))
        current = None

    return entries


def build_catalog_document(entries, converter="Telebox M3U Converter"):
    channels = [e.to_dict() if isinstance(e, PlaylistEntry) else dict(e) for e in entries]
    return {
        "metadata": {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "total_channels": len(channels),
            "converter": converter,
            "version": CATALOG_VERSION,
        },
        "channels": channels,
    }


def load_catalog_json(text):
    try:
        data = json.loads(text)
    except ValueError as e:
        raise PlaylistFormatError(f"Invalid catalog JSON: {e}") from e
    if not isinstance(data, dict) or "metadata" not in data or "channels" not in data:
        raise PlaylistFormatError('Catalog JSON must contain "metadata" and "channels"')
    if not isinstance(data["channels"], list):
        raise PlaylistFormatError("channels must be a list")
    if not isinstance(data["metadata"], dict):
        raise PlaylistFormatError("metadata must be an object")
    data["channels"] = [c for c in data["channels"] if isinstance(c, dict)]
    return data


def parse_chunk_payload(raw):
    """Decode an upload chunk.

    Accepts bytes or text, optionally gzip compressed, holding a JSON array of
    channels, a ``{"metadata", "channels"}`` object, or JSON Lines.
    Returns ``(channels, metadata)``; metadata is None when absent.
    """
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    raw = raw or b""
    if raw[:2] == b"\x1f\x8b":
        try:
            raw = gzip.decompress(raw)
        except OSError as e:
            raise PlaylistFormatError(f"Invalid gzip chunk: {e}") from e

    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        raise PlaylistFormatError("Empty chunk")

    try:
        data = json.loads(text)
    except ValueError:
        data = None

    if isinstance(data, list):
        return [c for c in data if isinstance(c, dict)], None
    if isinstance(data, dict):
        if "channels" in data:
            channels = data.get("channels") or []
            if not isinstance(channels, list):
                raise PlaylistFormatError("channels must be a list")
            metadata = data.get("metadata")
            if metadata is not None and not isinstance(metadata, dict):
                raise PlaylistFormatError("metadata must be an object")
            return [c for c in channels if isinstance(c, dict)], metadata
        # A single JSON Lines record
        return [data], None

    channels = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except ValueError as e:
            raise PlaylistFormatError(f"Invalid JSON on line {lineno}: {e}") from e
        if isinstance(record, dict):
            channels.append(record)
    return channels, None


def normalize_channel(raw):
    """Map either key vocabulary (name/nome, group_title/grupo, ...) to canonical fields."""
    def text(*keys):
        for key in keys:
            value = raw.get(key)
            if value is not None and value != "":
                return str(value).strip()
        return ""

    return {
        "name": text("name", "nome"),
        "group_title": text("group_title", "grupo"),
        "tvg_logo": text("tvg_logo", "logo"),
        "tvg_id": text("tvg_id", "id"),
        "url": text("url"),
    }


def catalog_stats(channels):
    groups = {c.get("group_title") for c in channels if c.get("group_title")}
    with_logo = sum(1 for c in channels if (c.get("tvg_logo") or "").strip())
    json_size = len(json.dumps({"channels": channels}, indent=2).encode("utf-8"))
    return {
        "total_channels": len(channels),
        "total_groups": len(groups),
        "channels_with_logo": with_logo,
        "json_size_kb": round(json_size / 1024),
    }
