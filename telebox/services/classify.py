import re
import unicodedata

MOVIE = "movie"
SERIES = "series"
CHANNEL = "channel"
CONTENT_TYPES = (MOVIE, SERIES, CHANNEL)

DEFAULT_REGION_CODES = [
    "SP", "RJ", "MG", "RS", "PR", "SC", "BA", "GO", "DF", "CE", "PE", "PB", "RN", "AL",
    "SE", "PI", "MA", "PA", "AP", "AC", "RO", "RR", "AM", "TO", "MT", "MS", "ES",
]

MOVIE_GROUP_KEYWORDS = ("filme", "movie")
SERIES_GROUP_KEYWORDS = ("serie", "series", "tv show", "show")
CHANNEL_GROUP_KEYWORDS = ("canal", "channel", "esporte", "sport", "noticia", "news", "tv")
# Live-TV groups that would otherwise trip the series keywords ("TV Aberta", "Canais TV")
LIVE_GROUP_RE = re.compile(r"\b(tv aberta|canais?|channels?|ao vivo|live)\b")

EPISODE_RE = re.compile(
    r"\bs\d{1,2}\s*e\d{1,3}\b|\bt\d{1,2}\s*ep?\s*\d{1,3}\b|\btemporada\b|\bseason\b",
    re.IGNORECASE,
)
EPISODE_STRIP_RE = re.compile(
    r"\bs\d{1,2}\s*e\d{1,3}\b.*$|\bt\d{1,2}\s*ep?\s*\d{1,3}\b.*$|\b(temporada|season)\b.*$",
    re.IGNORECASE,
)
QUALITY_TAG_RE = re.compile(r"\b(4k|uhd|2160p|fhd|fullhd|1080p|hd|720p|sd|480p|h\.?265|hevc)\b", re.IGNORECASE)
YEAR_RE = re.compile(r"\((\d{4})\)")


def _fold(value):
    """Lower-case and strip accents so 'Séries' matches 'series'."""
    text = unicodedata.normalize("NFKD", str(value or ""))
    return "".join(ch for ch in text if not unicodedata.combining(ch)).lower()


def detect_type(name, group="", url=""):
    name_l = _fold(name)
    group_l = _fold(group)
    url_l = (url or "").lower()

    if any(k in group_l for k in MOVIE_GROUP_KEYWORDS):
        return MOVIE
    if any(k in group_l for k in SERIES_GROUP_KEYWORDS) and not LIVE_GROUP_RE.search(group_l):
        return SERIES
    if EPISODE_RE.search(name_l):
        return SERIES
    if group_l and any(k in group_l for k in CHANNEL_GROUP_KEYWORDS):
        return CHANNEL
    if "/movie/" in url_l or "/movie/" in name_l:
        return MOVIE
    if "/series/" in url_l or "/series/" in name_l:
        return SERIES
    return CHANNEL


def extract_quality(name, group=""):
    text = f"{name or ''} {group or ''}".lower()
    if re.search(r"4k|uhd|2160p", text):
        return "4K"
    if re.search(r"fhd|fullhd|full hd|1080p", text):
        return "FHD"
    if re.search(r"\bhd\b|720p", text):
        return "HD"
    return "SD"


def parse_region_codes(value):
    if not value:
        return list(DEFAULT_REGION_CODES)
    if isinstance(value, (list, tuple)):
        tokens = value
    else:
        tokens = re.split(r"[\s,]+", str(value))
    codes = [t.strip().upper() for t in tokens if t and t.strip()]
    return codes or list(DEFAULT_REGION_CODES)


def extract_region(name, codes=None):
    codes = codes or DEFAULT_REGION_CODES
    padded = f" {(name or '').upper()} "
    for code in codes:
        if re.search(rf"[\s\-_|(\[]{re.escape(code)}[\s\-_|)\]]", padded):
            return code
    return ""


def extract_year(name):
    match = YEAR_RE.search(name or "")
    if not match:
        return None
    year = int(match.group(1))
    return year if 1900 <= year <= 2100 else None


def clean_title(name):
    """Search-friendly title: no (...)/[...] blocks, quality tags or episode markers."""
    text = re.sub(r"\(.*?\)|\[.*?\]", " ", name or "")
    text = EPISODE_STRIP_RE.sub(" ", text)
    text = QUALITY_TAG_RE.sub(" ", text)
    text = re.sub(r"[|_]+", " ", text)
    text = re.sub(r"\s+", " ", text).strip(" -:")
    return text.strip()


def classify_entry(name, group="", url="", region_codes=None):
    return {
        "type": detect_type(name, group, url),
        "quality": extract_quality(name, group),
        "region": extract_region(name, region_codes),
    }
