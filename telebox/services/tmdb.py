import logging

import requests

from ..exceptions import TMDBAuthError, TMDBError

logger = logging.getLogger("Telebox")

TMDB_API_BASE = "https://api.themoviedb.org/3"
TMDB_IMAGE_BASE = "https://image.tmdb.org/t/p"
POSTER_SIZE = "w500"
BACKDROP_SIZE = "w1280"
DEFAULT_COUNTRY = "BR"

# catalog type -> TMDB path segment
MEDIA_TYPES = {"movie": "movie", "series": "tv"}


def _media_path(media_type):
    try:
        return MEDIA_TYPES[media_type]
    except KeyError:
        raise TMDBError(f"Unsupported media type for TMDB: {media_type}") from None


class TMDBClient:
    def __init__(self, token, language="pt-BR", timeout=10, session=None):
        if not token:
            raise TMDBAuthError("TMDB token not configured")
        self.token = token
        self.language = language
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        # v4 read access tokens are JWTs; short v3 keys go in the query string
        self.use_bearer = "." in token
        if self.use_bearer:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _get(self, path, params=None):
        params = dict(params or {})
        params.setdefault("language", self.language)
        if not self.use_bearer:
            params["api_key"] = self.token
        url = f"{TMDB_API_BASE}{path}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise TMDBError(f"TMDB request failed: {e}") from e

        if response.status_code in (401, 403):
            raise TMDBAuthError(f"TMDB rejected credentials ({response.status_code})")
        if not response.ok:
            raise TMDBError(f"TMDB {path} returned {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise TMDBError(f"TMDB {path} returned invalid JSON") from e

    def search(self, title, media_type, year=None):
        path = _media_path(media_type)
        params = {"query": title}
        if year:
            params["year" if path == "movie" else "first_air_date_year"] = year
        data = self._get(f"/search/{path}", params)
        results = data.get("results") or []
        return results[0] if results else None

    def details(self, tmdb_id, media_type):
        path = _media_path(media_type)
        return self._get(f"/{path}/{tmdb_id}", {"append_to_response": "videos,credits"})


def _image_url(path, size):
    return f"{TMDB_IMAGE_BASE}/{size}{path}" if path else None


def _trailer_url(details):
    videos = (details.get("videos") or {}).get("results") or []
    for video in videos:
        if video.get("type") == "Trailer" and video.get("site") == "YouTube" and video.get("key"):
            return f"https://www.youtube.com/watch?v={video['key']}"
    return None


def _year(details):
    date = details.get("release_date") or details.get("first_air_date") or ""
    if len(date) >= 4 and date[:4].isdigit():
        return int(date[:4])
    return None


def _country(details):
    origin = details.get("origin_country") or []
    if origin:
        return origin[0]
    production = details.get("production_countries") or []
    if production and production[0].get("iso_3166_1"):
        return production[0]["iso_3166_1"]
    return DEFAULT_COUNTRY


def build_enrichment(details):
    """Map a TMDB details payload to the columns stored on catalog/content rows."""
    rating = details.get("vote_average")
    return {
        "tmdb_id": details.get("id"),
        "original_title": details.get("original_title") or details.get("original_name"),
        "description": details.get("overview") or None,
        "poster_url": _image_url(details.get("poster_path"), POSTER_SIZE),
        "backdrop_url": _image_url(details.get("backdrop_path"), BACKDROP_SIZE),
        "trailer_url": _trailer_url(details),
        "genres": [g["name"] for g in details.get("genres") or [] if g.get("name")],
        "year": _year(details),
        "rating": float(rating) if rating is not None else None,
        "country": _country(details),
    }
