import logging
from typing import List, Optional

import httpx

from guessify.config import API_BASE_URL, HTTP_TIMEOUT_SEC
from guessify.exceptions import CatalogError
from guessify.models.room import Genre, Track

logger = logging.getLogger(__name__)

DEFAULT_COUNT = 50
MAX_COUNT = 100


def _to_count(count) -> int:
    try:
        n = int(count)
    except (TypeError, ValueError):
        return DEFAULT_COUNT
    return min(n, MAX_COUNT) if n > 0 else DEFAULT_COUNT


def track_from_dto(dto: dict) -> Track:
    artists = dto.get("artists") or []
    return Track(
        id=str(dto.get("id")),
        title=dto.get("name") or "Unknown Track",
        artist=", ".join(artists) if artists else "Unknown",
        preview_url=dto.get("preview_url") or "",
        image_url=dto.get("image") or "",
        external_url=dto.get("external_url") or "",
        duration=dto.get("duration"),
    )


class SongCatalog:
    """
    Client for the track catalog API. Single-player games take their
    playlist from here; multiplayer rooms get theirs from the server.
    """

    def __init__(self, base_url: str = API_BASE_URL, client: Optional[httpx.AsyncClient] = None):
        self.base_url = f"{base_url.rstrip('/')}/api/tracks"
        self._client = client
        self.tracks: List[Track] = []
        self.loaded_genre: Optional[Genre] = None

    async def fetch_random(self, genre, count: int = DEFAULT_COUNT) -> List[Track]:
        genre = Genre(genre)
        data = await self._request("GET", self.base_url, {"genre": genre.value, "count": _to_count(count)})
        self.tracks = [track_from_dto(t) for t in (data.get("tracks") or [])]
        self.loaded_genre = genre
        logger.info(f"Fetched {len(self.tracks)} songs for genre: {genre.value}")
        return self.tracks

    async def ensure_genre(self, genre, count: int = DEFAULT_COUNT) -> List[Track]:
        if self.loaded_genre != Genre(genre) or not self.tracks:
            await self.fetch_random(genre, count)
        return self.tracks

    async def refresh(self, genre) -> List[Track]:
        """Ask the catalog to reshuffle its cached chart, then refetch."""
        genre = Genre(genre)
        await self._request("POST", f"{self.base_url}/refresh", {"genre": genre.value})
        return await self.fetch_random(genre)

    async def _request(self, method: str, url: str, params: dict) -> dict:
        try:
            if self._client is not None:
                response = await self._client.request(method, url, params=params)
            else:
                async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SEC) as client:
                    response = await client.request(method, url, params=params)
            response.raise_for_status()
            data = response.json() if response.content else {}
        except httpx.HTTPStatusError as e:
            try:
                body = e.response.json()
            except ValueError:
                body = None
            msg = (body.get("error") if isinstance(body, dict) else None) or str(e)
            raise CatalogError(f"Catalog {method} {url} failed: {msg}") from e
        except httpx.HTTPError as e:
            logger.error(f"Catalog request error: {e}")
            raise CatalogError(f"Catalog {method} {url} unreachable: {e}") from e
        except ValueError as e:
            logger.error(f"Catalog sent a non-JSON body: {e}")
            raise CatalogError(f"Catalog {method} {url} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise CatalogError(f"Catalog {method} {url} returned {type(data).__name__}, expected an object")
        return data
