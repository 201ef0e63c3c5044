import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import BaseModel, Field

from collection_scheduler.errors import ExternalFetchError
from collection_scheduler.sources.cache import TTLCache
from collection_scheduler.sources.protocol import DataSource

logger = logging.getLogger(__name__)

# The upstream rejects requests that do not look like they come from the web client
EA_API_HEADERS: Dict[str, str] = {
    "user-agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/143.0.0.0 Safari/537.36",
    "accept": "application/json",
    "origin": "https://www.ea.com",
    "referer": "https://www.ea.com/",
    "accept-language": "en-US,en;q=0.9",
}


class ApiRequest(BaseModel):
    path: str = Field(..., description="Path below the API base URL")
    params: Dict[str, str] = Field(default={}, description="Query parameters for the request")


class EaApiClient(DataSource):
    """
    Data source backed by the EA Pro Clubs HTTP API, with a time-based response cache.
    """

    def __init__(
        self,
        base_url: str = "https://proclubs.ea.com/api/nhl",
        cache: Optional[TTLCache] = None,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.cache = cache if cache is not None else TTLCache(ttl=300.0)
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.headers = headers if headers is not None else dict(EA_API_HEADERS)

    async def _get_json(self, request: ApiRequest) -> Any:
        url = f"{self.base_url}{request.path}"
        try:
            async with aiohttp.ClientSession(headers=self.headers, timeout=self.timeout) as session:
                async with session.get(url, params=request.params) as response:
                    if response.status < 200 or response.status >= 300:
                        raise ExternalFetchError(
                            f"API request failed with status {response.status}", status=response.status
                        )
                    return await response.json(content_type=None)
        except ExternalFetchError:
            raise
        except asyncio.TimeoutError as e:
            raise ExternalFetchError(f"API request to {request.path} timed out") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise ExternalFetchError(f"API request to {request.path} failed: {e}") from e

    async def _cached_get(self, cache_key: str, request: ApiRequest) -> Any:
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug("Cache hit for %s", cache_key)
            return cached
        removed = self.cache.clear_expired()
        if removed:
            logger.debug("Dropped %d expired cache entries", removed)
        data = await self._get_json(request)
        self.cache.set(cache_key, data)
        return data

    async def lookup(self, name: str, platform: str = "common-gen5") -> Optional[Dict[str, Any]]:
        data = await self._cached_get(
            f"club-{name}-{platform}",
            ApiRequest(path="/clubs/search", params={"platform": platform, "clubName": name}),
        )
        candidates = _extract_items(data)
        return candidates[0] if candidates else None

    async def fetch_items(self, entity_id: str, platform: str = "common-gen5", task_type: str = "club_private") -> List[Any]:
        data = await self._cached_get(
            f"matches-{entity_id}-{platform}-{task_type}",
            ApiRequest(
                path="/clubs/matches",
                params={"matchType": task_type, "platform": platform, "clubIds": entity_id},
            ),
        )
        return _extract_items(data)


def _extract_items(data: Any) -> List[Any]:
    if data is None:
        return []
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return list(data.values())
    raise ExternalFetchError(f"Unexpected response payload of type {type(data).__name__}")
