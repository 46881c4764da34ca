from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import aiohttp

from .config import BARB_BASE_URL

logger = logging.getLogger(__name__)

RETRY_STATUSES = (429, 502, 503, 504)


class BarbError(Exception):
    pass


class AuthenticationError(BarbError):
    pass


class TransportError(BarbError):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


def _split_page(data: Any) -> Tuple[List[Any], Optional[str]]:
    """Return the items of one page and the cursor to the next one."""
    if isinstance(data, list):
        return data, None
    if isinstance(data, dict):
        nxt = data.get("next") or None
        if isinstance(data.get("results"), list):
            return data["results"], nxt
        if isinstance(data.get("events"), list):
            return data["events"], nxt
    logger.warning("Unexpected page format: %s", type(data).__name__)
    return [], None


class BarbClient:
    def __init__(
        self,
        email: Optional[str],
        password: Optional[str],
        base_url: str = BARB_BASE_URL,
        page_size: int = 100,
        max_pages: int = 500,
        max_retries: int = 3,
        timeout: int = 30,
        backoff: float = 1.0,
    ) -> None:
        self.email = email
        self.password = password
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.max_pages = max_pages
        self.max_retries = max_retries
        self.backoff = backoff
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "BarbClient":
        headers = {
            "Accept": "application/json",
            "User-Agent": "campaign-data/0.1",
        }
        self._session = aiohttp.ClientSession(headers=headers, timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def build_url(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
        url = endpoint if endpoint.startswith("http") else f"{self.base_url}{endpoint}"
        query = {k: str(v) for k, v in (params or {}).items() if v is not None and v != ""}
        if not query:
            return url
        sep = "&" if "?" in url else "?"
        return f"{url}{sep}{urlencode(query)}"

    async def _post_token(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        assert self._session is not None
        url = f"{self.base_url}{path}"
        try:
            async with self._session.post(url, json=payload) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise AuthenticationError(f"Auth failed: {resp.status} {resp.reason} - {text}")
                try:
                    data = await resp.json(content_type=None)
                except ValueError as exc:
                    raise TransportError(f"POST {url} returned invalid JSON", status=resp.status) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"POST {url} failed: {exc}") from exc
        if not isinstance(data, dict) or not data.get("access"):
            raise AuthenticationError("Auth response did not contain an access token")
        return data

    async def authenticate(self) -> str:
        if not self.email or not self.password:
            raise AuthenticationError("Missing BARB_EMAIL or BARB_PASSWORD")
        logger.info("Authenticating with BARB API as %s", self.email)
        data = await self._post_token("/auth/token/", {"email": self.email, "password": self.password})
        self.access_token = data["access"]
        self.refresh_token = data.get("refresh")
        return self.access_token

    async def refresh_access_token(self) -> str:
        if not self.refresh_token:
            return await self.authenticate()
        try:
            data = await self._post_token("/auth/token/refresh/", {"refresh": self.refresh_token})
        except AuthenticationError:
            logger.info("Token refresh rejected, authenticating again")
            return await self.authenticate()
        self.access_token = data["access"]
        return self.access_token

    async def _request_json(self, method: str, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        assert self._session is not None
        if not self.access_token:
            await self.authenticate()
        backoff = self.backoff
        attempt = 0
        reauthed = False
        while True:
            headers = {"Authorization": f"Bearer {self.access_token}"}
            failure: Optional[str] = None
            logger.debug("%s %s (attempt %d)", method, url, attempt + 1)
            try:
                async with self._session.request(method, url, params=params, headers=headers) as resp:
                    if resp.status == 401 and not reauthed:
                        reauthed = True
                        failure = "unauthorized"
                    elif resp.status in RETRY_STATUSES and attempt < self.max_retries:
                        failure = f"status {resp.status}"
                    elif resp.status >= 400:
                        text = await resp.text()
                        raise TransportError(
                            f"{method} {url} failed: {resp.status} {resp.reason} - {text}",
                            status=resp.status,
                        )
                    else:
                        try:
                            return await resp.json(content_type=None)
                        except ValueError as exc:
                            raise TransportError(f"{method} {url} returned invalid JSON", status=resp.status) from exc
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt >= self.max_retries:
                    raise TransportError(f"{method} {url} failed: {exc}") from exc
                failure = str(exc) or type(exc).__name__

            if failure == "unauthorized":
                await self.refresh_access_token()
                continue
            attempt += 1
            logger.warning("%s %s: %s, retry %d/%d in %.1fs", method, url, failure, attempt, self.max_retries, backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, 30)

    async def get_all(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> List[Any]:
        merged: Dict[str, Any] = {"page_size": self.page_size}
        merged.update(params or {})
        requested = int(merged["page_size"]) if merged.get("page_size") else None
        url: Optional[str] = self.build_url(endpoint, merged)
        items: List[Any] = []
        pages = 0
        while url:
            if pages >= self.max_pages:
                logger.warning("Reached page limit (%d) for %s, stopping", self.max_pages, endpoint)
                break
            data = await self._request_json("GET", url)
            pages += 1
            page_items, next_url = _split_page(data)
            items.extend(page_items)
            logger.info("Fetched page %d from %s: %d items (%d total)", pages, endpoint, len(page_items), len(items))
            if not page_items or (requested and len(page_items) < requested):
                break
            url = self.build_url(next_url) if next_url else None
        return items

    async def list_advertising_spots(self, date_from: str, date_to: Optional[str] = None, **filters: Any) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "min_transmission_date": date_from,
            "max_transmission_date": date_to or date_from,
        }
        params.update(filters)
        spots = await self.get_all("/advertising_spots/", params)
        return [s for s in spots if s is not None]

    async def list_advertisers(self) -> List[Dict[str, Any]]:
        return await self.get_all("/advertisers/")

    async def list_buyers(self) -> List[Dict[str, Any]]:
        return await self.get_all("/buyers/")

    async def list_stations(self) -> List[Dict[str, Any]]:
        return await self.get_all("/stations/")
