# battlesync/identity.py

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from battlesync.config import SyncConfig
from battlesync.extractors import extract_next_data, find_profile_link_id, page_props
from battlesync.fetcher import FetchError, RateLimitedFetcher

LOGGER = logging.getLogger(__name__)


def token_from_landing(html: Optional[str]) -> Optional[str]:
    """Short id of the logged-in user from a page's header payload."""
    if not html:
        return None
    props = page_props(extract_next_data(html))
    header = (props.get("componentProps") or {}).get("header") or {}
    short_id = (header.get("authenticator_info") or {}).get("short_id")
    return str(short_id) if short_id else None


class IdentityResolver:
    """
    Work out the logged-in player's short id.

    Resolution order, first success wins:
      1. an explicit hint from the caller
      2. the id resolved earlier in this process
      3. the token embedded in the landing page payload
      4. the user info API
      5. a profile link found in the landing page markup

    Each network step has its own deadline so a slow landing page still
    leaves room for the API lookup. Returns None when nothing works.
    """

    def __init__(self, fetcher: RateLimitedFetcher, config: Optional[SyncConfig] = None,
                 cached_id: Optional[str] = None):
        self.fetcher = fetcher
        self.config = config or SyncConfig()
        self._cached_id = str(cached_id) if cached_id else None
        self._lock = asyncio.Lock()

    @property
    def cached_id(self) -> Optional[str]:
        return self._cached_id

    def forget(self) -> None:
        self._cached_id = None

    async def resolve_subject_id(self, hint: Optional[str] = None) -> Optional[str]:
        if hint:
            return str(hint)
        if self._cached_id:
            return self._cached_id

        async with self._lock:
            if self._cached_id:
                return self._cached_id

            landing_html = await self._fetch_landing()
            short_id = token_from_landing(landing_html)
            if short_id:
                LOGGER.debug("Identity taken from landing page payload")
            else:
                short_id = await self._lookup_api()
            if not short_id and landing_html:
                short_id = find_profile_link_id(landing_html)
                if short_id:
                    LOGGER.debug("Identity taken from landing page profile link")

            if short_id:
                self._cached_id = short_id
                LOGGER.info("Resolved subject id %s", short_id)
            else:
                LOGGER.warning("Could not resolve subject id; login to the portal first")
            return short_id

    async def _fetch_landing(self) -> Optional[str]:
        url = f"{self.config.base_url}/top"
        try:
            response = await self.fetcher.fetch(url, timeout_ms=self.config.landing_timeout_ms)
        except FetchError as exc:
            LOGGER.warning("Landing page unavailable: %s", exc)
            return None
        if not response.ok or self.fetcher.is_login_redirect(response):
            LOGGER.debug("Landing page unusable (status=%s url=%s)", response.status, response.url)
            return None
        return response.text

    async def _lookup_api(self) -> Optional[str]:
        url = f"{self.config.base_url}/api/user/info"
        try:
            response = await self.fetcher.fetch(url, timeout_ms=self.config.identity_api_timeout_ms)
        except FetchError as exc:
            LOGGER.warning("User info API unavailable: %s", exc)
            return None
        if not response.ok or self.fetcher.is_login_redirect(response):
            return None
        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError):
            return None
        sid = payload.get("sid") if isinstance(payload, dict) else None
        if sid:
            LOGGER.debug("Identity taken from user info API")
        return str(sid) if sid else None
