# battlesync/fetcher.py

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

LOGGER = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class FetchError(Exception):
    """A single request did not produce a response."""


class FetchTimeout(FetchError):
    """The request ran past its deadline and was cancelled."""


class FetchNetworkError(FetchError):
    """Connection-level failure (DNS, reset, TLS, ...)."""


class AuthenticationLost(Exception):
    """The portal redirected a request to its login page."""


@dataclass
class FetchResponse:
    url: str
    status: int
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.text)


class CredentialProvider:
    """Supplies the ambient session for every request. The default one is anonymous."""

    def cookies(self) -> Dict[str, str]:
        return {}

    def headers(self) -> Dict[str, str]:
        return {}


class StaticCredentials(CredentialProvider):
    def __init__(self, cookies: Optional[Dict[str, str]] = None, headers: Optional[Dict[str, str]] = None):
        self._cookies = dict(cookies or {})
        self._headers = dict(headers or {})

    def cookies(self) -> Dict[str, str]:
        return dict(self._cookies)

    def headers(self) -> Dict[str, str]:
        return dict(self._headers)


class StorageStateCredentials(CredentialProvider):
    """Cookies taken from a Playwright storage-state file (see battlesync.session)."""

    def __init__(self, path: str, domain: str = "streetfighter.com"):
        self.path = Path(path)
        self.domain = domain.lstrip(".")

    def cookies(self) -> Dict[str, str]:
        if not self.path.exists():
            LOGGER.warning("Storage state %s not found; requests will be anonymous", self.path)
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise RuntimeError(f"Failed to read storage state from {self.path}: {exc}")

        now = time.time()
        out: Dict[str, str] = {}
        for cookie in state.get("cookies", []):
            domain = str(cookie.get("domain", "")).lstrip(".")
            if not domain or not (domain == self.domain or domain.endswith("." + self.domain)
                                  or self.domain.endswith("." + domain)):
                continue
            expires = cookie.get("expires", -1)
            if isinstance(expires, (int, float)) and 0 < expires < now:
                continue
            name = cookie.get("name")
            if name:
                out[name] = str(cookie.get("value", ""))
        return out


class Pacer:
    """Randomised waits between requests."""

    def __init__(self, sleep: Optional[SleepFn] = None, rng: Optional[random.Random] = None):
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    def jitter_ms(self, low_ms: int, high_ms: int) -> int:
        if high_ms <= low_ms:
            return low_ms
        return self._rng.randint(low_ms, high_ms)

    async def pause(self, low_ms: int, high_ms: Optional[int] = None) -> int:
        delay = self.jitter_ms(low_ms, low_ms if high_ms is None else high_ms)
        await self._sleep(delay / 1000.0)
        return delay


class RateLimitedFetcher:
    """One request per call, each with its own deadline. No retries."""

    HEADERS = {
        "User-Agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36"
        ),
        "Accept": "text/html,application/json;q=0.9,*/*;q=0.8",
        "Accept-Language": "ja-JP,ja;q=0.9,en-US;q=0.8,en;q=0.7",
    }

    def __init__(
        self,
        credentials: Optional[CredentialProvider] = None,
        login_marker: str = "auth/login",
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.credentials = credentials or CredentialProvider()
        self.login_marker = login_marker
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "RateLimitedFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self.HEADERS,
                cookies=self.credentials.cookies(),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def is_login_redirect(self, response: FetchResponse) -> bool:
        return bool(self.login_marker) and self.login_marker in response.url

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        timeout_ms: int = 8000,
    ) -> FetchResponse:
        request_headers = dict(self.credentials.headers())
        if headers:
            request_headers.update(headers)
        timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000.0)

        LOGGER.debug("Fetch start: %s %s (timeout %sms)", method, url, timeout_ms)
        started = time.monotonic()
        try:
            async with self._get_session().request(
                method,
                url,
                headers=request_headers,
                json=json_body,
                timeout=timeout,
                allow_redirects=True,
            ) as resp:
                text = await resp.text(errors="replace")
                response = FetchResponse(
                    url=str(resp.url),
                    status=resp.status,
                    text=text,
                    headers={k: v for k, v in resp.headers.items()},
                )
        except asyncio.TimeoutError as exc:
            LOGGER.warning("Fetch aborted after %sms: %s", timeout_ms, url)
            raise FetchTimeout(f"{method} {url} exceeded {timeout_ms}ms") from exc
        except aiohttp.ClientError as exc:
            LOGGER.warning("Fetch failed: %s (%s)", url, exc)
            raise FetchNetworkError(f"{method} {url} failed: {exc}") from exc

        LOGGER.debug(
            "Fetch done: %s status=%s in %.0fms",
            url,
            response.status,
            (time.monotonic() - started) * 1000,
        )
        return response
