# tests/helpers.py

import json
from typing import Callable, Dict, List, Optional, Union

from battlesync.config import PacingProfile, SyncConfig
from battlesync.fetcher import FetchResponse, FetchTimeout, Pacer

BASE = "https://example.test/6/buckler"

NO_DELAY = PacingProfile(
    name="test",
    page_delay_ms=(0, 0),
    season_delay_ms=(0, 0),
    season_timeout_ms=100,
)


def make_config(**overrides) -> SyncConfig:
    values = {"base_url": BASE, "pacing": NO_DELAY}
    values.update(overrides)
    return SyncConfig(**values)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays and returns at once."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_pacer(sleep: Optional[RecordingSleep] = None) -> Pacer:
    return Pacer(sleep=sleep or RecordingSleep())


Route = Union[FetchResponse, Exception, Callable[[dict], FetchResponse]]


class FakeFetcher:
    """
    Serves canned responses keyed by URL.

    A route may be a FetchResponse, an exception instance to raise, or a
    callable receiving the request kwargs. Unrouted URLs return HTTP 404.
    POST routes are keyed by (url, targetSeasonId) when a season body is sent.
    """

    def __init__(self, routes: Optional[Dict] = None, login_marker: str = "auth/login"):
        self.routes: Dict = dict(routes or {})
        self.login_marker = login_marker
        self.calls: List[dict] = []

    def is_login_redirect(self, response: FetchResponse) -> bool:
        return self.login_marker in response.url

    async def fetch(self, url, *, method="GET", headers=None, json_body=None, timeout_ms=8000):
        request = {
            "url": url,
            "method": method,
            "headers": headers or {},
            "json_body": json_body,
            "timeout_ms": timeout_ms,
        }
        self.calls.append(request)

        key = url
        if isinstance(json_body, dict) and "targetSeasonId" in json_body:
            key = (url, json_body["targetSeasonId"])
        route = self.routes.get(key)
        if route is None:
            return FetchResponse(url=url, status=404, text="")
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(request)
        return route

    async def close(self):
        pass

    def urls(self) -> List[str]:
        return [call["url"] for call in self.calls]


def ok(url: str, text: str) -> FetchResponse:
    return FetchResponse(url=url, status=200, text=text)


def ok_json(url: str, payload) -> FetchResponse:
    return FetchResponse(url=url, status=200, text=json.dumps(payload))


def login_redirect() -> FetchResponse:
    return FetchResponse(url="https://cid.capcom.com/ja/auth/login?redirect=x", status=200, text="<html></html>")


def timeout() -> FetchTimeout:
    return FetchTimeout("deadline exceeded")


# --- page builders ---

def replay_entry(replay_id: str, p1_id: str = "1001", p2_id: str = "2002",
                 p1_rounds=(1, 1), p2_rounds=(0, 0), uploaded_at: int = 1_700_000_000) -> dict:
    return {
        "replay_id": replay_id,
        "uploaded_at": uploaded_at,
        "player1_info": {
            "player": {"fighter_id": f"Fighter{p1_id}", "short_id": int(p1_id)},
            "playing_character_name": "Ryu",
            "battle_input_type_name": "Classic",
            "master_rating": 1650,
            "league_point": 25000,
            "round_results": list(p1_rounds),
        },
        "player2_info": {
            "player": {"fighter_id": f"Fighter{p2_id}", "short_id": int(p2_id)},
            "playing_character_name": "Ken",
            "battle_input_type_name": "Modern",
            "master_rating": 0,
            "league_point": 18000,
            "round_results": list(p2_rounds),
        },
    }


def battlelog_page(replay_ids: List[str], **entry_kwargs) -> str:
    entries = [replay_entry(rid, **entry_kwargs) for rid in replay_ids]
    payload = {"props": {"pageProps": {"replay_list": entries}}}
    return (
        '<html><body><script id="__NEXT_DATA__" type="application/json">'
        + json.dumps(payload)
        + "</script></body></html>"
    )


def next_data_page(page_props: dict) -> str:
    payload = {"props": {"pageProps": page_props}}
    return (
        '<html><body><script id="__NEXT_DATA__" type="application/json">'
        + json.dumps(payload)
        + "</script></body></html>"
    )


def landing_page(short_id: Optional[str]) -> str:
    header = {"authenticator_info": {"short_id": int(short_id)}} if short_id else {}
    return next_data_page({"componentProps": {"header": header}})


def league_info(character_id: str, name: str, mr: int = 0, lp: int = 0,
                battle_count: int = 10, is_played: bool = True) -> dict:
    return {
        "character_id": character_id,
        "character_name": name,
        "battle_count": battle_count,
        "is_played": is_played,
        "league_info": {
            "league_point": lp,
            "master_rating": mr,
            "league_rank": 36,
            "master_rating_ranking": 5000,
        },
    }


def play_page(leagues: List[dict], battle_stats: Optional[dict] = None) -> str:
    play = {"character_league_infos": leagues}
    if battle_stats is not None:
        play["battle_stats"] = battle_stats
    return next_data_page({"play": play})


def season_response(leagues: List[dict]) -> dict:
    return {"response": {"character_league_infos": leagues}}
