# tests/test_backfill.py

import asyncio

import pytest

from battlesync.backfill import ACT_END_DATES, ActHistoryBackfill, PlayDataService
from battlesync.fetcher import AuthenticationLost, FetchResponse
from battlesync.models import DAY_MS, LookupKind, RatingPoint, add_rating_point
from tests.helpers import (
    BASE,
    FakeFetcher,
    RecordingSleep,
    league_info,
    login_redirect,
    make_config,
    make_pacer,
    next_data_page,
    ok,
    ok_json,
    play_page,
    season_response,
    timeout,
)

SEASON_URL = f"{BASE}/api/profile/play/act/leagueinfo"
NOW = 1_800_000_000_000
SID = "1001"


def season(season_id, leagues):
    return (SEASON_URL, season_id), ok_json(SEASON_URL, season_response(leagues))


def make_backfill(fetcher, sleep=None, **config):
    return ActHistoryBackfill(fetcher, make_config(**config), make_pacer(sleep), clock=lambda: NOW)


class TestRatingPointDedup:
    def test_rejects_point_within_a_day(self):
        history = [RatingPoint(date=1_000_000_000, rating=1500)]

        assert add_rating_point(history, RatingPoint(date=1_000_000_000 + DAY_MS - 1, rating=1600)) is False
        assert len(history) == 1

    def test_accepts_point_a_full_day_apart(self):
        history = [RatingPoint(date=1_000_000_000, rating=1500)]

        assert add_rating_point(history, RatingPoint(date=1_000_000_000 + DAY_MS, rating=1600)) is True
        assert len(history) == 2


def test_backfill_queries_acts_in_ascending_order():
    routes = dict([
        season(2, [league_info("ryu", "Ryu", mr=1700)]),
        season(0, [league_info("ryu", "Ryu", lp=12000)]),
        season(1, [league_info("ryu", "Ryu", mr=1500)]),
    ])
    fetcher = FakeFetcher(routes)
    backfill = make_backfill(fetcher, season_ids=(2, 0, 1))

    points = asyncio.run(backfill.backfill(SID, "ryu"))

    assert [call["json_body"]["targetSeasonId"] for call in fetcher.calls] == [0, 1, 2]
    assert [p.rating for p in points] == [12000, 1500, 1700]
    assert [p.date for p in points] == [ACT_END_DATES[0], ACT_END_DATES[1], ACT_END_DATES[2]]


def test_season_request_shape():
    fetcher = FakeFetcher(dict([season(3, [league_info("ryu", "Ryu", mr=1600)])]))
    backfill = make_backfill(fetcher, season_ids=(3,))

    asyncio.run(backfill.backfill(SID, "ryu"))

    call = fetcher.calls[0]
    assert call["method"] == "POST"
    assert call["json_body"] == {"targetShortId": 1001, "targetSeasonId": 3, "targetModeId": 1, "lang": "ja-jp"}
    assert call["headers"]["Referer"] == f"{BASE}/profile/{SID}/play"
    assert call["timeout_ms"] == 100


def test_known_seasons_are_not_requested():
    routes = dict([season(s, [league_info("ryu", "Ryu", mr=1500 + s)]) for s in range(4)])
    fetcher = FakeFetcher(routes)
    backfill = make_backfill(fetcher, season_ids=(0, 1, 2, 3))

    result = asyncio.run(backfill.backfill_detailed(SID, "ryu", known_season_ids={0, 2}))

    assert [call["json_body"]["targetSeasonId"] for call in fetcher.calls] == [1, 3]
    assert result.skipped == [0, 2]
    assert sorted(result.seasons) == [1, 3]


def test_failed_season_does_not_stop_the_rest():
    routes = dict([
        season(0, [league_info("ryu", "Ryu", mr=1400)]),
        season(2, [league_info("ryu", "Ryu", mr=1600)]),
    ])
    routes[(SEASON_URL, 1)] = timeout()
    routes[(SEASON_URL, 3)] = login_redirect()
    fetcher = FakeFetcher(routes)
    backfill = make_backfill(fetcher, season_ids=(0, 1, 2, 3, 4))

    result = asyncio.run(backfill.backfill_detailed(SID, "ryu"))

    assert [p.rating for p in result.points] == [1400, 1600]
    assert result.failed == [1, 3, 4]
    assert len(fetcher.calls) == 5


def test_empty_season_is_not_a_failure():
    fetcher = FakeFetcher(dict([season(0, [league_info("ryu", "Ryu", is_played=False)])]))
    backfill = make_backfill(fetcher, season_ids=(0,))

    lookup = asyncio.run(backfill.fetch_season(SID, 0))
    result = asyncio.run(backfill.backfill_detailed(SID, "ryu"))

    assert lookup.kind is LookupKind.EMPTY
    assert result.failed == []
    assert result.points == []


def test_non_json_season_response_fails():
    routes = {(SEASON_URL, 0): FetchResponse(url=SEASON_URL, status=200, text="<html>")}
    backfill = make_backfill(FakeFetcher(routes), season_ids=(0,))

    lookup = asyncio.run(backfill.fetch_season(SID, 0))

    assert lookup.kind is LookupKind.FAILED


def test_current_point_blocks_duplicate_window():
    act_end = ACT_END_DATES[5]
    fetcher = FakeFetcher(dict([season(5, [league_info("ryu", "Ryu", mr=1800)])]))
    backfill = make_backfill(fetcher, season_ids=(5,))

    points = asyncio.run(backfill.backfill(
        SID, "ryu", current_points=[RatingPoint(date=act_end + 3600_000, rating=1750)]
    ))

    assert points == [RatingPoint(date=act_end + 3600_000, rating=1750)]


def test_pause_after_each_season_call():
    sleep = RecordingSleep()
    routes = dict([season(s, [league_info("ryu", "Ryu", mr=1500)]) for s in range(3)])
    backfill = make_backfill(FakeFetcher(routes), sleep=sleep, season_ids=(0, 1, 2))

    asyncio.run(backfill.backfill(SID, "ryu", known_season_ids={1}))

    assert len(sleep.calls) == 2


class TestPlayDataService:
    def _service(self, routes, **config):
        fetcher = FakeFetcher(routes)
        cfg = make_config(**config)
        backfill = ActHistoryBackfill(fetcher, cfg, make_pacer(), clock=lambda: NOW)
        return fetcher, PlayDataService(fetcher, cfg, backfill, clock=lambda: NOW)

    def test_history_backfills_most_played_character(self):
        play_url = f"{BASE}/profile/{SID}/play"
        routes = dict([
            season(0, [league_info("ken", "Ken", mr=1300), league_info("ryu", "Ryu", mr=1450)]),
        ])
        routes[play_url] = ok(play_url, play_page([
            league_info("ryu", "Ryu", mr=1600, battle_count=40),
            league_info("ken", "Ken", mr=1500, battle_count=300),
        ]))
        fetcher, service = self._service(routes, season_ids=(0,))

        history = asyncio.run(service.fetch_history(SID))

        assert history.main_character == "ken"
        assert history.points["ken"] == [
            RatingPoint(date=NOW, rating=1500),
            RatingPoint(date=ACT_END_DATES[0], rating=1300),
        ]
        assert history.points["ryu"] == [RatingPoint(date=NOW, rating=1600)]
        assert 0 in history.seasons

    def test_history_without_play_page_is_empty(self):
        fetcher, service = self._service({}, season_ids=(0,))

        history = asyncio.run(service.fetch_history(SID))

        assert history.points == {}
        assert len(fetcher.calls) == 1

    def test_profile_parsed_from_banner(self):
        url = f"{BASE}/profile/{SID}"
        banner = {
            "fighter_banner_info": {
                "personal_info": {"fighter_id": "Daigo", "short_id": 1001},
                "favorite_character_tool_name": "ryu",
                "favorite_character_name": "Ryu",
            }
        }
        fetcher, service = self._service({url: ok(url, next_data_page(banner))})

        lookup = asyncio.run(service.fetch_profile(SID))

        assert lookup.is_ok
        assert lookup.value.fighter_name == "Daigo"
        assert lookup.value.favorite_character_name == "Ryu"

    def test_login_redirect_on_play_page_raises(self):
        play_url = f"{BASE}/profile/{SID}/play"
        fetcher, service = self._service({play_url: login_redirect()})

        with pytest.raises(AuthenticationLost):
            asyncio.run(service.fetch_history(SID))
