# tests/test_identity.py

import asyncio

from battlesync.fetcher import FetchNetworkError
from battlesync.identity import IdentityResolver, token_from_landing
from tests.helpers import (
    BASE,
    FakeFetcher,
    landing_page,
    login_redirect,
    make_config,
    ok,
    ok_json,
    timeout,
)

LANDING = f"{BASE}/top"
USER_INFO = f"{BASE}/api/user/info"


def resolve(fetcher, hint=None, resolver=None):
    resolver = resolver or IdentityResolver(fetcher, make_config())
    return asyncio.run(resolver.resolve_subject_id(hint))


def test_token_from_landing_payload():
    assert token_from_landing(landing_page("3141592653")) == "3141592653"
    assert token_from_landing(landing_page(None)) is None
    assert token_from_landing("") is None


def test_landing_token_wins():
    fetcher = FakeFetcher({
        LANDING: ok(LANDING, landing_page("1234567890")),
        USER_INFO: ok_json(USER_INFO, {"sid": 999}),
    })

    assert resolve(fetcher) == "1234567890"
    assert fetcher.urls() == [LANDING]


def test_landing_timeout_falls_back_to_api():
    fetcher = FakeFetcher({
        LANDING: timeout(),
        USER_INFO: ok_json(USER_INFO, {"sid": 987654321}),
    })

    assert resolve(fetcher) == "987654321"
    assert fetcher.urls() == [LANDING, USER_INFO]


def test_each_lookup_step_gets_its_own_deadline():
    config = make_config(landing_timeout_ms=5000, identity_api_timeout_ms=3000)
    fetcher = FakeFetcher({LANDING: timeout(), USER_INFO: ok_json(USER_INFO, {"sid": 1})})

    resolve(fetcher, resolver=IdentityResolver(fetcher, config))

    assert [call["timeout_ms"] for call in fetcher.calls] == [5000, 3000]


def test_profile_link_is_last_resort():
    html = '<html><a href="/6/buckler/profile/5550001">My page</a></html>'
    fetcher = FakeFetcher({
        LANDING: ok(LANDING, html),
        USER_INFO: FetchNetworkError("reset"),
    })

    assert resolve(fetcher) == "5550001"


def test_login_redirect_means_unresolved():
    fetcher = FakeFetcher({LANDING: login_redirect(), USER_INFO: login_redirect()})

    assert resolve(fetcher) is None


def test_hint_skips_network_and_is_not_memoized():
    fetcher = FakeFetcher({LANDING: ok(LANDING, landing_page("111"))})
    resolver = IdentityResolver(fetcher, make_config())

    assert asyncio.run(resolver.resolve_subject_id("222")) == "222"
    assert fetcher.calls == []
    assert resolver.cached_id is None


def test_resolved_id_is_cached_until_forgotten():
    fetcher = FakeFetcher({LANDING: ok(LANDING, landing_page("111"))})
    resolver = IdentityResolver(fetcher, make_config())

    assert asyncio.run(resolver.resolve_subject_id()) == "111"
    assert asyncio.run(resolver.resolve_subject_id()) == "111"
    assert len(fetcher.calls) == 1

    resolver.forget()
    asyncio.run(resolver.resolve_subject_id())
    assert len(fetcher.calls) == 2
