"""
Tests for OddsOrchestrator: sharp filtering, pricing, caching and key retry
Run with: pytest tests/test_orchestrator.py -v
"""

from unittest.mock import MagicMock

import pytest

from backend.services.key_pool import KeyPool, PoolExhausted
from backend.services.odds import UpstreamError, UpstreamUnavailable
from backend.services.orchestrator import (
    OddsOrchestrator,
    build_match_odds,
    canonical_bookmaker,
    select_sharp_bookmakers,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


KEYS = ["key-aaaaaaaa-1", "key-bbbbbbbb-2", "key-cccccccc-3"]


def _h2h(home, draw, away):
    return {"key": "h2h", "outcomes": [
        {"name": "Arsenal", "price": home},
        {"name": "Draw", "price": draw},
        {"name": "Chelsea", "price": away},
    ]}


def _totals(point, over, under):
    return {"key": "totals", "outcomes": [
        {"name": "Over", "price": over, "point": point},
        {"name": "Under", "price": under, "point": point},
    ]}


def _event(event_id="evt1", bookmakers=None):
    return {
        "id": event_id,
        "sport_key": "soccer_epl",
        "sport_title": "EPL",
        "home_team": "Arsenal",
        "away_team": "Chelsea",
        "commence_time": "2030-01-01T15:00:00Z",
        "bookmakers": bookmakers if bookmakers is not None else [
            {"key": "pinnacle", "title": "Pinnacle", "markets": [_h2h(2.00, 3.40, 4.00), _totals(2.5, 1.90, 1.90)]},
            {"key": "smarkets", "title": "Smarkets", "markets": [_h2h(1.95, 3.50, 4.10)]},
            {"key": "williamhill", "title": "William Hill", "markets": [_h2h(5.0, 5.0, 5.0)]},
        ],
    }


def _response(status_code=200, body=None, headers=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.headers = headers or {}
    resp.json.return_value = body
    resp.text = ""
    return resp


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def orchestrator(client, clock):
    pool = KeyPool(list(KEYS), clock=clock)
    return OddsOrchestrator(pool, client=client, odds_ttl_sec=300, clock=clock)


# ---------------------------------------------------------------------------
# Sharp market isolation
# ---------------------------------------------------------------------------

class TestSharpFiltering:

    def test_canonical_betfair(self):
        assert canonical_bookmaker("betfair_ex_uk") == "betfair"
        assert canonical_bookmaker("Betfair_Ex_EU") == "betfair"
        assert canonical_bookmaker("pinnacle") == "pinnacle"

    def test_non_sharp_dropped(self):
        kept = select_sharp_bookmakers([{"key": "pinnacle"}, {"key": "williamhill"}, {"key": "draftkings"}])
        assert [b["key"] for b in kept] == ["pinnacle"]

    def test_first_betfair_variant_wins(self):
        kept = select_sharp_bookmakers([
            {"key": "betfair_ex_uk", "title": "UK"},
            {"key": "pinnacle"},
            {"key": "betfair_ex_eu", "title": "EU"},
        ])
        assert [b["key"] for b in kept] == ["betfair_ex_uk", "pinnacle"]

    def test_betfair_counted_once_in_consensus(self):
        event = _event(bookmakers=[
            {"key": "betfair_ex_eu", "title": "Betfair EU", "markets": [_h2h(2.10, 3.40, 4.00)]},
            {"key": "betfair_ex_uk", "title": "Betfair UK", "markets": [_h2h(2.12, 3.40, 4.00)]},
            {"key": "pinnacle", "title": "Pinnacle", "markets": [_h2h(2.00, 3.40, 4.00)]},
        ])
        match = build_match_odds(event, fetched_at=MagicMock())
        snap = match.market("h2h")

        assert snap.consensus_count == 2
        assert snap.consensus_by_outcome["home"] == pytest.approx(2.05)
        assert [b.key for b in snap.bookmakers] == ["betfair_ex_eu", "pinnacle"]


# ---------------------------------------------------------------------------
# Snapshot pricing
# ---------------------------------------------------------------------------

class TestBuildMatchOdds:

    def test_h2h_snapshot(self):
        match = build_match_odds(_event(), fetched_at=MagicMock())
        snap = match.market("h2h")

        assert snap.outcomes == ("home", "draw", "away")
        assert snap.best_by_outcome["home"].bookmaker_key == "pinnacle"
        assert snap.best_by_outcome["away"].price == 4.10
        assert snap.consensus_by_outcome["home"] == pytest.approx(1.975)
        assert snap.consensus_count == 2
        assert sum(1 / p for p in snap.fair_by_outcome.values()) == pytest.approx(1.0)
        assert snap.line_for("pinnacle").margin_pct == pytest.approx(4.41, abs=0.01)
        assert snap.line_for("williamhill") is None

    def test_totals_split_by_line(self):
        event = _event(bookmakers=[
            {"key": "pinnacle", "title": "Pinnacle", "markets": [_totals(3.5, 2.5, 1.55), _totals(2.5, 1.90, 1.90)]},
        ])
        match = build_match_odds(event, fetched_at=MagicMock())
        assert [(m.market, m.point) for m in match.markets] == [("totals", 2.5), ("totals", 3.5)]
        fair = match.market("totals", 2.5).fair_by_outcome
        assert fair == pytest.approx({"over": 2.0, "under": 2.0})

    def test_two_way_h2h_without_draw(self):
        event = _event(bookmakers=[
            {"key": "pinnacle", "title": "Pinnacle", "markets": [{"key": "h2h", "outcomes": [
                {"name": "Arsenal", "price": 1.90}, {"name": "Chelsea", "price": 1.90},
            ]}]},
        ])
        snap = build_match_odds(event, fetched_at=MagicMock()).market("h2h")
        assert snap.outcomes == ("home", "away")
        assert snap.consensus_count == 1

    def test_incomplete_bookmaker_has_no_margin_or_fair(self):
        event = _event(bookmakers=[
            {"key": "pinnacle", "title": "Pinnacle", "markets": [_h2h(2.00, 3.40, 4.00)]},
            {"key": "matchbook", "title": "Matchbook", "markets": [{"key": "h2h", "outcomes": [
                {"name": "Arsenal", "price": 2.20},
            ]}]},
        ])
        snap = build_match_odds(event, fetched_at=MagicMock()).market("h2h")
        line = snap.line_for("matchbook")
        assert line.margin_pct is None
        assert line.fair_prices is None
        assert snap.best_by_outcome["home"].bookmaker_key == "matchbook"

    def test_no_sharp_bookmakers(self):
        match = build_match_odds(_event(bookmakers=[{"key": "williamhill", "markets": [_h2h(2, 3, 4)]}]), MagicMock())
        assert match.markets == []

    def test_null_bookmakers_give_empty_snapshot(self):
        event = _event()
        event["bookmakers"] = None
        match = build_match_odds(event, fetched_at=MagicMock())
        assert match.markets == []
        assert match.home_team == "Arsenal"

    def test_null_markets_and_outcomes_are_skipped(self):
        event = _event(bookmakers=[
            {"key": "pinnacle", "title": "Pinnacle", "markets": None},
            {"key": "smarkets", "title": "Smarkets", "markets": [{"key": "h2h", "outcomes": None}]},
            {"key": "matchbook", "title": "Matchbook", "markets": [_h2h(2.10, 3.30, 3.90)]},
        ])
        snap = build_match_odds(event, fetched_at=MagicMock()).market("h2h")
        assert [b.key for b in snap.bookmakers] == ["matchbook"]

    def test_fair_probabilities_from_consensus(self):
        snap = build_match_odds(_event(), fetched_at=MagicMock()).market("h2h")
        assert sum(snap.fair_probability_by_outcome.values()) == pytest.approx(1.0)
        for o, p in snap.fair_by_outcome.items():
            assert snap.fair_probability_by_outcome[o] == pytest.approx(1 / p)


# ---------------------------------------------------------------------------
# Caching
# ---------------------------------------------------------------------------

class TestCaching:

    def test_second_call_served_from_cache(self, orchestrator, client):
        client.get.return_value = _response(body=_event())

        first = orchestrator.fetch_match_odds("soccer_epl", "evt1")
        second = orchestrator.fetch_match_odds("soccer_epl", "evt1")

        assert client.get.call_count == 1
        assert first.cached is False
        assert second.cached is True
        assert second.last_update == first.last_update

    def test_force_refresh_bypasses_cache(self, orchestrator, client):
        client.get.return_value = _response(body=_event())
        orchestrator.fetch_match_odds("soccer_epl", "evt1")
        refreshed = orchestrator.fetch_match_odds("soccer_epl", "evt1", force_refresh=True)
        assert client.get.call_count == 2
        assert refreshed.cached is False

    def test_ttl_expiry(self, orchestrator, client, clock):
        client.get.return_value = _response(body=_event())
        orchestrator.fetch_match_odds("soccer_epl", "evt1")
        clock.now += 299
        orchestrator.fetch_match_odds("soccer_epl", "evt1")
        assert client.get.call_count == 1
        clock.now += 1
        orchestrator.fetch_match_odds("soccer_epl", "evt1")
        assert client.get.call_count == 2

    def test_match_request_params(self, orchestrator, client):
        client.get.return_value = _response(body=_event())
        orchestrator.fetch_match_odds("soccer_epl", "evt1")
        path, key, params = client.get.call_args[0]
        assert path == "/sports/soccer_epl/events/evt1/odds"
        assert key == KEYS[0]
        assert params["regions"] == "us,us_ex,uk,eu,au"
        assert params["markets"] == "h2h,totals"
        assert params["oddsFormat"] == "decimal"

    def test_league_fetch_is_one_call(self, orchestrator, client):
        client.get.return_value = _response(body=[_event("e1"), _event("e2"), _event("e3")])

        league = orchestrator.fetch_league_odds("soccer_epl")

        assert client.get.call_count == 1
        assert set(league) == {"e1", "e2", "e3"}
        path, _, params = client.get.call_args[0]
        assert path == "/sports/soccer_epl/odds/"
        assert "regions" not in params
        assert params["includeBetLimits"] == "true"
        assert "pinnacle" in params["bookmakers"]

    def test_lookup_uses_league_cache(self, orchestrator, client):
        client.get.return_value = _response(body=[_event("e1")])
        orchestrator.fetch_league_odds("soccer_epl")

        match = orchestrator.lookup_match_odds("soccer_epl", "e1")

        assert client.get.call_count == 1
        assert match.cached is True
        assert match.event_id == "e1"

    def test_lookup_fetches_on_miss(self, orchestrator, client):
        client.get.return_value = _response(body=_event("e9"))
        match = orchestrator.lookup_match_odds("soccer_epl", "e9")
        assert client.get.call_count == 1
        assert match.cached is False

    def test_sports_filtered_to_soccer(self, orchestrator, client):
        client.get.return_value = _response(body=[
            {"key": "soccer_epl", "group": "Soccer"},
            {"key": "basketball_nba", "group": "Basketball"},
        ])
        assert [s["key"] for s in orchestrator.list_sports()] == ["soccer_epl"]
        orchestrator.list_sports()
        assert client.get.call_count == 1


# ---------------------------------------------------------------------------
# Key retry and failures
# ---------------------------------------------------------------------------

class TestFailures:

    def test_429_moves_to_next_key(self, orchestrator, client):
        client.get.side_effect = [
            _response(429, {"message": "rate limited"}),
            _response(200, _event(), {"x-requests-remaining": "99"}),
        ]

        match = orchestrator.fetch_match_odds("soccer_epl", "evt1")

        assert match.event_id == "evt1"
        used_keys = [c[0][1] for c in client.get.call_args_list]
        assert used_keys == [KEYS[0], KEYS[1]]
        status = orchestrator.key_status()
        assert status["blocked_keys"] == 1
        assert status["total_remaining"] == 99

    def test_401_exhausts_and_retries(self, orchestrator, client):
        client.get.side_effect = [
            _response(401, {"message": "quota"}),
            _response(200, _event()),
        ]
        orchestrator.fetch_match_odds("soccer_epl", "evt1")
        assert orchestrator.key_status()["exhausted_keys"] == 1

    def test_all_keys_refused(self, orchestrator, client):
        client.get.return_value = _response(401, {"message": "quota"})
        with pytest.raises(PoolExhausted):
            orchestrator.fetch_match_odds("soccer_epl", "evt1")
        assert client.get.call_count == len(KEYS)

        with pytest.raises(PoolExhausted):
            orchestrator.fetch_match_odds("soccer_epl", "evt1")
        assert client.get.call_count == len(KEYS)

    def test_other_upstream_error_raised_without_retry(self, orchestrator, client):
        client.get.return_value = _response(422, {"message": "Invalid event"})
        with pytest.raises(UpstreamError) as exc_info:
            orchestrator.fetch_match_odds("soccer_epl", "evt1")
        assert exc_info.value.status_code == 422
        assert client.get.call_count == 1

    def test_timeout_reported_without_rotation(self, orchestrator, client):
        client.get.side_effect = UpstreamUnavailable()
        with pytest.raises(UpstreamUnavailable):
            orchestrator.fetch_match_odds("soccer_epl", "evt1")
        assert orchestrator.key_pool.cursor == 0
        assert orchestrator.key_status()["keys"][0]["errors"] == 1

    def test_invalid_json_is_bad_gateway(self, orchestrator, client):
        resp = _response(200)
        resp.json.side_effect = ValueError("bad json")
        client.get.return_value = resp
        with pytest.raises(UpstreamError) as exc_info:
            orchestrator.list_events("soccer_epl")
        assert exc_info.value.status_code == 502

    def test_cached_response_needs_no_key(self, orchestrator, client):
        client.get.return_value = _response(body=_event())
        orchestrator.fetch_match_odds("soccer_epl", "evt1")
        for key in KEYS:
            orchestrator.key_pool.report(key, 401, {})
        assert orchestrator.fetch_match_odds("soccer_epl", "evt1").cached is True


class TestSerialisation:

    def test_to_dict_rounds_for_display(self, orchestrator, client):
        client.get.return_value = _response(body=_event())
        data = orchestrator.fetch_match_odds("soccer_epl", "evt1").to_dict()

        h2h = data["markets"][0]
        assert h2h["market"] == "h2h"
        assert h2h["consensus"]["home"] == 1.975
        assert h2h["consensus"]["bookmaker_count"] == 2
        assert h2h["best"]["draw"] == {"price": 3.5, "bookmaker": "smarkets", "title": "Smarkets"}
        assert sum(h2h["fair_probability"].values()) == pytest.approx(1.0, abs=1e-3)
        assert data["id"] == "evt1"
        assert data["cached"] is False
        assert data["last_update"].endswith("+00:00")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
