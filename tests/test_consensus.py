"""Tests for consensus.py — best price, consensus price and margins."""

import pytest

from backend.core.consensus import Quote, group_by_bookmaker, price


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

OUTCOMES_1X2 = ("home", "draw", "away")


def _quotes(book, title=None, market="h2h", **prices):
    return [
        Quote(book, title or book.capitalize(), market, outcome, p)
        for outcome, p in prices.items()
    ]


def _pinnacle_smarkets():
    return (
        _quotes("pinnacle", home=2.00, draw=3.40, away=4.00)
        + _quotes("smarkets", home=1.95, draw=3.50, away=4.10)
    )


# ---------------------------------------------------------------------------
# Two complete bookmakers
# ---------------------------------------------------------------------------

class TestTwoBookmakers:

    def test_margins(self):
        result = price(_pinnacle_smarkets(), OUTCOMES_1X2)
        assert result.margin_by_bookmaker["pinnacle"] == pytest.approx(4.41, abs=0.01)
        assert result.margin_by_bookmaker["smarkets"] == pytest.approx(4.24, abs=0.01)

    def test_best_prices(self):
        best = price(_pinnacle_smarkets(), OUTCOMES_1X2).best_by_outcome
        assert (best["home"].price, best["home"].bookmaker_key) == (2.00, "pinnacle")
        assert (best["draw"].price, best["draw"].bookmaker_key) == (3.50, "smarkets")
        assert (best["away"].price, best["away"].bookmaker_key) == (4.10, "smarkets")
        assert best["home"].bookmaker_title == "Pinnacle"

    def test_consensus(self):
        result = price(_pinnacle_smarkets(), OUTCOMES_1X2)
        assert result.consensus_by_outcome["home"] == pytest.approx(1.975)
        assert result.consensus_by_outcome["draw"] == pytest.approx(3.45)
        assert result.consensus_by_outcome["away"] == pytest.approx(4.05)
        assert result.bookmaker_count == 2

    def test_consensus_margin(self):
        result = price(_pinnacle_smarkets(), OUTCOMES_1X2)
        expected = (1 / 1.975 + 1 / 3.45 + 1 / 4.05 - 1) * 100
        assert result.consensus_margin_pct == pytest.approx(expected)

    def test_consensus_is_not_rounded(self):
        quotes = _quotes("a", home=2.0001, away=2.0) + _quotes("b", home=2.0, away=2.0)
        result = price(quotes, ("home", "away"))
        assert result.consensus_by_outcome["home"] == pytest.approx(2.00005, abs=1e-12)


# ---------------------------------------------------------------------------
# Incomplete bookmakers
# ---------------------------------------------------------------------------

class TestIncompleteBookmakers:

    def test_incomplete_book_counts_for_best_only(self):
        quotes = _pinnacle_smarkets() + _quotes("matchbook", home=2.20, away=4.50)
        result = price(quotes, OUTCOMES_1X2)

        assert result.best_by_outcome["home"].bookmaker_key == "matchbook"
        assert result.best_by_outcome["away"].price == 4.50
        assert "matchbook" not in result.margin_by_bookmaker
        assert result.bookmaker_count == 2
        assert result.consensus_by_outcome["home"] == pytest.approx(1.975)

    def test_no_complete_bookmaker(self):
        quotes = _quotes("matchbook", home=2.20, away=4.50)
        result = price(quotes, OUTCOMES_1X2)

        assert result.bookmaker_count == 0
        assert result.consensus_by_outcome == {"home": None, "draw": None, "away": None}
        assert result.margin_by_bookmaker == {}
        assert result.consensus_margin_pct is None
        assert result.best_by_outcome["home"].price == 2.20

    def test_no_quotes(self):
        result = price([], OUTCOMES_1X2)
        assert result.bookmaker_count == 0
        assert result.best_by_outcome == {}
        assert all(v is None for v in result.consensus_by_outcome.values())


# ---------------------------------------------------------------------------
# Single bookmaker, ties, duplicates
# ---------------------------------------------------------------------------

class TestEdgeCases:

    def test_single_bookmaker_consensus_is_its_price(self):
        quotes = _quotes("pinnacle", home=2.00, draw=3.40, away=4.00)
        result = price(quotes, OUTCOMES_1X2)

        assert result.consensus_by_outcome == pytest.approx({"home": 2.00, "draw": 3.40, "away": 4.00})
        assert result.bookmaker_count == 1
        assert result.consensus_margin_pct == pytest.approx(result.margin_by_bookmaker["pinnacle"])

    def test_tie_goes_to_first_seen(self):
        quotes = _quotes("smarkets", over=1.95, under=1.90) + _quotes("pinnacle", over=1.95, under=1.92)
        best = price(quotes, ("over", "under")).best_by_outcome
        assert best["over"].bookmaker_key == "smarkets"
        assert best["under"].bookmaker_key == "pinnacle"

    def test_duplicate_quote_keeps_first(self):
        quotes = _quotes("pinnacle", over=1.90, under=1.90) + _quotes("pinnacle", over=5.0)
        grouped = group_by_bookmaker(quotes)
        assert grouped["pinnacle"]["over"].price == 1.90

        result = price(quotes, ("over", "under"))
        assert result.consensus_by_outcome["over"] == pytest.approx(1.90)
        assert result.best_by_outcome["over"].price == 1.90

    def test_repeated_quote_cannot_steal_best_price(self):
        quotes = (
            _quotes("smarkets", over=1.95, under=1.90)
            + _quotes("pinnacle", over=1.92, under=1.92)
            + _quotes("pinnacle", over=2.40)
        )
        best = price(quotes, ("over", "under")).best_by_outcome
        assert best["over"].bookmaker_key == "smarkets"
        assert best["over"].price == 1.95

    def test_outcomes_outside_set_ignored(self):
        quotes = _quotes("pinnacle", over=1.90, under=1.90, home=2.5)
        result = price(quotes, ("over", "under"))
        assert "home" not in result.best_by_outcome
        assert list(result.margin_by_bookmaker) == ["pinnacle"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
