"""
Odds request orchestration: key pool + upstream + consensus pricing.

Sharp Market Isolation
----------------------
Only SHARP_BOOKMAKERS survive parsing.  Regional variants of one liquidity
source (``betfair_ex_eu`` / ``betfair_ex_uk``) collapse onto a canonical id
and only the first variant in the upstream order is kept, so an exchange is
never double-counted in the consensus.

For every accepted market the orchestrator attaches:

  best_by_outcome        line shopping across all accepted quotes
  consensus_by_outcome   mean over bookmakers pricing the full outcome set
  fair_by_outcome        proportional de-vig of the consensus row
  fair_probability_...   the same, as vig-free probabilities
  per bookmaker          margin_pct and the bookmaker's own fair prices

Cost control
------------
Match odds cost one request per event across five regions; league odds
cost one request for every event of a league, restricted to
LEAGUE_BOOKMAKERS.  Both are cached for ODDS_CACHE_TTL_SEC and the cache
is consulted before a key is ever acquired.  ``force_refresh`` skips the
lookup and overwrites the entry.

Failures
--------
401 and 429 responses are reported to the pool (which exhausts or cools
down the key) and the request moves on to the next key, at most once per
key.  When every attempt was refused the caller gets ``PoolExhausted``.
Timeouts and other upstream errors are reported and raised immediately.
"""

import logging
import os
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Hashable, List, Optional, Tuple

from backend.core import consensus
from backend.core.consensus import BestPrice, Quote
from backend.core.odds_math import devig, fair_probabilities, round_margin, round_price
from backend.services.cache import TTLCache
from backend.services.key_pool import KeyPool, PoolExhausted
from backend.services.odds import (
    MARKET_H2H,
    MARKET_TOTALS,
    OUTCOMES_H2H_2WAY,
    OUTCOMES_H2H_3WAY,
    OUTCOMES_TOTALS,
    OddsAPIClient,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamRejected,
    UpstreamUnavailable,
    parse_bookmaker_quotes,
    raise_for_upstream_status,
)

logger = logging.getLogger(__name__)

# Keys must match The Odds API bookmaker keys.
SHARP_BOOKMAKERS: frozenset = frozenset({
    "pinnacle",
    "betfair_ex_eu",
    "betfair_ex_uk",
    "bookmaker",
    "betonlineag",
    "matchbook",
    "smarkets",
    "betanysports",
    "lowvig",
    "betway",
    "novig",
    "polymarket",
    "kalshi",
})

# League-level calls use bookmakers= instead of regions=, which is cheaper
# and returns only the books we keep anyway.
LEAGUE_BOOKMAKERS = "pinnacle,smarkets,betfair_ex_uk,betonlineag,kalshi,matchbook,lowvig,polymarket"

MATCH_REGIONS = "us,us_ex,uk,eu,au"
ODDS_MARKETS = f"{MARKET_H2H},{MARKET_TOTALS}"

ODDS_CACHE_TTL_SEC = float(os.getenv("ODDS_CACHE_TTL_SEC", "300"))
SPORTS_CACHE_TTL_SEC = 30 * 60
EVENTS_CACHE_TTL_SEC = 10 * 60


def canonical_bookmaker(key: str) -> str:
    """Liquidity-source id: every Betfair exchange region is one book."""
    key = key.lower()
    return "betfair" if key.startswith("betfair") else key


def select_sharp_bookmakers(bookmakers: List[Dict]) -> List[Dict]:
    """Keep allow-listed bookmakers, first variant per canonical id."""
    seen = set()
    selected = []
    for bookmaker in bookmakers:
        key = str(bookmaker.get("key", "")).lower()
        if key not in SHARP_BOOKMAKERS:
            continue
        canonical = canonical_bookmaker(key)
        if canonical in seen:
            continue
        seen.add(canonical)
        selected.append(bookmaker)
    return selected


# ---------------------------------------------------------------------------
# Output contract
# ---------------------------------------------------------------------------

@dataclass
class BookmakerLine:
    """One bookmaker's row in a market snapshot."""

    key: str
    title: str
    prices: Dict[str, float] = field(default_factory=dict)
    limits: Dict[str, Optional[float]] = field(default_factory=dict)
    margin_pct: Optional[float] = None
    fair_prices: Optional[Dict[str, float]] = None

    def to_dict(self) -> Dict:
        return {
            "key": self.key,
            "title": self.title,
            "prices": {o: round_price(p) for o, p in self.prices.items()},
            "limits": dict(self.limits),
            "margin_pct": round_margin(self.margin_pct),
            "fair_prices": (
                {o: round_price(p) for o, p in self.fair_prices.items()}
                if self.fair_prices is not None else None
            ),
        }


@dataclass
class MarketSnapshot:
    """Every accepted quote for one outcome set of one match, priced."""

    market: str
    point: Optional[float]
    outcomes: Tuple[str, ...]
    bookmakers: List[BookmakerLine] = field(default_factory=list)
    best_by_outcome: Dict[str, BestPrice] = field(default_factory=dict)
    consensus_by_outcome: Dict[str, Optional[float]] = field(default_factory=dict)
    consensus_count: int = 0
    consensus_margin_pct: Optional[float] = None
    fair_by_outcome: Optional[Dict[str, float]] = None
    fair_probability_by_outcome: Optional[Dict[str, float]] = None

    def line_for(self, bookmaker_key: str) -> Optional[BookmakerLine]:
        for line in self.bookmakers:
            if line.key == bookmaker_key:
                return line
        return None

    def to_dict(self) -> Dict:
        return {
            "market": self.market,
            "point": self.point,
            "outcomes": list(self.outcomes),
            "bookmakers": [b.to_dict() for b in self.bookmakers],
            "best": {
                o: {"price": round_price(b.price), "bookmaker": b.bookmaker_key, "title": b.bookmaker_title}
                for o, b in self.best_by_outcome.items()
            },
            "consensus": {
                **{o: round_price(p) for o, p in self.consensus_by_outcome.items()},
                "bookmaker_count": self.consensus_count,
                "margin_pct": round_margin(self.consensus_margin_pct),
            },
            "fair": (
                {o: round_price(p) for o, p in self.fair_by_outcome.items()}
                if self.fair_by_outcome is not None else None
            ),
            "fair_probability": (
                {o: round(p, 4) for o, p in self.fair_probability_by_outcome.items()}
                if self.fair_probability_by_outcome is not None else None
            ),
        }


@dataclass
class MatchOdds:
    """All market snapshots for one event."""

    event_id: str
    sport_key: Optional[str]
    sport_title: Optional[str]
    home_team: Optional[str]
    away_team: Optional[str]
    commence_time: Optional[str]
    markets: List[MarketSnapshot]
    last_update: datetime
    cached: bool = False

    def market(self, market: str, point: Optional[float] = None) -> Optional[MarketSnapshot]:
        for snap in self.markets:
            if snap.market == market and snap.point == point:
                return snap
        return None

    def to_dict(self) -> Dict:
        return {
            "id": self.event_id,
            "sport_key": self.sport_key,
            "sport_title": self.sport_title,
            "home_team": self.home_team,
            "away_team": self.away_team,
            "commence_time": self.commence_time,
            "markets": [m.to_dict() for m in self.markets],
            "last_update": self.last_update.isoformat(),
            "cached": self.cached,
        }


# ---------------------------------------------------------------------------
# Snapshot construction
# ---------------------------------------------------------------------------

def _outcome_set(market: str, quotes: List[Quote]) -> Tuple[str, ...]:
    if market == MARKET_TOTALS:
        return OUTCOMES_TOTALS
    if any(q.outcome == "draw" for q in quotes):
        return OUTCOMES_H2H_3WAY
    return OUTCOMES_H2H_2WAY


def build_market_snapshot(
    market: str,
    point: Optional[float],
    quotes: List[Quote],
) -> MarketSnapshot:
    """Price one outcome set from its accepted quotes."""
    outcomes = _outcome_set(market, quotes)
    priced = consensus.price(quotes, outcomes)

    lines: Dict[str, BookmakerLine] = {}
    for q in quotes:
        line = lines.setdefault(q.bookmaker_key, BookmakerLine(key=q.bookmaker_key, title=q.bookmaker_title))
        if q.outcome not in line.prices:
            line.prices[q.outcome] = q.price
            line.limits[q.outcome] = q.limit
    for line in lines.values():
        line.margin_pct = priced.margin_by_bookmaker.get(line.key)
        line.fair_prices = devig(line.prices, outcomes)

    fair = fair_probs = None
    if priced.bookmaker_count > 0:
        fair = devig(priced.consensus_by_outcome, outcomes)
        fair_probs = fair_probabilities(priced.consensus_by_outcome, outcomes)

    return MarketSnapshot(
        market=market,
        point=point,
        outcomes=outcomes,
        bookmakers=list(lines.values()),
        best_by_outcome=priced.best_by_outcome,
        consensus_by_outcome=priced.consensus_by_outcome,
        consensus_count=priced.bookmaker_count,
        consensus_margin_pct=priced.consensus_margin_pct,
        fair_by_outcome=fair,
        fair_probability_by_outcome=fair_probs,
    )


def build_match_odds(event: Dict, fetched_at: datetime) -> MatchOdds:
    """Filter, dedup and price every market of one upstream event."""
    home_team = event.get("home_team")
    away_team = event.get("away_team")

    quotes: List[Quote] = []
    for bookmaker in select_sharp_bookmakers(event.get("bookmakers") or []):
        quotes.extend(parse_bookmaker_quotes(bookmaker, home_team, away_team))

    # One outcome set per (market, line); h2h has no line
    groups: Dict[Tuple[str, Optional[float]], List[Quote]] = {}
    for q in quotes:
        groups.setdefault((q.market, q.point), []).append(q)

    def _order(item):
        (market, point), _ = item
        return (0 if market == MARKET_H2H else 1, point is None, point or 0.0)

    markets = [
        build_market_snapshot(market, point, group)
        for (market, point), group in sorted(groups.items(), key=_order)
    ]

    return MatchOdds(
        event_id=str(event.get("id")),
        sport_key=event.get("sport_key"),
        sport_title=event.get("sport_title"),
        home_team=home_team,
        away_team=away_team,
        commence_time=event.get("commence_time"),
        markets=markets,
        last_update=fetched_at,
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class OddsOrchestrator:
    """
    Serves priced odds from cache or upstream, rotating keys as needed.

    Constructed once at startup with the process-wide ``KeyPool``::

        orchestrator = OddsOrchestrator(KeyPool(load_api_keys()))
        match = orchestrator.fetch_match_odds("soccer_epl", event_id)
    """

    def __init__(
        self,
        key_pool: KeyPool,
        client: Optional[OddsAPIClient] = None,
        odds_ttl_sec: float = ODDS_CACHE_TTL_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self._pool = key_pool
        self._client = client or OddsAPIClient()
        self._clock = clock
        self._odds_cache = TTLCache(odds_ttl_sec, clock=clock)
        self._sports_cache = TTLCache(SPORTS_CACHE_TTL_SEC, clock=clock)
        self._events_cache = TTLCache(EVENTS_CACHE_TTL_SEC, clock=clock)

    @property
    def key_pool(self) -> KeyPool:
        return self._pool

    # ------------------------------------------------------------------
    # Upstream
    # ------------------------------------------------------------------

    def _request(self, path: str, params: Optional[Dict] = None):
        """
        GET ``path`` with the next usable key and return the decoded body.

        Every response, and every missing response, is reported to the pool.
        """
        last_refusal: Optional[UpstreamError] = None
        for attempt in range(1, len(self._pool) + 1):
            cred = self._pool.acquire()
            try:
                response = self._client.get(path, cred.key, params)
            except UpstreamUnavailable:
                self._pool.report(cred.key, None)
                raise

            self._pool.report(cred.key, response.status_code, response.headers)
            try:
                raise_for_upstream_status(response)
            except (UpstreamRejected, UpstreamRateLimited) as exc:
                logger.warning(
                    "Odds API refused key %s with %d (attempt %d/%d)",
                    cred.prefix, exc.status_code, attempt, len(self._pool),
                )
                last_refusal = exc
                continue
            except UpstreamError as exc:
                logger.error("Odds API error %d on %s: %s", exc.status_code, path, exc.detail)
                raise

            try:
                return response.json()
            except ValueError as exc:
                raise UpstreamError(502, "Upstream returned invalid JSON") from exc

        raise PoolExhausted(
            f"All API keys refused the request ({len(self._pool)} attempts)."
        ) from last_refusal

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # ------------------------------------------------------------------
    # Odds
    # ------------------------------------------------------------------

    def fetch_match_odds(
        self,
        sport_key: str,
        event_id: str,
        force_refresh: bool = False,
    ) -> MatchOdds:
        """Priced sharp odds for one event (one upstream call on a miss)."""
        cache_key: Hashable = ("match", sport_key, event_id)
        if not force_refresh:
            entry = self._odds_cache.get(cache_key)
            if entry is not None:
                logger.info("Serving odds for %s from cache", event_id)
                return replace(entry.value, cached=True)
        else:
            logger.info("Cache bypass requested for odds: %s", event_id)

        raw = self._request(
            f"/sports/{sport_key}/events/{event_id}/odds",
            {"regions": MATCH_REGIONS, "markets": ODDS_MARKETS, "oddsFormat": "decimal"},
        )
        match = build_match_odds(raw, self._now())
        if match.sport_key is None:
            match.sport_key = sport_key
        self._odds_cache.set(cache_key, match)
        logger.info(
            "Odds for %s: %d sharp bookmakers, %d markets",
            event_id, len({b.key for m in match.markets for b in m.bookmakers}), len(match.markets),
        )
        return match

    def fetch_league_odds(
        self,
        sport_key: str,
        force_refresh: bool = False,
    ) -> Dict[str, MatchOdds]:
        """Priced sharp odds for every event in a league from a single call."""
        cache_key: Hashable = ("league", sport_key)
        if not force_refresh:
            entry = self._odds_cache.get(cache_key)
            if entry is not None:
                logger.info("Serving league odds for %s from cache", sport_key)
                return {eid: replace(m, cached=True) for eid, m in entry.value.items()}
        else:
            logger.info("Cache bypass requested for league odds: %s", sport_key)

        events = self._request(
            f"/sports/{sport_key}/odds/",
            {
                "bookmakers": LEAGUE_BOOKMAKERS,
                "markets": ODDS_MARKETS,
                "oddsFormat": "decimal",
                "includeBetLimits": "true",
            },
        )
        fetched_at = self._now()
        league: Dict[str, MatchOdds] = {}
        for event in events or []:
            match = build_match_odds(event, fetched_at)
            if match.sport_key is None:
                match.sport_key = sport_key
            league[match.event_id] = match

        self._odds_cache.set(cache_key, league)
        logger.info("League odds for %s: %d events", sport_key, len(league))
        return league

    def lookup_match_odds(self, sport_key: str, event_id: str) -> MatchOdds:
        """
        Priced odds for one event, preferring anything already cached.

        A live league snapshot containing the event is as good as a match
        snapshot, so it is used before spending a request on the event.
        """
        entry = self._odds_cache.get(("match", sport_key, event_id))
        if entry is not None:
            return replace(entry.value, cached=True)
        league = self._odds_cache.get(("league", sport_key))
        if league is not None and event_id in league.value:
            return replace(league.value[event_id], cached=True)
        return self.fetch_match_odds(sport_key, event_id)

    # ------------------------------------------------------------------
    # Catalogue
    # ------------------------------------------------------------------

    def list_sports(self, all_groups: bool = False) -> List[Dict]:
        """Sports catalogue; soccer leagues only unless ``all_groups``."""
        cache_key = ("sports", all_groups)
        entry = self._sports_cache.get(cache_key)
        if entry is not None:
            return entry.value

        sports = self._request("/sports") or []
        if not all_groups:
            sports = [s for s in sports if s.get("group") == "Soccer"]
        self._sports_cache.set(cache_key, sports)
        return sports

    def list_events(self, sport_key: str) -> List[Dict]:
        """Upcoming events for a league."""
        cache_key = ("events", sport_key)
        entry = self._events_cache.get(cache_key)
        if entry is not None:
            return entry.value

        events = self._request(f"/sports/{sport_key}/events") or []
        self._events_cache.set(cache_key, events)
        return events

    def key_status(self) -> Dict:
        return self._pool.status()
