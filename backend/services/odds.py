"""
The Odds API integration: HTTP adapter, upstream errors and quote parsing.
https://the-odds-api.com/

The client only speaks HTTP.  Key selection and quota bookkeeping belong to
``KeyPool`` and the retry policy to ``OddsOrchestrator``; the client takes an
explicit key for every call and hands back the raw ``requests.Response`` so
the caller can report status and quota headers before interpreting the body.

Upstream error taxonomy
-----------------------
  UpstreamError         any non-2xx response (status passed through)
  UpstreamRejected      401: key invalid or quota consumed
  UpstreamRateLimited   429: key temporarily rate-limited
  UpstreamUnavailable   no response at all (timeout, DNS, connection reset)

Quote parsing
-------------
Only two markets are requested, both as decimal odds:

  h2h      outcomes home / draw / away (draw absent for two-way sports)
  totals   outcomes over / under, each line (``point``) a separate market
"""

import logging
import os
from typing import Dict, List, Optional

import requests
from dotenv import load_dotenv

from backend.core.consensus import Quote
from backend.core.odds_math import is_valid_price

load_dotenv()

logger = logging.getLogger(__name__)

BASE_URL = os.getenv("ODDS_API_BASE_URL", "https://api.the-odds-api.com/v4")
REQUEST_TIMEOUT_SEC = float(os.getenv("ODDS_API_TIMEOUT", "10"))

MARKET_H2H = "h2h"
MARKET_TOTALS = "totals"

OUTCOMES_H2H_3WAY = ("home", "draw", "away")
OUTCOMES_H2H_2WAY = ("home", "away")
OUTCOMES_TOTALS = ("over", "under")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class UpstreamError(Exception):
    """Upstream returned a non-2xx response."""

    def __init__(self, status_code: int, detail: object = None):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Upstream API error {status_code}: {detail}")


class UpstreamRejected(UpstreamError):
    """401: key invalid or quota consumed."""


class UpstreamRateLimited(UpstreamError):
    """429: key rate-limited."""


class UpstreamUnavailable(UpstreamError):
    """Upstream timed out or could not be reached."""

    def __init__(self, detail: object = "Upstream API timed out or is unreachable."):
        super().__init__(504, detail)


def raise_for_upstream_status(response: requests.Response) -> None:
    """Translate a non-2xx response into the matching ``UpstreamError``."""
    status = response.status_code
    if 200 <= status < 300:
        return
    try:
        detail = response.json()
    except ValueError:
        detail = response.text
    if status == 401:
        raise UpstreamRejected(status, detail)
    if status == 429:
        raise UpstreamRateLimited(status, detail)
    raise UpstreamError(status, detail)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class OddsAPIClient:
    """Thin HTTP client for The Odds API v4."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else REQUEST_TIMEOUT_SEC

    def get(self, path: str, api_key: str, params: Optional[Dict] = None) -> requests.Response:
        """
        Issue one GET against the API with ``api_key``.

        Returns the response whatever its status.  Raises
        ``UpstreamUnavailable`` when no response is received.
        """
        url = f"{self.base_url}{path}"
        query = {"apiKey": api_key}
        query.update(params or {})
        try:
            return requests.get(url, params=query, timeout=self.timeout)
        except requests.exceptions.Timeout as exc:
            logger.error("Odds API timeout after %.1fs: %s", self.timeout, path)
            raise UpstreamUnavailable() from exc
        except requests.exceptions.RequestException as exc:
            # str(exc) can echo the full URL, apiKey included
            logger.error("Odds API unreachable: %s (%s)", path, type(exc).__name__)
            raise UpstreamUnavailable() from exc


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def outcome_id(
    market_key: str,
    name: Optional[str],
    home_team: Optional[str],
    away_team: Optional[str],
) -> Optional[str]:
    """Map an upstream outcome name onto a stable outcome id."""
    if market_key == MARKET_H2H:
        if name == home_team:
            return "home"
        if name == away_team:
            return "away"
        if name == "Draw":
            return "draw"
    elif market_key == MARKET_TOTALS:
        if name == "Over":
            return "over"
        if name == "Under":
            return "under"
    return None


def parse_bookmaker_quotes(
    bookmaker: Dict,
    home_team: Optional[str],
    away_team: Optional[str],
) -> List[Quote]:
    """
    Flatten one upstream bookmaker entry into ``Quote`` objects.

    Unknown markets and outcomes are skipped, as are prices that are not
    finite decimal odds above 1.0.
    """
    book_key = str(bookmaker.get("key", "")).lower()
    title = bookmaker.get("title") or book_key
    quotes: List[Quote] = []

    for market in bookmaker.get("markets") or []:
        market_key = market.get("key")
        if market_key not in (MARKET_H2H, MARKET_TOTALS):
            continue
        for outcome in market.get("outcomes") or []:
            oid = outcome_id(market_key, outcome.get("name"), home_team, away_team)
            if oid is None:
                continue
            price = outcome.get("price")
            if not is_valid_price(price):
                logger.debug("Dropping %s %s %s: invalid price %r", book_key, market_key, oid, price)
                continue
            point = outcome.get("point") if market_key == MARKET_TOTALS else None
            quotes.append(
                Quote(
                    bookmaker_key=book_key,
                    bookmaker_title=title,
                    market=market_key,
                    outcome=oid,
                    price=float(price),
                    point=float(point) if point is not None else None,
                    limit=outcome.get("bet_limit"),
                )
            )
    return quotes
