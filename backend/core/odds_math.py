"""Fundamental odds mathematics for decimal (European) prices.

Every function here is **pure**: no I/O, no logging, no side effects.
Import from this module; never reimplement locally in services or routes.

The pillars exposed are:

1. **Implied probability and margin**: ``1 / price`` per outcome, the
   overround ``T = Σ 1/price_i`` and the bookmaker margin ``(T − 1) · 100``.
2. **Vig removal**: proportional (multiplicative) normalisation, which maps
   every outcome to the fair price ``T / p_i``.

Design decisions
----------------
* Prices are decimal odds because the upstream feed is requested with
  ``oddsFormat=decimal``.  American odds are never seen by this module.
* No function rounds.  Rounding to 3 decimal places is a presentation
  concern (:func:`round_price`) applied only when serialising.
* An unmet de-vig precondition returns ``None`` rather than raising; callers
  fall back to the raw price.

Run tests with::

    pytest tests/test_odds_math.py -v
"""

from __future__ import annotations

import math
from typing import Dict, Final, Iterable, Mapping, Optional, Sequence

# ---------------------------------------------------------------------------
# Module-level constants
# ---------------------------------------------------------------------------

#: A decimal price must be strictly above this to carry a finite, non-zero
#: payout.  ``1.0`` means "stake returned only" and has implied probability 1.
MIN_DECIMAL_PRICE: Final[float] = 1.0

#: A mutually exclusive outcome set needs at least two members to have a
#: meaningful overround.
MIN_OUTCOMES: Final[int] = 2

#: Decimal places used when prices are rendered.
PRICE_DISPLAY_PLACES: Final[int] = 3

#: Decimal places used when margins are rendered.
MARGIN_DISPLAY_PLACES: Final[int] = 2


# ---------------------------------------------------------------------------
# Price validation and implied probability
# ---------------------------------------------------------------------------


def is_valid_price(price: object) -> bool:
    """Return True when *price* is a finite decimal price strictly above 1.0.

    ``bool`` is rejected explicitly because it is an ``int`` subclass.
    """
    if isinstance(price, bool) or not isinstance(price, (int, float)):
        return False
    return math.isfinite(price) and price > MIN_DECIMAL_PRICE


def implied_probability(price: float) -> float:
    """Raw implied probability of a decimal price (vig-inclusive).

    Examples::

        implied_probability(2.00) → 0.5000
        implied_probability(4.00) → 0.2500

    Raises:
        ValueError: If ``price`` is not a positive finite number.
    """
    if isinstance(price, bool) or not isinstance(price, (int, float)) \
            or not math.isfinite(price) or price <= 0.0:
        raise ValueError(f"Invalid decimal price {price!r}: must be a positive number.")
    return 1.0 / price


def overround(prices: Iterable[float]) -> float:
    """Sum of implied probabilities ``T = Σ 1/price_i``.

    ``T > 1`` for a bookmaker market (the excess is the margin), ``T == 1``
    for a fair market and ``T < 1`` for an arbitrage across books.
    """
    return sum(implied_probability(p) for p in prices)


def margin_percent(prices: Iterable[float]) -> float:
    """Bookmaker margin as a percentage: ``(Σ 1/price_i − 1) · 100``.

    Examples::

        margin_percent([1.90, 1.90])       → 5.263
        margin_percent([2.00, 3.40, 4.00]) → 4.412
    """
    return (overround(prices) - 1.0) * 100.0


# ---------------------------------------------------------------------------
# Vig removal: proportional normalisation
# ---------------------------------------------------------------------------


def devig(
    prices: Mapping[str, float],
    outcomes: Optional[Sequence[str]] = None,
) -> Optional[Dict[str, float]]:
    """Fair (vig-free) decimal prices for one mutually exclusive outcome set.

    Algorithm
    ---------
    With implied probabilities ``p_i = 1 / price_i`` and overround
    ``T = Σ p_i``, the fair probability of outcome *i* is ``p_i / T`` and the
    fair price is its reciprocal::

        fair_i = T / p_i  (= price_i · T)

    so that ``Σ 1/fair_i == 1`` by construction.  A market that is already
    fair (``T == 1``) is returned unchanged.

    Each outcome set is de-vigged on its own: a 1X2 market and an over/under
    market for the same match must be passed in separate calls.

    Args:
        prices: ``{outcome: decimal_price}`` for the outcome set.
        outcomes: The complete outcome set the market is defined over.  When
            given, every member must have a price in ``prices`` and only
            those members are used; when omitted, the keys of ``prices`` are
            taken to be the complete set.

    Returns:
        ``{outcome: fair_price}``, or ``None`` when the market is incomplete,
        has fewer than two outcomes, or contains a price that is not a finite
        number above 1.0.  ``None`` tells the caller to fall back to the raw
        price.

    Examples::

        devig({"over": 1.90, "under": 1.90}) → {"over": 2.0, "under": 2.0}
    """
    keys = list(outcomes) if outcomes is not None else list(prices)
    if len(keys) < MIN_OUTCOMES or len(set(keys)) != len(keys):
        return None

    selected: Dict[str, float] = {}
    for outcome in keys:
        price = prices.get(outcome)
        if not is_valid_price(price):
            return None
        selected[outcome] = float(price)

    implied = {o: 1.0 / p for o, p in selected.items()}
    total = sum(implied.values())
    return {o: total / p for o, p in implied.items()}


def fair_probabilities(
    prices: Mapping[str, float],
    outcomes: Optional[Sequence[str]] = None,
) -> Optional[Dict[str, float]]:
    """Vig-free probabilities ``p_i / T``; ``None`` under the same rules as :func:`devig`."""
    fair = devig(prices, outcomes)
    if fair is None:
        return None
    return {o: 1.0 / p for o, p in fair.items()}


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------


def round_price(price: Optional[float]) -> Optional[float]:
    """Round a price for display; ``None`` passes through."""
    if price is None:
        return None
    return round(price, PRICE_DISPLAY_PLACES)


def round_margin(margin: Optional[float]) -> Optional[float]:
    """Round a margin percentage for display; ``None`` passes through."""
    if margin is None:
        return None
    return round(margin, MARGIN_DISPLAY_PLACES)
