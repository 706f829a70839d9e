"""Consensus pricing across sharp bookmakers for a single market.

Given every accepted bookmaker quote for one mutually exclusive outcome set
(a 1X2 market, or one over/under line), :func:`price` produces:

* ``best_by_outcome``: the highest price per outcome and who offers it.
  Every bookmaker counts, including those that do not price the full set.
  A repeated quote for the same bookmaker and outcome is ignored.
* ``consensus_by_outcome``: arithmetic mean price per outcome across the
  bookmakers that quote the **complete** set.
* ``margin_by_bookmaker``: ``(Σ 1/price_i − 1) · 100`` for the same complete
  bookmakers.

Consensus and margin use the same bookmaker subset.

Nothing here rounds; see :func:`backend.core.odds_math.round_price`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

from backend.core.odds_math import margin_percent


# ---------------------------------------------------------------------------
# Data transfer objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Quote:
    """One bookmaker's decimal price for one outcome of one market.

    Attributes:
        bookmaker_key: Upstream bookmaker id (``"pinnacle"``, ``"smarkets"``).
        bookmaker_title: Display name (``"Pinnacle"``).
        market: Outcome-set id, ``"h2h"`` or ``"totals"``.
        outcome: Outcome id within the market (``"home"``, ``"over"``...).
        price: Decimal odds, > 1.0.
        point: Handicap / total line for line-based markets.
        limit: Stake limit reported by the bookmaker, when available.
    """

    bookmaker_key: str
    bookmaker_title: str
    market: str
    outcome: str
    price: float
    point: Optional[float] = None
    limit: Optional[float] = None


@dataclass(frozen=True)
class BestPrice:
    """Highest price seen for an outcome together with its bookmaker."""

    price: float
    bookmaker_key: str
    bookmaker_title: str


@dataclass
class ConsensusResult:
    """Output of :func:`price` for one market."""

    best_by_outcome: Dict[str, BestPrice] = field(default_factory=dict)
    consensus_by_outcome: Dict[str, Optional[float]] = field(default_factory=dict)
    margin_by_bookmaker: Dict[str, float] = field(default_factory=dict)
    bookmaker_count: int = 0
    consensus_margin_pct: Optional[float] = None


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------


def group_by_bookmaker(quotes: Sequence[Quote]) -> Dict[str, Dict[str, Quote]]:
    """``{bookmaker_key: {outcome: quote}}`` preserving first-seen order.

    A second quote for the same bookmaker and outcome is ignored.
    """
    grouped: Dict[str, Dict[str, Quote]] = {}
    for q in quotes:
        book = grouped.setdefault(q.bookmaker_key, {})
        book.setdefault(q.outcome, q)
    return grouped


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


def price(quotes: Sequence[Quote], outcomes: Sequence[str]) -> ConsensusResult:
    """Best, consensus and per-bookmaker margin for one market.

    Args:
        quotes: Accepted quotes for a single market (one outcome set).
            Quotes for outcomes outside ``outcomes`` are ignored.
        outcomes: The complete, mutually exclusive outcome set.

    Returns:
        :class:`ConsensusResult`.  With no complete bookmaker the consensus
        values are ``None``, the margins empty and ``bookmaker_count`` 0;
        best prices are still reported for any outcome that was quoted.
    """
    wanted = list(outcomes)
    result = ConsensusResult(consensus_by_outcome={o: None for o in wanted})

    grouped = group_by_bookmaker(quotes)

    for by_outcome in grouped.values():
        for o, q in by_outcome.items():
            if o not in result.consensus_by_outcome:
                continue
            best = result.best_by_outcome.get(o)
            # Strict ">" keeps the first-seen bookmaker on ties
            if best is None or q.price > best.price:
                result.best_by_outcome[o] = BestPrice(
                    q.price, q.bookmaker_key, q.bookmaker_title,
                )

    sums = {o: 0.0 for o in wanted}
    for book_key, by_outcome in grouped.items():
        if not wanted or any(o not in by_outcome for o in wanted):
            continue
        book_prices = [by_outcome[o].price for o in wanted]
        result.margin_by_bookmaker[book_key] = margin_percent(book_prices)
        for o in wanted:
            sums[o] += by_outcome[o].price
        result.bookmaker_count += 1

    if result.bookmaker_count == 0:
        return result

    result.consensus_by_outcome = {
        o: sums[o] / result.bookmaker_count for o in wanted
    }
    result.consensus_margin_pct = margin_percent(result.consensus_by_outcome.values())
    return result
