"""
Betslip: cross-bookmaker selections frozen at the moment they were picked.

A selection copies one bookmaker's quote out of a priced ``MatchOdds`` and
stores it next to that bookmaker's own no-vig price.  When the bookmaker's
market is incomplete the no-vig price falls back to the raw quote, so every
selection always carries a comparison price.

After creation a selection only changes through a custom-price edit
(a price the user got elsewhere) or removal.  Selections for matches that
kicked off more than BETSLIP_PRUNE_DAYS ago are pruned by a scheduled job.

A user can also save the whole betslip as a named history entry: the
selections are copied into the entry together with the combined odds, so
later edits, clears and prunes never change it.

Combined odds
-------------
``summarize_betslip`` multiplies prices across selections the way an
accumulator pays out, three ways:

    total_odds          frozen quotes
    no_vig_total_odds   no-vig prices (raw quote when unavailable)
    custom_total_odds   custom price, else no-vig, else raw quote
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from backend.core.odds_math import is_valid_price
from backend.models import BetslipHistory, BetslipSelection
from backend.services.odds import MARKET_TOTALS
from backend.services.orchestrator import MatchOdds

logger = logging.getLogger(__name__)

BETSLIP_PRUNE_DAYS = int(os.getenv("BETSLIP_PRUNE_DAYS", "7"))
HISTORY_LIMIT = 50


def outcome_label(match: MatchOdds, market: str, outcome: str, point: Optional[float]) -> str:
    """Human-readable pick, e.g. ``"Arsenal"``, ``"Draw"``, ``"Over 2.5"``."""
    if market == MARKET_TOTALS:
        side = outcome.capitalize()
        return f"{side} {point:g}" if point is not None else side
    if outcome == "home":
        return match.home_team or "Home"
    if outcome == "away":
        return match.away_team or "Away"
    return "Draw"


def parse_commence_time(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 upstream timestamp → naive UTC datetime (DB convention)."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        logger.debug("Unparseable commence_time %r", value)
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def build_selection(
    match: MatchOdds,
    market: str,
    point: Optional[float],
    bookmaker: str,
    outcome: str,
) -> Dict:
    """
    Freeze one quote from a priced match into selection fields.

    Raises:
        LookupError: market, bookmaker or outcome not present in ``match``.
    """
    snapshot = match.market(market, point)
    if snapshot is None:
        raise LookupError(f"Market {market} (line {point}) not available for match {match.event_id}")
    line = snapshot.line_for(bookmaker)
    if line is None:
        raise LookupError(f"Bookmaker {bookmaker} does not price {market} for match {match.event_id}")
    price = line.prices.get(outcome)
    if price is None:
        raise LookupError(f"Bookmaker {bookmaker} has no {outcome} price in {market}")

    fair = (line.fair_prices or {}).get(outcome, price)

    return {
        "match_id": match.event_id,
        "sport_key": match.sport_key,
        "home_team": match.home_team,
        "away_team": match.away_team,
        "commence_time": parse_commence_time(match.commence_time),
        "market_type": market,
        "point": point,
        "outcome": outcome,
        "outcome_label": outcome_label(match, market, outcome, point),
        "bookmaker": line.key,
        "bookmaker_title": line.title,
        "odds": price,
        "no_vig_odds": fair,
    }


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def list_selections(db: Session, user_id: str) -> List[BetslipSelection]:
    return (
        db.query(BetslipSelection)
        .filter(BetslipSelection.user_id == user_id)
        .order_by(BetslipSelection.created_at, BetslipSelection.id)
        .all()
    )


def get_selection(db: Session, user_id: str, selection_id: int) -> BetslipSelection:
    sel = (
        db.query(BetslipSelection)
        .filter(BetslipSelection.id == selection_id, BetslipSelection.user_id == user_id)
        .first()
    )
    if sel is None:
        raise LookupError(f"Selection {selection_id} not found")
    return sel


def add_selection(
    db: Session,
    user_id: str,
    match: MatchOdds,
    market: str,
    point: Optional[float],
    bookmaker: str,
    outcome: str,
) -> BetslipSelection:
    """
    Add a quote to the user's betslip.

    Re-adding the same match/market/line/outcome/bookmaker refreshes the
    frozen prices of the existing selection instead of duplicating it; any
    custom price is kept.
    """
    fields = build_selection(match, market, point, bookmaker, outcome)

    query = db.query(BetslipSelection).filter(
        BetslipSelection.user_id == user_id,
        BetslipSelection.match_id == fields["match_id"],
        BetslipSelection.market_type == market,
        BetslipSelection.outcome == outcome,
        BetslipSelection.bookmaker == fields["bookmaker"],
    )
    if point is None:
        query = query.filter(BetslipSelection.point.is_(None))
    else:
        query = query.filter(BetslipSelection.point == point)
    existing = query.first()

    if existing is not None:
        existing.odds = fields["odds"]
        existing.no_vig_odds = fields["no_vig_odds"]
        sel = existing
    else:
        sel = BetslipSelection(user_id=user_id, **fields)
        db.add(sel)

    db.commit()
    db.refresh(sel)
    logger.info(
        "Betslip %s: %s %s @ %.3f (%s)",
        user_id, sel.match_id, sel.outcome_label, sel.odds, sel.bookmaker,
    )
    return sel


def set_custom_price(
    db: Session,
    user_id: str,
    selection_id: int,
    price: Optional[float],
) -> BetslipSelection:
    """
    Set or clear (``None``) the user's custom price on a selection.

    Raises:
        LookupError: unknown selection.
        ValueError: price is not a decimal price above 1.0.
    """
    if price is not None and not is_valid_price(price):
        raise ValueError(f"Custom price {price!r} must be a decimal price above 1.0")
    sel = get_selection(db, user_id, selection_id)
    sel.custom_odds = float(price) if price is not None else None
    db.commit()
    db.refresh(sel)
    return sel


def remove_selection(db: Session, user_id: str, selection_id: int) -> None:
    sel = get_selection(db, user_id, selection_id)
    db.delete(sel)
    db.commit()


def clear_betslip(db: Session, user_id: str) -> int:
    """Remove every selection of a user; returns the number removed."""
    removed = (
        db.query(BetslipSelection)
        .filter(BetslipSelection.user_id == user_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info("Betslip %s cleared (%d selections)", user_id, removed)
    return removed


def prune_stale_selections(
    db: Session,
    max_age_days: int = BETSLIP_PRUNE_DAYS,
    now: Optional[datetime] = None,
) -> int:
    """Delete selections whose match commenced more than ``max_age_days`` ago."""
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=max_age_days)
    removed = (
        db.query(BetslipSelection)
        .filter(
            BetslipSelection.commence_time.isnot(None),
            BetslipSelection.commence_time < cutoff,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    if removed:
        logger.info("Pruned %d betslip selections older than %d days", removed, max_age_days)
    return removed


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

def summarize_betslip(selections: List[BetslipSelection], stake: Optional[float] = None) -> Dict:
    """Combined odds (and returns, when ``stake`` is given) across selections."""
    total = 1.0
    no_vig_total = 1.0
    custom_total = 1.0
    for sel in selections:
        fair = sel.no_vig_odds or sel.odds
        total *= sel.odds
        no_vig_total *= fair
        custom_total *= sel.custom_odds if sel.custom_odds else fair

    count = len(selections)
    summary = {
        "selections": count,
        "total_odds": total if count else None,
        "no_vig_total_odds": no_vig_total if count else None,
        "custom_total_odds": custom_total if count else None,
        "has_custom_odds": any(s.custom_odds for s in selections),
        "stake": stake,
        "potential_return": None,
        "no_vig_return": None,
        "custom_return": None,
    }
    if stake is not None and count:
        summary["potential_return"] = stake * total
        summary["no_vig_return"] = stake * no_vig_total
        summary["custom_return"] = stake * custom_total
    return summary


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

def _history_item(sel: BetslipSelection) -> Dict:
    return {
        "match_id": sel.match_id,
        "sport_key": sel.sport_key,
        "home_team": sel.home_team,
        "away_team": sel.away_team,
        "commence_time": sel.commence_time.isoformat() if sel.commence_time else None,
        "market_type": sel.market_type,
        "point": sel.point,
        "outcome": sel.outcome,
        "outcome_label": sel.outcome_label,
        "bookmaker": sel.bookmaker,
        "bookmaker_title": sel.bookmaker_title,
        "odds": sel.odds,
        "no_vig_odds": sel.no_vig_odds,
        "custom_odds": sel.custom_odds,
    }


def save_betslip_history(
    db: Session,
    user_id: str,
    name: str,
    stake: Optional[float] = None,
    notes: Optional[str] = None,
) -> BetslipHistory:
    """
    Save the user's current betslip as a named history entry.

    The live betslip is left untouched.

    Raises:
        ValueError: the betslip is empty.
    """
    selections = list_selections(db, user_id)
    if not selections:
        raise ValueError("Betslip is empty; add a selection before saving it")

    summary = summarize_betslip(selections, stake)
    entry = BetslipHistory(
        user_id=user_id,
        name=name,
        items=[_history_item(s) for s in selections],
        selection_count=summary["selections"],
        total_odds=summary["total_odds"],
        no_vig_total_odds=summary["no_vig_total_odds"],
        custom_total_odds=summary["custom_total_odds"],
        stake=stake,
        potential_return=summary["potential_return"],
        notes=notes,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    logger.info(
        "Betslip %s saved to history as %r (%d selections @ %.3f)",
        user_id, name, entry.selection_count, entry.total_odds,
    )
    return entry


def list_betslip_history(db: Session, user_id: str, limit: int = HISTORY_LIMIT) -> List[BetslipHistory]:
    """Most recent history entries first."""
    return (
        db.query(BetslipHistory)
        .filter(BetslipHistory.user_id == user_id)
        .order_by(BetslipHistory.created_at.desc(), BetslipHistory.id.desc())
        .limit(limit)
        .all()
    )
