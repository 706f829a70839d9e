"""
Pydantic request/response schemas for the Sharp Odds API.

Odds payloads are produced by ``MatchOdds.to_dict()`` and returned as-is;
the schemas here cover the betslip and the key-pool status endpoints, where
request bodies need validation and ORM rows need a stable shape.
"""

from __future__ import annotations

from typing import Literal, Optional
from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Betslip
# ---------------------------------------------------------------------------

_MARKET_OUTCOMES = {
    "h2h": {"home", "draw", "away"},
    "totals": {"over", "under"},
}


class SelectionCreate(BaseModel):
    """
    Payload for POST /api/betslip.

    The quote is looked up server-side from the (cached) odds for the
    match, so clients cannot submit a price of their own here; use
    PATCH /api/betslip/{id} for a custom price.
    """

    sport_key: str = Field(..., min_length=1, max_length=80, description='e.g. "soccer_epl"')
    match_id: str = Field(..., min_length=1, max_length=80, description="Upstream event id")
    market: Literal["h2h", "totals"] = Field(..., description="Market type")
    point: Optional[float] = Field(None, description="Totals line, e.g. 2.5")
    bookmaker: str = Field(..., min_length=1, max_length=60, description='e.g. "pinnacle"')
    outcome: Literal["home", "draw", "away", "over", "under"]

    @field_validator("bookmaker")
    @classmethod
    def normalise_bookmaker(cls, v: str) -> str:
        return v.strip().lower()

    @model_validator(mode="after")
    def outcome_matches_market(self) -> "SelectionCreate":
        if self.outcome not in _MARKET_OUTCOMES[self.market]:
            raise ValueError(f"outcome {self.outcome!r} is not part of the {self.market} market")
        if self.market == "h2h" and self.point is not None:
            raise ValueError("point is only valid for the totals market")
        return self

    model_config = {
        "json_schema_extra": {
            "example": {
                "sport_key": "soccer_epl",
                "match_id": "e912304de2b2ce35b473ce2ecd3d1502",
                "market": "totals",
                "point": 2.5,
                "bookmaker": "pinnacle",
                "outcome": "over",
            }
        }
    }


class CustomPriceUpdate(BaseModel):
    """Payload for PATCH /api/betslip/{id}. ``null`` clears the custom price."""

    custom_odds: Optional[float] = Field(None, description="Decimal odds > 1.0")

    @field_validator("custom_odds")
    @classmethod
    def validate_decimal_odds(cls, v: Optional[float]) -> Optional[float]:
        if v is None:
            return v
        if v <= 1.0:
            raise ValueError(f"custom_odds={v} is not valid decimal odds. Must be > 1.0.")
        return v


class SelectionResponse(BaseModel):
    """A stored betslip selection."""

    id: int
    match_id: str
    sport_key: Optional[str]
    home_team: Optional[str]
    away_team: Optional[str]
    commence_time: Optional[datetime]
    market_type: str
    point: Optional[float]
    outcome: str
    outcome_label: Optional[str]
    bookmaker: str
    bookmaker_title: Optional[str]
    odds: float
    no_vig_odds: Optional[float]
    custom_odds: Optional[float]
    created_at: Optional[datetime]

    model_config = {"from_attributes": True}


class BetslipSummaryResponse(BaseModel):
    """Combined odds across the betslip."""

    selections: int
    total_odds: Optional[float]
    no_vig_total_odds: Optional[float]
    custom_total_odds: Optional[float]
    has_custom_odds: bool
    stake: Optional[float]
    potential_return: Optional[float]
    no_vig_return: Optional[float]
    custom_return: Optional[float]


class ClearBetslipResponse(BaseModel):
    message: str
    removed: int


class BetslipHistoryCreate(BaseModel):
    """Payload for POST /api/betslip/history."""

    name: str = Field(..., min_length=1, max_length=120, description='e.g. "Saturday acca"')
    stake: Optional[float] = Field(None, gt=0, description="Stake for the return figure")
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class BetslipHistoryResponse(BaseModel):
    """A saved betslip snapshot."""

    id: int
    name: str
    items: list[dict]
    selection_count: int
    total_odds: float
    no_vig_total_odds: Optional[float]
    custom_total_odds: Optional[float]
    stake: Optional[float]
    potential_return: Optional[float]
    notes: Optional[str]
    created_at: Optional[datetime]

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Key pool status
# ---------------------------------------------------------------------------

class KeyView(BaseModel):
    """One key, masked."""

    prefix: str
    usage: int
    remaining: Optional[int]
    used: Optional[int]
    exhausted: bool
    blocked: bool
    errors: int


class KeyPoolStatusResponse(BaseModel):
    """Response from GET /api/status (no quota cost)."""

    total_keys: int
    active_keys: int
    exhausted_keys: int
    blocked_keys: int
    total_remaining: int
    keys: list[KeyView]
