"""
Database models for the Sharp Odds backend
SQLAlchemy ORM; SQLite by default, any SQLAlchemy URL via DATABASE_URL
"""

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    Index,
    JSON,
    Text,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime
import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./sharp_odds.db")

# SQLite connections are shared across FastAPI's worker threads
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, pool_pre_ping=True, echo=False, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class BetslipSelection(Base):
    """A quote a user picked for their betslip, frozen when it was added"""

    __tablename__ = "betslip_selections"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)

    # Match
    match_id = Column(String, nullable=False)
    sport_key = Column(String)
    home_team = Column(String)
    away_team = Column(String)
    commence_time = Column(DateTime, index=True)  # naive UTC

    # What was picked
    market_type = Column(String, nullable=False)  # "h2h" / "totals"
    point = Column(Float)  # totals line
    outcome = Column(String, nullable=False)  # "home", "draw", "over", ...
    outcome_label = Column(String)
    bookmaker = Column(String, nullable=False)
    bookmaker_title = Column(String)

    # Prices (decimal)
    odds = Column(Float, nullable=False)
    no_vig_odds = Column(Float)
    custom_odds = Column(Float)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_betslip_user_match", "user_id", "match_id"),
    )


class BetslipHistory(Base):
    """A named snapshot of a whole betslip, saved by the user"""

    __tablename__ = "betslip_history"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)

    # Frozen selections: list of dicts (match, pick, bookmaker, prices)
    items = Column(JSON, nullable=False)
    selection_count = Column(Integer, nullable=False, default=0)

    # Combined decimal odds at save time
    total_odds = Column(Float, nullable=False)
    no_vig_total_odds = Column(Float)
    custom_total_odds = Column(Float)

    stake = Column(Float)
    potential_return = Column(Float)
    notes = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
