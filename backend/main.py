"""
FastAPI application for Sharp Odds
Serves sharp-bookmaker odds with consensus / no-vig pricing, the key pool
status and per-user betslips
"""

from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional
import logging
import os

from backend.models import Base, engine, get_db, SessionLocal
from backend.auth import verify_api_key
from backend.services.key_pool import KeyPool, PoolExhausted, load_api_keys
from backend.services.odds import OddsAPIClient, UpstreamError, UpstreamUnavailable
from backend.services.orchestrator import OddsOrchestrator
from backend.services import betslip as betslip_service
from backend.schemas import (
    SelectionCreate,
    SelectionResponse,
    CustomPriceUpdate,
    BetslipSummaryResponse,
    ClearBetslipResponse,
    BetslipHistoryCreate,
    BetslipHistoryResponse,
    KeyPoolStatusResponse,
)

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

APP_VERSION = "1.0"


def build_orchestrator() -> Optional[OddsOrchestrator]:
    """Key pool + upstream client, built once per process."""
    keys = load_api_keys()
    try:
        pool = KeyPool(keys)
    except ValueError as exc:
        # Keep serving: betslip and status routes still work, odds routes 503
        logger.error("Failed to initialise key pool: %s", exc)
        return None
    logger.info("Loaded %d API keys", len(pool))
    return OddsOrchestrator(pool, OddsAPIClient())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting Sharp Odds backend")

    Base.metadata.create_all(bind=engine)
    app.state.orchestrator = build_orchestrator()

    # Prune betslip selections for long-finished matches
    prune_hours = int(os.getenv("BETSLIP_PRUNE_INTERVAL_HOURS", "6"))
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        _prune_betslips_job,
        IntervalTrigger(hours=prune_hours),
        id="prune_betslips",
        name="Prune Stale Betslip Selections",
        replace_existing=True,
    )
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("Scheduler started: betslip prune every %dh", prune_hours)

    yield

    logger.info("Shutting down Sharp Odds backend")
    scheduler.shutdown()


app = FastAPI(
    title="Sharp Odds",
    description="Sharp bookmaker odds aggregation with consensus and no-vig pricing",
    version=APP_VERSION,
    lifespan=lifespan,
)

# CORS (comma-separated CORS_ORIGINS for production)
_cors_origins = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:5174").split(",")
    if o.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_origin_regex=r"https://.*\.vercel\.app",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# SCHEDULED JOB
# ============================================================================

def _prune_betslips_job():
    """Delete selections for matches that started more than a week ago."""
    db = SessionLocal()
    try:
        removed = betslip_service.prune_stale_selections(db)
        logger.info("Betslip prune: %d removed", removed)
    except Exception as exc:
        logger.error("Betslip prune job failed: %s", exc, exc_info=True)
    finally:
        db.close()


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_orchestrator(request: Request) -> OddsOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=503,
            detail="Key pool not initialised. Set ODDS_API_KEYS in environment",
        )
    return orchestrator


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Health check"""
    return {
        "app": "Sharp Odds",
        "version": APP_VERSION,
        "status": "operational",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/health")
def health_check(request: Request, db: Session = Depends(get_db)):
    """Health check endpoint"""
    health = {"status": "healthy", "database": "connected", "key_pool": "ready"}

    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Health check database error: %s", e)
        health["status"] = "degraded"
        health["database"] = f"error: {str(e)}"

    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        health["status"] = "degraded"
        health["key_pool"] = "not initialised"
    elif orchestrator.key_status()["active_keys"] == 0:
        health["status"] = "degraded"
        health["key_pool"] = "exhausted"

    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is not None and not scheduler.running:
        health["status"] = "degraded"
        health["scheduler"] = "stopped"

    return health


@app.get("/api/sports")
def get_sports(
    all_groups: bool = Query(False, description="Include non-soccer sports"),
    orchestrator: OddsOrchestrator = Depends(get_orchestrator),
):
    """Available leagues (cached 30 min)"""
    return orchestrator.list_sports(all_groups=all_groups)


@app.get("/api/events/{sport_key}")
def get_events(sport_key: str, orchestrator: OddsOrchestrator = Depends(get_orchestrator)):
    """Upcoming matches for a league (cached 10 min)"""
    return orchestrator.list_events(sport_key)


@app.get("/api/odds/{sport_key}/{event_id}")
def get_match_odds(
    sport_key: str,
    event_id: str,
    refresh: bool = Query(False, description="Bypass the odds cache"),
    orchestrator: OddsOrchestrator = Depends(get_orchestrator),
):
    """Sharp odds for one match with best / consensus / no-vig prices"""
    match = orchestrator.fetch_match_odds(sport_key, event_id, force_refresh=refresh)
    return match.to_dict()


@app.get("/api/league-odds/{sport_key}")
def get_league_odds(
    sport_key: str,
    refresh: bool = Query(False, description="Bypass the odds cache"),
    orchestrator: OddsOrchestrator = Depends(get_orchestrator),
):
    """Sharp odds for every match in a league from a single upstream call"""
    league = orchestrator.fetch_league_odds(sport_key, force_refresh=refresh)
    return {event_id: match.to_dict() for event_id, match in league.items()}


@app.get("/api/status", response_model=KeyPoolStatusResponse)
def get_key_status(orchestrator: OddsOrchestrator = Depends(get_orchestrator)):
    """API key pool status (no quota cost)"""
    return orchestrator.key_status()


# ============================================================================
# AUTHENTICATED ENDPOINTS - BETSLIP
# ============================================================================

@app.get("/api/betslip", response_model=List[SelectionResponse])
def get_betslip(
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """Current betslip selections"""
    return betslip_service.list_selections(db, user)


@app.get("/api/betslip/summary", response_model=BetslipSummaryResponse)
def get_betslip_summary(
    stake: Optional[float] = Query(None, gt=0, description="Stake for return figures"),
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """Combined raw / no-vig / custom odds across the betslip"""
    return betslip_service.summarize_betslip(betslip_service.list_selections(db, user), stake)


@app.post("/api/betslip", response_model=SelectionResponse)
def add_to_betslip(
    selection: SelectionCreate,
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
    orchestrator: OddsOrchestrator = Depends(get_orchestrator),
):
    """Freeze a bookmaker quote into the betslip"""
    match = orchestrator.lookup_match_odds(selection.sport_key, selection.match_id)
    try:
        return betslip_service.add_selection(
            db,
            user,
            match,
            market=selection.market,
            point=selection.point,
            bookmaker=selection.bookmaker,
            outcome=selection.outcome,
        )
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@app.get("/api/betslip/history", response_model=List[BetslipHistoryResponse])
def get_betslip_history(
    limit: int = Query(betslip_service.HISTORY_LIMIT, ge=1, le=betslip_service.HISTORY_LIMIT),
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """Saved betslips, newest first"""
    return betslip_service.list_betslip_history(db, user, limit=limit)


@app.post("/api/betslip/history", response_model=BetslipHistoryResponse, status_code=201)
def save_betslip_history(
    payload: BetslipHistoryCreate,
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """Save the current betslip under a name"""
    try:
        return betslip_service.save_betslip_history(
            db, user, name=payload.name, stake=payload.stake, notes=payload.notes,
        )
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@app.patch("/api/betslip/{selection_id}", response_model=SelectionResponse)
def update_custom_price(
    selection_id: int,
    update: CustomPriceUpdate,
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """Set or clear a selection's custom price"""
    try:
        return betslip_service.set_custom_price(db, user, selection_id, update.custom_odds)
    except LookupError:
        raise HTTPException(status_code=404, detail="Selection not found")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@app.delete("/api/betslip/{selection_id}", status_code=204)
def delete_selection(
    selection_id: int,
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """Remove one selection"""
    try:
        betslip_service.remove_selection(db, user, selection_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Selection not found")


@app.delete("/api/betslip", response_model=ClearBetslipResponse)
def clear_betslip(
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """Remove every selection"""
    removed = betslip_service.clear_betslip(db, user)
    return {"message": "Betslip cleared", "removed": removed}


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(PoolExhausted)
async def pool_exhausted_handler(request, exc):
    """No usable key: odds are unavailable until quota resets"""
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc), "type": "PoolExhausted"},
    )


@app.exception_handler(UpstreamUnavailable)
async def upstream_unavailable_handler(request, exc):
    return JSONResponse(
        status_code=504,
        content={"detail": exc.detail, "type": "UpstreamUnavailable"},
    )


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request, exc):
    """Pass the upstream status and body through"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "type": type(exc).__name__},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Catch-all exception handler"""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": type(exc).__name__}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
