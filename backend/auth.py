"""
Simple API Key authentication for betslip endpoints
Each configured key maps to one user id; betslips are stored per user
"""

from fastapi import Security, HTTPException, status
from fastapi.security import APIKeyHeader
from functools import lru_cache
import os
from typing import Dict
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# API Key header
API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


@lru_cache(maxsize=1)
def get_valid_api_keys() -> Dict[str, str]:
    """Load valid user API keys from environment variables (read once)"""
    keys = {}

    # Support up to 5 users
    for i in range(1, 6):
        key = os.getenv(f"API_KEY_USER{i}")
        if key:
            keys[key] = f"user{i}"

    if not keys and os.getenv("ENVIRONMENT") == "development":
        # Development fallback (never use in production)
        keys["dev-key-insecure"] = "dev_user"

    return keys


async def verify_api_key(api_key: str = Security(API_KEY_HEADER)) -> str:
    """
    Verify API key and return user identifier

    Usage in FastAPI routes:
        @app.get("/api/betslip")
        async def betslip(user: str = Depends(verify_api_key)):
            return {"user": user}
    """
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Include 'X-API-Key' header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    valid = get_valid_api_keys()
    if not valid:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No user API keys configured. Set API_KEY_USER1 in environment",
        )

    if api_key not in valid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return valid[api_key]
