"""
Rotating pool of The Odds API keys.

Each key carries its own quota state, learned from the response headers of
every upstream call:

    x-requests-remaining   requests left on the key this billing period
    x-requests-used        requests consumed so far

A key is *selectable* when it is not exhausted and not inside a rate-limit
cooldown.  ``acquire()`` walks the pool round-robin from the cursor and
returns the first selectable key; ``report()`` feeds the outcome of a call
back so the next ``acquire()`` steers away from a key that just failed.

The pool is a plain object constructed once at startup (see
``backend.main.lifespan``) and shared by all request threads.  Every read and
mutation happens under a single pool-wide lock.

Keys are secrets: only a short prefix (``mask_key``) is ever logged or
returned from ``status()``.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

#: Cooldown applied to a key after an HTTP 429.
RATE_LIMIT_COOLDOWN_SEC: float = 60.0

#: Characters of a key that may be shown in logs and status output.
KEY_PREFIX_LEN: int = 8

HEADER_REMAINING = "x-requests-remaining"
HEADER_USED = "x-requests-used"


class PoolExhausted(RuntimeError):
    """Every key in the pool is exhausted or rate-limited."""


def mask_key(key: str) -> str:
    """Short, non-secret prefix of a key for logs and status output."""
    visible = min(KEY_PREFIX_LEN, len(key) // 2)
    return f"{key[:visible]}..."


def load_api_keys(raw: Optional[str] = None) -> List[str]:
    """
    Parse the configured key list.

    Reads ``ODDS_API_KEYS`` (comma-separated) when ``raw`` is not given.
    Whitespace is stripped and empty entries are dropped.
    """
    if raw is None:
        raw = os.getenv("ODDS_API_KEYS", "")
    return [k.strip() for k in raw.split(",") if k.strip()]


@dataclass
class Credential:
    """One upstream API key and its quota state."""

    key: str
    usage_count: int = 0
    remaining: Optional[int] = None
    used: Optional[int] = None
    exhausted: bool = False
    blocked_until: Optional[float] = None  # epoch seconds
    errors: int = 0

    @property
    def prefix(self) -> str:
        return mask_key(self.key)

    def is_blocked(self, now: float) -> bool:
        return self.blocked_until is not None and self.blocked_until > now

    def is_selectable(self, now: float) -> bool:
        return not self.exhausted and not self.is_blocked(now)


class KeyPool:
    """
    Round-robin key rotation with quota and rate-limit tracking.

    Usage::

        pool = KeyPool(load_api_keys())
        cred = pool.acquire()            # raises PoolExhausted
        resp = requests.get(url, params={"apiKey": cred.key, ...})
        pool.report(cred.key, resp.status_code, resp.headers)
    """

    def __init__(
        self,
        keys: List[str],
        clock: Callable[[], float] = time.time,
        cooldown_sec: float = RATE_LIMIT_COOLDOWN_SEC,
    ):
        if not keys:
            raise ValueError("No API keys provided. Set ODDS_API_KEYS in environment")
        self._credentials: List[Credential] = [Credential(key=k) for k in keys]
        self._by_key: Dict[str, Credential] = {c.key: c for c in self._credentials}
        self._cursor = 0
        self._clock = clock
        self._cooldown_sec = cooldown_sec
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def cursor(self) -> int:
        return self._cursor

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def acquire(self) -> Credential:
        """
        Return the first selectable key at or after the cursor.

        Unusable keys are rotated past; an expired cooldown is cleared on the
        way.  At most ``len(pool)`` keys are examined.
        """
        with self._lock:
            now = self._clock()
            for _ in range(len(self._credentials)):
                cred = self._credentials[self._cursor]
                if cred.blocked_until is not None and cred.blocked_until <= now:
                    cred.blocked_until = None
                if cred.is_selectable(now):
                    return cred
                self._rotate()
        logger.error("Key pool exhausted: all %d keys unusable", len(self._credentials))
        raise PoolExhausted("All API keys are exhausted or rate-limited.")

    def rotate(self) -> None:
        """Advance the cursor to the next key."""
        with self._lock:
            self._rotate()

    def _rotate(self) -> None:
        self._cursor = (self._cursor + 1) % len(self._credentials)

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def report(
        self,
        key: str,
        status_code: Optional[int],
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        Update a key from the outcome of an upstream call.

        ``status_code`` is ``None`` when no response arrived (timeout or
        connection error).  Unknown keys are ignored.
        """
        with self._lock:
            cred = self._by_key.get(key)
            if cred is None:
                return

            lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
            remaining = _parse_int(lowered.get(HEADER_REMAINING))
            if remaining is not None:
                cred.remaining = remaining
                used = _parse_int(lowered.get(HEADER_USED))
                if used is not None:
                    cred.used = used
                logger.info(
                    "Key %s remaining: %d, used: %s",
                    cred.prefix, remaining, used if used is not None else "?",
                )
                if remaining <= 0:
                    logger.warning("Key %s has 0 remaining requests, marking exhausted", cred.prefix)
                    cred.exhausted = True
                    self._rotate()
                    return

            if status_code == 200:
                cred.usage_count += 1
            elif status_code == 429:
                logger.warning(
                    "Key %s hit rate limit, blocked for %.0fs", cred.prefix, self._cooldown_sec,
                )
                cred.blocked_until = self._clock() + self._cooldown_sec
                self._rotate()
            elif status_code == 401:
                logger.warning("Key %s quota exceeded or invalid, marking exhausted", cred.prefix)
                cred.exhausted = True
                self._rotate()
            else:
                cred.errors += 1

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Dict:
        """Read-only summary for the status endpoint; keys are masked."""
        with self._lock:
            now = self._clock()
            creds = list(self._credentials)
            return {
                "total_keys": len(creds),
                "active_keys": sum(1 for c in creds if c.is_selectable(now)),
                "exhausted_keys": sum(1 for c in creds if c.exhausted),
                "blocked_keys": sum(1 for c in creds if c.is_blocked(now)),
                "total_remaining": sum(c.remaining for c in creds if c.remaining is not None),
                "keys": [
                    {
                        "prefix": c.prefix,
                        "usage": c.usage_count,
                        "remaining": c.remaining,
                        "used": c.used,
                        "exhausted": c.exhausted,
                        "blocked": c.is_blocked(now),
                        "errors": c.errors,
                    }
                    for c in creds
                ],
            }


def _parse_int(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError, OverflowError):
        return None
