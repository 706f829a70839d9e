"""Core odds mathematics for the Sharp Odds backend.

This package contains pure, provider-agnostic building blocks:

- ``odds_math``  — implied probability, margin, proportional vig removal
- ``consensus``  — best / average price and per-bookmaker margin for a market

Nothing in this package imports from ``backend.services`` or ``backend.models``.
All modules are side-effect-free and unit-testable in isolation.
"""
