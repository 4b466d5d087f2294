"""
Verity — Fail-Closed Screening Helpers

A compliance screen never passes implicitly. When a screening provider
still fails after the activity layer's retries, the screen is reported
as flagged with the provider error attached instead of as clear.
"""

from __future__ import annotations

import logging
from typing import Awaitable

from activities.base import ScreeningResult, WalletScreening

logger = logging.getLogger("verity.screening")


async def fail_closed(screen: str, aw: Awaitable[ScreeningResult]) -> ScreeningResult:
    """Await a screening call; any provider failure becomes a flagged result."""
    try:
        return await aw
    except Exception as e:
        logger.warning("Screening unavailable, failing closed (screen=%s): %s", screen, str(e)[:200])
        return ScreeningResult(
            screen=screen, matched=False, risk_level="unknown",
            details="screening provider unavailable", error=f"{type(e).__name__}: {e}",
        )


async def fail_closed_wallet(address: str, aw: Awaitable[WalletScreening]) -> WalletScreening:
    try:
        return await aw
    except Exception as e:
        logger.warning("Wallet screening unavailable, failing closed: %s", str(e)[:200])
        return WalletScreening(address=address, risk_score=100, matched=True, error=f"{type(e).__name__}: {e}")


def risk_from_score(score: int | float) -> str:
    """Map a 0-100 provider risk score to a risk level."""
    if score > 75:
        return "critical"
    if score > 50:
        return "high"
    if score > 25:
        return "medium"
    return "low"
