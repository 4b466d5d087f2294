"""
Verity — Activities

External-collaborator boundary. Workflows depend on VerificationActivities;
SimulatedActivities is the deterministic in-memory implementation.
"""

from activities.base import (
    AccountRecord,
    BackgroundCheck,
    BankLink,
    DocumentExpiration,
    IdentityInquiry,
    KycProfile,
    ScreeningResult,
    VerificationActivities,
    WalletScreening,
)
from activities.screening import fail_closed, fail_closed_wallet, risk_from_score
from activities.simulated import Script, SimulatedActivities

__all__ = [
    "AccountRecord", "BackgroundCheck", "BankLink", "DocumentExpiration",
    "IdentityInquiry", "KycProfile", "ScreeningResult", "VerificationActivities",
    "WalletScreening", "fail_closed", "fail_closed_wallet", "risk_from_score",
    "Script", "SimulatedActivities",
]
