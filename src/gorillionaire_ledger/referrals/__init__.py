"""Referral codes and referral point bonuses."""

from gorillionaire_ledger.referrals.service import (
    ReferralEligibility,
    ReferralOutcome,
    ReferralService,
    ReferralStats,
    generate_referral_code,
)

__all__ = [
    "ReferralEligibility",
    "ReferralOutcome",
    "ReferralService",
    "ReferralStats",
    "generate_referral_code",
]
