"""Which premium features each subscription tier unlocks."""

from enum import Enum
from typing import FrozenSet, List


class Capability(str, Enum):
    UNLIMITED_SCANS = "unlimited_scans"
    FULL_RISK_BREAKDOWN = "full_risk_breakdown"
    SCAN_HISTORY = "scan_history"
    VOICE_READOUT = "voice_readout"
    MPESA_CHECKS = "mpesa_checks"
    AD_FREE = "ad_free"
    PRIORITY_SUPPORT = "priority_support"
    SELLER_BADGE = "seller_badge"
    ANALYTICS_DASHBOARD = "analytics_dashboard"
    BULK_SCANNING = "bulk_scanning"
    API_ACCESS = "api_access"


PREMIUM_CAPABILITIES: FrozenSet[Capability] = frozenset({
    Capability.UNLIMITED_SCANS,
    Capability.FULL_RISK_BREAKDOWN,
    Capability.SCAN_HISTORY,
    Capability.VOICE_READOUT,
    Capability.MPESA_CHECKS,
    Capability.AD_FREE,
    Capability.PRIORITY_SUPPORT,
})

TIER_CAPABILITIES = {
    "free": frozenset(),
    "premium": PREMIUM_CAPABILITIES,
    "premium_seller": PREMIUM_CAPABILITIES | {
        Capability.SELLER_BADGE,
        Capability.ANALYTICS_DASHBOARD,
        Capability.BULK_SCANNING,
        Capability.API_ACCESS,
    },
}


def capabilities_for(tier: str) -> List[str]:
    return sorted(c.value for c in TIER_CAPABILITIES.get(tier, frozenset()))


def has_capability(user: dict, capability: Capability) -> bool:
    tier = (user or {}).get("subscription_tier", "free")
    return capability in TIER_CAPABILITIES.get(tier, frozenset())
