"""IP reputation: GeoIP/ASN lookups and VPN/datacenter detection."""

from silent_trust.reputation.lookup import (
    AsnInfo,
    Location,
    NullReputationLookup,
    ReputationLookup,
    StaticReputationLookup,
)
from silent_trust.reputation.vpn import KNOWN_VPN_ASNS, VpnCheck, VpnDetector

__all__ = [
    "AsnInfo",
    "KNOWN_VPN_ASNS",
    "Location",
    "NullReputationLookup",
    "ReputationLookup",
    "StaticReputationLookup",
    "VpnCheck",
    "VpnDetector",
]
