"""
VPN / hosting / datacenter classification by ASN.

An address is classified as VPN when its ASN is on the built-in or
configured list, or when the ASN organization name contains a hosting
keyword. Configured IPs and CIDR ranges (corporate VPNs) are exempt.
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from silent_trust.reputation.lookup import ReputationLookup

logger = logging.getLogger(__name__)

# Cloud, hosting and VPN provider ASNs
KNOWN_VPN_ASNS = frozenset({
    16509,  # Amazon AWS
    15169,  # Google Cloud
    8075,   # Microsoft Azure
    14061,  # DigitalOcean
    20473,  # Choopa (Vultr)
    24940,  # Hetzner
    16276,  # OVH
    9009,   # M247
    51167,  # Contabo
    60068,  # CDN77
})

VPN_ORG_KEYWORDS = ("vpn", "proxy", "datacenter", "hosting", "cloud", "server")

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass
class VpnCheck:
    """Classification result for one address."""

    is_vpn: bool
    confidence: str  # low, medium, high
    reason: Optional[str] = None
    asn: Optional[int] = None
    organization: Optional[str] = None


class VpnDetector:
    """Classifies addresses as VPN/datacenter using an ASN lookup."""

    def __init__(
        self,
        lookup: ReputationLookup,
        extra_asns: Iterable[int] = (),
        allowed_asns: Iterable[int] = (),
        whitelist: Iterable[str] = (),
    ):
        self.lookup = lookup
        self.allowed_asns = set(allowed_asns)
        self.vpn_asns = (KNOWN_VPN_ASNS | set(extra_asns)) - self.allowed_asns
        self._exact: set[str] = set()
        self._networks: list[Network] = []

        for entry in whitelist:
            entry = entry.strip()
            if not entry:
                continue
            if "/" in entry:
                try:
                    self._networks.append(ipaddress.ip_network(entry, strict=False))
                except ValueError:
                    logger.warning(f"Ignoring invalid VPN whitelist range: {entry}")
            else:
                self._exact.add(entry)

    @classmethod
    def from_settings(cls, lookup: ReputationLookup, settings) -> "VpnDetector":
        return cls(
            lookup,
            extra_asns=settings.vpn_asn_list,
            allowed_asns=settings.vpn_asn_allow_list,
            whitelist=settings.vpn_whitelist_ips,
        )

    def is_whitelisted(self, ip_address: str) -> bool:
        """Exact match or membership in a whitelisted IPv4/IPv6 range."""
        if ip_address in self._exact:
            return True
        if not self._networks:
            return False
        try:
            address = ipaddress.ip_address(ip_address)
        except ValueError:
            return False
        return any(
            address.version == network.version and address in network
            for network in self._networks
        )

    async def check(self, ip_address: str) -> VpnCheck:
        asn_info = await self.lookup.safe_asn(ip_address)
        if asn_info is None:
            return VpnCheck(is_vpn=False, confidence="low", reason="ASN data not available")

        if asn_info.asn in self.allowed_asns:
            return VpnCheck(
                is_vpn=False,
                confidence="high",
                reason="Allow-listed ASN",
                asn=asn_info.asn,
                organization=asn_info.organization,
            )

        if asn_info.asn in self.vpn_asns:
            return VpnCheck(
                is_vpn=True,
                confidence="high",
                reason="Known VPN/hosting ASN",
                asn=asn_info.asn,
                organization=asn_info.organization,
            )

        org = (asn_info.organization or "").lower()
        for keyword in VPN_ORG_KEYWORDS:
            if keyword in org:
                return VpnCheck(
                    is_vpn=True,
                    confidence="medium",
                    reason=f"Organization name contains: {keyword}",
                    asn=asn_info.asn,
                    organization=asn_info.organization,
                )

        return VpnCheck(
            is_vpn=False,
            confidence="medium",
            asn=asn_info.asn,
            organization=asn_info.organization,
        )
