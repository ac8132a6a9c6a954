"""
GeoIP and ASN lookup contract.

Database acquisition and parsing live outside this package; the
scoring engines only see ``ReputationLookup``. Unknown addresses and
lookup failures both come back as None.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Location:
    """Geographic facts about an IP address."""

    country_code: Optional[str] = None
    country_name: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    timezone: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass(frozen=True)
class AsnInfo:
    """Autonomous system that announces an IP address."""

    asn: int
    organization: Optional[str] = None


class ReputationLookup(ABC):
    """Abstract base class for GeoIP/ASN providers."""

    @abstractmethod
    async def get_location(self, ip_address: str) -> Optional[Location]:
        pass

    @abstractmethod
    async def get_asn(self, ip_address: str) -> Optional[AsnInfo]:
        pass

    async def safe_location(self, ip_address: str) -> Optional[Location]:
        """``get_location`` that treats provider errors as unknown."""
        try:
            return await self.get_location(ip_address)
        except Exception as e:
            logger.warning(f"Location lookup failed for {ip_address}: {e}")
            return None

    async def safe_asn(self, ip_address: str) -> Optional[AsnInfo]:
        try:
            return await self.get_asn(ip_address)
        except Exception as e:
            logger.warning(f"ASN lookup failed for {ip_address}: {e}")
            return None


class NullReputationLookup(ReputationLookup):
    """Provider used when no GeoIP database is configured."""

    async def get_location(self, ip_address: str) -> Optional[Location]:
        return None

    async def get_asn(self, ip_address: str) -> Optional[AsnInfo]:
        return None


class StaticReputationLookup(ReputationLookup):
    """
    Provider backed by fixed tables.

    Useful for development and tests, or for a small set of known
    addresses loaded from configuration.
    """

    def __init__(
        self,
        locations: Optional[dict[str, Location]] = None,
        asns: Optional[dict[str, AsnInfo]] = None,
    ):
        self._locations = dict(locations or {})
        self._asns = dict(asns or {})

    def set_location(self, ip_address: str, location: Location) -> None:
        self._locations[ip_address] = location

    def set_asn(self, ip_address: str, asn: AsnInfo) -> None:
        self._asns[ip_address] = asn

    async def get_location(self, ip_address: str) -> Optional[Location]:
        return self._locations.get(ip_address)

    async def get_asn(self, ip_address: str) -> Optional[AsnInfo]:
        return self._asns.get(ip_address)
