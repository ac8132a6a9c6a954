"""
Analytics context stored with each submission record.

Collects geo, URL chain, UTM, session, device and form-engagement
fields. Payload values win; request headers and the User-Agent are the
fallback.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from silent_trust.reputation.lookup import Location, ReputationLookup
from silent_trust.signals import RequestContext, SignalPayload, os_family, ua_family

logger = logging.getLogger(__name__)

UTM_FIELDS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")

_MOBILE_OS = {"iOS", "Android"}


def epoch_ms_to_iso(value: Optional[int]) -> Optional[str]:
    """Client epoch milliseconds as an ISO timestamp (UTC), None when absent or invalid."""
    if value is None:
        return None
    try:
        return datetime.utcfromtimestamp(value / 1000).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def geo_fields(location: Optional[Location]) -> dict[str, Any]:
    location = location or Location()
    return {
        "country_code": location.country_code,
        "ip_country_name": location.country_name,
        "ip_region": location.region,
        "ip_city": location.city,
        "ip_latitude": location.latitude,
        "ip_longitude": location.longitude,
        "ip_timezone": location.timezone,
    }


def extract_analytics(
    payload: Optional[SignalPayload],
    context: RequestContext,
    location: Optional[Location] = None,
) -> dict[str, Any]:
    p = payload or SignalPayload()
    user_agent = context.user_agent or ""
    detected_os = os_family(user_agent)

    data = geo_fields(location)

    # Referer is the page holding the form, not the submit endpoint
    data.update({
        "page_url": p.page_url,
        "landing_url": p.landing_url,
        "first_url": p.first_url,
        "lead_url": p.lead_url or context.referer,
        "referrer_url": p.referrer_url or context.referer,
    })

    data.update({name: getattr(p, name) for name in UTM_FIELDS})

    data.update({
        "session_id": p.session_id,
        "session_duration": p.session_duration or 0,
        "pages_visited": p.pages_visited or 1,
        "visit_count": p.visit_count or 1,
    })

    data.update({
        "user_agent": user_agent or None,
        "browser_name": p.browser_name or ua_family(user_agent),
        "browser_version": p.browser_version,
        "os_name": p.os_name or detected_os,
        "os_version": p.os_version,
        "is_mobile": p.is_mobile if p.is_mobile is not None else detected_os in _MOBILE_OS,
        "screen_resolution": p.screen_resolution,
    })

    data.update({
        "time_on_page": p.time_on_page,
        "form_start_time": epoch_ms_to_iso(p.form_start_time),
        "form_complete_time": epoch_ms_to_iso(p.form_complete_time),
    })

    return data


async def collect_analytics(
    lookup: ReputationLookup,
    payload: Optional[SignalPayload],
    context: RequestContext,
) -> dict[str, Any]:
    """``extract_analytics`` with the GeoIP lookup; a failed lookup leaves geo fields empty."""
    location = await lookup.safe_location(context.ip_address)
    return extract_analytics(payload, context, location)
