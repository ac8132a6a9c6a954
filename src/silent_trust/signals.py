"""
Signal payload and request context.

The client-side collector posts a JSON payload with fingerprint,
behavioral and session metadata. It is parsed exactly once, here, into
an immutable ``SignalPayload``; every analyzer downstream works on the
typed model. Request facts (IP, device cookie, headers, posted fields)
travel in an explicit ``RequestContext`` instead of being read from
ambient request state.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


class DeviceType(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"
    UNKNOWN = "unknown"


class SignalPayload(BaseModel):
    """Normalized client-side signals for one form view."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    # Identity
    device_type: Optional[DeviceType] = None
    fingerprint_hash: Optional[str] = None
    canvas_hash: Optional[str] = None
    webgl_hash: Optional[str] = None

    # Static traits
    user_agent: Optional[str] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    timezone: Optional[str] = None
    timezone_offset: Optional[int] = None
    language: Optional[str] = None
    platform: Optional[str] = None
    hardware_concurrency: Optional[int] = None

    # Behavior
    field_count: Optional[int] = None
    total_time: Optional[float] = None  # seconds
    time_per_field: Optional[float] = None  # milliseconds
    mouse_events: Optional[int] = None
    touch_events: Optional[int] = None
    # Older collectors post key_count / focus_count
    key_events: Optional[int] = Field(default=None, validation_alias=AliasChoices("key_events", "key_count"))
    focus_events: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("focus_events", "focus_count")
    )
    typing_speed: Optional[float] = None  # words per minute
    touch_speed: Optional[float] = None  # touches per second
    typing_mechanical: Optional[bool] = None

    # URL chain
    page_url: Optional[str] = None
    landing_url: Optional[str] = None
    first_url: Optional[str] = None
    lead_url: Optional[str] = None
    referrer_url: Optional[str] = None

    # Campaign
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None

    # Session & device details
    session_id: Optional[str] = None
    session_duration: Optional[int] = None
    pages_visited: Optional[int] = None
    visit_count: Optional[int] = None
    browser_name: Optional[str] = None
    browser_version: Optional[str] = None
    os_name: Optional[str] = None
    os_version: Optional[str] = None
    is_mobile: Optional[bool] = None
    screen_resolution: Optional[str] = None

    # Form engagement (epoch milliseconds)
    time_on_page: Optional[int] = None
    form_start_time: Optional[int] = None
    form_complete_time: Optional[int] = None

    @field_validator("device_type", mode="before")
    @classmethod
    def normalize_device_type(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        if isinstance(v, str):
            v = v.lower().strip()
            if v not in {d.value for d in DeviceType}:
                return DeviceType.UNKNOWN
        return v

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["SignalPayload"]:
        """
        Parse a raw payload (JSON string or mapping).

        Fields that fail validation are dropped and the rest of the
        payload is kept. Returns None for empty, non-object or unparseable
        input, or when no valid field remains, so that callers can score it
        as a missing payload.
        """
        if raw is None or raw == "" or raw == {}:
            return None

        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except (TypeError, ValueError):
                logger.debug("Signal payload is not valid JSON")
                return None

        if not isinstance(raw, Mapping) or not raw:
            return None

        data = dict(raw)
        while data:
            try:
                return cls.model_validate(data)
            except ValidationError as e:
                invalid = {error["loc"][0] for error in e.errors() if error["loc"]} & set(data)
                if not invalid:
                    logger.debug(f"Signal payload failed validation: {e.error_count()} errors")
                    return None
                logger.debug(f"Dropping invalid signal fields: {sorted(map(str, invalid))}")
                data = {k: v for k, v in data.items() if k not in invalid}
        return None

    @property
    def effective_device_type(self) -> DeviceType:
        return self.device_type or DeviceType.UNKNOWN

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe dict of the populated fields, for persistence."""
        return self.model_dump(mode="json", exclude_none=True)


@dataclass(frozen=True)
class RequestContext:
    """Immutable facts about the HTTP request carrying a submission."""

    ip_address: str
    received_at: datetime
    device_cookie: Optional[str] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    form_id: Optional[str] = None
    posted_fields: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Freeze the posted fields so components cannot mutate them.
        object.__setattr__(self, "posted_fields", MappingProxyType(dict(self.posted_fields)))


_UA_FAMILIES = [
    ("edge", re.compile(r"Edg(e|A|iOS)?/", re.I)),
    ("opera", re.compile(r"OPR/|Opera", re.I)),
    ("samsung", re.compile(r"SamsungBrowser/", re.I)),
    ("firefox", re.compile(r"Firefox/|FxiOS/", re.I)),
    ("chrome", re.compile(r"Chrome/|CriOS/", re.I)),
    ("safari", re.compile(r"Safari/", re.I)),
]

_OS_FAMILIES = [
    ("iOS", re.compile(r"iPhone|iPad|iPod", re.I)),
    ("Android", re.compile(r"Android", re.I)),
    ("Windows", re.compile(r"Windows", re.I)),
    ("macOS", re.compile(r"Mac OS X|Macintosh", re.I)),
    ("Linux", re.compile(r"Linux", re.I)),
]


def ua_family(user_agent: Optional[str]) -> Optional[str]:
    """Browser family of a User-Agent string (order matters: Edge claims Chrome)."""
    if not user_agent:
        return None
    for name, pattern in _UA_FAMILIES:
        if pattern.search(user_agent):
            return name
    return "other"


def os_family(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    for name, pattern in _OS_FAMILIES:
        if pattern.search(user_agent):
            return name
    return "other"


def stable_traits(payload: Mapping[str, Any]) -> dict[str, Any]:
    """
    Traits that should not change for one physical device.

    Accepts a payload snapshot so stored history can be compared
    against the live payload.
    """
    width = payload.get("screen_width")
    height = payload.get("screen_height")
    return {
        "ua_family": ua_family(payload.get("user_agent")),
        "platform": payload.get("platform"),
        "timezone": payload.get("timezone"),
        "screen": f"{width}x{height}" if width and height else None,
    }
