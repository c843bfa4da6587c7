from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from esign_engine.schemas.template import SigningRequirements


class DeviceType(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


class LegalBasis(str, Enum):
    CONSENT = "consent"
    LEGITIMATE_INTEREST = "legitimate_interest"
    CONTRACT = "contract"


class RequestContext(BaseModel):
    """What the transport layer knows about the caller opening a signing session."""

    ip_address: str = "unknown"
    user_agent: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    screen_resolution: str | None = None
    timezone: str | None = None
    color_depth: int | None = None
    pixel_ratio: float | None = None
    touch_support: bool | None = None

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class DeviceInfo(BaseModel):
    type: DeviceType = DeviceType.DESKTOP
    os: str = "Unknown"
    browser: str = "Unknown"
    screen_resolution: str | None = None
    color_depth: int | None = None
    touch_support: bool | None = None


class GeoLocation(BaseModel):
    latitude: float | None = None
    longitude: float | None = None
    accuracy: float | None = None
    country: str | None = None
    region: str | None = None
    city: str | None = None
    timezone: str | None = None
    legal_basis: LegalBasis = LegalBasis.LEGITIMATE_INTEREST
    consent_given: bool = False


class MouseSample(BaseModel):
    x: float
    y: float
    timestamp: float


class SignerEvidence(BaseModel):
    session_id: str
    session_started_at: datetime
    ip_address: str
    user_agent: str
    device_fingerprint: str
    device: DeviceInfo
    location: GeoLocation = Field(default_factory=GeoLocation)
    document_hash: str
    document_version: str
    mouse_movements: List[MouseSample] = Field(default_factory=list)
    keystroke_pattern: List[float] = Field(default_factory=list)
    scroll_depth: float = 0.0
    time_on_page: float = 0.0
    session_duration: float | None = None
    page_views: int = 1


class EvidencePayload(BaseModel):
    mouse_movements: List[MouseSample] = Field(default_factory=list)
    keystroke_pattern: List[float] = Field(default_factory=list)
    scroll_depth: Optional[float] = Field(default=None, ge=0, le=100)
    time_on_page: Optional[float] = Field(default=None, ge=0)
    geolocation_consent: Optional[bool] = None
    biometric: Optional[Dict[str, Any]] = None


class EvidenceAck(BaseModel):
    contract_id: str
    signer_id: str
    session_id: str
    mouse_samples: int
    keystroke_samples: int
    scroll_depth: float
    time_on_page: float


class SessionStartRequest(BaseModel):
    screen_resolution: str | None = None
    timezone: str | None = None
    color_depth: int | None = None
    pixel_ratio: float | None = None
    touch_support: bool | None = None


class SessionStartResult(BaseModel):
    session_id: str
    contract_id: str
    signer_id: str
    resumed: bool
    title: str
    content: str
    content_html: str | None = None
    signing_requirements: SigningRequirements
    expires_at: datetime | None = None
