import enum
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class ValidationTier(str, enum.Enum):
    EXACT = "exact"
    INDOOR_COMPENSATED = "indoor_compensated"
    PROXIMITY_BASED = "proximity_based"
    FAILED = "failed"
    NO_OFFICES_CONFIGURED = "no_offices_configured"


class Coordinate(BaseModel):
    latitude: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(..., ge=-180, le=180, allow_inf_nan=False)


class LocationSample(BaseModel):
    coordinate: Coordinate
    accuracy_meters: float = Field(..., ge=0, allow_inf_nan=False)
    captured_at: Optional[datetime] = None


class OfficeCandidate(BaseModel):
    """Office geofence as handed to the validator."""
    id: int
    name: str
    coordinate: Coordinate
    radius_meters: float = Field(100, gt=0)


class ValidationResult(BaseModel):
    is_valid: bool
    confidence: float = Field(..., ge=0, le=1)
    distance_meters: float
    office_id: Optional[int] = None
    office_name: Optional[str] = None
    validation_type: ValidationTier
    effective_radius_meters: float = 0
    message: str
    recommendations: List[str] = []
    accuracy_meters: float
    indoor_detection: bool = False
    confidence_factors: List[str] = []
    fallback_applied: bool = False
