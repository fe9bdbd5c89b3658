"""Office location validation with GPS-accuracy-aware confidence tiers.

A reported position is checked against every configured office. Per office
the first matching tier wins:

1. exact               distance <= R
2. indoor_compensated  accuracy >= 200m and distance <= 2.5R
3. proximity_based     accuracy > 1000m and distance <= 5R
4. proximity_based     accuracy <= 20m  and distance <= 1.5R
5. failed

Across offices the highest-confidence valid match is returned; if none
passes, the failure is reported against the closest office. Messages and
recommendations are written for employees and never quote the thresholds.
"""
import logging
from typing import List, Optional

from attendance_engine.schemas.location import (
    LocationSample, OfficeCandidate, ValidationResult, ValidationTier,
)
from attendance_engine.services.geodesy import distance_meters

logger = logging.getLogger(__name__)

# GPS quality bands (meters of reported accuracy)
PRECISION_EXCELLENT = 5
PRECISION_GOOD = 20
PRECISION_FAIR = 100
PRECISION_POOR = 1000

# Indoor multipath inflates both accuracy and apparent offset
INDOOR_ACCURACY_THRESHOLD = 200
INDOOR_DISTANCE_MULTIPLIER = 2.5
POOR_GPS_DISTANCE_MULTIPLIER = 5.0
GOOD_GPS_DISTANCE_MULTIPLIER = 1.5

INDOOR_CONFIDENCE = 0.75
POOR_GPS_CONFIDENCE = 0.6
GOOD_GPS_EDGE_CONFIDENCE = 0.65

# Borderline check-in fallback (applied by the orchestrator, not a tier)
FALLBACK_DISTANCE_MULTIPLIER = 2.0
FALLBACK_MIN_ACCURACY = 50
FALLBACK_CONFIDENCE = 0.5


def _exact_confidence(accuracy: float) -> float:
    if accuracy <= PRECISION_EXCELLENT:
        return 0.95
    if accuracy <= PRECISION_GOOD:
        return 0.9
    if accuracy <= PRECISION_FAIR:
        return 0.8
    return 0.7


def _gps_quality_factor(accuracy: float) -> str:
    if accuracy <= PRECISION_EXCELLENT:
        return "excellent_gps"
    if accuracy <= PRECISION_GOOD:
        return "good_gps"
    if accuracy <= PRECISION_FAIR:
        return "fair_gps"
    return "poor_gps_but_close"


def accuracy_recommendations(accuracy: float) -> List[str]:
    """Plain-language advice for the current GPS quality."""
    if accuracy > PRECISION_POOR:
        return [
            "Move to an open area away from tall buildings",
            "Restart your location services",
            "Check that location permission is granted for this app",
        ]
    if accuracy > PRECISION_FAIR:
        return [
            "Move closer to a window if you are indoors",
            "Wait a moment for your GPS signal to improve",
        ]
    return []


def validate_against_office(
    sample: LocationSample, office: OfficeCandidate, distance: float
) -> ValidationResult:
    """Classify one sample against one office using the tier order above."""
    accuracy = sample.accuracy_meters
    radius = office.radius_meters
    recommendations: List[str] = []
    factors: List[str] = []
    effective_radius = radius

    if distance <= radius:
        tier = ValidationTier.EXACT
        confidence = _exact_confidence(accuracy)
        message = f"Office location confirmed at {office.name}. Distance: {round(distance)}m"
        factors += ["within_base_radius", _gps_quality_factor(accuracy)]
    elif accuracy >= INDOOR_ACCURACY_THRESHOLD and distance <= radius * INDOOR_DISTANCE_MULTIPLIER:
        tier = ValidationTier.INDOOR_COMPENSATED
        confidence = INDOOR_CONFIDENCE
        effective_radius = radius * INDOOR_DISTANCE_MULTIPLIER
        message = f"Indoor GPS detected. Office location confirmed at {office.name}. Distance: {round(distance)}m"
        factors.append("indoor_gps_compensation")
        recommendations.append("GPS accuracy is often limited indoors - this is normal")
    elif accuracy > PRECISION_POOR and distance <= radius * POOR_GPS_DISTANCE_MULTIPLIER:
        tier = ValidationTier.PROXIMITY_BASED
        confidence = POOR_GPS_CONFIDENCE
        effective_radius = radius * POOR_GPS_DISTANCE_MULTIPLIER
        message = f"Weak GPS signal. Office location accepted based on proximity to {office.name}. Distance: {round(distance)}m"
        factors.append("poor_gps_proximity")
        recommendations += [
            "Try moving to an area with a better GPS signal",
            "Move closer to a window if you are indoors",
        ]
    elif accuracy <= PRECISION_GOOD and distance <= radius * GOOD_GPS_DISTANCE_MULTIPLIER:
        tier = ValidationTier.PROXIMITY_BASED
        confidence = GOOD_GPS_EDGE_CONFIDENCE
        message = f"Close to {office.name}. Office location accepted. Distance: {round(distance)}m"
        factors.append("close_proximity_good_gps")
    else:
        tier = ValidationTier.FAILED
        confidence = 0.0
        message = f"Outside office premises. Distance: {round(distance)}m"
        if accuracy > PRECISION_POOR:
            factors.append("very_poor_gps")
            recommendations.append("Ensure location services are enabled")
        else:
            factors.append("outside_range")
            recommendations.append(f"Move closer to the office (currently about {round(distance)}m away)")
        recommendations += accuracy_recommendations(accuracy)

    is_valid = tier != ValidationTier.FAILED
    return ValidationResult(
        is_valid=is_valid,
        confidence=confidence,
        distance_meters=round(distance, 1),
        office_id=office.id if is_valid else None,
        office_name=office.name if is_valid else None,
        validation_type=tier,
        effective_radius_meters=round(effective_radius, 1),
        message=message,
        recommendations=recommendations,
        accuracy_meters=accuracy,
        indoor_detection=tier == ValidationTier.INDOOR_COMPENSATED,
        confidence_factors=factors,
    )


def no_offices_result(sample: LocationSample) -> ValidationResult:
    return ValidationResult(
        is_valid=False,
        confidence=0.0,
        distance_meters=0.0,
        validation_type=ValidationTier.NO_OFFICES_CONFIGURED,
        message="No office locations are configured",
        recommendations=["Contact your administrator to configure office locations"],
        accuracy_meters=sample.accuracy_meters,
        confidence_factors=["no_office_locations"],
    )


def validate(sample: LocationSample, offices: List[OfficeCandidate]) -> ValidationResult:
    """Validate a reported position against all candidate offices."""
    if not offices:
        logger.warning("Location validation requested but no office locations are configured")
        return no_offices_result(sample)

    best: Optional[ValidationResult] = None
    closest_office: Optional[OfficeCandidate] = None
    closest_distance = float("inf")

    for office in offices:
        distance = distance_meters(sample.coordinate, office.coordinate)
        if distance < closest_distance:
            closest_distance = distance
            closest_office = office

        result = validate_against_office(sample, office, distance)
        if result.is_valid and (best is None or result.confidence > best.confidence):
            best = result

    if best is not None:
        return best
    return validate_against_office(sample, closest_office, closest_distance)


def borderline_fallback(
    sample: LocationSample, offices: List[OfficeCandidate], result: ValidationResult
) -> Optional[ValidationResult]:
    """Let a near miss with a weak GPS fix through at reduced confidence.

    Only a plain failure qualifies: the fix must be within twice the closest
    office's radius and report worse than ``FALLBACK_MIN_ACCURACY`` meters
    accuracy. Returns the downgraded result, or None when it does not apply.
    """
    if result.validation_type != ValidationTier.FAILED or not offices:
        return None
    if sample.accuracy_meters <= FALLBACK_MIN_ACCURACY:
        return None

    office = min(offices, key=lambda o: distance_meters(sample.coordinate, o.coordinate))
    distance = distance_meters(sample.coordinate, office.coordinate)
    if distance > office.radius_meters * FALLBACK_DISTANCE_MULTIPLIER:
        return None

    return result.model_copy(update={
        "is_valid": True,
        "confidence": FALLBACK_CONFIDENCE,
        "office_id": office.id,
        "office_name": office.name,
        "fallback_applied": True,
        "message": f"Office check-in accepted with reduced confidence near {office.name}. Distance: {round(distance)}m",
        "confidence_factors": result.confidence_factors + ["borderline_fallback"],
    })
