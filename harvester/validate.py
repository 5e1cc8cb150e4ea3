"""Validate extracted records against domain bounds before writing."""

from datetime import datetime

from harvester.config import Settings, settings as default_settings
from harvester.models import (
    OFFERING_TYPES,
    ExtractedExperience,
    ExtractedOffering,
    ExtractionResult,
    RunStatus,
    ValidationResult,
)

_OFFERING_TYPE_SET = frozenset(OFFERING_TYPES)


def check_offering(offering: ExtractedOffering, bounds: Settings) -> str | None:
    """Return the rejection reason, or None if the offering is acceptable."""
    if not offering.name or not offering.name.strip():
        return "Wine missing name"
    if offering.offering_type not in _OFFERING_TYPE_SET:
        return f"Unknown wine type: {offering.offering_type}"
    if offering.price is not None and not (
        bounds.offering_price_min <= offering.price <= bounds.offering_price_max
    ):
        return f"Wine price out of range: ${offering.price} ({offering.name})"
    max_vintage = datetime.now().year
    if offering.vintage is not None and not (
        bounds.vintage_min <= offering.vintage <= max_vintage
    ):
        return f"Wine vintage out of range: {offering.vintage} ({offering.name})"
    return None


def check_experience(experience: ExtractedExperience, bounds: Settings) -> str | None:
    if not experience.name or not experience.name.strip():
        return "Tasting missing name"
    if experience.price is not None and not (
        0 <= experience.price <= bounds.experience_price_max
    ):
        return f"Tasting price out of range: ${experience.price} ({experience.name})"
    if experience.duration_minutes is not None and not (
        bounds.duration_min <= experience.duration_minutes <= bounds.duration_max
    ):
        return (
            f"Tasting duration out of range: {experience.duration_minutes}min "
            f"({experience.name})"
        )
    return None


def validate_extraction(
    result: ExtractionResult, bounds: Settings = default_settings
) -> ValidationResult:
    """
    Partition extracted records into accepted and rejected.

    Rejections become warnings. The extraction is invalid when neither an
    offering nor an experience survives.
    """
    validation = ValidationResult()

    for offering in result.offerings:
        issue = check_offering(offering, bounds)
        if issue:
            validation.warnings.append(issue)
        else:
            validation.offerings.append(offering)

    for experience in result.experiences:
        issue = check_experience(experience, bounds)
        if issue:
            validation.warnings.append(issue)
        else:
            validation.experiences.append(experience)

    if not validation.offerings and not validation.experiences:
        validation.errors.append("No valid wines or tastings extracted")

    return validation


def run_status(result: ExtractionResult, validation: ValidationResult) -> RunStatus:
    if not validation.valid:
        return RunStatus.FAILED
    return RunStatus.PARTIAL if result.errors else RunStatus.SUCCESS


def validate_coordinates(lat: float, lng: float, bounds: Settings = default_settings) -> bool:
    return (
        bounds.lat_min <= lat <= bounds.lat_max
        and bounds.lng_min <= lng <= bounds.lng_max
    )
