from __future__ import annotations

from tana_valet_api.errors import ValidationError

CAR_TYPES = ("tripod", "automobile", "truck", "trailer")


def normalize_license_plate(plate_code: str, region: str, license_plate_number: str) -> str:
    """CODE-REGION-NUMBER, trimmed and uppercased."""
    parts = [(plate_code or "").strip(), (region or "").strip(), (license_plate_number or "").strip()]
    if not all(parts):
        raise ValidationError("plate_code, region and license_plate_number are required")
    return "-".join(parts).upper()


def validate_car_type(car_type: str) -> str:
    if car_type not in CAR_TYPES:
        raise ValidationError(f"car_type must be one of {', '.join(CAR_TYPES)}")
    return car_type
