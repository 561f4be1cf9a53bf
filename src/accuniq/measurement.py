"""Body-composition result decoding.

An ``M`` packet carries a comma-separated list of fixed-position fields.
decode_measurement() pulls the primary values out by offset, scales
them, and derives body-fat mass, BMI and a body-type band.

Decoding never raises: a payload that is too short, or a packet with no
ETX at all, yields the zero-valued default record.

Example:
    >>> from accuniq.measurement import classify_body_type, Gender
    >>> classify_body_type(Gender.MALE, 7.9).value
    'Athletic'
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum

from accuniq.protocol import ETX

log = logging.getLogger(__name__)

MIN_FIELDS = 20

# Field offsets into the comma-split payload, with their divisors.
FIELD_GENDER = 4
FIELD_AGE = 5
FIELD_HEIGHT = 6
FIELD_WEIGHT = 7
FIELD_SKELETAL_MUSCLE = 8
FIELD_BODY_WATER = 9
FIELD_SOFT_LEAN_MASS = 19
FIELD_BODY_FAT_PERCENT = 60
FIELD_BIOLOGICAL_AGE = 108
FIELD_BMR = 109
FIELD_BODY_CELL_MASS = 112

TENTHS = 10.0

_INTEGER = re.compile(r"[+-]?[0-9]+")


class Gender(Enum):
    """Gender as reported by the analyzer (1 = male, 2 = female)."""

    MALE = "Male"
    FEMALE = "Female"
    UNKNOWN = "Unknown"

    @classmethod
    def from_code(cls, code: int) -> "Gender":
        if code == 1:
            return cls.MALE
        if code == 2:
            return cls.FEMALE
        return cls.UNKNOWN


class BodyType(Enum):
    """Qualitative band derived from body-fat percent and gender."""

    ATHLETIC = "Athletic"
    FIT = "Fit"
    NORMAL = "Normal"
    ABOVE_AVERAGE = "Above Average"
    HIGH = "High"
    UNKNOWN = "Unknown"


# Upper bounds (exclusive) of each band; anything above the last is HIGH.
_BANDS = {
    Gender.MALE: (
        (8.0, BodyType.ATHLETIC),
        (15.0, BodyType.FIT),
        (20.0, BodyType.NORMAL),
        (25.0, BodyType.ABOVE_AVERAGE),
    ),
    Gender.FEMALE: (
        (15.0, BodyType.ATHLETIC),
        (22.0, BodyType.FIT),
        (30.0, BodyType.NORMAL),
        (35.0, BodyType.ABOVE_AVERAGE),
    ),
}


@dataclass(frozen=True)
class MeasurementResult:
    """One decoded body-composition measurement.

    Masses are kg, height is cm, BMR is kcal/day, ages are years.
    ``body_fat_mass``, ``bmi`` and ``body_type`` are derived from the
    primary fields by decode_measurement().
    """

    height: float
    weight: float
    body_fat_mass: float
    body_fat_percent: float
    soft_lean_mass: float
    skeletal_muscle_mass: float
    body_water: float
    bmi: float
    bmr: float
    body_cell_mass: float
    age: int
    biological_age: int
    gender: Gender
    body_type: BodyType
    measured_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Return a JSON-friendly dict (enums as text, ISO timestamp)."""
        data = asdict(self)
        data["gender"] = self.gender.value
        data["body_type"] = self.body_type.value
        data["measured_at"] = self.measured_at.isoformat()
        return data


def default_result(measured_at: datetime | None = None) -> MeasurementResult:
    """Return the all-zero record used when a payload cannot be decoded."""
    return MeasurementResult(
        height=0.0,
        weight=0.0,
        body_fat_mass=0.0,
        body_fat_percent=0.0,
        soft_lean_mass=0.0,
        skeletal_muscle_mass=0.0,
        body_water=0.0,
        bmi=0.0,
        bmr=0.0,
        body_cell_mass=0.0,
        age=0,
        biological_age=0,
        gender=Gender.UNKNOWN,
        body_type=BodyType.UNKNOWN,
        measured_at=measured_at or datetime.now(),
    )


def classify_body_type(gender: Gender, body_fat_percent: float) -> BodyType:
    """Band *body_fat_percent* for *gender*; unknown gender is NORMAL."""
    bands = _BANDS.get(gender)
    if bands is None:
        return BodyType.NORMAL
    for upper, body_type in bands:
        if body_fat_percent < upper:
            return body_type
    return BodyType.HIGH


def _field_int(fields: list[str], index: int) -> int:
    """Return fields[index] as an int, or 0 if absent or non-numeric."""
    if index >= len(fields):
        return 0
    text = fields[index].strip()
    if not _INTEGER.fullmatch(text):
        return 0
    return int(text)


def _field_scaled(fields: list[str], index: int, divisor: float) -> float:
    return _field_int(fields, index) / divisor


def split_fields(packet: bytes) -> list[str] | None:
    """Return the comma-split payload of an ``M`` packet.

    The payload runs from index 2 to the last ETX before the trailing
    BCC byte.  Returns None if there is no such ETX.
    """
    end = packet.rfind(ETX, 0, len(packet) - 1)
    if end <= 2:
        return None
    return packet[2:end].decode("latin-1").split(",")


def decode_measurement(
    packet: bytes, measured_at: datetime | None = None,
) -> MeasurementResult:
    """Decode a verified ``M`` packet into a MeasurementResult.

    Args:
        packet: Complete packet, STX through BCC.
        measured_at: Capture time; defaults to now.

    Returns:
        MeasurementResult: Decoded values, or default_result() when the
            packet has no ETX or fewer than MIN_FIELDS fields.

    Example:
        >>> from accuniq.protocol import encode_packet
        >>> decode_measurement(encode_packet("M", b"1,2,3")).gender.value
        'Unknown'
    """
    fields = split_fields(packet)
    if fields is None:
        log.debug("measurement packet has no ETX")
        return default_result(measured_at)

    if len(fields) < MIN_FIELDS:
        log.debug(
            "measurement payload too short: %d fields, need %d",
            len(fields), MIN_FIELDS,
        )
        return default_result(measured_at)

    gender = Gender.from_code(_field_int(fields, FIELD_GENDER))
    height = _field_scaled(fields, FIELD_HEIGHT, TENTHS)
    weight = _field_scaled(fields, FIELD_WEIGHT, TENTHS)
    body_fat_percent = _field_scaled(fields, FIELD_BODY_FAT_PERCENT, TENTHS)

    if height > 0:
        bmi = weight / ((height / 100.0) * (height / 100.0))
    else:
        bmi = 0.0

    return MeasurementResult(
        height=height,
        weight=weight,
        body_fat_mass=weight * (body_fat_percent / 100.0),
        body_fat_percent=body_fat_percent,
        soft_lean_mass=_field_scaled(fields, FIELD_SOFT_LEAN_MASS, TENTHS),
        skeletal_muscle_mass=_field_scaled(fields, FIELD_SKELETAL_MUSCLE, TENTHS),
        body_water=_field_scaled(fields, FIELD_BODY_WATER, TENTHS),
        bmi=bmi,
        bmr=_field_scaled(fields, FIELD_BMR, 1.0),
        body_cell_mass=_field_scaled(fields, FIELD_BODY_CELL_MASS, TENTHS),
        age=_field_int(fields, FIELD_AGE),
        biological_age=_field_int(fields, FIELD_BIOLOGICAL_AGE),
        gender=gender,
        body_type=classify_body_type(gender, body_fat_percent),
        measured_at=measured_at or datetime.now(),
    )


def fmt_measurement(result: MeasurementResult) -> str:
    """One-line summary for logs.

    Example:
        >>> fmt_measurement(default_result())
        'Unknown age 0: 0.0 cm 0.0 kg, fat 0.0% (0.00 kg), BMI 0.0, BMR 0 kcal, Unknown'
    """
    return (
        "%s age %d: %.1f cm %.1f kg, fat %.1f%% (%.2f kg), BMI %.1f, "
        "BMR %.0f kcal, %s" % (
            result.gender.value, result.age, result.height, result.weight,
            result.body_fat_percent, result.body_fat_mass, result.bmi,
            result.bmr, result.body_type.value,
        )
    )
