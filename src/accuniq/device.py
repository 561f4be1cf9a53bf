"""Device identity and member records exchanged with the analyzer.

Example:
    >>> from accuniq.device import DeviceInfo
    >>> info = DeviceInfo.from_string("BC720&AP&1.4&1.0&K&0")
    >>> info.device_name, info.region_code
    ('BC720', 'K')
"""

from dataclasses import dataclass

from accuniq.protocol import ProtocolError

_INFO_SEPARATOR = "&"
_INFO_MIN_PARTS = 4

MEMBER_GENDERS = ("M", "F")


@dataclass
class DeviceInfo:
    """Identity reported by the ``I`` command.

    ``serial_number`` stays empty until a ``K`` reply arrives.
    """

    device_name: str
    region: str
    protocol_version: str
    algorithm_version: str
    region_code: str = ""
    serial_number: str = ""

    @classmethod
    def from_string(cls, text: str) -> "DeviceInfo":
        """Parse ``name&region&protocol&algorithm[&regionCode...]``.

        Raises:
            ProtocolError: If fewer than four ``&``-separated parts are
                present, which means an incompatible protocol version.
        """
        parts = text.split(_INFO_SEPARATOR)
        if len(parts) < _INFO_MIN_PARTS:
            raise ProtocolError(
                "invalid device info: expected at least {} parts, got {} "
                "in {!r}".format(_INFO_MIN_PARTS, len(parts), text)
            )
        return cls(
            device_name=parts[0],
            region=parts[1],
            protocol_version=parts[2],
            algorithm_version=parts[3],
            region_code=parts[4] if len(parts) > 4 else "",
        )

    def attach_serial(self, serial_number: str) -> None:
        """Record the serial number learned from a later ``K`` packet."""
        self.serial_number = serial_number

    def __str__(self) -> str:
        return "{} {} v{} (Serial: {})".format(
            self.device_name, self.region, self.protocol_version,
            self.serial_number or "N/A",
        )


@dataclass(frozen=True)
class MemberInfo:
    """Subject details sent ahead of a measurement (``B`` command)."""

    id: str
    name: str
    age: int
    gender: str
    height: float

    def to_data_string(self) -> str:
        """Join the fields the way the device expects.

        Example:
            >>> MemberInfo("7", "Kim", 27, "M", 173.0).to_data_string()
            '7,Kim,27,M,173.0'
        """
        return "{},{},{},{},{}".format(
            self.id, self.name, self.age, self.gender, float(self.height),
        )


def parse_member(text: str) -> MemberInfo:
    """Parse ``id,name,age,gender,height`` as typed on the command line.

    Raises:
        ValueError: On a wrong field count, a non-numeric age or height,
            or a gender other than ``M``/``F``.
    """
    parts = [p.strip() for p in text.split(",")]
    if len(parts) != 5:
        raise ValueError(
            "member must be id,name,age,gender,height, got %d fields"
            % len(parts)
        )
    member_id, name, age, gender, height = parts
    gender = gender.upper()
    if gender not in MEMBER_GENDERS:
        raise ValueError("member gender must be M or F, got %r" % gender)
    if not name:
        raise ValueError("member name must be non-empty")
    return MemberInfo(
        id=member_id, name=name, age=int(age), gender=gender,
        height=float(height),
    )
