"""Packet encoding and inspection for the Accuniq serial protocol.

Handles the framing format spoken by the analyzer over its RS-232 /
Bluetooth SPP link:
STX, COMMAND, DATA..., ETX, BCC.

The BCC (block check character) is the low byte of the sum of every
preceding byte, STX through ETX inclusive.

Example:
    >>> from accuniq.protocol import encode_packet, packet_command
    >>> raw = encode_packet("M")
    >>> raw.hex(' ')
    '02 4d 03 52'
    >>> packet_command(raw)
    'M'
"""

from datetime import datetime

# -- Protocol constants ------------------------------------------------------

STX = 0x02
ETX = 0x03

CMD_DEVICE_VERSION = "I"
CMD_DEVICE_STATE = "A"
CMD_MEASUREMENT = "M"
CMD_SERIAL_NUMBER = "K"
CMD_MEMBER_INFO = "B"
CMD_TIME = "T"

# STX + COMMAND + ETX + BCC
PACKET_MIN_LEN = 4


class ProtocolError(ValueError):
    """Raised when the device speaks a format we cannot interpret."""


# -- Checksum ----------------------------------------------------------------


def checksum(data: bytes) -> int:
    """Compute the BCC over a byte sequence.

    Example:
        >>> checksum(bytes([0x02, 0x4D, 0x03]))
        82
    """
    return sum(data) & 0xFF


def verify_checksum(packet: bytes) -> bool:
    """Check the trailing BCC of a complete packet.

    Returns False for anything shorter than STX + CMD + ETX + BCC.
    """
    if len(packet) < PACKET_MIN_LEN:
        return False
    return checksum(packet[:-1]) == packet[-1]


# -- Encoding ----------------------------------------------------------------


def encode_packet(command: str, data: bytes = b"") -> bytes:
    """Build a complete packet: STX + COMMAND + DATA + ETX + BCC.

    Args:
        command: Command letter(s), e.g. ``"M"``.
        data: Optional payload bytes.

    Example:
        >>> encode_packet("A").hex(' ')
        '02 41 03 46'
    """
    body = bytes([STX]) + command.encode("ascii") + bytes(data) + bytes([ETX])
    return body + bytes([checksum(body)])


def request_device_version() -> bytes:
    """Ask for the name/region/version string (``I``)."""
    return encode_packet(CMD_DEVICE_VERSION)


def request_device_state() -> bytes:
    """Ask for the one-byte device status (``A``)."""
    return encode_packet(CMD_DEVICE_STATE)


def request_measurement() -> bytes:
    """Ask for the latest measurement result (``M``)."""
    return encode_packet(CMD_MEASUREMENT)


def request_serial_number() -> bytes:
    """Ask for the device serial number (``K``)."""
    return encode_packet(CMD_SERIAL_NUMBER)


def transmit_member_info(text: str) -> bytes:
    """Send member details (``B``), already joined as ``id,name,age,gender,height``."""
    return encode_packet(CMD_MEMBER_INFO, text.encode("utf-8"))


def format_time(dt: datetime) -> str:
    """Render *dt* in the 14-digit ``YYYYMMDDHHmmss`` form the device expects.

    Example:
        >>> format_time(datetime(2024, 3, 9, 7, 5, 1))
        '20240309070501'
    """
    return "%04d%02d%02d%02d%02d%02d" % (
        dt.year, dt.month, dt.day, dt.hour, dt.minute, dt.second,
    )


def transmit_time(dt: datetime) -> bytes:
    """Set the device clock (``T``)."""
    return encode_packet(CMD_TIME, format_time(dt).encode("ascii"))


# -- Inspection --------------------------------------------------------------


def packet_command(packet: bytes) -> str | None:
    """Return the command letter at index 1, or None for a short packet."""
    if len(packet) < PACKET_MIN_LEN:
        return None
    return chr(packet[1])


def packet_data(packet: bytes) -> str | None:
    """Return the payload text between the command and the first ETX.

    The search for ETX starts at index 2.  Returns None when the packet
    is shorter than 5 bytes or the payload is empty.

    Example:
        >>> packet_data(encode_packet("K", b"SN1"))
        'SN1'
    """
    if len(packet) < PACKET_MIN_LEN + 1:
        return None

    etx_index = packet.find(ETX, 2)
    if etx_index <= 2:
        return None

    return packet[2:etx_index].decode("utf-8", errors="replace")


def hexdump(data: bytes) -> str:
    """Format bytes as upper-case hex pairs for diagnostics.

    Example:
        >>> hexdump(b"\\x02M\\x03R")
        '02 4D 03 52'
    """
    return " ".join("%02X" % b for b in data)
