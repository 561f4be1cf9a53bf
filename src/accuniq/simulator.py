"""Analyzer simulator for development without hardware.

Listens on a serial port (typically one end of a socat PTY pair) and
answers the client's commands the way the analyzer does:

- ``I``: identity string
- ``K``: serial number
- ``A``: current status byte
- ``M``: a canned 113-field measurement
- ``B``: stores the member info and ACKs it; with ``--cycle`` it then
  steps through MeasuringWeight, MeasuringBodyComposition and
  CompleteDisplay so the client fetches the result by itself
- ``T``: stores the clock string, no reply

Usage:
    accuniq-sim <port> [--baudrate N] [--cycle]

Example:
    socat -d -d pty,raw,echo=0,link=/tmp/accuniq-dev pty,raw,echo=0,link=/tmp/accuniq-host
    accuniq-sim /tmp/accuniq-dev --cycle
"""

import argparse
import logging

from accuniq import protocol
from accuniq.framer import FrameDecoder
from accuniq.protocol import ETX, STX, checksum, packet_command, packet_data
from accuniq.transport import SerialLink

log = logging.getLogger(__name__)

DEVICE_INFO = "BC720&AP&1.4&1.0&K&0"
SERIAL_NUMBER = "SN12345"

STATUS_READY = 0x30
STATUS_MEASURING_WEIGHT = 0x31
STATUS_MEASURING_BODY = 0x35
STATUS_COMPLETE = 0x36

MEASUREMENT_FIELD_COUNT = 113

# Male, 27 years, 173.0 cm, 60.1 kg, 10.1 % body fat.
SAMPLE_FIELDS = {
    4: "1",
    5: "027",
    6: "1730",
    7: "0601",
    8: "0395",
    9: "0560",
    19: "0504",
    60: "0101",
    108: "025",
    109: "1537",
    112: "0355",
}


def frame_safe_packet(command: str, text: str = "") -> bytes:
    """Encode *text* so the packet's BCC is neither STX nor ETX.

    The client's framer treats those two values as delimiters wherever
    they appear, so the payload is padded with trailing spaces until
    the checksum moves off them.  Parsers on the other end strip fields.
    """
    data = text.encode("latin-1")
    while True:
        body = bytes([STX]) + command.encode("ascii") + data + bytes([ETX])
        if checksum(body) not in (STX, ETX):
            return body + bytes([checksum(body)])
        data += b" "


def build_measurement_payload(values: dict[int, str] | None = None,
                              count: int = MEASUREMENT_FIELD_COUNT) -> str:
    """Return *count* comma-separated fields, ``"0"`` where not given."""
    values = SAMPLE_FIELDS if values is None else values
    return ",".join(values.get(i, "0") for i in range(count))


def state_packet(status: int) -> bytes:
    """Build an ``A`` reply carrying a single status byte."""
    return protocol.encode_packet(protocol.CMD_DEVICE_STATE, bytes([status]))


class AnalyzerSimulator:
    """Protocol half of the simulator: packets in, reply packets out.

    Args:
        device_info: Identity string returned for ``I``.
        serial_number: Returned for ``K``.
        fields: Measurement field values by offset; SAMPLE_FIELDS by default.
        cycle: Run a measurement cycle after each ``B``.
    """

    def __init__(self, device_info: str = DEVICE_INFO,
                 serial_number: str = SERIAL_NUMBER,
                 fields: dict[int, str] | None = None,
                 cycle: bool = False):
        self.device_info = device_info
        self.serial_number = serial_number
        self.fields = fields
        self.cycle = cycle
        self.status = STATUS_READY
        self.members: list[str] = []
        self.clock: str | None = None

    def handle(self, packet: bytes) -> list[bytes]:
        """Return the packets to send back for one received packet."""
        command = packet_command(packet)
        data = packet_data(packet)

        if command == protocol.CMD_DEVICE_VERSION:
            return [frame_safe_packet(command, self.device_info)]
        if command == protocol.CMD_SERIAL_NUMBER:
            return [frame_safe_packet(command, self.serial_number)]
        if command == protocol.CMD_DEVICE_STATE:
            return [state_packet(self.status)]
        if command == protocol.CMD_MEASUREMENT:
            return [frame_safe_packet(command, build_measurement_payload(self.fields))]
        if command == protocol.CMD_MEMBER_INFO:
            self.members.append(data or "")
            log.info("member info: %s", data)
            replies = [frame_safe_packet(command, "OK")]
            if self.cycle:
                replies.extend(self.measurement_cycle())
            return replies
        if command == protocol.CMD_TIME:
            self.clock = data
            log.info("clock set to %s", data)
            return []

        log.info("ignoring command %r", command)
        return []

    def step(self, status: int) -> bytes:
        """Move to *status* and return the unsolicited ``A`` packet."""
        self.status = status
        return state_packet(status)

    def measurement_cycle(self) -> list[bytes]:
        """Status packets for a full weigh-in, ending on CompleteDisplay."""
        return [
            self.step(STATUS_MEASURING_WEIGHT),
            self.step(STATUS_MEASURING_BODY),
            self.step(STATUS_COMPLETE),
        ]


def run(port: str, baudrate: int, cycle: bool = False) -> None:
    """Serve *port* until interrupted."""
    link = SerialLink(port, baudrate)
    decoder = FrameDecoder()
    sim = AnalyzerSimulator(cycle=cycle)

    print("simulator: listening on {} at {} baud".format(port, baudrate),
          flush=True)

    try:
        while True:
            data = link.read(256)
            if not data:
                continue
            for packet in decoder.feed_data(data):
                for reply in sim.handle(packet):
                    link.write(reply)
    except KeyboardInterrupt:
        pass
    finally:
        link.close()


def main() -> None:
    """CLI entry point for ``accuniq-sim``."""
    parser = argparse.ArgumentParser(description="Accuniq analyzer simulator")
    parser.add_argument("port", help="serial port to serve, e.g. a socat PTY")
    parser.add_argument("--baudrate", type=int, default=9600)
    parser.add_argument(
        "--cycle", action="store_true",
        help="run a measurement cycle after each member info packet",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="enable debug logging",
    )
    args = parser.parse_args()

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=logging.DEBUG if args.verbose else logging.INFO,
    )
    run(args.port, args.baudrate, args.cycle)


if __name__ == "__main__":
    main()
