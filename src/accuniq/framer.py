"""Incremental packet framer for the analyzer byte stream.

The serial link delivers an unbounded stream of bytes in arbitrary
chunks.  FrameDecoder consumes it one byte at a time and yields each
complete STX ... ETX BCC packet whose checksum verifies.  State is kept
between calls, so a packet split across several reads is reassembled.

Example:
    >>> from accuniq.framer import FrameDecoder
    >>> decoder = FrameDecoder()
    >>> decoder.feed_data(b"\\xff\\x02M\\x03R")
    [b'\\x02M\\x03R']
"""

import logging

from accuniq.protocol import ETX, STX, checksum, hexdump

log = logging.getLogger(__name__)


class FrameDecoder:
    """Byte-at-a-time STX/ETX/BCC state machine.

    There is no length field: a packet ends with the first byte that
    follows an ETX.  Packets with a bad BCC are dropped and reported
    at DEBUG level only, since line noise is expected.

    Not thread-safe; feed it from a single reader.
    """

    def __init__(self):
        """Start idle, waiting for STX."""
        self._buffer = bytearray()
        self._receiving = False
        self.dropped = 0

    @property
    def receiving(self) -> bool:
        """True while a packet is partially buffered."""
        return self._receiving

    def reset(self) -> None:
        """Discard any partial packet."""
        self._buffer.clear()
        self._receiving = False

    def feed(self, byte: int) -> bytes | None:
        """Consume one byte; return a verified packet when one completes."""
        if byte == STX:
            self._buffer.clear()
            self._buffer.append(byte)
            self._receiving = True
            return None

        if not self._receiving:
            return None

        if byte == ETX:
            # BCC follows.
            self._buffer.append(byte)
            return None

        self._buffer.append(byte)
        if len(self._buffer) <= 3 or self._buffer[-2] != ETX:
            return None

        self._receiving = False
        packet = bytes(self._buffer)
        self._buffer.clear()

        expected = checksum(packet[:-1])
        if expected != packet[-1]:
            self.dropped += 1
            log.debug(
                "checksum error: received 0x%02X, computed 0x%02X: %s",
                packet[-1], expected, hexdump(packet),
            )
            return None

        return packet

    def feed_data(self, data: bytes) -> list[bytes]:
        """Consume a chunk; return every packet completed by it, in order."""
        packets = []
        for byte in data:
            packet = self.feed(byte)
            if packet is not None:
                packets.append(packet)
        return packets
