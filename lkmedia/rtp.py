"""RTP packet and media sample types, plus a payload size guard for writers."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

NANOSECOND = 1
MICROSECOND = 1_000
MILLISECOND = 1_000_000
SECOND = 1_000_000_000

MAX_PAYLOAD_SIZE = 1200


@dataclass
class RTPPacket:
    """An RTP packet: the header fields the media pipeline uses and its payload."""

    sequence_number: int = 0
    timestamp: int = 0
    marker: bool = False
    payload: bytes = b""
    padding: bool = False
    payload_type: int = 0
    ssrc: int = 0


@dataclass
class Sample:
    """A media frame with its duration in nanoseconds."""

    data: bytes = b""
    duration: int = 0


class Depacketizer:
    """Turns RTP payloads into media data and finds frame boundaries.

    The base implementation treats every payload as raw media, every packet as
    the start of a partition and the marker bit as the end of one. Codec
    specific depacketizers override these methods.
    """

    def unmarshal(self, payload: bytes) -> bytes:
        """Return the media bytes carried by ``payload``."""
        return bytes(payload)

    def is_partition_head(self, payload: bytes) -> bool:
        """Whether ``payload`` begins a new frame."""
        return True

    def is_partition_tail(self, marker: bool, payload: bytes) -> bool:
        """Whether a packet with this marker and payload ends a frame."""
        return marker


class PayloadTooLargeError(ValueError):
    """Raised when a packet payload is larger than the allowed maximum."""

    def __init__(self) -> None:
        super().__init__(
            f"packetization payload size should not greater than {MAX_PAYLOAD_SIZE} bytes"
        )


class LimitSizeWriter:
    """Wraps a packet writer and refuses payloads above ``MAX_PAYLOAD_SIZE``."""

    def __init__(self, writer: Callable[[RTPPacket], int]) -> None:
        self._writer = writer

    def write(self, packet: RTPPacket) -> int:
        """Pass ``packet`` to the wrapped writer, or raise if it is too large."""
        if len(packet.payload) > MAX_PAYLOAD_SIZE:
            raise PayloadTooLargeError()
        return self._writer(packet)