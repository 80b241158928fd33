"""Reader for Ogg/Opus streams that yields one Opus packet at a time."""

from __future__ import annotations

import struct
from collections.abc import Iterator
from dataclasses import dataclass
from typing import BinaryIO

from lkmedia.rtp import MILLISECOND

_PAGE_HEADER_TYPE_BEGINNING_OF_STREAM = 0x02
_PAGE_HEADER_SIGNATURE = b"OggS"
_ID_PAGE_SIGNATURE = b"OpusHead"
_PAGE_HEADER_LEN = 27
_ID_PAGE_PAYLOAD_LENGTH = 19
_PAGE_HEADER = struct.Struct("<4sBBQIIIB")

_MAX_FRAME_DURATION = 120 * MILLISECOND

# Frame durations in nanoseconds, indexed by the TOC configuration number.
_FRAME_DURATIONS = (
    (10_000_000, 20_000_000, 40_000_000, 60_000_000) * 3  # SILK-only
    + (10_000_000, 20_000_000) * 2  # hybrid
    + (2_500_000, 5_000_000, 10_000_000, 20_000_000) * 4  # CELT-only
)


class OggError(Exception):
    """Raised when an Ogg stream is malformed."""


class InvalidPacketError(OggError):
    """Raised when an Opus packet cannot be parsed."""

    def __init__(self) -> None:
        super().__init__("invalid opus packet")


def _generate_checksum_table() -> tuple[int, ...]:
    poly = 0x04C11DB7
    table = []
    for i in range(256):
        r = i << 24
        for _ in range(8):
            r = ((r << 1) ^ poly) if r & 0x80000000 else (r << 1)
            r &= 0xFFFFFFFF
        table.append(r)
    return tuple(table)


_CHECKSUM_TABLE = _generate_checksum_table()


def _checksum(*chunks: bytes) -> int:
    crc = 0
    for chunk in chunks:
        for byte in chunk:
            crc = ((crc << 8) & 0xFFFFFFFF) ^ _CHECKSUM_TABLE[(crc >> 24) ^ byte]
    return crc


@dataclass
class OggHeader:
    """Metadata from the Opus identification page."""

    channel_map: int
    channels: int
    output_gain: int
    pre_skip: int
    sample_rate: int
    version: int


@dataclass
class OggPage:
    """One Ogg page with its segment table and payload."""

    granule_position: int
    signature: bytes
    version: int
    header_type: int
    serial: int
    index: int
    segments_table: bytes
    payload: bytes


class OggReader:
    """Reads Opus packets from an Ogg stream.

    The identification header is parsed on construction and available as
    ``header``; the comment page that follows it is skipped.
    """

    def __init__(self, stream: BinaryIO | None, do_checksum: bool = True) -> None:
        if stream is None:
            raise OggError("stream is nil")
        self._stream = stream
        self._do_checksum = do_checksum
        self._page: OggPage | None = None
        self._segment = 0
        self._offset = 0
        self.header = self._read_headers()
        try:
            self._read_page()
        except (EOFError, OggError):
            pass

    def __iter__(self) -> Iterator[bytes]:
        while True:
            try:
                yield self.read_packet()
            except EOFError:
                return

    def _read_exact(self, size: int) -> bytes:
        data = b""
        while len(data) < size:
            chunk = self._stream.read(size - len(data))
            if not chunk:
                break
            data += chunk
        if size and not data:
            raise EOFError("end of ogg stream")
        if len(data) < size:
            raise OggError("unexpected end of ogg stream")
        return data

    def _read_headers(self) -> OggHeader:
        page = self._read_page()
        if page.signature != _PAGE_HEADER_SIGNATURE:
            raise OggError("bad header signature")
        if page.header_type != _PAGE_HEADER_TYPE_BEGINNING_OF_STREAM:
            raise OggError("wrong header, expected beginning of stream")
        if len(page.payload) != _ID_PAGE_PAYLOAD_LENGTH:
            raise OggError("payload for id page must be 19 bytes")
        if page.payload[:8] != _ID_PAGE_SIGNATURE:
            raise OggError("bad payload signature")

        payload = page.payload
        pre_skip, sample_rate, output_gain = struct.unpack_from("<HIH", payload, 10)
        return OggHeader(
            channel_map=payload[18],
            channels=payload[9],
            output_gain=output_gain,
            pre_skip=pre_skip,
            sample_rate=sample_rate,
            version=payload[8],
        )

    def _read_page(self) -> OggPage:
        header = self._read_exact(_PAGE_HEADER_LEN)
        (signature, version, header_type, granule, serial, index,
         expected_checksum, segments_count) = _PAGE_HEADER.unpack(header)

        segments_table = self._read_exact(segments_count)
        payload = self._read_exact(sum(segments_table))

        if self._do_checksum:
            zeroed = header[:22] + bytes(4) + header[26:]
            if _checksum(zeroed, segments_table, payload) != expected_checksum:
                raise OggError("expected and actual checksum do not match")

        return OggPage(
            granule_position=granule,
            signature=signature,
            version=version,
            header_type=header_type,
            serial=serial,
            index=index,
            segments_table=segments_table,
            payload=payload,
        )

    def read_packet(self) -> bytes:
        """Return the next Opus packet; raise EOFError at the end of the stream."""
        page = self._page
        while page is None:
            page = self._read_page()
            if page.segments_table:
                self._page = page
                self._offset = 0
                self._segment = 0
            else:
                page = None

        packet_size = 0
        while True:
            segment_size = page.segments_table[self._segment]
            packet_size += segment_size
            self._segment += 1
            if self._segment == len(page.segments_table):
                self._page = None
                break
            if segment_size != 255:
                break

        packet = page.payload[self._offset:self._offset + packet_size]
        self._offset += packet_size
        return packet


def parse_packet_duration(data: bytes) -> int:
    """Return the duration in nanoseconds of an Opus packet (RFC 6716, 3.1)."""
    if len(data) < 1:
        raise InvalidPacketError()

    toc = data[0]
    code = toc & 3
    if code == 0:
        frames = 1
    elif code in (1, 2):
        frames = 2
    else:
        if len(data) < 2:
            raise InvalidPacketError()
        frames = data[1] & 63

    duration = frames * _FRAME_DURATIONS[toc >> 3]
    if duration > _MAX_FRAME_DURATION:
        raise InvalidPacketError()
    return duration