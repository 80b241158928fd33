"""Per-track presentation timestamp calculation used for audio/video sync."""

from __future__ import annotations

import dataclasses
import enum
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any

from lkmedia.rtp import MICROSECOND, SECOND, RTPPacket

logger = logging.getLogger(__name__)

_EWMA_WEIGHT = 0.9
_MAX_ADJUSTMENT = 15 * 1_000_000
_MAX_TS_DIFF = 60 * SECOND
_MAX_SN_DROPOUT = 3000
_UINT32_HALF = 2147483648
_UINT32_OVERFLOW = 4294967296
_MASK16 = 0xFFFF
_MASK32 = 0xFFFFFFFF
_MASK64 = 0xFFFFFFFFFFFFFFFF

_NTP_EPOCH_OFFSET = 2208988800


def ntp_to_unix_ns(ntp_time: int) -> int:
    """Convert a 64-bit NTP timestamp to nanoseconds since the Unix epoch."""
    seconds = ntp_time >> 32
    frac = (ntp_time & _MASK32) * SECOND
    nanos = frac >> 32
    if frac & _MASK32 >= 0x80000000:
        nanos += 1
    return (seconds - _NTP_EPOCH_OFFSET) * SECOND + nanos


def _round_half_away(value: float) -> float:
    """Round to the nearest integer, halves away from zero."""
    return math.copysign(math.floor(abs(value) + 0.5), value)


def _signed64(value: int) -> int:
    value &= _MASK64
    return value - (1 << 64) if value & (1 << 63) else value


class TrackKind(enum.Enum):
    """Media kind of a track."""

    AUDIO = "audio"
    VIDEO = "video"


@dataclass(frozen=True)
class CodecParameters:
    """Codec of a remote track."""

    mime_type: str
    clock_rate: int


@dataclass
class TrackRemote:
    """The properties of a received track that synchronization needs."""

    track_id: str
    codec: CodecParameters
    kind: TrackKind
    ssrc: int


@dataclass
class SenderReport:
    """An RTCP sender report."""

    ssrc: int
    ntp_time: int
    rtp_time: int
    packet_count: int = 0
    octet_count: int = 0


@dataclass
class TrackStats:
    """Running statistics of a track; durations are in nanoseconds."""

    avg_sample_duration: float = 0.0
    avg_drift: float = 0.0
    max_drift: int = 0

    def _update_drift(self, drift: int) -> None:
        drift = abs(drift)
        self.avg_drift = _EWMA_WEIGHT * self.avg_drift + (1 - _EWMA_WEIGHT) * drift
        if drift > self.max_drift:
            self.max_drift = drift

    def _update_sample_duration(self, duration: int) -> None:
        if duration > 1:
            self.avg_sample_duration = (
                _EWMA_WEIGHT * self.avg_sample_duration + (1 - _EWMA_WEIGHT) * duration
            )


class BackwardsPTSError(ValueError):
    """Raised when a packet would get a presentation timestamp before the last one."""

    def __init__(self) -> None:
        super().__init__("backwards pts")


class _RTPConverter:
    """Converts RTP clock ticks to nanoseconds with a reduced fraction."""

    def __init__(self, clock_rate: int) -> None:
        n = SECOND
        d = clock_rate
        for i in (10, 3, 2):
            while n % i == 0 and d % i == 0:
                n //= i
                d //= i
        self._n = n
        self._d = d

    def to_duration(self, rtp_duration: int) -> int:
        value = ((rtp_duration & _MASK64) * self._n) & _MASK64
        return _signed64(value // self._d)


class TrackSynchronizer:
    """Maps RTP timestamps of one track to presentation timestamps (nanoseconds).

    ``sync`` is the shared synchronizer; it provides the common start time.
    """

    def __init__(self, sync: Any, track: TrackRemote) -> None:
        self.sync = sync
        self.track = track
        self._lock = threading.Lock()
        self._stats = TrackStats()
        self._converter = _RTPConverter(track.codec.clock_rate)

        self._last_sr = 0
        self._started_at = 0
        self._first_ts = 0
        self._max_pts = 0

        self._backwards = 0
        self._last_packet = 0
        self._last_sn = 0
        self._last_ts = 0
        self._last_pts = 0
        self._last_valid = False
        self._inserted = 0

        self._sn_offset = 0
        self._pts_offset = 0

        if track.kind is TrackKind.AUDIO:
            # opus packets default to 20ms
            self._stats.avg_sample_duration = track.codec.clock_rate / 50
        else:
            # 30 fps video
            self._stats.avg_sample_duration = track.codec.clock_rate / 30

    def initialize(self, pkt: RTPPacket) -> None:
        """Record the start of the track; call it on the first packet received."""
        now = time.time_ns()
        started_at = self.sync._get_or_set_started_at(now)
        with self._lock:
            self._started_at = started_at
            self._first_ts = pkt.timestamp & _MASK32
            self._pts_offset = now - started_at

    def get_pts(self, pkt: RTPPacket) -> int:
        """Return the presentation timestamp of ``pkt``.

        Packets are expected in order. Sequence numbers and offsets are reset
        when needed, and the packet's sequence number may be rewritten. Raises
        BackwardsPTSError for a timestamp before the previous one, and EOFError
        once the track has been drained past its end.
        """
        with self._lock:
            ts, pts, valid = self._adjust(pkt)
            if pts < self._last_pts:
                if self._backwards == 0:
                    logger.warning(
                        "backwards pts on track %s: timestamp %d, sequence number %d, "
                        "pts %d, last pts %d, last timestamp %d, last sn %d",
                        self.track.track_id, pkt.timestamp, pkt.sequence_number,
                        pts, self._last_pts, self._last_ts, self._last_sn,
                    )
                self._backwards += 1
                raise BackwardsPTSError()
            if self._backwards > 0:
                logger.warning(
                    "packets dropped on track %s: count %d",
                    self.track.track_id, self._backwards,
                )
                self._backwards = 0

            if (
                valid
                and self._last_valid
                and pkt.sequence_number == (self._last_sn + 1) & _MASK16
            ):
                self._stats._update_sample_duration(ts - self._last_ts)

            if self._max_pts > 0 and (pts > self._max_pts or not valid):
                raise EOFError("track ended")

            self._last_packet = time.time_ns()
            self._last_ts = ts
            self._last_sn = pkt.sequence_number & _MASK16
            self._last_pts = pts
            self._last_valid = valid
            self._inserted = 0
            return pts

    def _adjust(self, pkt: RTPPacket) -> tuple[int, int, bool]:
        """Handle 32-bit wrap and reset sequence numbers or RTP time if needed."""
        if self._last_packet == 0:
            ts = pkt.timestamp & _MASK32
            while ts < self._first_ts - _UINT32_HALF:
                ts += _UINT32_OVERFLOW
            return ts, self._pts(ts), True

        pkt.sequence_number = (pkt.sequence_number + self._sn_offset) & _MASK16
        sn = pkt.sequence_number
        if (
            self._last_ts != 0
            and (sn - self._last_sn) & _MASK16 > _MAX_SN_DROPOUT
            and (self._last_sn - sn) & _MASK16 > _MAX_SN_DROPOUT
        ):
            self._sn_offset = (self._sn_offset + self._last_sn + 1 - sn) & _MASK16
            pkt.sequence_number = (self._last_sn + 1) & _MASK16
            ts, pts = self._reset_rtp(pkt, "SN gap")
            return ts, pts, False

        ts = pkt.timestamp & _MASK32
        while ts < self._last_ts - _UINT32_HALF:
            ts += _UINT32_OVERFLOW

        if ts == self._last_ts:
            return ts, self._last_pts, self._last_valid

        pts = self._pts(ts)
        expected = time.time_ns() - (self._started_at + self._pts_offset)
        if pts > expected + _MAX_TS_DIFF:
            ts, pts = self._reset_rtp(
                pkt, f"pts out of bounds (pts {pts}, expected {expected})"
            )
            return ts, pts, False

        return ts, pts, True

    def _pts(self, ts: int) -> int:
        return self._converter.to_duration(ts - self._first_ts) + self._pts_offset

    def _reset_rtp(self, pkt: RTPPacket, reason: str) -> tuple[int, int]:
        frame_duration = self._frame_duration()
        frames = (time.time_ns() - self._last_packet) // frame_duration
        duration = self._frame_duration_rtp() * frames
        ts = self._last_ts + duration
        pts = self._last_pts + self._converter.to_duration(duration)

        self._first_ts += (pkt.timestamp & _MASK32) - ts

        logger.info(
            "resetting track synchronizer for %s: %s; pktTS %d, pktSN %d, prevTS %d, "
            "prevSN %d, frameDuration %d, prevPTS %d, adjustedTS %d, adjustedPTS %d",
            self.track.track_id, reason, pkt.timestamp, pkt.sequence_number,
            self._last_ts, self._last_sn, frame_duration, self._last_pts, ts, pts,
        )
        return ts, pts

    def insert_frame(self, pkt: RTPPacket) -> int:
        """Give ``pkt`` (usually a blank frame) the next timestamps; return its pts.

        Offsets for all later packets are updated accordingly.
        """
        with self._lock:
            pts = self._insert_frame_before(pkt, None)
            assert pts is not None
            return pts

    def insert_frame_before(self, pkt: RTPPacket, next_pkt: RTPPacket | None) -> int | None:
        """Like ``insert_frame`` but only if the frame fits before ``next_pkt``.

        Returns the pts, or None if the inserted frame would overlap ``next_pkt``.
        """
        with self._lock:
            return self._insert_frame_before(pkt, next_pkt)

    def _insert_frame_before(self, pkt: RTPPacket, next_pkt: RTPPacket | None) -> int | None:
        self._inserted += 1
        self._sn_offset = (self._sn_offset + 1) & _MASK16
        self._last_valid = False

        frame_duration_rtp = self._frame_duration_rtp()
        ts = self._last_ts + self._inserted * frame_duration_rtp
        if next_pkt is not None:
            next_ts, _, _ = self._adjust(next_pkt)
            if ts + frame_duration_rtp > next_ts:
                return None

        pkt.sequence_number = (self._last_sn + self._inserted) & _MASK16
        pkt.timestamp = ts & _MASK32
        return self._last_pts + self._converter.to_duration(frame_duration_rtp * self._inserted)

    def get_frame_duration(self) -> int:
        """Return the average frame duration in nanoseconds, rounded."""
        with self._lock:
            return self._frame_duration()

    def _frame_duration(self) -> int:
        clock_rate = self.track.codec.clock_rate
        if self.track.kind is TrackKind.AUDIO:
            # round opus packets to 2.5ms
            step = clock_rate / 400
            return int(_round_half_away(self._stats.avg_sample_duration / step)) * 2500 * MICROSECOND
        # round video to 1/3000th of a second
        step = clock_rate / 3000
        frames = _round_half_away(self._stats.avg_sample_duration / step)
        return int(_round_half_away(frames * 1e6 / 3))

    def _frame_duration_rtp(self) -> int:
        clock_rate = self.track.codec.clock_rate
        step = clock_rate / 400 if self.track.kind is TrackKind.AUDIO else clock_rate / 3000
        return int(_round_half_away(self._stats.avg_sample_duration / step) * step)

    def get_track_stats(self) -> TrackStats:
        """Return a copy of the track's statistics."""
        return dataclasses.replace(self._stats)

    def _sender_report_pts(self, report: SenderReport) -> int:
        with self._lock:
            return self._sender_report_pts_locked(report)

    def _sender_report_pts_locked(self, report: SenderReport) -> int:
        ts = report.rtp_time & _MASK32
        while ts < self._last_ts - _UINT32_OVERFLOW // 2:
            ts += _UINT32_OVERFLOW
        return self._pts(ts)

    def _on_sender_report(self, report: SenderReport, ntp_start: int) -> None:
        """Adjust the pts offset from a sender report; ``ntp_start`` is Unix ns."""
        with self._lock:
            if report.rtp_time == self._last_sr or self._started_at == 0:
                return
            pts = self._sender_report_pts_locked(report)
            calculated_start = ntp_to_unix_ns(report.ntp_time) - pts
            self._adjust_offset(calculated_start - ntp_start)
            self._last_sr = report.rtp_time

    def _adjust_offset(self, drift: int) -> None:
        if drift == 0:
            return
        self._stats._update_drift(drift)
        drift = max(-_MAX_ADJUSTMENT, min(_MAX_ADJUSTMENT, drift))
        self._pts_offset += drift

    def _get_pts_offset(self) -> int:
        with self._lock:
            return self._pts_offset

    def _set_max_pts(self, max_pts: int) -> None:
        with self._lock:
            self._max_pts = max_pts