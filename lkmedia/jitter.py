"""Jitter buffer that reorders RTP packets and releases complete samples."""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from lkmedia.rtp import SECOND, Depacketizer, RTPPacket

_MASK16 = 0xFFFF
_MASK32 = 0xFFFFFFFF
_SN_RANGE = 3000


def _before16(a: int, b: int) -> bool:
    return ((b - a) & _MASK16) & 0x8000 == 0


def _before32(a: int, b: int) -> bool:
    return ((b - a) & _MASK32) & 0x80000000 == 0


def _outside_range(a: int, b: int) -> bool:
    return (a - b) & _MASK16 > _SN_RANGE and (b - a) & _MASK16 > _SN_RANGE


def _max_late(max_latency: int, clock_rate: int) -> int:
    return int(max_latency / SECOND * clock_rate) & _MASK32


@dataclass
class BufferStats:
    """Counters describing what went through a jitter buffer."""

    packets_pushed: int = 0
    padding_pushed: int = 0
    packets_dropped: int = 0
    packets_popped: int = 0
    samples_popped: int = 0


class _Node:
    __slots__ = ("prev", "next", "start", "end", "reset", "padding", "packet")

    def __init__(self, start: bool, end: bool, padding: bool, packet: RTPPacket) -> None:
        self.prev: _Node | None = None
        self.next: _Node | None = None
        self.start = start
        self.end = end
        self.reset = False
        self.padding = padding
        self.packet = packet

    @property
    def sn(self) -> int:
        return self.packet.sequence_number & _MASK16

    @property
    def ts(self) -> int:
        return self.packet.timestamp & _MASK32


class JitterBuffer:
    """Orders RTP packets and hands out complete samples.

    ``max_latency`` is in nanoseconds. Packets whose sample is older than that,
    relative to the newest packet, are dropped and ``on_packet_dropped`` is
    called.
    """

    def __init__(
        self,
        depacketizer: Depacketizer,
        clock_rate: int,
        max_latency: int,
        on_packet_dropped: Callable[[], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._depacketizer = depacketizer
        self._clock_rate = clock_rate
        self._max_late = _max_late(max_latency, clock_rate)
        self._on_packet_dropped = on_packet_dropped
        self._logger = logger or logging.getLogger(__name__)
        self._stats = BufferStats()
        self._lock = threading.Lock()

        self._initialized = False
        self._prev_sn = 0
        self._head: _Node | None = None
        self._tail: _Node | None = None
        self._max_sample_size = 0
        self._min_ts = 0

    def update_max_latency(self, max_latency: int) -> None:
        """Change the maximum latency (nanoseconds)."""
        with self._lock:
            max_late = _max_late(max_latency, self._clock_rate)
            self._min_ts = (self._min_ts + self._max_late - max_late) & _MASK32
            self._max_late = max_late

    def push(self, pkt: RTPPacket) -> None:
        """Add a packet to the buffer."""
        with self._lock:
            self._push(pkt)

    def pop(self, force: bool = False) -> list[RTPPacket]:
        """Return the packets of the ready samples, or all packets if ``force``."""
        with self._lock:
            nodes = self._take_all() if force else self._take_ready()
            packets = []
            for node in nodes:
                if not node.padding:
                    packets.append(node.packet)
                    self._stats.packets_popped += 1
                if node.end:
                    self._stats.samples_popped += 1
            return packets

    def pop_samples(self, force: bool = False) -> list[list[RTPPacket]]:
        """Like ``pop`` but groups the packets by sample."""
        with self._lock:
            if force:
                return self._force_pop_samples()
            samples: list[list[RTPPacket]] = []
            sample: list[RTPPacket] = []
            for node in self._take_ready():
                if not node.padding:
                    sample.append(node.packet)
                    self._stats.packets_popped += 1
                if node.end:
                    self._stats.samples_popped += 1
                    samples.append(sample)
                    sample = []
            return samples

    def stats(self) -> BufferStats:
        """Return a copy of the current counters."""
        with self._lock:
            return dataclasses.replace(self._stats)

    def packet_loss(self) -> float:
        """Fraction of pushed packets that were dropped."""
        with self._lock:
            if self._stats.packets_pushed == 0:
                return 0.0
            return self._stats.packets_dropped / self._stats.packets_pushed

    def _notify_dropped(self) -> None:
        self._logger.debug("jitter buffer dropped packets")
        if self._on_packet_dropped is not None:
            self._on_packet_dropped()

    def _update_sample_size(self, pkt_ts: int, prev_ts: int) -> None:
        size = (pkt_ts - prev_ts) & _MASK32
        if size > self._max_sample_size:
            self._max_sample_size = size

    def _push(self, pkt: RTPPacket) -> None:
        self._stats.packets_pushed += 1
        if pkt.padding:
            self._stats.padding_pushed += 1

        if not pkt.payload:
            # padding at the start of the stream carries nothing useful
            if not self._initialized:
                return
            node = _Node(True, True, True, pkt)
        else:
            node = _Node(
                self._depacketizer.is_partition_head(pkt.payload),
                self._depacketizer.is_partition_tail(pkt.marker, pkt.payload),
                False,
                pkt,
            )

        sn = node.sn
        ts = node.ts
        before_prev = _before16(sn, self._prev_sn)
        outside_prev = _outside_range(sn, self._prev_sn)

        if not self._initialized:
            if node.start:
                while self._head is not None and _before16(self._head.sn, sn):
                    self._head = self._head.next
                    if self._head is None:
                        self._tail = None
                    else:
                        self._head.prev = None
                self._initialized = True
                self._prev_sn = (sn - 1) & _MASK16
                self._min_ts = (ts - self._max_late) & _MASK32
                node.reset = True
        elif before_prev and not outside_prev:
            if not node.padding:
                self._stats.packets_dropped += 1
                self._notify_dropped()
            return

        if self._tail is None:
            if not node.reset:
                node.reset = node.start and outside_prev
            self._min_ts = (ts - self._max_late) & _MASK32
            self._head = node
            self._tail = node
            return

        head, tail = self._head, self._tail
        assert head is not None
        before_tail = _before16(sn, tail.sn)
        outside_head = _outside_range(sn, head.sn)
        outside_tail = _outside_range(sn, tail.sn)

        if not before_tail and not outside_tail:
            # append within range
            self._min_ts = (self._min_ts + ts - tail.ts) & _MASK32
            if sn == (tail.sn + 1) & _MASK16:
                self._update_sample_size(ts, tail.ts)
            self._append(node)
        elif outside_head and outside_tail:
            # append after a sequence number reset
            node.reset = node.start
            self._min_ts = (self._min_ts + self._max_sample_size) & _MASK32
            self._append(node)
        elif _before16(sn, head.sn) and not outside_head:
            # prepend within range
            node.reset = node.start and outside_prev
            head.prev = node
            node.next = head
            self._head = node
        elif outside_tail:
            # insert within the head's range
            c = tail.prev
            while c is not None:
                if _before16(sn, c.sn) or _outside_range(sn, c.sn):
                    c = c.prev
                    continue
                if sn == (c.sn + 1) & _MASK16:
                    self._update_sample_size(ts, c.ts)
                self._insert_after(c, node)
                break
        else:
            # insert within the tail's range
            c = tail.prev
            while c is not None:
                outside_c = _outside_range(sn, c.sn)
                if _before16(sn, c.sn) and not outside_c:
                    c = c.prev
                    continue
                if node.start and outside_c:
                    node.reset = True
                elif sn == (c.sn + 1) & _MASK16:
                    self._update_sample_size(ts, c.ts)
                self._insert_after(c, node)
                break

    def _append(self, node: _Node) -> None:
        assert self._tail is not None
        node.prev = self._tail
        self._tail.next = node
        self._tail = node

    @staticmethod
    def _insert_after(c: _Node, node: _Node) -> None:
        assert c.next is not None
        c.next.prev = node
        node.next = c.next
        node.prev = c
        c.next = node

    def _take_all(self) -> list[_Node]:
        nodes = []
        c = self._head
        while c is not None:
            nodes.append(c)
            c = c.next
        self._head = None
        self._tail = None
        return nodes

    def _force_pop_samples(self) -> list[list[RTPPacket]]:
        samples: list[list[RTPPacket]] = []
        sample: list[RTPPacket] = []
        for node in self._take_all():
            if node.start and sample:
                self._stats.samples_popped += 1
                samples.append(sample)
                sample = []
            if not node.padding:
                sample.append(node.packet)
                self._stats.packets_popped += 1
            if node.end:
                self._stats.samples_popped += 1
                samples.append(sample)
                sample = []
        return samples

    def _take_ready(self) -> list[_Node]:
        if not self._initialized:
            return []
        self._drop()
        if self._head is None or not self._head.start:
            return []
        end = self._get_end()
        if end is None:
            return []

        nodes = []
        c = self._head
        while c is not None:
            nxt = c.next
            if nxt is not None:
                if _outside_range(nxt.sn, c.sn):
                    # account for a sequence number reset
                    self._min_ts = (
                        self._min_ts + nxt.ts - c.ts - self._max_sample_size
                    ) & _MASK32
                nxt.prev = None
            nodes.append(c)
            if c is end:
                self._prev_sn = c.sn
                self._head = nxt
                if nxt is None:
                    self._tail = None
                break
            c = nxt
        return nodes

    def _get_end(self) -> _Node | None:
        prev_sn = self._prev_sn
        prev_complete = True
        end = None
        c = self._head
        while c is not None:
            if c.sn != (prev_sn + 1) & _MASK16 and (
                not prev_complete
                or not c.reset
                or not _before32((c.ts - self._max_sample_size) & _MASK32, self._min_ts)
            ):
                break
            prev_complete = False
            if c.end:
                end = c
                prev_complete = True
            prev_sn = c.sn
            c = c.next
        return end

    def _drop(self) -> None:
        head = self._head
        if head is None:
            return

        dropped = False
        mss = self._max_sample_size

        if head.sn != (self._prev_sn + 1) & _MASK16 and (
            (head.start and _before32((head.ts - mss) & _MASK32, self._min_ts))
            or (not head.start and _before32(head.ts, self._min_ts))
        ):
            # missing packets would now be too old; a reset hides any loss
            if not head.reset:
                dropped = True
                self._stats.packets_dropped += 1

            while (
                self._head is not None
                and not self._head.start
                and _before32((self._head.ts - mss) & _MASK32, self._min_ts)
            ):
                dropped = True
                self._stats.packets_dropped += 1
                self._prev_sn = (self._head.sn - 1) & _MASK16
                self._drop_head()

            if self._head is not None:
                self._prev_sn = (self._head.sn - 1) & _MASK16

        c = self._head
        while c is not None:
            if (c.start and _before32(self._min_ts, c.ts)) or (
                not c.start and not _before32(c.ts, self._min_ts)
            ):
                break
            dropped = True
            ts = c.ts
            while True:
                self._stats.packets_dropped += 1
                self._drop_head()
                c = self._head
                if c is None or c.ts != ts:
                    break

        if dropped:
            self._notify_dropped()

    def _drop_head(self) -> None:
        c = self._head
        assert c is not None
        self._prev_sn = c.sn
        self._head = c.next
        if self._head is None:
            self._tail = None
        else:
            self._head.prev = None
            if _outside_range(self._head.sn, c.sn):
                self._min_ts = (
                    self._min_ts + self._head.ts - c.ts - self._max_sample_size
                ) & _MASK32