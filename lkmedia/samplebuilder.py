"""Builds media samples from RTP packets, reordering them and dropping late ones."""

from __future__ import annotations

from collections.abc import Callable

from lkmedia.rtp import SECOND, Depacketizer, RTPPacket, Sample

_MASK16 = 0xFFFF
_MASK32 = 0xFFFFFFFF


class InvariantError(AssertionError):
    """Raised by ``SampleBuilder.check`` when the internal state is inconsistent."""


class _Entry:
    __slots__ = ("start", "end", "packet")

    def __init__(self, start: bool, end: bool, packet: RTPPacket) -> None:
        self.start = start
        self.end = end
        self.packet = packet

    @property
    def sn(self) -> int:
        return self.packet.sequence_number & _MASK16

    @property
    def ts(self) -> int:
        return self.packet.timestamp & _MASK32


def _newer16(a: int, b: int) -> bool:
    """Whether ``a`` is equal to or after ``b`` in 16-bit serial arithmetic."""
    return ((a - b) & _MASK16) & 0x8000 == 0


class SampleBuilder:
    """Buffers RTP packets in a ring and hands out complete frames.

    ``max_late`` is the number of sequence numbers the builder waits for a
    missing packet before dropping the frame; the ring holds twice as many.
    ``packet_release_handler`` is called for every packet the builder lets go
    of, and ``on_packet_dropped`` whenever a frame is dropped.
    """

    def __init__(
        self,
        max_late: int,
        depacketizer: Depacketizer,
        sample_rate: int,
        packet_release_handler: Callable[[RTPPacket], None] | None = None,
        on_packet_dropped: Callable[[], None] | None = None,
    ) -> None:
        max_late = min(max(max_late, 2), 0x7FFF)
        self._packets: list[_Entry | None] = [None] * (2 * max_late + 1)
        self._head = 0
        self._tail = 0
        self._max_late = max_late
        self._depacketizer = depacketizer
        self._sample_rate = sample_rate
        self._packet_release_handler = packet_release_handler
        self._on_packet_dropped = on_packet_dropped

        self._last_seqno_valid = False
        self._last_seqno = 0
        self._last_timestamp_valid = False
        self._last_timestamp = 0

    # ring helpers

    @property
    def _size(self) -> int:
        return len(self._packets)

    def _length(self) -> int:
        if self._tail <= self._head:
            return self._head - self._tail
        return self._head + self._size - self._tail

    def _cap(self) -> int:
        # head == tail means empty, so one slot always stays free
        return self._size - 1

    def _inc(self, n: int) -> int:
        return n + 1 if n < self._size - 1 else 0

    def _dec(self, n: int) -> int:
        return n - 1 if n > 0 else self._size - 1

    def _entry(self, index: int) -> _Entry:
        entry = self._packets[index]
        assert entry is not None
        return entry

    def _is_start(self, p: RTPPacket) -> bool:
        return len(p.payload) == 0 or self._depacketizer.is_partition_head(p.payload)

    def _is_end(self, p: RTPPacket) -> bool:
        return len(p.payload) == 0 or self._depacketizer.is_partition_tail(p.marker, p.payload)

    def check(self) -> None:
        """Verify the builder's invariants; raise InvariantError if one is broken."""
        if self._head == self._tail:
            return

        tail_entry = self._packets[self._tail]
        if tail_entry is None:
            raise InvariantError("tail is missing")
        if self._packets[self._dec(self._head)] is None:
            raise InvariantError("head is missing")
        if self._last_seqno_valid:
            diff = (tail_entry.sn - self._last_seqno) & _MASK16
            if diff == 0 or diff & 0x8000:
                raise InvariantError("lastSeqno is after tail")

        tail_seqno = tail_entry.sn
        last_index = self._dec(self._head)
        for i in range(self._length()):
            index = (self._tail + i) % self._size
            entry = self._packets[index]
            if entry is None:
                continue
            if entry.sn != (tail_seqno + i) & _MASK16:
                raise InvariantError("wrong seqno")
            if index != self._tail and not entry.start:
                prev = self._packets[self._dec(index)]
                if prev is not None and prev.ts != entry.ts:
                    raise InvariantError("start is not set")
            if index != last_index and not entry.end:
                nxt = self._packets[self._inc(index)]
                if nxt is not None and nxt.ts != entry.ts:
                    raise InvariantError("end is not set")

        i = self._head
        while i != self._tail:
            if self._packets[i] is not None:
                raise InvariantError("packet is set")
            i = self._inc(i)

    def _release(self, release_packet: bool) -> bool:
        if self._head == self._tail:
            return False
        entry = self._entry(self._tail)
        self._last_seqno_valid = True
        self._last_seqno = entry.sn
        if release_packet and self._packet_release_handler is not None:
            self._packet_release_handler(entry.packet)
        self._packets[self._tail] = None
        self._tail = self._inc(self._tail)
        while self._tail != self._head and self._packets[self._tail] is None:
            self._tail = self._inc(self._tail)
        if self._tail == self._head:
            self._head = 0
            self._tail = 0
        return True

    def _release_all(self) -> None:
        while self._tail != self._head:
            self._release(True)

    def _drop(self) -> tuple[bool, int]:
        """Drop the oldest frame, complete or not."""
        if self._tail == self._head:
            return False, 0
        if self._on_packet_dropped is not None:
            self._on_packet_dropped()
        ts = self._entry(self._tail).ts
        self._release(True)
        while self._tail != self._head:
            entry = self._entry(self._tail)
            if entry.start or entry.ts != ts:
                break
            self._release(True)
        if not self._last_timestamp_valid:
            self._last_timestamp = ts
            self._last_timestamp_valid = True
        return True, ts

    def push(self, pkt: RTPPacket) -> None:
        """Add a packet. The packet object is kept, not copied."""
        seqno = pkt.sequence_number & _MASK16
        ts = pkt.timestamp & _MASK32

        if self._last_seqno_valid:
            if _newer16(self._last_seqno, seqno):
                # late packet
                if (self._last_seqno - seqno) & _MASK16 > self._max_late:
                    self._last_seqno_valid = False
                else:
                    return
            else:
                last = (seqno - self._max_late) & _MASK16
                if _newer16(last, self._last_seqno):
                    if self._head != self._tail:
                        tail_prev = (self._entry(self._tail).sn - 1) & _MASK16
                        if _newer16(last, tail_prev):
                            last = tail_prev
                    self._last_seqno = last

        if self._head == self._tail:
            self._packets[0] = _Entry(self._is_start(pkt), self._is_end(pkt), pkt)
            self._tail = 0
            self._head = 1
            return

        last = self._dec(self._head)
        last_seqno = self._entry(last).sn

        if seqno == (last_seqno + 1) & _MASK16:
            # sequential
            if self._tail == self._inc(self._head):
                self._drop()
            if self._tail != self._head:
                last_entry = self._entry(last)
                start = last_entry.end or last_entry.ts != ts or self._is_start(pkt)
                if start:
                    last_entry.end = True
            else:
                start = self._is_start(pkt)
            self._packets[self._head] = _Entry(start, self._is_end(pkt), pkt)
            self._head = self._inc(self._head)
            return

        if _newer16(seqno, last_seqno):
            # packet in the future
            count = (seqno - last_seqno - 1) & _MASK16
            if count >= self._cap():
                self._release_all()
                self.push(pkt)
                return
            while (self._length() + count + 1) & _MASK16 >= self._cap():
                dropped, _ = self._drop()
                if not dropped:
                    return
            index = ((self._head + count) & _MASK16) % self._size
            self._packets[index] = _Entry(self._is_start(pkt), self._is_end(pkt), pkt)
            self._head = self._inc(index)
            return

        # packet in the past
        count = (last_seqno - seqno + 1) & _MASK16
        if count >= self._cap():
            return

        if self._head >= count:
            index = self._head - count
        else:
            index = self._head + self._size - count

        if self._tail < self._head:
            # contiguous
            if index < self._tail or index > self._head:
                self._tail = index
        elif self._tail > index > self._head:
            self._tail = index

        if self._packets[index] is not None:
            # duplicate
            if self._packet_release_handler is not None:
                self._packet_release_handler(pkt)
            return

        start = self._is_start(pkt)
        if index != self._tail:
            prev = self._packets[self._dec(index)]
            if prev is not None:
                if prev.ts != ts:
                    start = True
                if not start:
                    start = prev.end
                else:
                    prev.end = True

        end = self._is_end(pkt)
        nxt = self._packets[self._inc(index)]
        if nxt is not None:
            if nxt.ts != ts:
                end = True
            if not end:
                end = nxt.start
            else:
                nxt.start = True

        self._packets[index] = _Entry(start, end, pkt)

    def _pop_rtp_packets(self, force: bool) -> tuple[list[RTPPacket] | None, int]:
        while True:
            if self._tail == self._head:
                return None, 0

            tail_entry = self._entry(self._tail)
            if not tail_entry.start:
                diff = (self._entry(self._dec(self._head)).sn - tail_entry.sn) & _MASK16
                if force or diff > self._max_late:
                    self._drop()
                    continue
                return None, 0

            if (
                not force
                and self._last_seqno_valid
                and (self._last_seqno + 1) & _MASK16 != tail_entry.sn
            ):
                # packet loss before tail
                return None, 0

            ts = tail_entry.ts
            last = self._tail
            retry = False
            while last != self._head:
                entry = self._packets[last]
                if entry is None:
                    if force:
                        self._drop()
                        retry = True
                        break
                    return None, 0
                if entry.end:
                    break
                last = self._inc(last)
            if retry:
                continue

            if last == self._head:
                return None, 0

            if last >= self._tail:
                count = last - self._tail + 1
            else:
                count = self._size + last - self._tail + 1
            packets = []
            for _ in range(count):
                packets.append(self._entry(self._tail).packet)
                self._release(False)
            return packets, ts

    def _pop_sample(self, force: bool) -> tuple[Sample | None, int]:
        packets, ts = self._pop_rtp_packets(force)
        if packets is None:
            return None, 0

        data = bytearray()
        failed = False
        for p in packets:
            if not failed:
                try:
                    data += self._depacketizer.unmarshal(p.payload)
                except ValueError:
                    failed = True
            if self._packet_release_handler is not None:
                self._packet_release_handler(p)
        if failed:
            return None, 0

        samples = (ts - self._last_timestamp) & _MASK32 if self._last_timestamp_valid else 0
        self._last_timestamp_valid = True
        self._last_timestamp = ts
        duration = int(samples / self._sample_rate * SECOND)
        return Sample(bytes(data), duration), ts

    def pop_with_timestamp(self) -> tuple[Sample | None, int]:
        """Return a complete sample and its RTP timestamp, or ``(None, 0)``."""
        return self._pop_sample(False)

    def pop(self) -> Sample | None:
        """Return a complete sample, or None if none is ready."""
        sample, _ = self.pop_with_timestamp()
        return sample

    def force_pop_with_timestamp(self) -> tuple[Sample | None, int]:
        """Like ``pop_with_timestamp`` but skips over missing packets.

        Once this returns ``(None, 0)`` the builder is empty.
        """
        return self._pop_sample(True)

    def pop_packets(self) -> list[RTPPacket]:
        """Return the packets of the next complete frame, or an empty list.

        The release handler is not called for these packets.
        """
        packets, _ = self._pop_rtp_packets(False)
        return packets or []

    def force_pop_packets(self) -> list[RTPPacket]:
        """Like ``pop_packets`` but drops incomplete frames in the way."""
        packets, _ = self._pop_rtp_packets(True)
        return packets or []