from collections.abc import Callable

import pytest

from lkmedia.rtp import SECOND, Depacketizer, RTPPacket, Sample
from lkmedia.samplebuilder import SampleBuilder

DEFAULT_PACKET_SIZE = 200
HEADER_BYTES = b"\xaa\xaa"


class _HeadBytesDepacketizer(Depacketizer):
    def __init__(self, head_bytes: bytes | None = None) -> None:
        self.head_bytes = head_bytes

    def unmarshal(self, payload: bytes) -> bytes:
        return bytes(payload)

    def is_partition_head(self, payload: bytes) -> bool:
        if self.head_bytes is None or len(payload) < len(self.head_bytes):
            return False
        return payload[: len(self.head_bytes)] == self.head_bytes

    def is_partition_tail(self, marker: bool, payload: bytes) -> bool:
        return marker


class _FakeDepacketizer(Depacketizer):
    def __init__(
        self,
        head_checker: Callable[[bytes], bool] | None = None,
        tail_checker: Callable[[bytes, bool], bool] | None = None,
    ) -> None:
        self.head_checker = head_checker
        self.tail_checker = tail_checker

    def unmarshal(self, payload: bytes) -> bytes:
        return bytes(payload)

    def is_partition_head(self, payload: bytes) -> bool:
        return self.head_checker(payload) if self.head_checker else False

    def is_partition_tail(self, marker: bool, payload: bytes) -> bool:
        return self.tail_checker(payload, marker) if self.tail_checker else False


class _FailingDepacketizer(_FakeDepacketizer):
    def unmarshal(self, payload: bytes) -> bytes:
        raise ValueError("bad payload")


def _always(*_args) -> bool:
    return True


def _packet(sn: int) -> RTPPacket:
    return RTPPacket(sequence_number=sn, payload=bytes(DEFAULT_PACKET_SIZE))


def _head_packet(sn: int) -> RTPPacket:
    payload = HEADER_BYTES + bytes(DEFAULT_PACKET_SIZE - len(HEADER_BYTES))
    return RTPPacket(sequence_number=sn, payload=payload)


def _tail_packet(sn: int) -> RTPPacket:
    return RTPPacket(sequence_number=sn, marker=True, payload=bytes(DEFAULT_PACKET_SIZE))


def _pkt(sn: int, ts: int, payload: bytes) -> RTPPacket:
    return RTPPacket(sequence_number=sn, timestamp=ts, payload=payload)


def _stream_packet(k: int) -> RTPPacket:
    return RTPPacket(
        sequence_number=k & 0xFFFF,
        timestamp=(k + 42) & 0xFFFFFFFF,
        payload=bytes([k & 0xFF]),
    )


def _drain(builder: SampleBuilder, packets) -> list[tuple[Sample, int]]:
    popped = []
    for pkt in packets:
        builder.push(pkt)
        builder.check()
        while True:
            sample, ts = builder.pop_with_timestamp()
            if sample is None:
                break
            popped.append((sample, ts))
        builder.check()
    return popped


def test_out_of_order_packets():
    sb = SampleBuilder(10, _HeadBytesDepacketizer(), 30)
    sb.push(_packet(5))
    assert sb.pop() is None
    sb.push(_packet(3))
    sb.push(_packet(1))
    assert sb.pop() is None
    sb.check()
    sb.push(_packet(2))
    sb.push(_packet(4))
    sb.check()
    assert sb.pop_packets() == []


def test_does_not_pop_missing_packets():
    sb = SampleBuilder(10, _HeadBytesDepacketizer(), 30)
    sb.push(_head_packet(1))
    sb.push(_packet(5))
    assert sb.pop() is None


def test_assembles_samples():
    sb = SampleBuilder(10, _HeadBytesDepacketizer(HEADER_BYTES), 30)
    sb.push(_packet(2))
    sb.push(_head_packet(1))
    sb.push(_tail_packet(3))
    sb.push(_head_packet(4))
    sb.push(_tail_packet(5))
    sb.push(_head_packet(6))
    sb.check()

    sample = sb.pop()
    assert sample is not None
    assert len(sample.data) == DEFAULT_PACKET_SIZE * 3
    assert sample.data[0] == HEADER_BYTES[0]

    sample2 = sb.pop()
    assert sample2 is not None
    assert len(sample2.data) == DEFAULT_PACKET_SIZE * 2


TABLE = [
    ("One", 50, b"", False, [(5000, 5, b"\x01")], [], []),
    ("OnePartitionCheckerTrue", 50, b"\x01", True, [(5000, 5, b"\x01")],
     [Sample(b"\x01", 0)], [5]),
    ("Sequential", 50, b"", False,
     [(5000, 5, b"\x01"), (5001, 6, b"\x02"), (5002, 7, b"\x03")],
     [Sample(b"\x02", SECOND)], [6]),
    ("Duplicate", 50, b"", False,
     [(5000, 5, b"\x01"), (5001, 6, b"\x02"), (5002, 6, b"\x03"), (5003, 7, b"\x04")],
     [Sample(b"\x02\x03", SECOND)], [6]),
    ("Gap", 50, b"", False,
     [(5000, 5, b"\x01"), (5007, 6, b"\x02"), (5008, 7, b"\x03")], [], []),
    ("GapPartitionHeadCheckerTrue", 5, b"\x02", False,
     [(5000, 5, b"\x01"), (5007, 6, b"\x02"), (5008, 7, b"\x03")],
     [Sample(b"\x02", SECOND)], [6]),
    ("GapPartitionHeadCheckerFalse", 5, b"", False,
     [(5000, 5, b"\x01"), (5007, 6, b"\x02"), (5008, 7, b"\x03")], [], []),
    ("Multiple", 5, b"", False,
     [(5000, 1, b"\x01"), (5001, 2, b"\x02"), (5002, 3, b"\x03"),
      (5003, 4, b"\x04"), (5004, 5, b"\x05"), (5005, 6, b"\x06")],
     [Sample(b"\x02", SECOND), Sample(b"\x03", SECOND),
      Sample(b"\x04", SECOND), Sample(b"\x05", SECOND)], [2, 3, 4, 5]),
    ("MultipleDisordered", 5, b"", False,
     [(5000, 1, b"\x01"), (5003, 4, b"\x04"), (5002, 3, b"\x03"),
      (5004, 5, b"\x05"), (5005, 6, b"\x06"), (5001, 2, b"\x02")],
     [Sample(b"\x02", SECOND), Sample(b"\x03", SECOND),
      Sample(b"\x04", SECOND), Sample(b"\x05", SECOND)], [2, 3, 4, 5]),
    ("MultipleDisordered2", 8, b"", False,
     [(5002, 3, b"\x03"), (5003, 4, b"\x04"), (5004, 5, b"\x05"),
      (5005, 6, b"\x06"), (5000, 1, b"\x01"), (5001, 2, b"\x02")],
     [Sample(b"\x02", SECOND), Sample(b"\x03", SECOND),
      Sample(b"\x04", SECOND), Sample(b"\x05", SECOND)], [2, 3, 4, 5]),
    ("PartitionTailChecker", 50, b"", True,
     [(5000, 5, b"\x01"), (5001, 6, b"\x02"), (5002, 7, b"\x03")],
     [Sample(b"\x02", SECOND), Sample(b"\x03", SECOND)], [6, 7]),
    ("Checkers", 50, b"\x01", True,
     [(5000, 5, b"\x01"), (5001, 6, b"\x02"), (5002, 7, b"\x03")],
     [Sample(b"\x01", 0), Sample(b"\x02", SECOND), Sample(b"\x03", SECOND)], [5, 6, 7]),
]


@pytest.mark.parametrize(
    "name,max_late,head_bytes,tail_true,packets,samples,timestamps",
    TABLE,
    ids=[row[0] for row in TABLE],
)
def test_table(name, max_late, head_bytes, tail_true, packets, samples, timestamps):
    depacketizer = _FakeDepacketizer(
        head_checker=lambda data: data[0] in head_bytes,
        tail_checker=_always if tail_true else None,
    )
    s = SampleBuilder(max_late, depacketizer, 1)
    for sn, ts, payload in packets:
        s.push(_pkt(sn, ts, payload))
        s.check()

    got_samples = []
    got_timestamps = []
    while True:
        sample, ts = s.force_pop_with_timestamp()
        s.check()
        if sample is None:
            break
        got_samples.append(sample)
        got_timestamps.append(ts)

    assert got_samples == samples
    assert got_timestamps == timestamps


def test_sequential():
    s = SampleBuilder(10, _FakeDepacketizer(), 1)
    popped = _drain(s, (_stream_packet(i) for i in range(0x20000)))
    # only the first and last packet are dropped
    assert len(popped) == 0x1FFFE
    assert [ts for _, ts in popped] == [j + 43 for j in range(0x1FFFE)]
    assert [s.data for s, _ in popped] == [bytes([(j + 1) & 0xFF]) for j in range(0x1FFFE)]


def test_loss():
    s = SampleBuilder(10, _FakeDepacketizer(), 1)
    popped = _drain(s, (_stream_packet(i) for i in range(0x20000) if i % 3 != 2))
    assert popped == []


def test_loss_checker():
    s = SampleBuilder(10, _FakeDepacketizer(_always, _always), 1)
    popped = _drain(s, (_stream_packet(i) for i in range(0x20000) if i % 3 != 2))
    count = 0x1FFFE // 3 * 2 - 4
    assert len(popped) == count
    for j, (sample, ts) in enumerate(popped):
        k = j // 2 * 3 + j % 2
        assert ts == k + 42
        assert sample.data == bytes([k & 0xFF])


def _disordered(i: int) -> int:
    return i ^ 2 if i % 4 in (1, 3) else i


def test_disordered():
    s = SampleBuilder(10, _FakeDepacketizer(), 1)
    popped = _drain(s, (_stream_packet(_disordered(i)) for i in range(0x20000)))
    assert len(popped) == 0x1FFFE
    assert [ts for _, ts in popped] == [j + 43 for j in range(0x1FFFE)]
    assert [s.data for s, _ in popped] == [bytes([(j + 1) & 0xFF]) for j in range(0x1FFFE)]


def test_disordered_checker():
    s = SampleBuilder(10, _FakeDepacketizer(_always, _always), 1)
    popped = _drain(s, (_stream_packet(_disordered(i)) for i in range(0x20000)))
    # no packet drops
    assert len(popped) == 0x20000
    assert [ts for _, ts in popped] == [j + 42 for j in range(0x20000)]
    assert [s.data for s, _ in popped] == [bytes([j & 0xFF]) for j in range(0x20000)]


def test_disordered_loss_checker():
    s = SampleBuilder(10, _FakeDepacketizer(_always, _always), 1)
    popped = _drain(
        s, (_stream_packet(_disordered(i)) for i in range(0x20000) if i % 5 != 2)
    )
    assert len(popped) == 0x20000 * 4 // 5 - 7
    previous = 42
    for sample, ts in popped:
        assert (ts - previous) & 0xFFFFFFFF <= 2
        previous = ts
        assert sample.data == bytes([(ts - 42) & 0xFF])


def test_full():
    s = SampleBuilder(10, _FakeDepacketizer(), 1)
    s.push(_pkt(5000, 5, b"\x00"))
    for i in range(5001, 5100):
        s.push(_pkt(i, 5, b"\x01"))
        s.check()
    sample, ts = s.force_pop_with_timestamp()
    s.check()
    assert sample is None
    assert ts == 0


def test_force():
    s = SampleBuilder(
        20,
        _FakeDepacketizer(lambda body: body[0] == 0, lambda body, _marker: body[0] == 0),
        1,
    )
    for i, ts in enumerate([1, 2, 2, 3, 0, 3, 4, 4, 5]):
        if ts == 0:
            continue
        s.push(_pkt(i, ts, bytes([i])))
        s.check()

    normal = []
    while True:
        sample, ts = s.pop_with_timestamp()
        s.check()
        if sample is None:
            break
        normal.append(ts)
    assert normal == [1, 2]

    forced = []
    while True:
        sample, ts = s.force_pop_with_timestamp()
        s.check()
        if sample is None:
            break
        forced.append(ts)
    assert forced == [4]


def test_duplicate_is_released():
    released = []
    s = SampleBuilder(
        10, _FakeDepacketizer(), 1, packet_release_handler=released.append
    )
    first = _pkt(1, 1, b"\x01")
    s.push(first)
    s.push(_pkt(2, 2, b"\x02"))
    duplicate = _pkt(1, 1, b"\x01")
    s.push(duplicate)
    s.check()
    assert len(released) == 1
    assert released[0] is duplicate


def test_packet_dropped_callback_on_force():
    drops = []
    s = SampleBuilder(
        10, _FakeDepacketizer(), 1, on_packet_dropped=lambda: drops.append(1)
    )
    s.push(_pkt(5000, 5, b"\x01"))
    sample, _ = s.force_pop_with_timestamp()
    assert sample is None
    assert drops == [1]


def test_pop_packets_returns_frame():
    s = SampleBuilder(10, _FakeDepacketizer(_always, _always), 1)
    pkt = _pkt(7, 100, b"\x07")
    s.push(pkt)
    packets = s.pop_packets()
    assert len(packets) == 1
    assert packets[0] is pkt
    assert s.pop_packets() == []


def test_force_pop_packets_skips_incomplete():
    s = SampleBuilder(10, _FakeDepacketizer(lambda body: body[0] == 1, _always), 1)
    s.push(_pkt(1, 10, b"\x00"))
    complete = _pkt(2, 11, b"\x01")
    s.push(complete)
    assert s.force_pop_packets() == [complete]
    assert s.force_pop_packets() == []


def test_unmarshal_failure_yields_nothing():
    s = SampleBuilder(10, _FailingDepacketizer(_always, _always), 1)
    s.push(_pkt(1, 1, b"\x01"))
    assert s.pop_with_timestamp() == (None, 0)
    assert s.force_pop_with_timestamp() == (None, 0)