import pytest

from lkmedia.rtp import RTPPacket
from lkmedia.track import (
    BackwardsPTSError,
    CodecParameters,
    TrackKind,
    TrackRemote,
    TrackSynchronizer,
    ntp_to_unix_ns,
)


class FakeSync:
    def __init__(self):
        self.started_at = 0

    def _get_or_set_started_at(self, now):
        if self.started_at == 0:
            self.started_at = now
        return self.started_at


def make_track(kind):
    if kind is TrackKind.AUDIO:
        codec = CodecParameters("audio/opus", 48000)
    else:
        codec = CodecParameters("video/vp8", 90000)
    return TrackRemote(track_id="track_1", codec=codec, kind=kind, ssrc=1234)


def started(kind, sn, ts):
    sync = FakeSync()
    synchronizer = TrackSynchronizer(sync, make_track(kind))
    synchronizer.initialize(RTPPacket(sequence_number=sn, timestamp=ts))
    return synchronizer


def test_first_packet_has_zero_pts():
    ts = started(TrackKind.VIDEO, 100, 10000)
    assert ts.get_pts(RTPPacket(sequence_number=100, timestamp=10000)) == 0


def test_same_timestamp_keeps_pts():
    ts = started(TrackKind.VIDEO, 100, 10000)
    first = ts.get_pts(RTPPacket(sequence_number=100, timestamp=10000))
    second = ts.get_pts(RTPPacket(sequence_number=101, timestamp=10000))
    assert first == second


def test_video_next_frame_pts():
    ts = started(TrackKind.VIDEO, 100, 10000)
    ts.get_pts(RTPPacket(sequence_number=100, timestamp=10000))
    pts = ts.get_pts(RTPPacket(sequence_number=101, timestamp=10000 + 3750))
    assert pts == 41666666


def test_audio_next_frame_pts():
    ts = started(TrackKind.AUDIO, 55555, 55555555)
    ts.get_pts(RTPPacket(sequence_number=55555, timestamp=55555555))
    pts = ts.get_pts(RTPPacket(sequence_number=55556, timestamp=55555555 + 960))
    assert pts == 20000000


def test_backwards_pts_raises():
    ts = started(TrackKind.VIDEO, 100, 10000)
    ts.get_pts(RTPPacket(sequence_number=100, timestamp=10000))
    ts.get_pts(RTPPacket(sequence_number=101, timestamp=13750))
    with pytest.raises(BackwardsPTSError):
        ts.get_pts(RTPPacket(sequence_number=102, timestamp=10000))


def test_default_frame_durations():
    video = started(TrackKind.VIDEO, 1, 1)
    audio = started(TrackKind.AUDIO, 1, 1)
    assert video.get_frame_duration() == round(1e9 / 30)
    assert audio.get_frame_duration() == 20000000


def test_sample_duration_average_moves_towards_frame_size():
    ts = started(TrackKind.VIDEO, 100, 10000)
    before = ts.get_track_stats().avg_sample_duration
    ts.get_pts(RTPPacket(sequence_number=100, timestamp=10000))
    ts.get_pts(RTPPacket(sequence_number=101, timestamp=13750))
    after = ts.get_track_stats().avg_sample_duration
    assert before < after < 3750


def test_track_stats_is_a_copy():
    ts = started(TrackKind.VIDEO, 100, 10000)
    stats = ts.get_track_stats()
    original = stats.avg_sample_duration
    stats.avg_sample_duration = 1.0
    assert ts.get_track_stats().avg_sample_duration == original


def test_insert_frame_advances_packet():
    ts = started(TrackKind.VIDEO, 100, 10000)
    ts.get_pts(RTPPacket(sequence_number=100, timestamp=10000))
    blank = RTPPacket()
    pts = ts.insert_frame(blank)
    assert blank.sequence_number == 101
    assert blank.timestamp > 10000
    assert pts == ts.get_frame_duration()


def test_insert_frame_before_respects_next_packet():
    ts = started(TrackKind.VIDEO, 100, 10000)
    ts.get_pts(RTPPacket(sequence_number=100, timestamp=10000))
    too_close = RTPPacket(sequence_number=101, timestamp=10001)
    assert ts.insert_frame_before(RTPPacket(), too_close) is None

    ts2 = started(TrackKind.VIDEO, 100, 10000)
    ts2.get_pts(RTPPacket(sequence_number=100, timestamp=10000))
    far = RTPPacket(sequence_number=111, timestamp=10000 + 3750 * 10)
    blank = RTPPacket()
    pts = ts2.insert_frame_before(blank, far)
    assert pts == ts2.get_frame_duration()
    assert blank.sequence_number == 101


def test_sequence_number_jump_resets():
    ts = started(TrackKind.VIDEO, 100, 10000)
    first = ts.get_pts(RTPPacket(sequence_number=100, timestamp=10000))
    jumped = RTPPacket(sequence_number=100 + 4000, timestamp=10000 + 3750)
    pts = ts.get_pts(jumped)
    assert jumped.sequence_number == 101
    assert pts >= first


def test_ntp_to_unix_epoch():
    assert ntp_to_unix_ns(2208988800 << 32) == 0
    assert ntp_to_unix_ns(((2208988800 + 1) << 32) | 0x80000000) == 1_500_000_000