# lkmedia

Building blocks for handling real-time media carried over RTP: reordering
packets, assembling frames, reading Ogg/Opus files, giving tracks
presentation timestamps on a common clock, and picking a regional server URL.

All durations and times are integers in nanoseconds unless stated otherwise.
`lkmedia.rtp` defines `MILLISECOND`, `SECOND` and the like for convenience.

## Modules

- `lkmedia.rtp`
  - `RTPPacket`: sequence number, timestamp, marker, payload, padding flag,
    payload type and SSRC.
  - `Sample`: a frame's `data` and its `duration`.
  - `Depacketizer`: `unmarshal`, `is_partition_head`, `is_partition_tail`.
    The base class passes payloads through, treats every packet as a frame
    start and the marker bit as a frame end; subclass it for a real codec.
  - `LimitSizeWriter(writer)`: wraps a callable that writes an `RTPPacket`;
    `write` raises `PayloadTooLargeError` for payloads over 1200 bytes.
- `lkmedia.oggreader`
  - `OggReader(stream, do_checksum=True)`: parses the `OpusHead` page into
    `reader.header` (an `OggHeader`), skips the comment page, then returns one
    Opus packet per `read_packet()` call, raising `EOFError` at the end of the
    stream. Iterating over the reader yields the packets. Page CRCs are
    checked unless `do_checksum` is false; malformed streams raise `OggError`.
  - `parse_packet_duration(data)`: duration of an Opus packet from its TOC
    byte; raises `InvalidPacketError` for empty packets or more than 120 ms.
- `lkmedia.jitter`
  - `JitterBuffer(depacketizer, clock_rate, max_latency, on_packet_dropped=None, logger=None)`:
    reorders packets, handles sequence-number and timestamp wraps and jumps,
    drops samples older than `max_latency` and calls `on_packet_dropped`.
    `push(pkt)`, `pop(force=False)` returns a flat list of packets,
    `pop_samples(force=False)` groups them per frame. `stats()` returns a
    `BufferStats` copy; `packet_loss()` the dropped/pushed ratio;
    `update_max_latency(max_latency)` changes the window.
- `lkmedia.samplebuilder`
  - `SampleBuilder(max_late, depacketizer, sample_rate, packet_release_handler=None, on_packet_dropped=None)`:
    a ring buffer of `2 * max_late + 1` slots (`max_late` clamped to 2..32767).
    `push`, `pop`, `pop_with_timestamp`, `force_pop_with_timestamp`,
    `pop_packets`, `force_pop_packets`. `check()` raises `InvariantError` if
    the internal state is inconsistent.
- `lkmedia.track`
  - `TrackRemote(track_id, codec, kind, ssrc)` with `CodecParameters(mime_type, clock_rate)`
    and `TrackKind.AUDIO` / `TrackKind.VIDEO`; `SenderReport` for RTCP sender reports.
  - `TrackSynchronizer`: `initialize(pkt)` on the first packet, then
    `get_pts(pkt)` per packet. It raises `BackwardsPTSError` for timestamps
    going backwards and `EOFError` once the track has drained past the end.
    `insert_frame` / `insert_frame_before` place blank frames,
    `get_frame_duration()` and `get_track_stats()` report on the track.
  - `ntp_to_unix_ns(ntp_time)`: 64-bit NTP timestamp to Unix nanoseconds.
- `lkmedia.synchronizer`
  - `Synchronizer(on_started=None)`: `add_track(track, identity)` returns a
    `TrackSynchronizer`; `remove_track(track_id)`; `on_rtcp(packet)` uses
    `SenderReport`s to align tracks of the same participant and ignores
    anything else; `end()` sets the end time and drains all tracks;
    `get_started_at()` / `get_ended_at()` give Unix nanoseconds or 0.
- `lkmedia.regionurl`
  - `RegionURLProvider(timeout=5.0)`: `refresh_region_settings(cloud_hostname, token)`
    fetches `https://<hostname>/settings/regions` with a bearer token and
    caches it for 3 seconds; `pop_best_url(cloud_hostname, token)` removes and
    returns the best URL and raises `RegionError` when none are left.
  - `parse_cloud_url(server_url)` and `is_cloud(hostname)`.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Examples

Reordering packets with a jitter buffer:

```python
from lkmedia.jitter import JitterBuffer
from lkmedia.rtp import SECOND, Depacketizer, RTPPacket


class MarkerDepacketizer(Depacketizer):
    def is_partition_head(self, payload):
        return payload[:1] == b"\xaa"


buffer = JitterBuffer(MarkerDepacketizer(), 90000, SECOND // 2)
buffer.push(RTPPacket(sequence_number=2, timestamp=3000, marker=True, payload=b"..."))
buffer.push(RTPPacket(sequence_number=1, timestamp=3000, payload=b"\xaa..."))
frame = buffer.pop()   # both packets, in sequence order
```

Reading Opus packets from an Ogg file:

```python
from lkmedia.oggreader import OggReader, parse_packet_duration

with open("audio.ogg", "rb") as stream:
    reader = OggReader(stream)
    print(reader.header.channels, reader.header.sample_rate)
    for packet in reader:
        print(len(packet), parse_packet_duration(packet))
```

Presentation timestamps for a track:

```python
from lkmedia.rtp import RTPPacket
from lkmedia.synchronizer import Synchronizer
from lkmedia.track import CodecParameters, TrackKind, TrackRemote

sync = Synchronizer()
track = TrackRemote("TR_audio", CodecParameters("audio/opus", 48000), TrackKind.AUDIO, 1234)
track_sync = sync.add_track(track, "participant-1")

first = RTPPacket(sequence_number=1, timestamp=960)
track_sync.initialize(first)
pts = track_sync.get_pts(first)
```

## What this package does not do

It works on packets and reports you hand to it. It does not open network
connections for media, negotiate sessions, decode or encode audio and video,
or join rooms; the only network access is the HTTPS request made by
`RegionURLProvider.refresh_region_settings`. It has no command-line tool.