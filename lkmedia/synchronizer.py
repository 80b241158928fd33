"""Audio/video synchronization across the tracks of a room using RTCP sender reports."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from lkmedia.track import (
    SenderReport,
    TrackRemote,
    TrackSynchronizer,
    ntp_to_unix_ns,
)

_INITIALIZATION_WINDOW = 5.0


class _ParticipantSynchronizer:
    """Sender report bookkeeping for the tracks of one participant."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.ntp_start: int | None = None
        self.first_report: float | None = None
        self.tracks: dict[int, TrackSynchronizer] = {}
        self.sender_reports: dict[int, SenderReport] = {}

    def on_sender_report(self, report: SenderReport) -> None:
        with self.lock:
            if self.ntp_start is None:
                self._initialize(report)
            elif (track := self.tracks.get(report.ssrc)) is not None:
                track._on_sender_report(report, self.ntp_start)

    def _initialize(self, report: SenderReport) -> None:
        if self.first_report is None:
            self.first_report = time.monotonic()

        self.sender_reports[report.ssrc] = report
        if (
            len(self.sender_reports) < len(self.tracks)
            and time.monotonic() - self.first_report < _INITIALIZATION_WINDOW
        ):
            return

        # the earliest start implied by any track's report becomes the reference
        for ssrc, sr in self.sender_reports.items():
            track = self.tracks.get(ssrc)
            if track is None:
                continue
            pts = track._sender_report_pts(sr)
            ntp_start = ntp_to_unix_ns(sr.ntp_time) - pts
            if self.ntp_start is None or ntp_start < self.ntp_start:
                self.ntp_start = ntp_start

        if self.ntp_start is None:
            return

        for ssrc, sr in self.sender_reports.items():
            track = self.tracks.get(ssrc)
            if track is not None:
                track._on_sender_report(sr, self.ntp_start)

    def get_max_offset(self) -> int:
        with self.lock:
            tracks = list(self.tracks.values())
        return max((max(t._get_pts_offset(), 0) for t in tracks), default=0)

    def drain(self, max_pts: int) -> None:
        with self.lock:
            for track in self.tracks.values():
                track._set_max_pts(max_pts)


class Synchronizer:
    """Shared by all audio and video writers of a room.

    Times returned by ``get_started_at`` and ``get_ended_at`` are nanoseconds
    since the Unix epoch, or 0 when not yet set. ``on_started`` is called once,
    when the first track is initialized.
    """

    def __init__(self, on_started: Callable[[], None] | None = None) -> None:
        self._lock = threading.RLock()
        self._started_at = 0
        self._on_started = on_started
        self._ended_at = 0
        self._ps_by_identity: dict[str, _ParticipantSynchronizer] = {}
        self._ps_by_ssrc: dict[int, _ParticipantSynchronizer] = {}
        self._ssrc_by_id: dict[str, int] = {}

    def add_track(self, track: TrackRemote, identity: str) -> TrackSynchronizer:
        """Register ``track`` of participant ``identity`` and return its synchronizer."""
        track_sync = TrackSynchronizer(self, track)
        with self._lock:
            participant = self._ps_by_identity.get(identity)
            if participant is None:
                participant = _ParticipantSynchronizer()
                self._ps_by_identity[identity] = participant
            ssrc = track.ssrc
            self._ssrc_by_id[track.track_id] = ssrc
            self._ps_by_ssrc[ssrc] = participant

        with participant.lock:
            participant.tracks[ssrc] = track_sync
        return track_sync

    def remove_track(self, track_id: str) -> None:
        """Forget the track with id ``track_id``."""
        with self._lock:
            ssrc = self._ssrc_by_id.pop(track_id, 0)
            participant = self._ps_by_ssrc.pop(ssrc, None)
        if participant is None:
            return

        with participant.lock:
            track_sync = participant.tracks.pop(ssrc, None)
            if track_sync is not None:
                track_sync.sync = None
            participant.sender_reports.pop(ssrc, None)

    def get_started_at(self) -> int:
        """Start time in Unix nanoseconds, or 0 if no track has started."""
        with self._lock:
            return self._started_at

    def _get_or_set_started_at(self, now: int) -> int:
        with self._lock:
            if self._started_at == 0:
                self._started_at = now
                if self._on_started is not None:
                    self._on_started()
            return self._started_at

    def on_rtcp(self, packet: object) -> None:
        """Use RTCP sender reports to keep the tracks in sync; other packets are ignored."""
        if not isinstance(packet, SenderReport):
            return
        with self._lock:
            participant = self._ps_by_ssrc.get(packet.ssrc)
            ended_at = self._ended_at
        if ended_at != 0 or participant is None:
            return
        participant.on_sender_report(packet)

    def end(self) -> None:
        """Mark the end of the session and let every track drain up to it."""
        end_time = time.time_ns()
        with self._lock:
            participants = list(self._ps_by_identity.values())
            max_offset = max((p.get_max_offset() for p in participants), default=0)
            self._ended_at = end_time + max_offset
            max_pts = self._ended_at - self._started_at
            for participant in participants:
                participant.drain(max_pts)

    def get_ended_at(self) -> int:
        """End time in Unix nanoseconds, or 0 if ``end`` has not been called."""
        with self._lock:
            return self._ended_at