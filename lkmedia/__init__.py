"""Real-time media helpers: RTP jitter buffering, sample building, Ogg/Opus reading, A/V sync and region URL discovery."""

__version__ = "0.1.0"
__all__ = ["rtp", "oggreader", "regionurl", "jitter", "samplebuilder", "track", "synchronizer"]