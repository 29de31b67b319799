"""HLSGate: RTSP camera feeds served as HLS by supervised FFmpeg workers."""

__version__ = "1.0.0"
