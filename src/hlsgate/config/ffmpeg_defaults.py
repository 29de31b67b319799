"""FFmpeg default parameter configuration.

Single source of truth for the HLS worker's parameters. Two groups:

- Input/output flags that never change: chosen for compatibility with
  consumer cameras (UniFi in particular) and applied to every worker.
- Quality profiles: bitrate and buffer ceilings, stepped down when more
  than one stream runs at the same time.
"""
from typing import Final

# ============================================================================
# Fixed Parameters
# ============================================================================

INPUT_FFMPEG_PARAMS: Final[list[str]] = [
    '-fflags', '+genpts+discardcorrupt',
    '-err_detect', 'ignore_err',
    '-rtsp_transport', 'tcp',
    '-timeout', '30000000',
    '-user_agent', 'UniFiVideo',
    '-thread_queue_size', '1024',
    '-analyzeduration', '1000000',
    '-probesize', '1000000',
]
"""Input options placed before -i."""

OUTPUT_FFMPEG_PARAMS: Final[list[str]] = [
    '-c:v', 'libx264',
    '-c:a', 'aac',
    '-f', 'hls',
    '-hls_time', '3',
    '-hls_list_size', '8',
    '-hls_flags', 'delete_segments+independent_segments',
    '-preset', 'faster',
    '-tune', 'zerolatency',
    '-profile:v', 'main',
    '-level', '3.1',
    '-g', '30',
    '-sc_threshold', '0',
]
"""Encoder and HLS muxer options."""

TRAILING_FFMPEG_PARAMS: Final[list[str]] = [
    '-avoid_negative_ts', 'make_zero',
    '-movflags', '+faststart',
    '-loglevel', 'warning',
]

MANIFEST_NAME: Final[str] = "stream.m3u8"
"""Playlist written by the worker; its appearance signals readiness."""

# ============================================================================
# Quality Profiles
# ============================================================================

QUALITY_PROFILES: Final[dict[str, dict[str, str]]] = {
    'full': {
        'video_bitrate': '1500k',
        'maxrate': '2000k',
        'bufsize': '4000k',
        'audio_bitrate': '128k',
    },
    'reduced': {
        'video_bitrate': '1200k',
        'maxrate': '1600k',
        'bufsize': '3200k',
        'audio_bitrate': '96k',
    },
}
"""Bitrate ceilings by profile name."""

# ============================================================================
# Helper Functions
# ============================================================================

def select_quality_profile(concurrent_streams: int) -> str:
    """Pick the quality profile for a worker.

    Args:
        concurrent_streams: Streams that will be running alongside the new
            one (active or starting), not counting the new one.

    Returns:
        "full" for a lone stream, "reduced" otherwise
    """
    return 'reduced' if concurrent_streams > 0 else 'full'


def get_quality_params(profile: str) -> list[str]:
    """Expand a quality profile into FFmpeg arguments."""
    values = QUALITY_PROFILES[profile]
    return [
        '-b:v', values['video_bitrate'],
        '-maxrate', values['maxrate'],
        '-bufsize', values['bufsize'],
        '-b:a', values['audio_bitrate'],
    ]
