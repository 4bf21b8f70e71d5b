"""
Process-wide codec library setup and small codec helpers.
"""

import logging
import threading

import av
import av.logging

from mediafan.configs import settings

logger = logging.getLogger(__name__)

_init_lock = threading.Lock()
_initialized = False

_AV_LOG_LEVELS = {
    "PANIC": av.logging.PANIC,
    "FATAL": av.logging.FATAL,
    "ERROR": av.logging.ERROR,
    "WARNING": av.logging.WARNING,
    "INFO": av.logging.INFO,
    "VERBOSE": av.logging.VERBOSE,
    "DEBUG": av.logging.DEBUG,
}


def init_codec_library() -> bool:
    """
    Initialize the codec library once per process.

    Safe to call from any thread and any number of times; only the first
    call does work.

    Returns:
        True if this call performed the initialization, False otherwise.
    """
    global _initialized
    with _init_lock:
        if _initialized:
            return False
        level = _AV_LOG_LEVELS.get(settings.av_log_level.upper(), av.logging.ERROR)
        av.logging.set_level(level)
        _initialized = True
    logger.info("[codec] PyAV %s initialized (libav log level=%s)", av.__version__, settings.av_log_level.upper())
    return True


def probe_codec(name: str, mode: str = "w") -> bool:
    """
    Check if a PyAV codec is available by name.

    Args:
        name: Codec name (e.g. 'libx265').
        mode: 'w' for encoder, 'r' for decoder.
    """
    try:
        av.Codec(name, mode)
        return True
    except Exception:
        return False


def even_dimension(value: int) -> int:
    """Round a dimension up to the next even number (4:2:0 chroma needs it)."""
    return value if value % 2 == 0 else value + 1


def parse_bitrate(bitrate_str: str) -> int:
    """Parse a bitrate string like '4M', '2000k', '5000000' to int bits/s."""
    s = bitrate_str.strip().lower()
    if s.endswith("m"):
        return int(float(s[:-1]) * 1_000_000)
    if s.endswith("k"):
        return int(float(s[:-1]) * 1_000)
    return int(s)
