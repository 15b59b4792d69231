"""Utility functions for StreamSub."""

import os
import logging
from .exceptions import FileSystemError

logger = logging.getLogger(__name__)

HASH_SEED = 5381
HASH_MASK = 0xFFFFFFFFFFFFFFFF

# Languages written without spaces between words.
CJK_LANGUAGES = ("zh", "ja", "ko", "yue")

AUDIO_EXTENSIONS = ("m4a", "mp3", "wav", "aac", "flac")

def ensure_dir_exists(dir_path: str) -> None:
    """
    Ensures that a directory exists. Creates it if it doesn't.

    Args:
        dir_path: The path to the directory.

    Raises:
        FileSystemError: If the directory cannot be created due to permissions
                         or if the path exists but is not a directory.
    """
    if not dir_path:
        raise ValueError("Directory path cannot be empty.")
    try:
        if not os.path.exists(dir_path):
            os.makedirs(dir_path, exist_ok=True)
            logger.info(f"Created directory: {dir_path}")
        elif not os.path.isdir(dir_path):
            raise FileSystemError(f"Path exists but is not a directory: {dir_path}")
    except OSError as e:
        logger.error(f"Error creating or accessing directory {dir_path}: {e}", exc_info=True)
        raise FileSystemError(f"Could not create or access directory {dir_path}: {e}") from e

def format_time_srt(seconds: float) -> str:
    """
    Formats seconds into SRT time format HH:MM:SS,ms.

    Args:
        seconds: Time in seconds.

    Returns:
        Formatted time string.
    """
    if seconds < 0:
        seconds = 0.0 # Ensure non-negative time
    milliseconds = round(seconds * 1000)
    hrs = milliseconds // 3600000
    milliseconds %= 3600000
    mins = milliseconds // 60000
    milliseconds %= 60000
    secs = milliseconds // 1000
    milliseconds %= 1000
    return f"{hrs:02d}:{mins:02d}:{secs:02d},{milliseconds:03d}"

def parse_time_srt(value: str) -> float:
    """
    Parses an SRT timestamp (HH:MM:SS,ms) into seconds.

    Raises:
        ValueError: If the value is not a valid timestamp.
    """
    parts = value.strip().replace(",", ".").split(":")
    if len(parts) != 3:
        raise ValueError(f"Invalid SRT timestamp: {value!r}")
    hours, minutes, seconds = parts
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)

def format_clock(seconds: float) -> str:
    """Short M:SS form used in progress messages."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"

def stable_hash(name: str) -> int:
    """
    Deterministic djb2 hash of a string's UTF-8 bytes.

    Unlike the builtin hash() this gives the same value in every process, so
    it can be used as part of an on-disk key.

    Args:
        name: The string to hash (usually a file name without directories).

    Returns:
        A non-negative integer below 2**64.
    """
    value = HASH_SEED
    for byte in name.encode("utf-8"):
        value = (value * 33 + byte) & HASH_MASK
    return value

def audio_base_name(audio_path: str) -> str:
    """File name of the audio without directories or extension."""
    return os.path.splitext(os.path.basename(audio_path))[0]

def segment_joiner(language: str) -> str:
    """Separator placed between raw segments when rebuilding running text."""
    if language and language.lower().split("-")[0] in CJK_LANGUAGES:
        return ""
    return " "

def audio_identity(audio_path: str) -> str:
    """Restart-stable key of an audio file: ``<base>_<stable_hash(file name)>``."""
    return f"{audio_base_name(audio_path)}_{stable_hash(os.path.basename(audio_path))}"
