"""Reads and writes per-audio transcripts as SRT files."""

import logging
import os
import re
import tempfile
from typing import List, Optional, Sequence, Set

from .models import Subtitle
from .exceptions import PersistenceError, FileSystemError
from .utils import (
    AUDIO_EXTENSIONS, audio_base_name, audio_identity, ensure_dir_exists, format_time_srt, parse_time_srt, stable_hash
)

logger = logging.getLogger(__name__)

SRT_EXTENSION = "srt"
TIME_SEPARATOR = " --> "

def format_srt(subtitles: Sequence[Subtitle]) -> str:
    """Serializes subtitles as SRT text (1-based indices, blank line between records)."""
    blocks = []
    for index, sub in enumerate(subtitles, start=1):
        blocks.append(
            f"{index}\n"
            f"{format_time_srt(sub.start_time)}{TIME_SEPARATOR}{format_time_srt(sub.end_time)}\n"
            f"{sub.text}\n\n"
        )
    return "".join(blocks)

def parse_srt(content: str) -> List[Subtitle]:
    """
    Parses SRT text.

    Records that cannot be parsed (bad timestamps, no text, zero length) are
    skipped with a warning rather than failing the whole file. Loaded entries
    are marked as polished since SRT does not record it.
    """
    subtitles = []
    content = content.replace("\r\n", "\n").lstrip("\ufeff")
    for block in re.split(r"\n\s*\n", content.strip()):
        lines = block.split("\n")
        if len(lines) < 3 or TIME_SEPARATOR not in lines[1]:
            if block.strip():
                logger.warning(f"Skipping malformed SRT block: {block[:80]!r}")
            continue
        start_str, end_str = lines[1].split(TIME_SEPARATOR, 1)
        try:
            subtitles.append(Subtitle(
                text="\n".join(lines[2:]).strip(),
                start_time=parse_time_srt(start_str),
                end_time=parse_time_srt(end_str),
                is_polished=True
            ))
        except ValueError as e:
            logger.warning(f"Skipping invalid SRT record {lines[0]!r}: {e}")
    return subtitles

class SubtitleStore:
    """
    Owns the on-disk transcript of every audio file.

    A transcript lives at ``<subtitle_dir>/<base>_<stable_hash(file name)>.srt``.
    Files written by older versions used a per-process hash instead; those are
    still found by base-name prefix when the stable key is missing.
    """

    def __init__(self, subtitle_dir: str, completeness_tolerance: float = 5.0):
        self.subtitle_dir = subtitle_dir
        self.completeness_tolerance = completeness_tolerance

    def path_for(self, audio_path: str) -> str:
        return os.path.join(self.subtitle_dir, f"{audio_identity(audio_path)}.{SRT_EXTENSION}")

    @staticmethod
    def _sibling_keys(audio_path: str) -> Set[str]:
        """Stable hashes of every audio file sharing this base name, this one included."""
        base = audio_base_name(audio_path)
        extensions = set(AUDIO_EXTENSIONS)
        extensions.add(os.path.splitext(audio_path)[1].lstrip('.'))
        names = {f"{base}.{variant}" for ext in extensions for variant in (ext, ext.lower(), ext.upper())}
        return {str(stable_hash(name)) for name in names}

    def _legacy_paths(self, audio_path: str) -> List[str]:
        """
        Files named ``<base>_<digits>.srt``, newest first.

        Stable keys of audio files with the same base name (``ep.mp3`` next to
        ``ep.m4a``) belong to those files and are not legacy transcripts.
        """
        if not os.path.isdir(self.subtitle_dir):
            return []
        pattern = re.compile(re.escape(audio_base_name(audio_path)) + r"_(-?\d+)\." + SRT_EXTENSION + "$")
        siblings = self._sibling_keys(audio_path)
        candidates = []
        for name in os.listdir(self.subtitle_dir):
            match = pattern.match(name)
            if match and match.group(1) not in siblings:
                path = os.path.join(self.subtitle_dir, name)
                try:
                    candidates.append((os.path.getmtime(path), path))
                except OSError:
                    continue
        candidates.sort(reverse=True)
        return [path for _, path in candidates]

    def find(self, audio_path: str) -> Optional[str]:
        """Path of the transcript for audio_path, stable key first, else newest legacy file."""
        path = self.path_for(audio_path)
        if os.path.isfile(path):
            return path
        legacy = self._legacy_paths(audio_path)
        if legacy:
            logger.info(f"Using legacy transcript {os.path.basename(legacy[0])} for {os.path.basename(audio_path)}")
            return legacy[0]
        return None

    def exists(self, audio_path: str) -> bool:
        return self.find(audio_path) is not None

    def load(self, audio_path: str) -> Optional[List[Subtitle]]:
        """Returns the saved subtitles sorted by start time, or None when nothing usable is saved."""
        path = self.find(audio_path)
        if path is None:
            logger.debug(f"No saved transcript for {os.path.basename(audio_path)}")
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                subtitles = parse_srt(f.read())
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Could not read transcript {path}: {e}")
            return None
        if not subtitles:
            return None
        subtitles.sort(key=lambda sub: sub.start_time)
        logger.info(f"Loaded {len(subtitles)} subtitles from {os.path.basename(path)}")
        return subtitles

    def save(self, audio_path: str, subtitles: Sequence[Subtitle]) -> str:
        """
        Writes the transcript atomically under the stable key.

        Returns:
            The path written.

        Raises:
            PersistenceError: If the directory or file cannot be written.
        """
        path = self.path_for(audio_path)
        try:
            ensure_dir_exists(self.subtitle_dir)
            fd, tmp_path = tempfile.mkstemp(prefix=".tmp_", suffix=f".{SRT_EXTENSION}", dir=self.subtitle_dir)
            try:
                with os.fdopen(fd, 'w', encoding='utf-8', newline='\n') as f:
                    f.write(format_srt(subtitles))
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except (OSError, FileSystemError) as e:
            logger.error(f"Failed to save transcript {path}: {e}")
            raise PersistenceError(f"Could not save transcript {path}: {e}") from e
        logger.debug(f"Saved {len(subtitles)} subtitles to {path}")
        return path

    def delete(self, audio_path: str) -> None:
        """
        Removes the transcript under the stable key and every legacy file.

        Raises:
            PersistenceError: If an existing file cannot be removed.
        """
        for path in [self.path_for(audio_path)] + self._legacy_paths(audio_path):
            try:
                os.remove(path)
                logger.info(f"Deleted transcript {path}")
            except FileNotFoundError:
                continue
            except OSError as e:
                raise PersistenceError(f"Could not delete transcript {path}: {e}") from e

    @staticmethod
    def covers(subtitles: Sequence[Subtitle], total_duration: float, tolerance: float = 5.0) -> bool:
        """True when the last subtitle ends within ``tolerance`` seconds of the end of the audio."""
        if not subtitles:
            return False
        return subtitles[-1].end_time >= total_duration - tolerance

    def is_complete(self, audio_path: str, total_duration: float) -> bool:
        subtitles = self.load(audio_path)
        return self.covers(subtitles or [], total_duration, self.completeness_tolerance)
