"""Extracts time-bounded PCM slices from audio files using ffmpeg."""

import ffmpeg
import os
import logging
import tempfile
import wave
from contextlib import contextmanager
from typing import Iterator, Optional
from .exceptions import ExtractionError
from .models import PcmChunk
from .utils import ensure_dir_exists

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000
SAMPLE_WIDTH = 2 # bytes, 16-bit signed little endian
CHANNELS = 1

class ChunkExtractor:
    """Decodes a [start, end) window of a source file to mono 16kHz PCM."""

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        ffprobe_path: Optional[str] = None,
        temp_dir: Optional[str] = None,
        partial_tolerance_seconds: float = 0.25
    ):
        """
        Initializes the ChunkExtractor.

        Args:
            ffmpeg_path: Optional path to the ffmpeg executable.
                         If None, assumes ffmpeg is in the system PATH.
            ffprobe_path: Optional path to the ffprobe executable.
            temp_dir: Directory for intermediate WAV files. None uses the
                      system temporary directory.
            partial_tolerance_seconds: How much shorter than the requested
                      window a decoded slice may be before it counts as a
                      partial read.
        """
        self.ffmpeg_cmd = ffmpeg_path or 'ffmpeg'
        self.ffprobe_cmd = ffprobe_path or 'ffprobe'
        self.temp_dir = temp_dir
        self.partial_tolerance_seconds = partial_tolerance_seconds
        if self.temp_dir:
            ensure_dir_exists(self.temp_dir)
        logger.info(f"Using ffmpeg command: {self.ffmpeg_cmd}, ffprobe command: {self.ffprobe_cmd}")

    def probe_duration(self, audio_path: str) -> float:
        """
        Returns the duration in seconds of the first audio track.

        Raises:
            FileNotFoundError: If the audio file does not exist.
            ExtractionError: If the file has no audio track or cannot be probed.
        """
        if not os.path.exists(audio_path):
            raise FileNotFoundError(f"Input audio file not found: {audio_path}")
        try:
            info = ffmpeg.probe(audio_path, cmd=self.ffprobe_cmd)
        except ffmpeg.Error as e:
            stderr_output = e.stderr.decode('utf-8', errors='replace') if e.stderr else "No stderr output"
            logger.error(f"ffprobe failed for {audio_path}: {stderr_output}")
            raise ExtractionError(f"Could not probe {audio_path}: {stderr_output}") from e

        audio_streams = [s for s in info.get('streams', []) if s.get('codec_type') == 'audio']
        if not audio_streams:
            raise ExtractionError(f"No audio track found in {audio_path}")

        raw_duration = info.get('format', {}).get('duration') or audio_streams[0].get('duration')
        try:
            duration = float(raw_duration)
        except (TypeError, ValueError) as e:
            raise ExtractionError(f"Could not determine duration of {audio_path}") from e
        if duration <= 0:
            raise ExtractionError(f"Audio track of {audio_path} is empty")
        logger.debug(f"Probed {audio_path}: {duration:.2f}s")
        return duration

    @contextmanager
    def extract(
        self,
        audio_path: str,
        start: float,
        end: float,
        total_duration: Optional[float] = None
    ) -> Iterator[PcmChunk]:
        """
        Decodes [start, end) of the source into PCM.

        The window end is clamped to the file duration. The intermediate WAV
        written for the decode is removed when the context exits, whatever
        happens inside it.

        Args:
            audio_path: Path to the source audio file.
            start: Window start in seconds.
            end: Window end in seconds.
            total_duration: Known file duration; probed when None.

        Yields:
            A PcmChunk covering the window.

        Raises:
            FileNotFoundError: If the audio file does not exist.
            ExtractionError: If the window lies outside the file, the file has
                             no audio track, or decoding fails or comes up short.
        """
        duration = total_duration if total_duration is not None else self.probe_duration(audio_path)
        if start < 0 or start >= duration:
            raise ExtractionError(f"Window start {start:.2f}s is outside {audio_path} (duration {duration:.2f}s)")
        end = min(end, duration)
        if end <= start:
            raise ExtractionError(f"Empty extraction window [{start:.2f}, {end:.2f})")

        fd, wav_path = tempfile.mkstemp(prefix="chunk_", suffix=".wav", dir=self.temp_dir)
        os.close(fd)
        try:
            data = self._decode(audio_path, wav_path, start, end)
            yield PcmChunk(
                audio_path=audio_path,
                start=start,
                end=end,
                sample_rate=SAMPLE_RATE,
                data=data,
                wav_path=wav_path
            )
        finally:
            try:
                os.remove(wav_path)
                logger.debug(f"Removed intermediate file: {wav_path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove intermediate file {wav_path}: {e}")

    def _decode(self, audio_path: str, wav_path: str, start: float, end: float) -> bytes:
        """Runs ffmpeg for the window and returns the verified PCM frames."""
        logger.debug(f"Decoding {audio_path} [{start:.2f}, {end:.2f}) to {wav_path}")
        try:
            # acodec='pcm_s16le' -> 16-bit little endian, ar=16000 -> 16kHz, ac=1 -> mono
            (
                ffmpeg
                .input(audio_path, ss=start, t=end - start)
                .output(wav_path, acodec='pcm_s16le', ar=SAMPLE_RATE, ac=CHANNELS, vn=None)
                .overwrite_output()
                .run(cmd=self.ffmpeg_cmd, capture_stdout=True, capture_stderr=True)
            )
        except ffmpeg.Error as e:
            stderr_output = e.stderr.decode('utf-8', errors='replace') if e.stderr else "No stderr output"
            logger.error(f"ffmpeg stderr: {stderr_output}")
            raise ExtractionError(f"ffmpeg failed for {audio_path} [{start:.2f}, {end:.2f}): {stderr_output}") from e

        try:
            with wave.open(wav_path, 'rb') as wav:
                if (wav.getnchannels() != CHANNELS or wav.getsampwidth() != SAMPLE_WIDTH
                        or wav.getframerate() != SAMPLE_RATE):
                    raise ExtractionError(
                        f"Unexpected PCM format from ffmpeg: {wav.getnchannels()}ch, "
                        f"{wav.getsampwidth() * 8}bit, {wav.getframerate()}Hz"
                    )
                data = wav.readframes(wav.getnframes())
        except (wave.Error, EOFError, OSError) as e:
            raise ExtractionError(f"Could not read decoded audio {wav_path}: {e}") from e

        decoded_seconds = len(data) / (SAMPLE_RATE * SAMPLE_WIDTH * CHANNELS)
        if decoded_seconds < (end - start) - self.partial_tolerance_seconds:
            raise ExtractionError(
                f"Partial decode of {audio_path}: got {decoded_seconds:.2f}s of {end - start:.2f}s requested"
            )
        return data
