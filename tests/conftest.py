"""Pytest configuration and fixtures for StreamSub tests."""

import logging
import math
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional

import pytest

from streamsub.models import PcmChunk, RawSegment
from streamsub.exceptions import EngineNotLoadedError, ExtractionError
from streamsub.transcriber import TranscriptionEngine
from streamsub.subtitle_store import SubtitleStore
from streamsub.config_loader import ConfigLoader

# Configure logging for tests
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SEGMENT_SPACING = 5
SEGMENT_LENGTH = 4

def segment_text(t: int) -> str:
    """Deterministic text for the speech starting at second t, different for every t."""
    return f"{t:04d}秒:" + "甲乙丙丁戊己庚辛壬癸"[(t // SEGMENT_SPACING) % 10]

class FakeExtractor:
    """Stands in for ChunkExtractor: knows durations, records windows, fails on demand."""

    def __init__(self, durations: Dict[str, float]):
        self.durations = durations
        self.windows: List[tuple] = []
        self.fail_starts = set()
        self.fail_files = set()

    def probe_duration(self, audio_path: str) -> float:
        if audio_path in self.fail_files:
            raise ExtractionError(f"No audio track found in {audio_path}")
        if audio_path not in self.durations:
            raise FileNotFoundError(f"Input audio file not found: {audio_path}")
        return self.durations[audio_path]

    @contextmanager
    def extract(self, audio_path, start, end, total_duration=None):
        self.windows.append((audio_path, start, end))
        if audio_path in self.fail_files or round(start, 3) in self.fail_starts:
            raise ExtractionError(f"decode failed at {start}")
        duration = total_duration if total_duration is not None else self.probe_duration(audio_path)
        end = min(end, duration)
        samples = int(round((end - start) * 16000))
        yield PcmChunk(audio_path=audio_path, start=start, end=end, sample_rate=16000, data=b"\x00\x00" * samples)

class FakeEngine(TranscriptionEngine):
    """
    Produces one segment every 5 seconds of absolute audio time, so chunks
    that overlap return identical segments for the shared seconds.
    """

    def __init__(self, fail_load: bool = False):
        super().__init__()
        self.loaded = False
        self.fail_load = fail_load
        self.load_calls = 0
        self.calls: List[PcmChunk] = []
        self.gate: Optional[threading.Event] = None
        self.gate_after = 1

    @property
    def is_loaded(self) -> bool:
        return self.loaded

    def load_model(self) -> None:
        self.load_calls += 1
        if self.fail_load:
            raise EngineNotLoadedError("model download failed")
        self.loaded = True

    def transcribe(self, chunk: PcmChunk) -> List[RawSegment]:
        if not self.loaded:
            raise EngineNotLoadedError("not loaded")
        with self._exclusive():
            self.calls.append(chunk)
            if self.gate is not None and len(self.calls) > self.gate_after:
                assert self.gate.wait(timeout=10), "test gate was never released"
            first = int(math.ceil(chunk.start / SEGMENT_SPACING) * SEGMENT_SPACING)
            segments = []
            for t in range(first, int(chunk.end), SEGMENT_SPACING):
                seg_end = min(t + SEGMENT_LENGTH, chunk.end)
                if seg_end > t:
                    segments.append(RawSegment(text=segment_text(t), start_offset=t - chunk.start,
                                               end_offset=seg_end - chunk.start))
            return segments

class FakePolisher:
    """Polisher whose answers are scripted; None means 'no polish available'."""

    def __init__(self, transform=None):
        self.transform = transform
        self.inputs: List[str] = []

    def polish(self, raw_text, on_progress=None):
        self.inputs.append(raw_text)
        if on_progress is not None:
            on_progress(1, 1)
        return self.transform(raw_text) if self.transform else None

@pytest.fixture
def config():
    """Default configuration with fast batch polling."""
    cfg = ConfigLoader().with_defaults({"batch": {"poll_interval_seconds": 0.01}})
    return cfg

@pytest.fixture
def store(tmp_path):
    return SubtitleStore(str(tmp_path / "subtitles"))

@pytest.fixture
def fake_engine():
    return FakeEngine()
