"""Tests for the streaming transcription controller using fake components."""

import threading
from concurrent.futures import CancelledError
from unittest.mock import MagicMock

import pytest
import requests

from streamsub.completion_client import CompletionClient
from streamsub.exceptions import EngineNotLoadedError, ExtractionError
from streamsub.merge import text_similarity
from streamsub.models import SessionState, Subtitle
from streamsub.polisher import TextPolisher
from streamsub.streaming import StreamingTranscriptionController

from conftest import FakeEngine, FakeExtractor, FakePolisher, segment_text

AUDIO = "/audio/episode1.m4a"
TIMEOUT = 10

@pytest.fixture
def extractor():
    return FakeExtractor({AUDIO: 100.0})

@pytest.fixture
def polisher():
    return FakePolisher()

@pytest.fixture
def controller(config, extractor, fake_engine, polisher, store):
    controller = StreamingTranscriptionController(config, extractor, fake_engine, polisher, store)
    yield controller
    controller.shutdown()

def _windows(extractor):
    return [(start, end) for _, start, end in extractor.windows]

@pytest.mark.unit
class TestChunkPlanning:

    def test_chunk_sizes_grow_then_stay(self, controller):
        assert [controller.chunk_size_for(i) for i in range(6)] == [25, 30, 35, 40, 40, 40]

    def test_plan_chunk(self, controller):
        task = controller.plan_chunk(20.0, 1, 300.0)
        assert (task.start, task.end, task.effective_end, task.chunk_size) == (20.0, 50.0, 45.0, 30.0)

    def test_plan_chunk_clamped_at_end(self, controller):
        task = controller.plan_chunk(75.0, 3, 100.0)
        assert task.end == 100.0
        assert task.effective_end == 100.0

@pytest.mark.unit
class TestStreamingSession:

    def test_fresh_run_completes_and_saves(self, controller, extractor, store):
        handle = controller.start(AUDIO)
        session = handle.done.result(timeout=TIMEOUT)

        assert session.state is SessionState.COMPLETE
        assert session.is_complete
        assert handle.ready.result(timeout=0) is session
        assert _windows(extractor) == [(0.0, 25.0), (20.0, 50.0), (45.0, 80.0), (75.0, 100.0)]

        starts = [s.start_time for s in session.subtitles]
        assert starts == [float(t) for t in range(0, 100, 5)]
        assert [s.text for s in session.subtitles] == [segment_text(t) for t in range(0, 100, 5)]
        assert not any(s.is_polished for s in session.subtitles)
        for earlier, later in zip(session.subtitles, session.subtitles[1:]):
            if earlier.end_time > later.start_time:
                assert text_similarity(earlier.text, later.text) <= 0.7

        saved = store.load(AUDIO)
        assert [s.text for s in saved] == [s.text for s in session.subtitles]
        assert store.is_complete(AUDIO, 100.0)

    def test_chunk_schedule_on_long_audio(self, config, fake_engine, polisher, store):
        extractor = FakeExtractor({AUDIO: 300.0})
        controller = StreamingTranscriptionController(config, extractor, fake_engine, polisher, store)
        try:
            controller.start(AUDIO).done.result(timeout=TIMEOUT)
        finally:
            controller.shutdown()
        sizes = [end - start for start, end in _windows(extractor)]
        assert sizes[:6] == [25, 30, 35, 40, 40, 40]
        starts = [start for start, _ in _windows(extractor)]
        assert starts[:4] == [0.0, 20.0, 45.0, 75.0]

    def test_complete_transcript_is_not_reprocessed(self, controller, extractor, fake_engine, store):
        controller.start(AUDIO).done.result(timeout=TIMEOUT)
        path = store.path_for(AUDIO)
        with open(path, 'rb') as f:
            first_bytes = f.read()
        calls = len(fake_engine.calls)

        handle = controller.start(AUDIO)
        session = handle.done.result(timeout=TIMEOUT)

        assert session.state is SessionState.COMPLETE
        assert handle.ready.result(timeout=0) is session
        assert len(fake_engine.calls) == calls
        with open(path, 'rb') as f:
            assert f.read() == first_bytes

    def test_resume_rewinds_before_saved_end(self, config, fake_engine, polisher, store):
        extractor = FakeExtractor({AUDIO: 300.0})
        saved = [Subtitle(f"saved {t}", float(t), float(t) + 4.0, is_polished=True) for t in range(0, 120, 5)]
        saved[-1] = Subtitle("saved last", 115.0, 120.0, is_polished=True)
        store.save(AUDIO, saved)
        controller = StreamingTranscriptionController(config, extractor, fake_engine, polisher, store)
        try:
            handle = controller.start(AUDIO)
            ready_session = handle.ready.result(timeout=TIMEOUT)
            assert len(ready_session.subtitles) >= len(saved)
            session = handle.done.result(timeout=TIMEOUT)
        finally:
            controller.shutdown()

        assert _windows(extractor)[0] == (110.0, 135.0)
        assert session.state is SessionState.COMPLETE
        texts = [s.text for s in session.subtitles]
        # Saved history before the rewind point survives, the rewound tail is replaced
        assert texts[:22] == [f"saved {t}" for t in range(0, 110, 5)]
        assert texts[22] == segment_text(110)
        starts = [s.start_time for s in session.subtitles]
        assert starts == sorted(starts)

    def test_ready_fires_after_first_chunk(self, controller, fake_engine):
        gate = threading.Event()
        fake_engine.gate = gate
        handle = controller.start(AUDIO)
        try:
            session = handle.ready.result(timeout=TIMEOUT)
            assert session.chunk_count == 1
            assert session.processed_end_time == 20.0
            assert session.state is SessionState.PROCESSING
            assert controller.is_processing
        finally:
            gate.set()
        assert handle.done.result(timeout=TIMEOUT).state is SessionState.COMPLETE
        assert handle.ready.result(timeout=0) is session

    def test_first_chunk_failure_is_fatal(self, controller, extractor, store):
        extractor.fail_starts.add(0.0)
        handle = controller.start(AUDIO)

        with pytest.raises(ExtractionError):
            handle.ready.result(timeout=TIMEOUT)
        session = handle.done.result(timeout=TIMEOUT)

        assert session.state is SessionState.FAILED
        assert "decode failed" in session.error
        assert len(extractor.windows) == 1
        assert not store.exists(AUDIO)

    def test_later_chunk_failure_is_skipped(self, controller, extractor):
        extractor.fail_starts.add(20.0)
        session = controller.start(AUDIO).done.result(timeout=TIMEOUT)

        assert session.state is SessionState.COMPLETE
        assert _windows(extractor)[:3] == [(0.0, 25.0), (20.0, 50.0), (45.0, 80.0)]
        starts = [s.start_time for s in session.subtitles]
        # Nothing between the end of chunk 0 and the start of chunk 2
        assert not any(25.0 <= start < 45.0 for start in starts)
        assert 45.0 in starts

    def test_engine_load_failure(self, config, extractor, polisher, store):
        engine = FakeEngine(fail_load=True)
        controller = StreamingTranscriptionController(config, extractor, engine, polisher, store)
        try:
            handle = controller.start(AUDIO)
            session = handle.done.result(timeout=TIMEOUT)
        finally:
            controller.shutdown()
        assert session.state is SessionState.FAILED
        assert "model download failed" in session.error
        with pytest.raises(EngineNotLoadedError):
            handle.ready.result(timeout=0)

    def test_missing_audio_fails(self, controller):
        session = controller.start("/audio/unknown.m4a").done.result(timeout=TIMEOUT)
        assert session.state is SessionState.FAILED

    def test_polished_text_replaces_raw(self, config, extractor, fake_engine, store):
        polisher = FakePolisher(transform=lambda text: "第一句。第二句！")
        controller = StreamingTranscriptionController(config, extractor, fake_engine, polisher, store)
        try:
            session = controller.start(AUDIO).done.result(timeout=TIMEOUT)
        finally:
            controller.shutdown()
        assert session.state is SessionState.COMPLETE
        assert session.subtitles
        assert all(s.is_polished for s in session.subtitles)
        # Raw segment text is joined without spaces for Chinese
        assert polisher.inputs[0] == "".join(segment_text(t) for t in range(0, 25, 5))

    def test_polish_http_error_keeps_raw(self, config, extractor, fake_engine, store):
        http = MagicMock(spec=requests.Session)
        http.post.return_value = MagicMock(status_code=500, text="server error")
        client = CompletionClient("http://localhost/v1/chat/completions", "m", session=http)
        polisher = TextPolisher(client, "{{TRANSCRIPT}}")
        controller = StreamingTranscriptionController(config, extractor, fake_engine, polisher, store)
        try:
            session = controller.start(AUDIO).done.result(timeout=TIMEOUT)
        finally:
            controller.shutdown()

        assert session.state is SessionState.COMPLETE
        assert http.post.called
        assert [s.text for s in session.subtitles] == [segment_text(t) for t in range(0, 100, 5)]
        assert not any(s.is_polished for s in session.subtitles)

    def test_cancel_keeps_saved_progress(self, controller, fake_engine, store):
        gate = threading.Event()
        fake_engine.gate = gate
        handle = controller.start(AUDIO)
        handle.ready.result(timeout=TIMEOUT)

        controller.cancel()
        gate.set()
        session = handle.done.result(timeout=TIMEOUT)

        assert session.state is SessionState.CANCELLED
        assert not session.is_complete
        saved = store.load(AUDIO)
        assert [s.text for s in saved] == [segment_text(t) for t in range(0, 25, 5)]
        assert controller.wait_until_idle(timeout=TIMEOUT)

    def test_cancel_before_ready_cancels_ready(self, controller, extractor, fake_engine):
        gate = threading.Event()
        fake_engine.gate = gate
        fake_engine.gate_after = 0
        handle = controller.start(AUDIO)

        controller.cancel()
        gate.set()
        session = handle.done.result(timeout=TIMEOUT)

        assert session.state is SessionState.CANCELLED
        with pytest.raises(CancelledError):
            handle.ready.result(timeout=0)

    def test_starting_another_file_cancels_the_first(self, config, fake_engine, polisher, store):
        other = "/audio/episode2.m4a"
        extractor = FakeExtractor({AUDIO: 100.0, other: 50.0})
        controller = StreamingTranscriptionController(config, extractor, fake_engine, polisher, store)
        gate = threading.Event()
        fake_engine.gate = gate
        try:
            first = controller.start(AUDIO)
            first.ready.result(timeout=TIMEOUT)
            second = controller.start(other)
            gate.set()
            assert first.done.result(timeout=TIMEOUT).state is SessionState.CANCELLED
            assert second.done.result(timeout=TIMEOUT).state is SessionState.COMPLETE
            assert controller.session is second.session
        finally:
            controller.shutdown()

@pytest.mark.unit
class TestInitialize:

    def test_writes_only_opening_window(self, controller, extractor, store):
        assert controller.initialize(AUDIO, 60.0) is True
        assert _windows(extractor) == [(0.0, 60.0)]
        saved = store.load(AUDIO)
        assert saved[-1].end_time <= 60.0
        assert not store.is_complete(AUDIO, 100.0)

    def test_skips_existing_transcript(self, controller, extractor, store):
        store.save(AUDIO, [Subtitle("existing", 0.0, 1.0)])
        assert controller.initialize(AUDIO) is False
        assert extractor.windows == []

    def test_failure_raises(self, controller, extractor, store):
        extractor.fail_starts.add(0.0)
        with pytest.raises(ExtractionError):
            controller.initialize(AUDIO)
        assert not store.exists(AUDIO)
        assert controller.session.state is SessionState.FAILED
