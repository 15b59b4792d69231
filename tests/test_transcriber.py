"""Tests for the Whisper engine wrapper with the model mocked out."""

import threading
import time
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from streamsub.models import PcmChunk
from streamsub.transcriber import ScriptNormalizer, WhisperEngine
from streamsub.exceptions import EngineNotLoadedError, TranscriptionError

def _chunk(seconds=2.0, start=30.0):
    samples = np.full(int(seconds * 16000), 16384, dtype=np.int16)
    return PcmChunk(audio_path="/audio/a.m4a", start=start, end=start + seconds, sample_rate=16000,
                    data=samples.tobytes())

@pytest.fixture
def engine(tmp_path):
    return WhisperEngine(model_name="tiny", model_dir=str(tmp_path / "models"), device="cpu", language="zh")

@pytest.mark.unit
class TestScriptNormalizer:

    def test_chinese_is_converted_to_simplified(self):
        assert ScriptNormalizer("zh")("這是測試") == "这是测试"

    def test_other_languages_untouched(self):
        assert ScriptNormalizer("en")("這是測試") == "這是測試"
        assert ScriptNormalizer(None)("abc") == "abc"

@pytest.mark.unit
class TestWhisperEngine:

    def test_invalid_device(self, tmp_path):
        with pytest.raises(ValueError):
            WhisperEngine(model_dir=str(tmp_path), device="tpu")

    @patch('streamsub.transcriber.torch.cuda.is_available', return_value=False)
    def test_cuda_falls_back_to_cpu(self, mock_cuda, tmp_path):
        assert WhisperEngine(model_dir=str(tmp_path), device="cuda").device == "cpu"

    def test_transcribe_before_load(self, engine):
        assert not engine.is_loaded
        with pytest.raises(EngineNotLoadedError):
            engine.transcribe(_chunk())

    @patch('streamsub.transcriber.whisper.load_model')
    def test_load_is_idempotent(self, mock_load, engine, tmp_path):
        engine.load_model()
        engine.load_model()
        assert engine.is_loaded
        mock_load.assert_called_once_with("tiny", device="cpu", download_root=str(tmp_path / "models" / "tiny"))

    @patch('streamsub.transcriber.whisper.load_model', side_effect=RuntimeError("download failed"))
    def test_load_failure(self, mock_load, engine):
        with pytest.raises(EngineNotLoadedError, match="download failed"):
            engine.load_model()
        assert not engine.is_loaded

    @patch('streamsub.transcriber.whisper.load_model')
    def test_transcribe_converts_segments(self, mock_load, engine):
        model = mock_load.return_value
        model.transcribe.return_value = {"segments": [
            {"text": " 這是第一句 ", "start": 0.0, "end": 1.2},
            {"text": "   ", "start": 1.2, "end": 1.5},
            {"text": "zero length", "start": 1.5, "end": 1.5},
            {"text": "no times"},
        ]}
        engine.load_model()

        segments = engine.transcribe(_chunk())

        assert [s.text for s in segments] == ["这是第一句", "zero length"]
        assert segments[0].start_offset == 0.0
        assert segments[0].end_offset == pytest.approx(1.2)
        assert segments[1].end_offset == pytest.approx(1.6)

        audio = model.transcribe.call_args.args[0]
        assert audio.dtype == np.float32
        assert audio.shape == (32000,)
        assert audio[0] == pytest.approx(0.5)
        assert model.transcribe.call_args.kwargs == {"language": "zh", "fp16": False, "verbose": None}
        assert not engine.is_busy

    @patch('streamsub.transcriber.whisper.load_model')
    def test_engine_failure_wrapped(self, mock_load, engine):
        mock_load.return_value.transcribe.side_effect = RuntimeError("CUDA out of memory")
        engine.load_model()
        with pytest.raises(TranscriptionError, match="out of memory"):
            engine.transcribe(_chunk())
        assert not engine.is_busy

    @patch('streamsub.transcriber.whisper.load_model')
    def test_only_one_transcription_at_a_time(self, mock_load, engine):
        active = []
        overlap = []
        lock = threading.Lock()

        def slow_transcribe(audio, **kwargs):
            with lock:
                active.append(1)
                if len(active) > 1:
                    overlap.append(True)
            time.sleep(0.05)
            with lock:
                active.pop()
            return {"segments": []}

        mock_load.return_value.transcribe.side_effect = slow_transcribe
        engine.load_model()
        threads = [threading.Thread(target=engine.transcribe, args=(_chunk(),)) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert overlap == []
        assert mock_load.return_value.transcribe.call_count == 3
        assert engine.wait_until_idle(timeout=1)
