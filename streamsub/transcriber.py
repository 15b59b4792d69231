"""Handles Speech-to-Text transcription of PCM chunks using Whisper."""

import whisper
import logging
import threading
import torch
import numpy as np
from abc import ABC, abstractmethod
from contextlib import contextmanager
from opencc import OpenCC
from typing import Iterator, List, Optional
import os

from .models import PcmChunk, RawSegment
from .exceptions import EngineNotLoadedError, TranscriptionError
from .utils import ensure_dir_exists

logger = logging.getLogger(__name__)

MIN_SEGMENT_DURATION = 0.1

class ScriptNormalizer:
    """Normalizes engine text to the script expected for the target language."""

    def __init__(self, language: Optional[str]):
        self.language = (language or "").lower()
        self._converter = OpenCC('t2s') if self.language.startswith("zh") else None

    def __call__(self, text: str) -> str:
        if self._converter is None:
            return text
        return self._converter.convert(text)

class TranscriptionEngine(ABC):
    """
    Abstract base class for speech engines.

    An engine instance is an exclusive resource: implementations wrap every
    model call in ``self._exclusive()`` so only one transcription is in
    flight at a time, whoever the caller is.
    """

    def __init__(self):
        self._busy = False
        self._busy_cond = threading.Condition()

    @property
    def is_busy(self) -> bool:
        with self._busy_cond:
            return self._busy

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until no transcription is running. Returns False on timeout."""
        with self._busy_cond:
            return self._busy_cond.wait_for(lambda: not self._busy, timeout=timeout)

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with self._busy_cond:
            self._busy_cond.wait_for(lambda: not self._busy)
            self._busy = True
        try:
            yield
        finally:
            with self._busy_cond:
                self._busy = False
                self._busy_cond.notify_all()

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        pass

    @abstractmethod
    def load_model(self) -> None:
        """
        Loads the speech model. A no-op when it is already loaded.

        This can take minutes (download plus initialisation); callers must not
        retry it in a tight loop.

        Raises:
            EngineNotLoadedError: If the model cannot be loaded.
        """
        pass

    @abstractmethod
    def transcribe(self, chunk: PcmChunk) -> List[RawSegment]:
        """
        Transcribes a PCM chunk.

        Args:
            chunk: Decoded audio for one time window.

        Returns:
            Segments in time order, offsets relative to the chunk start.

        Raises:
            EngineNotLoadedError: If load_model() has not succeeded.
            TranscriptionError: If the engine fails.
        """
        pass

class WhisperEngine(TranscriptionEngine):
    """Implements transcription using OpenAI's Whisper model."""

    def __init__(
        self,
        model_name: str = "large-v3",
        model_dir: str = "models",
        device: str = "cuda",
        fp16: bool = True,
        language: Optional[str] = "zh",
        normalizer: Optional[ScriptNormalizer] = None
    ):
        """
        Initializes the WhisperEngine. The model itself is loaded by load_model().

        Args:
            model_name: The name of the Whisper model to use (e.g., "base", "large-v3").
            model_dir: Root directory holding one subdirectory per model.
            device: The device to run the model on ("cuda" or "cpu").
            fp16: Whether to use float16 precision (faster on compatible GPUs).
            language: Decoding language; None lets Whisper detect it.
            normalizer: Text normalizer; defaults to one for ``language``.

        Raises:
            ValueError: If the specified device is invalid.
        """
        super().__init__()
        self.model_name = model_name
        self.model_dir = model_dir
        self.device = device
        self.fp16 = fp16
        self.language = language
        self.normalizer = normalizer or ScriptNormalizer(language)
        self.model = None
        self._load_lock = threading.Lock()

        if self.device == "cuda" and not torch.cuda.is_available():
            logger.warning("CUDA device requested but not available. Falling back to CPU.")
            self.device = "cpu"
        elif self.device not in ["cuda", "cpu"]:
            raise ValueError(f"Invalid device specified: {self.device}. Choose 'cuda' or 'cpu'.")

    @property
    def is_loaded(self) -> bool:
        return self.model is not None

    @property
    def model_path(self) -> str:
        return os.path.join(self.model_dir, self.model_name)

    def is_downloaded(self) -> bool:
        path = self.model_path
        return os.path.isdir(path) and bool(os.listdir(path))

    def load_model(self) -> None:
        with self._load_lock:
            if self.model is not None:
                return
            if self.is_downloaded():
                logger.info(f"Loading Whisper model '{self.model_name}' from {self.model_path} on '{self.device}'")
            else:
                logger.info(f"Whisper model '{self.model_name}' not found locally, downloading to {self.model_path}")
            try:
                ensure_dir_exists(self.model_path)
                self.model = whisper.load_model(self.model_name, device=self.device, download_root=self.model_path)
                logger.info(f"Whisper model '{self.model_name}' loaded successfully.")
            except Exception as e:
                logger.error(f"Failed to load Whisper model '{self.model_name}': {e}", exc_info=True)
                raise EngineNotLoadedError(f"Failed to load Whisper model '{self.model_name}': {e}") from e

    def transcribe(self, chunk: PcmChunk) -> List[RawSegment]:
        if self.model is None:
            raise EngineNotLoadedError("Whisper model is not loaded.")

        audio = np.frombuffer(chunk.data, dtype=np.int16).astype(np.float32) / 32768.0
        logger.debug(f"Transcribing {chunk.duration:.2f}s chunk of {chunk.audio_path} at {chunk.start:.2f}s")
        with self._exclusive():
            try:
                # verbose=None keeps Whisper quiet; fp16 only works on CUDA
                result = self.model.transcribe(
                    audio,
                    language=self.language,
                    fp16=self.fp16 if self.device == "cuda" else False,
                    verbose=None
                )
            except Exception as e:
                logger.error(f"Error during Whisper transcription of {chunk.audio_path} at {chunk.start:.2f}s: {e}", exc_info=True)
                raise TranscriptionError(f"Whisper transcription failed for {chunk.audio_path}: {e}") from e

        segments = []
        for seg_data in result.get('segments', []):
            text = str(seg_data.get('text', '')).strip()
            if not text:
                continue
            try:
                start = float(seg_data['start'])
                end = float(seg_data['end'])
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping incomplete segment data: {seg_data}")
                continue
            if end <= start:
                end = start + MIN_SEGMENT_DURATION
            segments.append(RawSegment(text=self.normalizer(text), start_offset=start, end_offset=end))
        logger.debug(f"Processed {len(segments)} segments from chunk at {chunk.start:.2f}s.")
        return segments
