"""Orchestrates streaming, resumable transcription of one audio file at a time."""

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional

from .audio_extractor import ChunkExtractor
from .transcriber import TranscriptionEngine
from .polisher import TextPolisher
from .subtitle_store import SubtitleStore
from .redistributor import join_segment_text, redistribute_timestamps
from .merge import merge_chunk
from .models import ChunkTask, SessionStage, SessionState, Subtitle, TranscriptionSession
from .exceptions import ExtractionError, PersistenceError, StreamSubError, TranscriptionError
from .utils import audio_identity, format_clock

logger = logging.getLogger(__name__)

class SessionHandle:
    """
    What start() gives back to the caller.

    Attributes:
        session: The live session. Only the controller's worker mutates it.
        ready: Resolved with the session once playback can begin (first
               chunk done, resumed, or already complete). Fails with the fatal
               error if the session fails first, and is cancelled if the
               session is cancelled first.
        done: Resolved with the session when processing ends for any reason.
    """

    def __init__(self, session: TranscriptionSession, ready: Future, done: Future):
        self.session = session
        self.ready = ready
        self.done = done

class StreamingTranscriptionController:
    """
    Drives extract, transcribe, polish, merge and save chunk by chunk.

    Work runs on a single background worker, which is the only place session
    state changes. Progress is saved after every chunk so an interrupted file
    resumes from its watermark on the next start().
    """

    def __init__(
        self,
        config: dict,
        extractor: ChunkExtractor,
        engine: TranscriptionEngine,
        polisher: TextPolisher,
        store: SubtitleStore
    ):
        """
        Initializes the controller.

        Args:
            config: Configuration dictionary; reads ``language`` and the
                    ``streaming`` and ``batch`` sections.
            extractor: Source of PCM chunks.
            engine: Speech engine shared with every other caller.
            polisher: AI clean-up of raw text.
            store: Persistent transcript storage.
        """
        self.extractor = extractor
        self.engine = engine
        self.polisher = polisher
        self.store = store

        streaming = config.get('streaming', {})
        self.chunk_sizes: List[float] = [float(size) for size in streaming.get('chunk_sizes', [25, 30, 35, 40])]
        self.overlap = float(streaming.get('overlap_seconds', 5))
        self.resume_rewind = float(streaming.get('resume_rewind_seconds', 10))
        self.completeness_tolerance = float(streaming.get('completeness_tolerance_seconds', 5))
        self.boundary_tolerance = float(streaming.get('boundary_tolerance_seconds', 1.0))
        self.stale_margin = float(streaming.get('stale_tail_margin_seconds', 0.5))
        self.similarity_threshold = float(streaming.get('similarity_threshold', 0.7))
        self.language = config.get('language', 'zh')
        self.initialize_seconds = float(config.get('batch', {}).get('initialize_seconds', 60))

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="streamsub-session")
        self._idle_cond = threading.Condition()
        self._pending = 0
        self._session: Optional[TranscriptionSession] = None

    # --- Lifecycle -------------------------------------------------------

    @property
    def session(self) -> Optional[TranscriptionSession]:
        """The most recently started session."""
        return self._session

    @property
    def is_processing(self) -> bool:
        with self._idle_cond:
            return self._pending > 0

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until no work is queued or running. Returns False on timeout."""
        with self._idle_cond:
            return self._idle_cond.wait_for(lambda: self._pending == 0, timeout=timeout)

    def _submit(self, fn: Callable, *args) -> Future:
        with self._idle_cond:
            self._pending += 1
        try:
            return self._executor.submit(self._tracked, fn, *args)
        except RuntimeError:
            self._release()
            raise

    def _release(self) -> None:
        with self._idle_cond:
            self._pending -= 1
            self._idle_cond.notify_all()

    def _tracked(self, fn: Callable, *args):
        try:
            return fn(*args)
        finally:
            self._release()

    def _new_session(self, audio_path: str) -> TranscriptionSession:
        return TranscriptionSession(audio_path=audio_path, audio_identity=audio_identity(audio_path))

    def start(self, audio_path: str) -> SessionHandle:
        """
        Starts (or resumes) streaming transcription in the background.

        A session still running for a previous file is cancelled first; the new
        one starts once the worker has finished with it.
        """
        previous = self._session
        if previous is not None and self.is_processing and not previous.cancelled:
            logger.info(f"Cancelling running session for {os.path.basename(previous.audio_path)}")
            previous.cancel()
        session = self._new_session(audio_path)
        ready: Future = Future()
        self._session = session
        done = self._submit(self.run, audio_path, session, ready)
        return SessionHandle(session, ready, done)

    def cancel(self) -> None:
        """Asks the current session to stop after the chunk in flight."""
        if self._session is not None:
            logger.info(f"Cancellation requested for {os.path.basename(self._session.audio_path)}")
            self._session.cancel()

    def shutdown(self, wait: bool = True) -> None:
        self.cancel()
        self._executor.shutdown(wait=wait)

    # --- Streaming session -----------------------------------------------

    def chunk_size_for(self, index: int) -> float:
        """Chunk length for the index-th chunk of a run, growing up to the last scheduled size."""
        return self.chunk_sizes[min(index, len(self.chunk_sizes) - 1)]

    def plan_chunk(self, start: float, index: int, total_duration: float) -> ChunkTask:
        size = self.chunk_size_for(index)
        return ChunkTask(
            index=index,
            start=start,
            end=min(start + size, total_duration),
            effective_end=min(start + size - self.overlap, total_duration),
            chunk_size=size
        )

    def run(
        self,
        audio_path: str,
        session: Optional[TranscriptionSession] = None,
        ready: Optional[Future] = None
    ) -> TranscriptionSession:
        """
        Runs a whole session in the calling thread.

        Fatal errors (engine not loaded, unreadable audio, first chunk failure)
        end in state FAILED with ``session.error`` set; they are not raised.

        Returns:
            The finished session.
        """
        session = session or self._new_session(audio_path)
        ready = ready if ready is not None else Future()
        name = os.path.basename(audio_path)
        logger.info(f"--- Starting streaming transcription for: {audio_path} ---")
        try:
            self._process(session, ready)
        except (StreamSubError, FileNotFoundError) as e:
            logger.error(f"Streaming transcription failed for {name}: {e}")
            self._fail(session, ready, e)
        except Exception as e:
            logger.critical(f"Unexpected error during streaming transcription of {name}: {e}", exc_info=True)
            self._fail(session, ready, e)
        finally:
            session.stage = SessionStage.IDLE
            if session.cancelled and session.state not in (SessionState.COMPLETE, SessionState.FAILED):
                session.state = SessionState.CANCELLED
                session.progress_text = ""
                logger.info(f"Streaming transcription cancelled for {name}")
            if not ready.done():
                ready.cancel()
        return session

    def _fail(self, session: TranscriptionSession, ready: Future, error: Exception) -> None:
        session.state = SessionState.FAILED
        session.error = str(error)
        session.progress_text = f"Transcription failed: {error}"
        if not ready.done():
            ready.set_exception(error)

    def _signal_ready(self, session: TranscriptionSession, ready: Future) -> None:
        if not ready.done():
            ready.set_result(session)
            logger.info(f"Playback ready for {os.path.basename(session.audio_path)}")

    def _process(self, session: TranscriptionSession, ready: Future) -> None:
        audio_path = session.audio_path
        session.state = SessionState.LOADING
        session.progress_text = "Loading saved transcript..."
        session.total_duration = self.extractor.probe_duration(audio_path)

        resume_from = 0.0
        saved = self.store.load(audio_path)
        if saved:
            session.subtitles = saved
            session.processed_end_time = saved[-1].end_time
            if SubtitleStore.covers(saved, session.total_duration, self.completeness_tolerance):
                session.is_complete = True
                session.state = SessionState.COMPLETE
                session.progress_text = "Loaded saved transcript"
                logger.info(f"Saved transcript for {os.path.basename(audio_path)} is complete ({len(saved)} subtitles)")
                self._signal_ready(session, ready)
                return
            resume_from = max(0.0, session.processed_end_time - self.resume_rewind)
            session.state = SessionState.RESUMING
            logger.info(f"Resuming {os.path.basename(audio_path)} from {format_clock(resume_from)} "
                        f"(saved up to {format_clock(session.processed_end_time)})")
            self._signal_ready(session, ready)
        else:
            session.state = SessionState.FRESH
            logger.info(f"No saved transcript for {os.path.basename(audio_path)}, starting from the beginning")

        if session.cancelled:
            return
        session.progress_text = "Loading model..."
        self.engine.load_model()

        session.state = SessionState.PROCESSING
        self._process_chunks(session, ready, resume_from)

    def _process_chunks(self, session: TranscriptionSession, ready: Future, resume_from: float) -> None:
        total = session.total_duration
        current_start = resume_from
        last_chunk_end = resume_from
        chunk_index = 0
        awaiting_first = not session.subtitles

        while current_start < total and not session.cancelled:
            task = self.plan_chunk(current_start, chunk_index, total)
            if awaiting_first:
                session.progress_text = f"Transcribing the first {int(task.chunk_size)} seconds..."
            else:
                session.progress_text = f"Transcribing {format_clock(task.start)}-{format_clock(task.end)}..."
            logger.info(f"Chunk {task.index}: {task.start:.1f}s-{task.end:.1f}s "
                        f"(size {task.chunk_size:.0f}s, effective to {task.effective_end:.1f}s)")

            try:
                raw = self._transcribe_chunk(session, task)
            except (ExtractionError, TranscriptionError) as e:
                if awaiting_first:
                    raise
                logger.warning(f"Chunk {task.start:.1f}s-{task.end:.1f}s failed, skipping: {e}")
                session.progress_text = f"Skipped {format_clock(task.start)}-{format_clock(task.effective_end)}"
                current_start = task.effective_end
                chunk_index += 1
                continue

            if session.cancelled:
                break
            polished = self._polish(session, raw)
            if session.cancelled:
                break

            if polished:
                session.subtitles = merge_chunk(
                    session.subtitles,
                    polished,
                    boundary=last_chunk_end,
                    boundary_tolerance=self.boundary_tolerance,
                    stale_margin=self.stale_margin,
                    threshold=self.similarity_threshold
                )
            last_chunk_end = task.effective_end
            session.processed_end_time = task.effective_end
            session.chunk_count += 1
            self._persist(session)
            logger.info(f"Processed up to {format_clock(task.end)}, {len(session.subtitles)} subtitles")

            if awaiting_first:
                awaiting_first = False
                session.progress_text = ""
                self._signal_ready(session, ready)

            current_start = task.effective_end
            chunk_index += 1

        if session.cancelled:
            return
        session.is_complete = True
        session.state = SessionState.COMPLETE
        self._persist(session)
        session.progress_text = ""
        self._signal_ready(session, ready)
        logger.info(f"--- Streaming transcription complete for {os.path.basename(session.audio_path)}: "
                    f"{len(session.subtitles)} subtitles ---")

    def _transcribe_chunk(self, session: TranscriptionSession, task: ChunkTask) -> List[Subtitle]:
        session.stage = SessionStage.EXTRACTING
        with self.extractor.extract(session.audio_path, task.start, task.end, total_duration=session.total_duration) as chunk:
            session.stage = SessionStage.TRANSCRIBING
            segments = self.engine.transcribe(chunk)
        return [segment.to_subtitle(task.start) for segment in segments]

    def _polish(self, session: TranscriptionSession, raw: List[Subtitle]) -> List[Subtitle]:
        """Polished subtitles for a chunk, or the raw ones when no polish is available."""
        if not raw:
            return []
        session.stage = SessionStage.POLISHING

        def report(current: int, total: int) -> None:
            session.progress_text = f"Polishing ({current}/{total})..."

        polished_text = self.polisher.polish(join_segment_text(raw, self.language), on_progress=report)
        if polished_text is None:
            logger.info("Polish unavailable, keeping raw transcription for this chunk")
            return raw
        return redistribute_timestamps(polished_text, raw)

    def _persist(self, session: TranscriptionSession) -> None:
        if not session.subtitles:
            logger.debug("Nothing to save yet")
            return
        session.stage = SessionStage.SAVING
        try:
            self.store.save(session.audio_path, session.subtitles)
        except PersistenceError as e:
            # The next chunk saves the full list again
            logger.warning(f"Could not save progress for {os.path.basename(session.audio_path)}: {e}")

    # --- Batch pre-warming -------------------------------------------------

    def initialize(self, audio_path: str, duration: Optional[float] = None) -> bool:
        """
        Transcribes and saves only the first ``duration`` seconds of a file.

        Runs on the controller's worker, after anything already queued.

        Returns:
            True if a transcript was written, False if one already existed.

        Raises:
            StreamSubError: If the model, the extraction, the transcription or
                            the save fails.
            FileNotFoundError: If the audio file does not exist.
        """
        return self._submit(self._initialize, audio_path, duration).result()

    def _initialize(self, audio_path: str, duration: Optional[float]) -> bool:
        name = os.path.basename(audio_path)
        if self.store.exists(audio_path):
            logger.info(f"Transcript already exists, skipping: {name}")
            return False

        session = self._new_session(audio_path)
        self._session = session
        session.state = SessionState.LOADING
        session.progress_text = "Loading model..."
        try:
            self.engine.load_model()
            session.total_duration = self.extractor.probe_duration(audio_path)
            end = min(duration if duration is not None else self.initialize_seconds, session.total_duration)
            logger.info(f"Initializing transcript for {name} (first {end:.0f}s)")
            session.state = SessionState.PROCESSING
            task = ChunkTask(index=0, start=0.0, end=end, effective_end=end, chunk_size=end)
            raw = self._transcribe_chunk(session, task)
            session.subtitles = self._polish(session, raw)
            session.processed_end_time = end
            if session.subtitles:
                session.stage = SessionStage.SAVING
                self.store.save(audio_path, session.subtitles)
        except Exception:
            session.state = SessionState.FAILED
            raise
        finally:
            session.stage = SessionStage.IDLE
        session.state = SessionState.COMPLETE
        session.progress_text = ""
        logger.info(f"Initialized {name}: {len(session.subtitles)} subtitles")
        return True
