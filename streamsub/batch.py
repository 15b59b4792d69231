"""Sequential transcription of many audio files."""

import logging
import os
import threading
import time
from typing import Callable, Iterable, List, Optional, Sequence

from .audio_extractor import ChunkExtractor
from .streaming import StreamingTranscriptionController
from .subtitle_store import SubtitleStore
from .models import (
    BatchJob, BatchMode, BatchTask, SessionStage, SessionState, SubtitleStatus, TaskStatus, TranscriptStatus
)
from .exceptions import StreamSubError
from .utils import AUDIO_EXTENSIONS

logger = logging.getLogger(__name__)

def find_audio_files(
    folders: Iterable[str],
    extensions: Sequence[str] = AUDIO_EXTENSIONS,
    without_subtitles_only: bool = False,
    store: Optional[SubtitleStore] = None
) -> List[str]:
    """
    Recursively finds audio files in the given folders.

    Hidden files and directories are skipped. Results are sorted by file name.

    Args:
        folders: Directories to scan.
        extensions: Accepted extensions, case-insensitive, without the dot.
        without_subtitles_only: Keep only files with no saved transcript
                                (requires ``store``).
        store: Transcript store used for the filter above.

    Raises:
        FileNotFoundError: If a folder doesn't exist.
        ValueError: If a path is not a directory, or the filter is requested
                    without a store.
    """
    if without_subtitles_only and store is None:
        raise ValueError("without_subtitles_only requires a SubtitleStore")
    accepted = {ext.lower().lstrip('.') for ext in extensions}
    files = []
    for folder in folders:
        if not os.path.exists(folder):
            raise FileNotFoundError(f"Input directory not found: {folder}")
        if not os.path.isdir(folder):
            raise ValueError(f"Input path is not a directory: {folder}")
        logger.info(f"Scanning directory for audio files: {folder}")
        for root, dirs, names in os.walk(folder):
            dirs[:] = [d for d in dirs if not d.startswith('.')]
            for name in names:
                if name.startswith('.'):
                    continue
                if os.path.splitext(name)[1].lower().lstrip('.') in accepted:
                    files.append(os.path.join(root, name))
    files.sort(key=lambda path: os.path.basename(path))
    if without_subtitles_only:
        files = [path for path in files if not store.exists(path)]
    logger.info(f"Found {len(files)} audio files.")
    return files

def transcript_status(audio_path: str, extractor: ChunkExtractor, store: SubtitleStore) -> TranscriptStatus:
    """
    Reports whether the saved transcript of audio_path is missing, partial or complete.

    A file whose duration cannot be probed but has a transcript is reported
    as partial with unknown coverage.
    """
    subtitles = store.load(audio_path)
    if not subtitles:
        return TranscriptStatus(audio_path, SubtitleStatus.NONE)
    end_time = subtitles[-1].end_time
    try:
        duration = extractor.probe_duration(audio_path)
    except (StreamSubError, FileNotFoundError) as e:
        logger.warning(f"Could not probe {audio_path}: {e}")
        return TranscriptStatus(audio_path, SubtitleStatus.PARTIAL, end_time=end_time)
    complete = store.covers(subtitles, duration, store.completeness_tolerance)
    status = SubtitleStatus.COMPLETE if complete else SubtitleStatus.PARTIAL
    return TranscriptStatus(audio_path, status, duration=duration, end_time=end_time)

class BatchController:
    """
    Runs the streaming controller over a list of files, one at a time.

    The engine accepts a single transcription at a time, so each file waits
    until the controller is idle. A file that fails is marked failed and the
    batch moves on.
    """

    def __init__(
        self,
        controller: StreamingTranscriptionController,
        extractor: ChunkExtractor,
        store: SubtitleStore,
        config: Optional[dict] = None
    ):
        batch = (config or {}).get('batch', {})
        self.controller = controller
        self.extractor = extractor
        self.store = store
        self.initialize_seconds = float(batch.get('initialize_seconds', 60))
        self.poll_interval = float(batch.get('poll_interval_seconds', 0.5))
        self.speed_factor = float(batch.get('speed_factor', 4))
        self.default_duration = float(batch.get('default_duration_seconds', 600))
        self.job: Optional[BatchJob] = None
        self._cancel_event = threading.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def run(
        self,
        files: Sequence[str],
        mode: BatchMode = BatchMode.FULL,
        force: bool = False,
        on_update: Optional[Callable[[BatchJob, BatchTask], None]] = None
    ) -> BatchJob:
        """
        Processes the files sequentially and returns the finished job.

        Args:
            files: Audio files in processing order.
            mode: INITIALIZE transcribes only the opening seconds of each file;
                  FULL runs the complete streaming transcription.
            force: In FULL mode, delete any saved transcript first.
            on_update: Called with (job, task) whenever a task changes.
        """
        self._cancel_event.clear()
        job = BatchJob(mode=mode, tasks=[BatchTask(source_file=path) for path in files])
        self.job = job
        notify = on_update or (lambda _job, _task: None)
        logger.info(f"--- Starting batch ({mode.value}) for {len(job.tasks)} files ---")
        batch_start = time.time()

        for task in job.tasks:
            if self.is_cancelled:
                break
            name = os.path.basename(task.source_file)
            try:
                if mode is BatchMode.INITIALIZE:
                    self._initialize_one(task, notify, job)
                else:
                    self._transcribe_one(task, force, notify, job)
            except (StreamSubError, FileNotFoundError) as e:
                logger.error(f"Batch item failed for '{name}': {e}")
                task.status = TaskStatus.FAILED
                task.error = str(e)
            except Exception as e:
                logger.error(f"An unexpected error occurred processing '{name}': {e}", exc_info=True)
                task.status = TaskStatus.FAILED
                task.error = str(e)
            if self.is_cancelled and not task.is_finished:
                task.status = TaskStatus.FAILED
            notify(job, task)

        counts = job.status_counts()
        logger.info(f"--- Batch finished in {time.time() - batch_start:.2f} seconds: "
                    f"{counts[TaskStatus.COMPLETED]} completed, {counts[TaskStatus.SKIPPED]} skipped, "
                    f"{counts[TaskStatus.FAILED]} failed ---")
        return job

    def cancel(self) -> None:
        """Stops the file in progress and fails every task that has not finished."""
        self._cancel_event.set()
        self.controller.cancel()
        if self.job is None:
            return
        for task in self.job.tasks:
            if task.status in (TaskStatus.PENDING, TaskStatus.TRANSCRIBING, TaskStatus.POLISHING):
                task.status = TaskStatus.FAILED
        logger.warning("Batch cancelled")

    def _initialize_one(self, task: BatchTask, notify: Callable, job: BatchJob) -> None:
        self.controller.wait_until_idle()
        if self.is_cancelled:
            return
        task.status = TaskStatus.TRANSCRIBING
        task.progress = 0.1
        notify(job, task)
        written = self.controller.initialize(task.source_file, self.initialize_seconds)
        task.status = TaskStatus.COMPLETED if written else TaskStatus.SKIPPED
        task.progress = 1.0

    def _estimated_seconds(self, audio_path: str) -> float:
        """Rough wall time a full transcription takes: audio duration / speed factor."""
        try:
            duration = self.extractor.probe_duration(audio_path)
        except (StreamSubError, FileNotFoundError) as e:
            logger.debug(f"Could not probe {audio_path} for an estimate: {e}")
            duration = self.default_duration
        return max(duration / self.speed_factor, 1.0)

    def _transcribe_one(self, task: BatchTask, force: bool, notify: Callable, job: BatchJob) -> None:
        self.controller.wait_until_idle()
        if self.is_cancelled:
            return
        if force:
            logger.info(f"Deleting saved transcript before re-transcribing: {os.path.basename(task.source_file)}")
            self.store.delete(task.source_file)

        task.status = TaskStatus.TRANSCRIBING
        task.progress = 0.02
        notify(job, task)
        if self.is_cancelled:
            return

        estimated = self._estimated_seconds(task.source_file)
        handle = self.controller.start(task.source_file)
        session = handle.session
        started = time.monotonic()
        task.progress = 0.05

        while not self.controller.wait_until_idle(timeout=self.poll_interval):
            if self.is_cancelled:
                session.cancel()
                return
            elapsed = time.monotonic() - started
            task.progress = 0.05 + 0.9 * min(elapsed / estimated, 1.0)
            task.status = TaskStatus.POLISHING if session.stage is SessionStage.POLISHING else TaskStatus.TRANSCRIBING
            notify(job, task)

        if self.is_cancelled:
            return
        if session.state is SessionState.COMPLETE and session.subtitles:
            task.status = TaskStatus.COMPLETED
            task.progress = 1.0
            logger.info(f"Transcribed {os.path.basename(task.source_file)}: {len(session.subtitles)} subtitles")
        else:
            task.status = TaskStatus.FAILED
            task.error = session.error or "Transcription produced no subtitles"
            logger.error(f"Transcription failed for {os.path.basename(task.source_file)}: {task.error}")
