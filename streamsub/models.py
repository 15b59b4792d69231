"""Data models for StreamSub."""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

@dataclass(frozen=True)
class Subtitle:
    """One timed line of text."""
    text: str
    start_time: float
    end_time: float
    is_polished: bool = False

    def __post_init__(self):
        if not self.text or not self.text.strip():
            raise ValueError("Subtitle text must not be blank.")
        if self.end_time <= self.start_time:
            raise ValueError(
                f"Subtitle end ({self.end_time}) must be after start ({self.start_time})."
            )

    @property
    def midpoint(self) -> float:
        return (self.start_time + self.end_time) / 2

@dataclass
class RawSegment:
    """A segment as returned by the engine, relative to the chunk start."""
    text: str
    start_offset: float
    end_offset: float

    def to_subtitle(self, chunk_start: float) -> Subtitle:
        return Subtitle(
            text=self.text,
            start_time=chunk_start + self.start_offset,
            end_time=chunk_start + self.end_offset,
            is_polished=False,
        )

@dataclass
class PcmChunk:
    """Decoded mono 16-bit PCM for one time window of a source file."""
    audio_path: str
    start: float
    end: float
    sample_rate: int
    data: bytes
    wav_path: Optional[str] = None

    @property
    def num_samples(self) -> int:
        return len(self.data) // 2

    @property
    def duration(self) -> float:
        return self.num_samples / self.sample_rate if self.sample_rate else 0.0

@dataclass
class ChunkTask:
    """Parameters of one extract, transcribe and polish cycle."""
    index: int
    start: float
    end: float
    effective_end: float
    chunk_size: float

class SessionState(Enum):
    IDLE = "idle"
    LOADING = "loading"
    COMPLETE = "complete"
    RESUMING = "resuming"
    FRESH = "fresh"
    PROCESSING = "processing"
    CANCELLED = "cancelled"
    FAILED = "failed"

class SessionStage(Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    TRANSCRIBING = "transcribing"
    POLISHING = "polishing"
    SAVING = "saving"

@dataclass
class TranscriptionSession:
    """In-memory state of one streaming transcription of one audio file."""
    audio_path: str
    audio_identity: str
    total_duration: float = 0.0
    processed_end_time: float = 0.0
    subtitles: List[Subtitle] = field(default_factory=list)
    is_complete: bool = False
    state: SessionState = SessionState.IDLE
    stage: SessionStage = SessionStage.IDLE
    error: Optional[str] = None
    progress_text: str = ""
    chunk_count: int = 0
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def full_transcript(self) -> str:
        return " ".join(sub.text for sub in self.subtitles)

class TaskStatus(Enum):
    PENDING = "pending"
    TRANSCRIBING = "transcribing"
    POLISHING = "polishing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

class BatchMode(Enum):
    INITIALIZE = "initialize"
    FULL = "full"

@dataclass
class BatchTask:
    """Status of one file inside a batch run."""
    source_file: str
    status: TaskStatus = TaskStatus.PENDING
    progress: float = 0.0
    error: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED)

@dataclass
class BatchJob:
    """All tasks of one batch run. Not persisted between runs."""
    mode: BatchMode
    tasks: List[BatchTask] = field(default_factory=list)

    @property
    def overall_progress(self) -> float:
        if not self.tasks:
            return 0.0
        return sum(task.progress for task in self.tasks) / len(self.tasks)

    @property
    def completed_count(self) -> int:
        return sum(1 for task in self.tasks if task.status in (TaskStatus.COMPLETED, TaskStatus.SKIPPED))

    def status_counts(self) -> Dict[TaskStatus, int]:
        counts = {status: 0 for status in TaskStatus}
        for task in self.tasks:
            counts[task.status] += 1
        return counts

class SubtitleStatus(Enum):
    NONE = "none"
    PARTIAL = "partial"
    COMPLETE = "complete"

@dataclass
class TranscriptStatus:
    """How much of one audio file the saved transcript covers."""
    audio_path: str
    status: SubtitleStatus
    duration: Optional[float] = None
    end_time: Optional[float] = None

    @property
    def coverage(self) -> Optional[float]:
        if self.end_time is None or not self.duration:
            return None
        return min(self.end_time / self.duration, 1.0)

# --- Insight models (summary / relation graph) ---

@dataclass
class EpisodeSummary:
    """Structured summary of a finished transcript."""
    summary: str
    key_points: List[str] = field(default_factory=list)
    characters: List[str] = field(default_factory=list)
    events: List[str] = field(default_factory=list)

@dataclass
class CharacterInfo:
    name: str
    title: str = ""

@dataclass
class CharacterRelation:
    source: str
    target: str
    relation: str
    kind: str = "other"

@dataclass
class RelationGraph:
    """People mentioned in a transcript and how they relate."""
    characters: List[CharacterInfo] = field(default_factory=list)
    relations: List[CharacterRelation] = field(default_factory=list)
