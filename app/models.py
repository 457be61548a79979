from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

import numpy as np
from pydantic import BaseModel, ConfigDict

from app.errors import InvalidTransition


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# Class sessions ----------------------------------------------------------

IN_PROGRESS = "in_progress"
PENDING_REVIEW = "pending_review"
COMPLETED = "completed"
ABANDONED = "abandoned"

SESSION_TRANSITIONS = {
    IN_PROGRESS: {PENDING_REVIEW, ABANDONED},
    PENDING_REVIEW: {COMPLETED},
    COMPLETED: set(),
    ABANDONED: set(),
}


@dataclass
class ClassSession:
    id: int
    teacher_id: str
    student_id: str
    language: str
    status: str  # in_progress | pending_review | completed | abandoned
    started_at: str
    finished_at: str | None = None

    def check_transition(self, status: str) -> None:
        if status not in SESSION_TRANSITIONS.get(self.status, set()):
            raise InvalidTransition(
                f"Session {self.id} cannot move from {self.status} to {status}"
            )

    def to_dict(self) -> dict:
        return asdict(self)


# Mistake entries ---------------------------------------------------------

THINKING = "thinking"
DONE = "done"
ERROR = "error"

ENTRY_TRANSITIONS = {
    THINKING: {DONE, ERROR},
    ERROR: {THINKING},
    DONE: set(),
}

SOURCES = ("audio", "manual", "retry")


@dataclass
class MistakeEntry:
    id: str | int  # "tmp-..." until persisted, then the row id
    session_id: int
    owner_id: str
    original_text: str
    source: str  # audio | manual | retry
    status: str = THINKING
    corrected_text: str | None = None
    explanation: str | None = None
    categories: list[str] = field(default_factory=list)
    is_correct: bool | None = None
    auto_retries: int = 0
    manual_retries: int = 0
    error_kind: str | None = None
    error_message: str | None = None
    created_at: str = field(default_factory=utc_now)

    @property
    def is_persisted(self) -> bool:
        return isinstance(self.id, int)

    def check_transition(self, status: str) -> None:
        if status not in ENTRY_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Entry {self.id} cannot move from {self.status} to {status}"
            )

    def to_dict(self) -> dict:
        return asdict(self)


# Correction results ------------------------------------------------------


class CorrectionResult(BaseModel):
    """Immutable correction-service response."""

    model_config = ConfigDict(frozen=True, strict=True)

    is_correct: bool
    corrected_sentence: str
    explanation: str
    categories: list[str]


# Audio -------------------------------------------------------------------


@dataclass
class AudioSegment:
    """One fixed-length slice of captured audio. Consumed once, never stored."""

    index: int
    samples: np.ndarray
    sample_rate: int
    start_time: float  # seconds from capture start
    end_time: float

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate
