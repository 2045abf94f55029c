"""
Pydantic models for recitation payloads, commands and analytics.

These models define the shape of everything that crosses the engine boundary:
mistakes marked during a listening session, Personal Mushaf ledger records
(stored as JSON inside the ledger row), the commands accepted by the API and the
statistics returned to charts.
"""

from datetime import date as CalendarDate, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .exceptions import ValidationError

MAX_SURAH = 114
MAX_PAGE = 604


class WorkflowStep(str, Enum):
    """Memorization stage a session covers."""

    SABQ = "sabq"  # New lesson
    SABQI = "sabqi"  # Yesterday's lesson
    MANZIL = "manzil"  # Long-term revision


class MistakeCategory(str, Enum):
    """Top-level grouping of a recitation mistake."""

    TAJWEED = "tajweed"
    LETTER = "letter"
    STOP = "stop"
    MEMORY = "memory"
    OTHER = "other"
    ATKEES = "atkees"  # Repetition of a word or phrase


class RecencyBucket(str, Enum):
    """Partition of ledger records by ``last_marked_at``."""

    TODAY = "today"
    RECENT = "recent"
    HISTORICAL = "historical"


class _Payload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


class Position(_Payload):
    """Pixel position of a mark on the rendered mushaf page."""

    x: float
    y: float


class TajweedData(_Payload):
    """Optional tajweed detail attached to a mistake."""

    model_config = ConfigDict(str_strip_whitespace=True, extra='allow')

    stretch_count: Optional[int] = Field(default=None, ge=0)
    hold_required: Optional[bool] = None
    focus_letters: List[str] = Field(default_factory=list)
    tajweed_rule: Optional[str] = None
    teacher_note: Optional[str] = None


class MistakeCoordinates(_Payload):
    """Semantic coordinates and optional metadata shared by all mistakes."""

    type: str = Field(..., min_length=1, description="Mistake type, e.g. 'madd'")
    category: MistakeCategory = Field(..., description="Mistake category")
    page: Optional[int] = Field(default=None, ge=1, le=MAX_PAGE)
    surah: Optional[int] = Field(default=None, ge=1, le=MAX_SURAH)
    ayah: Optional[int] = Field(default=None, ge=1)
    word_index: Optional[int] = Field(default=None, ge=0)
    letter_index: Optional[int] = Field(default=None, ge=0)
    position: Optional[Position] = None
    tajweed_data: Optional[TajweedData] = None
    note: Optional[str] = None
    audio_url: Optional[str] = None


class MistakeEntry(MistakeCoordinates):
    """A mistake inside a ticket's working set (identified by list index)."""

    timestamp: Optional[datetime] = None


class LedgerMistakeInput(MistakeCoordinates):
    """Data needed to record a mistake in a student's Personal Mushaf."""

    workflow_step: WorkflowStep
    marked_by: Optional[int] = None
    marked_by_name: Optional[str] = None
    ticket_id: Optional[int] = None


class MistakeTimeline(BaseModel):
    """Recurrence bookkeeping for one ledger record."""

    first_marked_at: datetime
    last_marked_at: datetime
    repeat_count: int = Field(default=1, ge=1)
    resolved: bool = False
    resolved_at: Optional[datetime] = None


class LedgerMistake(LedgerMistakeInput):
    """Durable, deduplicated Personal Mushaf record."""

    id: str
    timeline: MistakeTimeline
    timestamp: Optional[datetime] = None


class AyahRange(_Payload):
    """Listening range, inclusive on both ends."""

    from_surah: int = Field(..., ge=1, le=MAX_SURAH)
    from_ayah: int = Field(..., ge=1)
    to_surah: int = Field(..., ge=1, le=MAX_SURAH)
    to_ayah: int = Field(..., ge=1)

    @model_validator(mode='after')
    def _ordered(self) -> 'AyahRange':
        if (self.from_surah, self.from_ayah) > (self.to_surah, self.to_ayah):
            raise ValueError('ayah range must not end before it starts')
        return self


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class OpenTicketCommand(_Payload):
    student_id: int
    workflow_step: WorkflowStep
    notes: str = ""


class StartTicketCommand(_Payload):
    ayah_range: Optional[AyahRange] = None
    assignment_id: Optional[int] = None


class RemoveMistakeCommand(BaseModel):
    index: int


class SessionNotesCommand(_Payload):
    session_notes: str


class SubmitCommand(_Payload):
    session_notes: Optional[str] = None


class ReviewCommand(_Payload):
    review_notes: str = ""


class ReassignCommand(_Payload):
    new_teacher_id: int
    reason: str = ""


class CloseCommand(_Payload):
    reason: str = ""


class LedgerFilters(_Payload):
    """Filters accepted by ``FilterLedger``; unset filters match everything."""

    workflow_step: Optional[Union[WorkflowStep, Literal['all']]] = None
    page: Optional[int] = Field(default=None, ge=1, le=MAX_PAGE)
    date: Optional[CalendarDate] = None
    recency: Optional[RecencyBucket] = None
    type: Optional[str] = None
    category: Optional[MistakeCategory] = None
    resolved: Optional[bool] = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class TypeCount(BaseModel):
    type: str
    count: int


class TrendPoint(BaseModel):
    date: str = Field(..., description="ISO calendar date (YYYY-MM-DD)")
    count: int


class MistakeStatistics(BaseModel):
    """Aggregates over one ledger snapshot."""

    total: int = 0
    by_workflow_step: Dict[str, int] = Field(
        default_factory=lambda: {step.value: 0 for step in WorkflowStep}
    )
    by_category: Dict[str, int] = Field(default_factory=dict)
    by_type: Dict[str, int] = Field(default_factory=dict)
    resolved: int = 0
    unresolved: int = 0
    repeat_offenders: int = 0
    most_common_types: List[TypeCount] = Field(default_factory=list)
    trend: List[TrendPoint] = Field(default_factory=list)


class BulkAddResult(BaseModel):
    added: int = 0
    updated: int = 0
    records: List[LedgerMistake] = Field(default_factory=list)


class SyncReport(BaseModel):
    """Outcome of folding an approved ticket's mistakes into the ledger."""

    ticket_id: int
    student_id: int
    mistakes_processed: int = 0
    mistakes_added: int = 0
    mistakes_updated: int = 0


# ---------------------------------------------------------------------------
# Parsing helper
# ---------------------------------------------------------------------------

M = TypeVar('M', bound=BaseModel)


def parse_payload(model: Type[M], data: Any, message: str = 'Invalid payload.') -> M:
    """Validate ``data`` into ``model``, raising the domain ``ValidationError``."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data if data is not None else {})
    except pydantic.ValidationError as exc:
        raise ValidationError.from_pydantic(exc, message) from exc
