"""
Personal Mushaf ledger: per-student, deduplicated mistake records.

The ledger row stores the full list of records as one JSON document. Every
write is a read-modify-write of that document guarded by the row's ``version``
column: the new list is written with ``UPDATE ... WHERE version = <read
version>`` and, when another writer got there first, the whole operation is
replayed against the fresh document. After ``LEDGER_MAX_RETRIES`` lost races
the caller gets a ``ConcurrencyConflict``.

Merge and filter logic are plain functions over lists of ``LedgerMistake`` so
they can be exercised without a database.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from django.db.models import F
from django.utils import timezone

from .collaborators import (
    MUSHAF_RESOLVE,
    MUSHAF_VIEW,
    MUSHAF_VIEW_OWN,
    MUSHAF_WRITE,
    Principal,
    is_allowed,
    load_collaborator,
)
from .conf import get_setting
from .exceptions import ConcurrencyConflict, Forbidden, NotFound, ValidationError
from .fingerprint import fingerprint_label, mistake_fingerprint
from .models import PersonalMushaf
from .schemas import (
    BulkAddResult,
    LedgerFilters,
    LedgerMistake,
    LedgerMistakeInput,
    MistakeStatistics,
    MistakeTimeline,
    RecencyBucket,
    WorkflowStep,
    parse_payload,
)
from .statistics import calculate_mistake_statistics

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Payload fields a recurrence refreshes when it carries a value
REFRESHABLE_FIELDS = (
    'position',
    'tajweed_data',
    'note',
    'audio_url',
    'marked_by',
    'marked_by_name',
    'ticket_id',
)


# ---------------------------------------------------------------------------
# Pure record functions
# ---------------------------------------------------------------------------


def load_records(raw: Optional[Iterable[Dict[str, Any]]]) -> List[LedgerMistake]:
    return [LedgerMistake.model_validate(item) for item in raw or []]


def dump_records(records: Iterable[LedgerMistake]) -> List[Dict[str, Any]]:
    return [record.model_dump(mode='json', exclude_none=True) for record in records]


def merge_mistake(
    records: List[LedgerMistake],
    data: LedgerMistakeInput,
    now: datetime,
    id_factory: Callable[[], str],
) -> Tuple[List[LedgerMistake], LedgerMistake, bool]:
    """
    Fold one mark into ``records``.

    Returns the new list, the resulting record and whether it was created.
    A recurrence bumps ``repeat_count``, refreshes ``last_marked_at`` and
    un-resolves the record; ``records`` itself is not modified.
    """
    key = mistake_fingerprint(data)
    for position, existing in enumerate(records):
        if mistake_fingerprint(existing) != key:
            continue
        updates: Dict[str, Any] = {
            field: getattr(data, field)
            for field in REFRESHABLE_FIELDS
            if getattr(data, field) is not None
        }
        updates['timestamp'] = now
        updates['timeline'] = existing.timeline.model_copy(
            update={
                'last_marked_at': now,
                'repeat_count': existing.timeline.repeat_count + 1,
                'resolved': False,
                'resolved_at': None,
            }
        )
        merged = existing.model_copy(update=updates)
        new_records = list(records)
        new_records[position] = merged
        return new_records, merged, False

    created = LedgerMistake(
        **data.model_dump(),
        id=id_factory(),
        timestamp=now,
        timeline=MistakeTimeline(first_marked_at=now, last_marked_at=now),
    )
    return [*records, created], created, True


def resolve_record(
    records: List[LedgerMistake], mistake_id: str, now: datetime
) -> Tuple[List[LedgerMistake], LedgerMistake]:
    """Mark the record with ``mistake_id`` resolved; ``NotFound`` when absent."""
    for position, existing in enumerate(records):
        if existing.id != mistake_id:
            continue
        resolved = existing.model_copy(
            update={
                'timeline': existing.timeline.model_copy(
                    update={'resolved': True, 'resolved_at': now}
                )
            }
        )
        new_records = list(records)
        new_records[position] = resolved
        return new_records, resolved
    raise NotFound("Mistake not found in Personal Mushaf.", mistake_id=mistake_id)


def recency_bucket(
    last_marked_at: datetime, now: datetime, recent_days: Optional[int] = None
) -> RecencyBucket:
    """
    Classify a timestamp by local calendar days before ``now``.

    ``today`` is the same local day, ``recent`` the ``recent_days`` days before
    it and ``historical`` anything older, so every record lands in exactly one
    bucket.
    """
    if recent_days is None:
        recent_days = get_setting('RECENT_WINDOW_DAYS')
    days_ago = (timezone.localdate(now) - timezone.localdate(last_marked_at)).days
    if days_ago <= 0:
        return RecencyBucket.TODAY
    if days_ago <= recent_days:
        return RecencyBucket.RECENT
    return RecencyBucket.HISTORICAL


def filter_by_recency(
    records: Iterable[LedgerMistake],
    bucket: RecencyBucket,
    now: datetime,
    recent_days: Optional[int] = None,
) -> List[LedgerMistake]:
    bucket = RecencyBucket(bucket)
    return [
        record
        for record in records
        if recency_bucket(record.timeline.last_marked_at, now, recent_days) == bucket
    ]


def filter_by_workflow_step(
    records: Iterable[LedgerMistake], step: Optional[str]
) -> List[LedgerMistake]:
    if step is None or step == 'all':
        return list(records)
    try:
        step = WorkflowStep(step)
    except ValueError as exc:
        raise ValidationError(f"Unknown workflow step '{step}'.") from exc
    return [record for record in records if record.workflow_step == step]


def filter_by_days(
    records: Iterable[LedgerMistake], days: int, now: datetime
) -> List[LedgerMistake]:
    """Records last marked within the trailing ``days`` days."""
    cutoff = now - timedelta(days=days)
    return [record for record in records if record.timeline.last_marked_at >= cutoff]


def filter_records(
    records: Iterable[LedgerMistake],
    filters: LedgerFilters,
    now: datetime,
    recent_days: Optional[int] = None,
) -> List[LedgerMistake]:
    """Apply every set filter; unset filters match everything."""
    result = filter_by_workflow_step(records, filters.workflow_step)
    if filters.page is not None:
        result = [r for r in result if r.page == filters.page]
    if filters.date is not None:
        result = [
            r
            for r in result
            if timezone.localdate(r.timeline.last_marked_at) == filters.date
        ]
    if filters.recency is not None:
        result = filter_by_recency(result, filters.recency, now, recent_days)
    if filters.type:
        result = [r for r in result if r.type == filters.type]
    if filters.category is not None:
        result = [r for r in result if r.category == filters.category]
    if filters.resolved is not None:
        result = [r for r in result if r.timeline.resolved == filters.resolved]
    return result


def group_by_date(records: Iterable[LedgerMistake]) -> Dict[str, List[LedgerMistake]]:
    """Records keyed by the local date of ``last_marked_at``, newest day first."""
    groups: Dict[str, List[LedgerMistake]] = {}
    ordered = sorted(records, key=lambda r: r.timeline.last_marked_at, reverse=True)
    for record in ordered:
        day = timezone.localdate(record.timeline.last_marked_at).isoformat()
        groups.setdefault(day, []).append(record)
    return groups


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class MistakeLedger:
    """Authorised, concurrency-safe operations on Personal Mushaf ledgers."""

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        authz=None,
        identity=None,
        max_retries: Optional[int] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.clock = clock or timezone.now
        self._authz = authz
        self._identity = identity
        self._max_retries = max_retries
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)

    @property
    def authz(self):
        if self._authz is None:
            self._authz = load_collaborator('AUTHZ')
        return self._authz

    @property
    def identity(self):
        if self._identity is None:
            self._identity = load_collaborator('IDENTITY_STORE')
        return self._identity

    @property
    def max_retries(self) -> int:
        if self._max_retries is None:
            return get_setting('LEDGER_MAX_RETRIES')
        return self._max_retries

    # -- guards ------------------------------------------------------------

    def _require(self, principal: Principal, action: str) -> None:
        if not is_allowed(self.authz, principal, action):
            raise Forbidden(f"Not allowed to {action}.", action=action)

    def _require_read(self, principal: Principal, student_id: int) -> None:
        if is_allowed(self.authz, principal, MUSHAF_VIEW):
            return
        if principal.user_id == student_id and is_allowed(
            self.authz, principal, MUSHAF_VIEW_OWN
        ):
            return
        raise Forbidden("Not allowed to view this Personal Mushaf.", action=MUSHAF_VIEW)

    # -- storage -----------------------------------------------------------

    def get_or_create_mushaf(self, student_id: int) -> PersonalMushaf:
        """Ledger row of a known student, created empty on first use."""
        student = self.identity.get_student(student_id)
        mushaf, created = PersonalMushaf.objects.get_or_create(
            student_id=student.id, defaults={'student_name': student.name}
        )
        if created:
            logger.info(f"Created Personal Mushaf for student {student.id}")
        return mushaf

    def _read(self, student_id: int) -> PersonalMushaf:
        mushaf = PersonalMushaf.objects.filter(student_id=student_id).first()
        if mushaf is None:
            raise NotFound("Personal Mushaf not found.", student_id=student_id)
        return mushaf

    def _write(
        self,
        student_id: int,
        mutate: Callable[[List[LedgerMistake], datetime], Tuple[List[LedgerMistake], T]],
        create: bool = True,
    ) -> T:
        """
        Optimistic read-modify-write of one student's ledger.

        ``mutate`` receives a fresh record list and the current time and
        returns the new list plus a result. It may run more than once, so it
        must not have side effects outside its return value.
        """
        if create:
            self.get_or_create_mushaf(student_id)
        for attempt in range(1, self.max_retries + 1):
            mushaf = self._read(student_id)
            now = self.clock()
            records, result = mutate(load_records(mushaf.mistakes), now)
            updated = PersonalMushaf.objects.filter(
                pk=mushaf.pk, version=mushaf.version
            ).update(
                mistakes=dump_records(records),
                version=F('version') + 1,
                updated_at=now,
            )
            if updated:
                return result
            logger.warning(
                f"Personal Mushaf write conflict for student {student_id} "
                f"(version {mushaf.version}, attempt {attempt}/{self.max_retries})"
            )
        logger.error(
            f"Giving up on Personal Mushaf write for student {student_id} "
            f"after {self.max_retries} conflicts"
        )
        raise ConcurrencyConflict(
            "Personal Mushaf was modified concurrently; please retry.",
            student_id=student_id,
        )

    # -- writes ------------------------------------------------------------

    def _attributed(
        self, principal: Principal, data: LedgerMistakeInput
    ) -> LedgerMistakeInput:
        """Credit the mark to the caller, whatever the payload claims."""
        return data.model_copy(
            update={'marked_by': principal.user_id, 'marked_by_name': principal.name}
        )

    def add_mistake(
        self, principal: Principal, student_id: int, data: Any
    ) -> LedgerMistake:
        """Merge one mark into the student's ledger and return the record."""
        self._require(principal, MUSHAF_WRITE)
        mark = self._attributed(principal, parse_payload(LedgerMistakeInput, data))

        def mutate(records, now):
            new_records, record, created = merge_mistake(
                records, mark, now, self.id_factory
            )
            return new_records, (record, created)

        record, created = self._write(student_id, mutate)
        logger.info(
            f"{'Added' if created else 'Merged'} Personal Mushaf mistake "
            f"{record.id} [{fingerprint_label(mistake_fingerprint(record))}] for "
            f"student {student_id} (repeat {record.timeline.repeat_count})"
        )
        return record

    def add_mistakes(
        self, principal: Principal, student_id: int, items: Iterable[Any]
    ) -> BulkAddResult:
        """Merge many marks in a single ledger write."""
        self._require(principal, MUSHAF_WRITE)
        marks = [
            self._attributed(principal, parse_payload(LedgerMistakeInput, item))
            for item in items
        ]
        return self.fold(student_id, marks)

    def fold(self, student_id: int, marks: List[LedgerMistakeInput]) -> BulkAddResult:
        """
        Merge already validated marks without an authorisation check.

        Used by ticket approval, which performs its own capability checks.
        """

        def mutate(records, now):
            result = BulkAddResult()
            for mark in marks:
                records, record, created = merge_mistake(
                    records, mark, now, self.id_factory
                )
                if created:
                    result.added += 1
                else:
                    result.updated += 1
                result.records.append(record)
            return records, result

        result = self._write(student_id, mutate)
        logger.info(
            f"Folded {len(marks)} mistakes into Personal Mushaf of student "
            f"{student_id}: {result.added} added, {result.updated} updated"
        )
        return result

    def resolve_mistake(
        self, principal: Principal, student_id: int, mistake_id: str
    ) -> LedgerMistake:
        self._require(principal, MUSHAF_RESOLVE)
        record = self._write(
            student_id,
            lambda records, now: resolve_record(records, mistake_id, now),
            create=False,
        )
        logger.info(
            f"Resolved Personal Mushaf mistake {mistake_id} for student {student_id}"
        )
        return record

    # -- reads -------------------------------------------------------------

    def snapshot(self, principal: Principal, student_id: int) -> PersonalMushaf:
        self._require_read(principal, student_id)
        return self.get_or_create_mushaf(student_id)

    def get_ledger(self, principal: Principal, student_id: int) -> Dict[str, Any]:
        mushaf = self.snapshot(principal, student_id)
        return {
            'student_id': mushaf.student_id,
            'student_name': mushaf.student_name,
            'version': mushaf.version,
            'mistakes': dump_records(load_records(mushaf.mistakes)),
        }

    def get_ledger_for_display(
        self, principal: Principal, student_id: int
    ) -> List[Dict[str, Any]]:
        """Records annotated with their recency bucket."""
        mushaf = self.snapshot(principal, student_id)
        now = self.clock()
        rows = []
        for record in load_records(mushaf.mistakes):
            row = record.model_dump(mode='json', exclude_none=True)
            row['recency'] = recency_bucket(record.timeline.last_marked_at, now).value
            rows.append(row)
        return rows

    def filter_ledger(
        self, principal: Principal, student_id: int, filters: Any
    ) -> Dict[str, Any]:
        """Filtered records plus statistics over the filtered subset."""
        filters = parse_payload(LedgerFilters, filters, 'Invalid ledger filters.')
        mushaf = self.snapshot(principal, student_id)
        now = self.clock()
        records = filter_records(load_records(mushaf.mistakes), filters, now)
        return {
            'mistakes': dump_records(records),
            'statistics': calculate_mistake_statistics(records, now=now).model_dump(),
        }

    def get_statistics(self, principal: Principal, student_id: int) -> MistakeStatistics:
        mushaf = self.snapshot(principal, student_id)
        return calculate_mistake_statistics(
            load_records(mushaf.mistakes), now=self.clock()
        )

    def group_mistakes_by_date(
        self, principal: Principal, student_id: int
    ) -> Dict[str, List[Dict[str, Any]]]:
        mushaf = self.snapshot(principal, student_id)
        return {
            day: dump_records(records)
            for day, records in group_by_date(load_records(mushaf.mistakes)).items()
        }


mistake_ledger = MistakeLedger()
