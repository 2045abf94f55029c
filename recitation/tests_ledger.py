"""
Tests for the Personal Mushaf ledger and its statistics.

Covers the pure merge/filter helpers, the authorised engine operations, and
the optimistic-concurrency write path (deterministic interleaving on every
backend, real threads on PostgreSQL).
"""

import threading
from datetime import datetime, timedelta, timezone as dt_timezone
from unittest import skipUnless

from django.db import connection, connections
from django.db.models import F
from django.test import TestCase, TransactionTestCase, override_settings

from .collaborators import DjangoIdentityStore, RolePermissionAuthz
from .exceptions import ConcurrencyConflict, Forbidden, NotFound, ValidationError
from .fingerprint import mistake_fingerprint
from .ledger import (
    MistakeLedger,
    filter_by_days,
    filter_by_recency,
    filter_by_workflow_step,
    filter_records,
    group_by_date,
    load_records,
    merge_mistake,
    recency_bucket,
    resolve_record,
)
from .models import MemberProfile, PersonalMushaf
from .schemas import LedgerFilters, LedgerMistakeInput, RecencyBucket
from .statistics import calculate_mistake_statistics
from .testing import FrozenClock, make_member

Role = MemberProfile.Role

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=dt_timezone.utc)
MADD_P2 = {
    'type': 'madd',
    'category': 'tajweed',
    'page': 2,
    'surah': 1,
    'ayah': 3,
    'workflow_step': 'sabq',
}


def mark(**overrides) -> LedgerMistakeInput:
    return LedgerMistakeInput.model_validate({**MADD_P2, **overrides})


class _Ids:
    def __init__(self) -> None:
        self.count = 0

    def __call__(self) -> str:
        self.count += 1
        return f'm{self.count}'


def build(*marks_with_times):
    """Fold ``(mark, when)`` pairs into a fresh record list."""
    records, ids = [], _Ids()
    for data, when in marks_with_times:
        records, _, _ = merge_mistake(records, data, when, ids)
    return records


class FingerprintTest(TestCase):
    def test_position_and_notes_do_not_change_fingerprint(self) -> None:
        a = mark(position={'x': 10, 'y': 20}, note='first')
        b = mark(position={'x': 11, 'y': 25}, note='second', marked_by=7)

        self.assertEqual(mistake_fingerprint(a), mistake_fingerprint(b))

    def test_each_coordinate_is_part_of_fingerprint(self) -> None:
        base = mistake_fingerprint(mark())
        for change in (
            {'type': 'ikhfa'},
            {'category': 'letter'},
            {'page': 3},
            {'surah': 2},
            {'ayah': 4},
            {'word_index': 1},
            {'letter_index': 0},
            {'workflow_step': 'manzil'},
        ):
            with self.subTest(change=change):
                self.assertNotEqual(mistake_fingerprint(mark(**change)), base)


class MergeTest(TestCase):
    """Pure merge and resolve rules."""

    def test_same_fingerprint_twice_gives_one_record(self) -> None:
        records = build((mark(), NOW), (mark(), NOW + timedelta(hours=1)))

        self.assertEqual(len(records), 1)
        timeline = records[0].timeline
        self.assertEqual(timeline.repeat_count, 2)
        self.assertEqual(timeline.first_marked_at, NOW)
        self.assertEqual(timeline.last_marked_at, NOW + timedelta(hours=1))
        self.assertEqual(records[0].timestamp, NOW + timedelta(hours=1))

    def test_different_fingerprints_are_separate_records(self) -> None:
        records = build((mark(), NOW), (mark(word_index=2), NOW))
        self.assertEqual([r.timeline.repeat_count for r in records], [1, 1])

    def test_merge_does_not_modify_input_list(self) -> None:
        records = build((mark(), NOW))
        snapshot = [r.model_copy(deep=True) for r in records]

        merge_mistake(records, mark(), NOW, _Ids())

        self.assertEqual(records, snapshot)

    def test_recurrence_refreshes_optional_fields(self) -> None:
        records = build(
            (mark(note='stretch 2', ticket_id=1), NOW),
            (mark(note='stretch 4', audio_url='https://cdn/a.mp3'), NOW),
        )

        self.assertEqual(records[0].note, 'stretch 4')
        self.assertEqual(records[0].audio_url, 'https://cdn/a.mp3')
        self.assertEqual(records[0].ticket_id, 1)

    def test_resolve_then_recur_unresolves_and_adds_one(self) -> None:
        records = build((mark(), NOW), (mark(), NOW), (mark(), NOW))
        before = records[0].timeline.repeat_count

        records, resolved = resolve_record(records, records[0].id, NOW + timedelta(days=1))
        self.assertTrue(resolved.timeline.resolved)
        self.assertEqual(resolved.timeline.resolved_at, NOW + timedelta(days=1))

        records, recurred, created = merge_mistake(
            records, mark(), NOW + timedelta(days=2), _Ids()
        )

        self.assertFalse(created)
        self.assertFalse(recurred.timeline.resolved)
        self.assertIsNone(recurred.timeline.resolved_at)
        self.assertEqual(recurred.timeline.repeat_count, before + 1)

    def test_resolve_unknown_id(self) -> None:
        with self.assertRaises(NotFound):
            resolve_record(build((mark(), NOW)), 'missing', NOW)


class RecencyTest(TestCase):
    def test_buckets_partition_by_calendar_day(self) -> None:
        cases = [
            (NOW.replace(hour=0, minute=1), RecencyBucket.TODAY),
            (NOW - timedelta(days=1), RecencyBucket.RECENT),
            (NOW - timedelta(days=7), RecencyBucket.RECENT),
            (NOW - timedelta(days=8), RecencyBucket.HISTORICAL),
            (NOW - timedelta(days=400), RecencyBucket.HISTORICAL),
        ]
        for when, expected in cases:
            with self.subTest(when=when):
                self.assertEqual(recency_bucket(when, NOW, 7), expected)

    def test_filters_return_only_matching_bucket(self) -> None:
        records = build(
            (mark(), NOW),
            (mark(ayah=4), NOW - timedelta(days=3)),
            (mark(ayah=5), NOW - timedelta(days=30)),
        )

        self.assertEqual(
            [r.ayah for r in filter_by_recency(records, RecencyBucket.TODAY, NOW, 7)], [3]
        )
        self.assertEqual(
            [r.ayah for r in filter_by_recency(records, 'recent', NOW, 7)], [4]
        )
        self.assertEqual(
            [r.ayah for r in filter_by_recency(records, RecencyBucket.HISTORICAL, NOW, 7)],
            [5],
        )
        self.assertEqual([r.ayah for r in filter_by_days(records, 5, NOW)], [3, 4])

    def test_zero_recent_window_is_respected(self) -> None:
        self.assertEqual(
            recency_bucket(NOW - timedelta(days=1), NOW, 0), RecencyBucket.HISTORICAL
        )
        self.assertEqual(recency_bucket(NOW, NOW, 0), RecencyBucket.TODAY)

    def test_unknown_workflow_step_is_validation_error(self) -> None:
        with self.assertRaises(ValidationError):
            filter_by_workflow_step(build((mark(), NOW)), 'tilawa')

    @override_settings(RECITATION={'RECENT_WINDOW_DAYS': 3})
    def test_recent_window_comes_from_settings(self) -> None:
        self.assertEqual(
            recency_bucket(NOW - timedelta(days=4), NOW), RecencyBucket.HISTORICAL
        )


class FilterAndStatisticsTest(TestCase):
    def setUp(self) -> None:
        self.records = build(
            (mark(), NOW),
            (mark(), NOW),
            (mark(type='memory', category='memory', workflow_step='sabqi'), NOW - timedelta(days=2)),
            (mark(type='ikhfa', page=5), NOW - timedelta(days=2)),
            (mark(type='ikhfa', page=6, workflow_step='manzil'), NOW - timedelta(days=40)),
        )
        self.records, _ = resolve_record(self.records, self.records[1].id, NOW)

    def test_statistics_over_snapshot(self) -> None:
        stats = calculate_mistake_statistics(self.records, now=NOW, trend_days=30)

        self.assertEqual(stats.total, 4)
        self.assertEqual(stats.by_workflow_step, {'sabq': 2, 'sabqi': 1, 'manzil': 1})
        self.assertEqual(stats.by_category, {'tajweed': 3, 'memory': 1})
        self.assertEqual(stats.by_type, {'madd': 1, 'memory': 1, 'ikhfa': 2})
        self.assertEqual((stats.resolved, stats.unresolved), (1, 3))
        self.assertEqual(stats.repeat_offenders, 1)
        self.assertEqual(
            [(t.type, t.count) for t in stats.most_common_types],
            [('ikhfa', 2), ('madd', 1), ('memory', 1)],
        )
        self.assertEqual(
            [(p.date, p.count) for p in stats.trend],
            [('2025-03-08', 2), ('2025-03-10', 1)],
        )

    def test_empty_snapshot(self) -> None:
        stats = calculate_mistake_statistics([], now=NOW)

        self.assertEqual(stats.total, 0)
        self.assertEqual(stats.by_workflow_step, {'sabq': 0, 'sabqi': 0, 'manzil': 0})
        self.assertEqual(stats.most_common_types, [])
        self.assertEqual(stats.trend, [])

    def test_explicit_zero_limits(self) -> None:
        stats = calculate_mistake_statistics(
            self.records, now=NOW, trend_days=0, top_types=0
        )

        self.assertEqual(stats.most_common_types, [])
        self.assertEqual(stats.trend, [])
        self.assertEqual(stats.total, 4)

    def test_most_common_types_is_capped(self) -> None:
        records = build(*[(mark(type=f't{i:02d}'), NOW) for i in range(12)])
        stats = calculate_mistake_statistics(records, now=NOW, top_types=10)

        self.assertEqual(len(stats.most_common_types), 10)
        self.assertEqual(stats.most_common_types[0].type, 't00')

    def test_filter_combinations(self) -> None:
        def ayahs_and_types(filters):
            found = filter_records(self.records, LedgerFilters(**filters), NOW, 7)
            return sorted(r.type for r in found)

        self.assertEqual(ayahs_and_types({'workflow_step': 'all'}), ['ikhfa', 'ikhfa', 'madd', 'memory'])
        self.assertEqual(ayahs_and_types({'workflow_step': 'sabq'}), ['ikhfa', 'madd'])
        self.assertEqual(ayahs_and_types({'page': 5}), ['ikhfa'])
        self.assertEqual(ayahs_and_types({'category': 'memory'}), ['memory'])
        self.assertEqual(ayahs_and_types({'resolved': False, 'type': 'ikhfa'}), ['ikhfa', 'ikhfa'])
        self.assertEqual(ayahs_and_types({'recency': 'recent'}), ['ikhfa', 'memory'])
        self.assertEqual(ayahs_and_types({'date': '2025-03-10'}), ['madd'])

    def test_workflow_step_filter_and_grouping(self) -> None:
        self.assertEqual(len(filter_by_workflow_step(self.records, 'manzil')), 1)

        groups = group_by_date(self.records)

        self.assertEqual(list(groups), ['2025-03-10', '2025-03-08', '2025-01-29'])
        self.assertEqual(len(groups['2025-03-08']), 2)


class MistakeLedgerTest(TestCase):
    """Engine operations against the database."""

    def setUp(self) -> None:
        self.teacher = make_member('teacher', Role.TEACHER)
        self.student = make_member('student', Role.STUDENT)
        self.other_student = make_member('other', Role.STUDENT)

        self.clock = FrozenClock(NOW)
        self.identity = DjangoIdentityStore()
        self.ledger = MistakeLedger(
            clock=self.clock, authz=RolePermissionAuthz(), identity=self.identity
        )
        self.teacher_p = self.identity.principal_for(self.teacher)
        self.student_p = self.identity.principal_for(self.student)

    def test_adding_same_mistake_twice_merges(self) -> None:
        first = self.ledger.add_mistake(self.teacher_p, self.student.pk, MADD_P2)
        self.clock.advance(hours=2)
        second = self.ledger.add_mistake(self.teacher_p, self.student.pk, MADD_P2)

        mushaf = PersonalMushaf.objects.get(student=self.student)
        records = load_records(mushaf.mistakes)
        self.assertEqual(len(records), 1)
        self.assertEqual(second.id, first.id)
        self.assertEqual(records[0].timeline.repeat_count, 2)
        self.assertEqual(records[0].marked_by, self.teacher.pk)
        self.assertEqual(records[0].marked_by_name, 'Teacher')
        self.assertEqual(mushaf.student_name, 'Student')
        self.assertEqual(mushaf.version, 3)

    def test_attribution_always_comes_from_caller(self) -> None:
        other_teacher = make_member('other_teacher', Role.TEACHER)
        other_p = self.identity.principal_for(other_teacher)
        claimed = {**MADD_P2, 'marked_by': other_teacher.pk, 'marked_by_name': 'Someone'}

        first = self.ledger.add_mistake(self.teacher_p, self.student.pk, claimed)
        self.assertEqual((first.marked_by, first.marked_by_name), (self.teacher.pk, 'Teacher'))

        result = self.ledger.add_mistakes(
            other_p, self.student.pk, [{**claimed, 'marked_by': self.teacher.pk}]
        )
        self.assertEqual(result.records[0].marked_by, other_teacher.pk)
        self.assertEqual(result.records[0].marked_by_name, 'Other_Teacher')

    def test_add_requires_write_capability(self) -> None:
        with self.assertRaises(Forbidden):
            self.ledger.add_mistake(self.student_p, self.student.pk, MADD_P2)

    def test_add_validates_payload(self) -> None:
        for payload in (
            {**MADD_P2, 'category': 'unknown'},
            {**MADD_P2, 'workflow_step': None},
            {**MADD_P2, 'surah': 115},
            {k: v for k, v in MADD_P2.items() if k != 'type'},
        ):
            with self.subTest(payload=payload):
                with self.assertRaises(ValidationError):
                    self.ledger.add_mistake(self.teacher_p, self.student.pk, payload)

    def test_add_for_unknown_student(self) -> None:
        with self.assertRaises(NotFound):
            self.ledger.add_mistake(self.teacher_p, self.teacher.pk, MADD_P2)

    def test_bulk_add_counts_added_and_updated(self) -> None:
        self.ledger.add_mistake(self.teacher_p, self.student.pk, MADD_P2)

        result = self.ledger.add_mistakes(
            self.teacher_p,
            self.student.pk,
            [MADD_P2, {**MADD_P2, 'ayah': 4}, {**MADD_P2, 'ayah': 4}],
        )

        self.assertEqual((result.added, result.updated), (1, 2))
        mushaf = PersonalMushaf.objects.get(student=self.student)
        self.assertEqual(len(mushaf.mistakes), 2)
        self.assertEqual(mushaf.version, 3)

    def test_resolve_and_recur(self) -> None:
        record = self.ledger.add_mistake(self.teacher_p, self.student.pk, MADD_P2)

        resolved = self.ledger.resolve_mistake(self.teacher_p, self.student.pk, record.id)
        self.assertTrue(resolved.timeline.resolved)

        recurred = self.ledger.add_mistake(self.teacher_p, self.student.pk, MADD_P2)
        self.assertFalse(recurred.timeline.resolved)
        self.assertEqual(recurred.timeline.repeat_count, 2)

    def test_resolve_missing_ledger_or_record(self) -> None:
        with self.assertRaises(NotFound):
            self.ledger.resolve_mistake(self.teacher_p, self.student.pk, 'abc')

        self.ledger.add_mistake(self.teacher_p, self.student.pk, MADD_P2)
        with self.assertRaises(NotFound):
            self.ledger.resolve_mistake(self.teacher_p, self.student.pk, 'abc')

    def test_student_reads_only_own_ledger(self) -> None:
        self.ledger.add_mistake(self.teacher_p, self.student.pk, MADD_P2)

        own = self.ledger.get_ledger(self.student_p, self.student.pk)
        self.assertEqual(len(own['mistakes']), 1)

        with self.assertRaises(Forbidden):
            self.ledger.get_ledger(self.student_p, self.other_student.pk)
        with self.assertRaises(Forbidden):
            self.ledger.get_statistics(self.student_p, self.other_student.pk)

    def test_display_filter_and_statistics(self) -> None:
        self.ledger.add_mistake(self.teacher_p, self.student.pk, MADD_P2)
        self.clock.advance(days=3)
        self.ledger.add_mistake(
            self.teacher_p, self.student.pk, {**MADD_P2, 'type': 'memory', 'category': 'memory'}
        )

        rows = self.ledger.get_ledger_for_display(self.teacher_p, self.student.pk)
        self.assertEqual([row['recency'] for row in rows], ['recent', 'today'])

        filtered = self.ledger.filter_ledger(
            self.teacher_p, self.student.pk, {'recency': 'today'}
        )
        self.assertEqual([m['type'] for m in filtered['mistakes']], ['memory'])
        self.assertEqual(filtered['statistics']['total'], 1)

        stats = self.ledger.get_statistics(self.teacher_p, self.student.pk)
        self.assertEqual(stats.total, 2)

        groups = self.ledger.group_mistakes_by_date(self.teacher_p, self.student.pk)
        self.assertEqual(list(groups), ['2025-03-13', '2025-03-10'])

    def test_invalid_filters(self) -> None:
        with self.assertRaises(ValidationError):
            self.ledger.filter_ledger(
                self.teacher_p, self.student.pk, {'recency': 'yesterday'}
            )


class LedgerConcurrencyTest(TestCase):
    """Compare-and-swap writes under interleaved writers."""

    def setUp(self) -> None:
        self.teacher = make_member('teacher', Role.TEACHER)
        self.student = make_member('student', Role.STUDENT)
        self.identity = DjangoIdentityStore()
        self.teacher_p = self.identity.principal_for(self.teacher)

    def ledger(self, **kwargs) -> MistakeLedger:
        return MistakeLedger(
            clock=FrozenClock(NOW),
            authz=RolePermissionAuthz(),
            identity=self.identity,
            **kwargs,
        )

    def test_interleaved_writer_is_not_lost(self) -> None:
        first, second = self.ledger(), self.ledger()
        original_read = first._read
        calls = []

        def read_then_interleave(student_id):
            mushaf = original_read(student_id)
            if not calls:
                # Another session commits between our read and our write
                second.add_mistake(self.teacher_p, student_id, {**MADD_P2, 'ayah': 7})
            calls.append(mushaf.version)
            return mushaf

        first._read = read_then_interleave
        with self.assertLogs('recitation.ledger', level='WARNING'):
            first.add_mistake(self.teacher_p, self.student.pk, MADD_P2)

        mushaf = PersonalMushaf.objects.get(student=self.student)
        self.assertEqual(sorted(r['ayah'] for r in mushaf.mistakes), [3, 7])
        self.assertEqual(len(calls), 2)
        self.assertEqual(mushaf.version, 3)

    def test_conflicts_exhaust_retries(self) -> None:
        ledger = self.ledger(max_retries=3)
        original_read = ledger._read
        reads = []

        def read_then_bump(student_id):
            mushaf = original_read(student_id)
            PersonalMushaf.objects.filter(pk=mushaf.pk).update(version=F('version') + 1)
            reads.append(mushaf.version)
            return mushaf

        ledger._read = read_then_bump
        with self.assertLogs('recitation.ledger', level='WARNING') as logs:
            with self.assertRaises(ConcurrencyConflict):
                ledger.add_mistake(self.teacher_p, self.student.pk, MADD_P2)

        self.assertEqual(len(reads), 3)
        self.assertTrue(any('Giving up' in line for line in logs.output))
        self.assertEqual(PersonalMushaf.objects.get(student=self.student).mistakes, [])


@skipUnless(connection.vendor == 'postgresql', 'needs concurrent database connections')
class ThreadedLedgerConcurrencyTest(TransactionTestCase):
    """Real concurrent writers for the same student (PostgreSQL only)."""

    def test_concurrent_adds_with_different_fingerprints_all_survive(self) -> None:
        teacher = make_member('teacher', Role.TEACHER)
        student = make_member('student', Role.STUDENT)
        identity = DjangoIdentityStore()
        principal = identity.principal_for(teacher)
        MistakeLedger(identity=identity).get_or_create_mushaf(student.pk)

        errors = []
        barrier = threading.Barrier(4)

        def writer(worker: int) -> None:
            ledger = MistakeLedger(identity=identity, max_retries=50)
            barrier.wait()
            try:
                for i in range(5):
                    ledger.add_mistake(
                        principal,
                        student.pk,
                        {**MADD_P2, 'ayah': worker * 10 + i + 1},
                    )
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)
            finally:
                connections.close_all()

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        mushaf = PersonalMushaf.objects.get(student=student)
        self.assertEqual(len(mushaf.mistakes), 20)
        self.assertEqual(mushaf.version, 21)
