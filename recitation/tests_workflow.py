"""
Tests for the ticket state machine and the second-review operations.

The engines run against the real ORM with a frozen clock and a recording
notification sink, so every transition, guard and notification is checked
deterministically.
"""

from datetime import datetime, timezone as dt_timezone

from django.test import TestCase

from .collaborators import DjangoIdentityStore, RolePermissionAuthz
from .exceptions import Forbidden, InvalidState, NotFound, ValidationError
from .ledger import MistakeLedger, load_records
from .models import MemberProfile, PersonalMushaf, Ticket
from .review import ReviewCoordinator
from .schemas import MistakeEntry
from .testing import (
    FailingNotificationSink,
    FrozenClock,
    RecordingNotificationSink,
    make_member,
)
from .workflow import TicketWorkflowEngine, ticket_payload

Role = MemberProfile.Role
Status = Ticket.Status

MADD = {'type': 'madd', 'category': 'tajweed'}
RANGE_1_1_TO_1_5 = {'from_surah': 1, 'from_ayah': 1, 'to_surah': 1, 'to_ayah': 5}


class WorkflowTestMixin:
    """Members, a frozen clock and engines wired to recording collaborators."""

    def setUp(self) -> None:
        self.admin = make_member('admin', Role.ADMIN)
        self.teacher = make_member('teacher1', Role.TEACHER)
        self.teacher2 = make_member('teacher2', Role.TEACHER)
        self.student = make_member('student', Role.STUDENT)

        self.clock = FrozenClock(datetime(2025, 3, 10, 9, 0, tzinfo=dt_timezone.utc))
        self.sink = RecordingNotificationSink()
        self.identity = DjangoIdentityStore()
        self.authz = RolePermissionAuthz()
        self.engine = TicketWorkflowEngine(
            clock=self.clock, authz=self.authz, identity=self.identity, sink=self.sink
        )
        self.ledger = MistakeLedger(
            clock=self.clock, authz=self.authz, identity=self.identity
        )
        self.review = ReviewCoordinator(workflow=self.engine, ledger=self.ledger)

        self.admin_p = self.identity.principal_for(self.admin)
        self.teacher_p = self.identity.principal_for(self.teacher)
        self.teacher2_p = self.identity.principal_for(self.teacher2)
        self.student_p = self.identity.principal_for(self.student)

    def open_ticket(self, step: str = 'sabq') -> Ticket:
        return self.engine.open(self.admin_p, self.student.pk, step)

    def started_ticket(self, mistakes: int = 0) -> Ticket:
        ticket = self.open_ticket()
        self.engine.start(ticket.pk, self.teacher_p, ayah_range=RANGE_1_1_TO_1_5)
        for i in range(mistakes):
            self.engine.add_mistake(
                ticket.pk, self.teacher_p, {**MADD, 'word_index': i}
            )
        return Ticket.objects.get(pk=ticket.pk)

    def submitted_ticket(self, mistakes: int = 1) -> Ticket:
        ticket = self.started_ticket(mistakes)
        return self.engine.submit(ticket.pk, self.teacher_p)

    def row(self, ticket: Ticket) -> dict:
        return Ticket.objects.filter(pk=ticket.pk).values().get()


class TicketWorkflowTest(WorkflowTestMixin, TestCase):
    """Listening-session transitions owned by the teacher."""

    def test_open_creates_pending_ticket_and_notifies_student(self) -> None:
        ticket = self.open_ticket('manzil')

        self.assertEqual(ticket.status, Status.PENDING)
        self.assertEqual(ticket.workflow_step, 'manzil')
        self.assertEqual(self.sink.sent[0].kind, 'ticket_opened')
        self.assertEqual(self.sink.sent[0].recipient_ids, (self.student.pk,))

    def test_open_requires_create_capability(self) -> None:
        with self.assertRaises(Forbidden):
            self.engine.open(self.teacher_p, self.student.pk, 'sabq')

    def test_open_rejects_unknown_student_and_bad_step(self) -> None:
        with self.assertRaises(NotFound):
            self.engine.open(self.admin_p, self.teacher.pk, 'sabq')
        with self.assertRaises(ValidationError):
            self.engine.open(self.admin_p, self.student.pk, 'tilawah')

    def test_start_locks_range_and_claims_session(self) -> None:
        ticket = self.open_ticket()

        started = self.engine.start(
            ticket.pk, self.teacher_p, ayah_range=RANGE_1_1_TO_1_5, assignment_id=42
        )

        self.assertEqual(started.status, Status.IN_PROGRESS)
        self.assertTrue(started.range_locked)
        self.assertEqual(started.teacher_id, self.teacher.pk)
        self.assertEqual(started.started_at, self.clock.now)
        self.assertEqual(started.last_heartbeat_at, self.clock.now)
        self.assertEqual(started.assignment_id, 42)
        self.assertEqual(ticket_payload(started)['ayah_range'], RANGE_1_1_TO_1_5)

    def test_start_rejects_reversed_range(self) -> None:
        ticket = self.open_ticket()
        reversed_range = {'from_surah': 2, 'from_ayah': 5, 'to_surah': 2, 'to_ayah': 1}

        with self.assertRaises(ValidationError):
            self.engine.start(ticket.pk, self.teacher_p, ayah_range=reversed_range)
        self.assertEqual(Ticket.objects.get(pk=ticket.pk).status, Status.PENDING)

    def test_start_twice_is_invalid_state(self) -> None:
        ticket = self.started_ticket()

        with self.assertRaises(InvalidState) as ctx:
            self.engine.start(ticket.pk, self.teacher2_p)

        self.assertEqual(ctx.exception.current_status, Status.IN_PROGRESS)
        self.assertEqual(Ticket.objects.get(pk=ticket.pk).teacher_id, self.teacher.pk)

    def test_start_by_student_is_forbidden(self) -> None:
        ticket = self.open_ticket()
        with self.assertRaises(Forbidden):
            self.engine.start(ticket.pk, self.student_p)

    def test_unknown_ticket_is_not_found(self) -> None:
        with self.assertRaises(NotFound):
            self.engine.heartbeat(9999, self.teacher_p)

    def test_heartbeat_from_another_teacher_is_forbidden(self) -> None:
        ticket = self.started_ticket()

        with self.assertRaises(Forbidden):
            self.engine.heartbeat(ticket.pk, self.teacher2_p)

    def test_heartbeat_refreshes_timestamp(self) -> None:
        ticket = self.started_ticket()
        later = self.clock.advance(seconds=45)

        beat = self.engine.heartbeat(ticket.pk, self.teacher_p)

        self.assertEqual(beat.last_heartbeat_at, later)

    def test_pause_and_resume_keep_range_locked(self) -> None:
        ticket = self.started_ticket()

        paused = self.engine.pause(ticket.pk, self.teacher_p)
        self.assertEqual(paused.status, Status.PAUSED)
        self.assertTrue(paused.range_locked)

        with self.assertRaises(InvalidState):
            self.engine.heartbeat(ticket.pk, self.teacher_p)

        resumed = self.engine.resume(ticket.pk, self.teacher_p)
        self.assertEqual(resumed.status, Status.IN_PROGRESS)
        self.assertTrue(resumed.range_locked)

    def test_mistakes_editable_while_paused(self) -> None:
        ticket = self.started_ticket(mistakes=2)
        self.engine.pause(ticket.pk, self.teacher_p)

        self.engine.add_mistake(ticket.pk, self.teacher_p, {'type': 'memory', 'category': 'memory'})
        updated = self.engine.remove_mistake(ticket.pk, self.teacher_p, 0)

        self.assertEqual([m['type'] for m in updated.mistakes], ['madd', 'memory'])
        self.assertEqual(updated.mistakes[0]['word_index'], 1)

    def test_add_mistake_stamps_timestamp(self) -> None:
        ticket = self.started_ticket()

        updated = self.engine.add_mistake(ticket.pk, self.teacher_p, MADD)

        self.assertEqual(len(updated.mistakes), 1)
        entry = MistakeEntry.model_validate(updated.mistakes[0])
        self.assertEqual(entry.timestamp, self.clock.now)

    def test_add_mistake_validates_required_fields(self) -> None:
        ticket = self.started_ticket()

        for payload in (
            {'category': 'tajweed'},
            {'type': '   ', 'category': 'tajweed'},
            {'type': 'madd'},
            {'type': 'madd', 'category': 'pronunciation'},
        ):
            with self.subTest(payload=payload):
                with self.assertRaises(ValidationError):
                    self.engine.add_mistake(ticket.pk, self.teacher_p, payload)

        self.assertEqual(Ticket.objects.get(pk=ticket.pk).mistakes, [])

    def test_remove_mistake_index_out_of_range(self) -> None:
        ticket = self.started_ticket(mistakes=1)

        for index in (-1, 1, 7):
            with self.subTest(index=index):
                with self.assertRaises(ValidationError):
                    self.engine.remove_mistake(ticket.pk, self.teacher_p, index)

        self.assertEqual(len(Ticket.objects.get(pk=ticket.pk).mistakes), 1)

    def test_other_teacher_cannot_edit_mistakes(self) -> None:
        ticket = self.started_ticket(mistakes=1)

        with self.assertRaises(Forbidden):
            self.engine.add_mistake(ticket.pk, self.teacher2_p, MADD)
        with self.assertRaises(Forbidden):
            self.engine.remove_mistake(ticket.pk, self.teacher2_p, 0)

    def test_session_notes_only_while_active(self) -> None:
        ticket = self.started_ticket()

        updated = self.engine.update_session_notes(ticket.pk, self.teacher_p, 'Focus on madd')
        self.assertEqual(updated.session_notes, 'Focus on madd')

        self.engine.submit(ticket.pk, self.teacher_p)
        with self.assertRaises(InvalidState):
            self.engine.update_session_notes(ticket.pk, self.teacher_p, 'late')

    def test_submit_records_duration_and_notifies_admins(self) -> None:
        ticket = self.started_ticket(mistakes=1)
        self.clock.advance(minutes=10)

        submitted = self.engine.submit(ticket.pk, self.teacher_p, session_notes='Good effort')

        self.assertEqual(submitted.status, Status.SUBMITTED)
        self.assertEqual(submitted.submitted_at, self.clock.now)
        self.assertEqual(submitted.listening_duration_seconds, 600)
        self.assertEqual(submitted.session_notes, 'Good effort')
        notification = self.sink.sent[-1]
        self.assertEqual(notification.kind, 'ticket_submitted')
        self.assertEqual(notification.recipient_ids, (self.admin.pk,))
        self.assertEqual(notification.message, "Student's sabq ticket is ready for review")

    def test_submit_from_pending_is_invalid_state(self) -> None:
        ticket = self.open_ticket()
        with self.assertRaises(InvalidState):
            self.engine.submit(ticket.pk, self.teacher_p)

    def test_failed_guards_leave_ticket_unchanged(self) -> None:
        submitted = self.submitted_ticket(mistakes=1)
        before = self.row(submitted)
        self.clock.advance(minutes=5)

        attempts = {
            'heartbeat': lambda: self.engine.heartbeat(submitted.pk, self.teacher_p),
            'pause': lambda: self.engine.pause(submitted.pk, self.teacher_p),
            'resume': lambda: self.engine.resume(submitted.pk, self.teacher_p),
            'add_mistake': lambda: self.engine.add_mistake(submitted.pk, self.teacher_p, MADD),
            'remove_mistake': lambda: self.engine.remove_mistake(submitted.pk, self.teacher_p, 0),
            'session_notes': lambda: self.engine.update_session_notes(submitted.pk, self.teacher_p, 'x'),
            'submit': lambda: self.engine.submit(submitted.pk, self.teacher_p),
            'start': lambda: self.engine.start(submitted.pk, self.teacher_p),
        }
        for name, attempt in attempts.items():
            with self.subTest(operation=name):
                with self.assertRaises(InvalidState) as ctx:
                    attempt()
                self.assertEqual(ctx.exception.current_status, Status.SUBMITTED)
                self.assertEqual(self.row(submitted), before)

    def test_admin_started_session_has_no_teacher(self) -> None:
        ticket = self.open_ticket()

        started = self.engine.start(ticket.pk, self.admin_p)
        self.assertIsNone(started.teacher_id)

        self.engine.heartbeat(ticket.pk, self.admin_p)
        with self.assertRaises(Forbidden):
            self.engine.heartbeat(ticket.pk, self.teacher_p)

    def test_notification_failure_does_not_roll_back(self) -> None:
        engine = TicketWorkflowEngine(
            clock=self.clock,
            authz=self.authz,
            identity=self.identity,
            sink=FailingNotificationSink(),
        )
        ticket = self.started_ticket()

        with self.assertLogs('recitation.collaborators', level='WARNING') as logs:
            engine.submit(ticket.pk, self.teacher_p)

        self.assertEqual(Ticket.objects.get(pk=ticket.pk).status, Status.SUBMITTED)
        self.assertIn('ticket_submitted', logs.output[0])


class TicketQueryTest(WorkflowTestMixin, TestCase):
    """Visibility rules, review queue and stale-session report."""

    def test_student_sees_only_own_tickets(self) -> None:
        mine = self.open_ticket()
        other = make_member('other_student', Role.STUDENT)
        self.engine.open(self.admin_p, other.pk, 'sabq')

        visible = self.engine.list_for(self.student_p)

        self.assertEqual([t.pk for t in visible], [mine.pk])
        with self.assertRaises(Forbidden):
            self.engine.get(
                Ticket.objects.get(student=other).pk, self.student_p
            )

    def test_teacher_sees_pending_and_own_tickets(self) -> None:
        pending = self.open_ticket('sabqi')
        own = self.started_ticket()
        foreign = self.open_ticket('manzil')
        self.engine.start(foreign.pk, self.teacher2_p)

        visible = {t.pk for t in self.engine.list_for(self.teacher_p)}

        self.assertEqual(visible, {pending.pk, own.pk})
        self.assertEqual(len(self.engine.list_for(self.admin_p)), 3)

    def test_list_filters_validate_values(self) -> None:
        self.started_ticket()
        self.assertEqual(
            len(self.engine.list_for(self.admin_p, status='in-progress')), 1
        )
        with self.assertRaises(ValidationError):
            self.engine.list_for(self.admin_p, status='sleeping')

    def test_pending_review_oldest_first_with_pagination(self) -> None:
        first = self.submitted_ticket()
        self.clock.advance(minutes=1)
        second = self.submitted_ticket()
        self.clock.advance(minutes=1)
        third = self.submitted_ticket()

        page_one = self.engine.pending_review(self.admin_p, page=1, limit=2)
        page_two = self.engine.pending_review(self.admin_p, page=2, limit=2)

        self.assertEqual([t['id'] for t in page_one['tickets']], [first.pk, second.pk])
        self.assertEqual([t['id'] for t in page_two['tickets']], [third.pk])
        self.assertEqual(
            page_one['pagination'], {'page': 1, 'limit': 2, 'total': 3, 'pages': 2}
        )

    def test_pending_review_requires_approver(self) -> None:
        with self.assertRaises(Forbidden):
            self.engine.pending_review(self.teacher_p)

    def test_stale_sessions_are_reported_not_reclaimed(self) -> None:
        stale = self.started_ticket()
        self.clock.advance(minutes=10)
        fresh = self.started_ticket()

        found = self.engine.stale_sessions(now=self.clock.now)

        self.assertEqual([t.pk for t in found], [stale.pk])
        self.assertEqual(Ticket.objects.get(pk=stale.pk).status, Status.IN_PROGRESS)
        self.assertNotIn(fresh.pk, [t.pk for t in found])


    def test_recitation_history_groups_by_step(self) -> None:
        pending = self.open_ticket('sabqi')
        submitted = self.submitted_ticket(mistakes=2)
        running = self.started_ticket(mistakes=1)

        history = self.engine.recitation_history(self.student_p, self.student.pk)

        self.assertEqual(history['student_name'], 'Student')
        self.assertEqual(
            [entry['id'] for entry in history['timeline']],
            [running.pk, submitted.pk, pending.pk],
        )
        self.assertEqual(
            [t['id'] for t in history['grouped']['sabq']], [running.pk, submitted.pk]
        )
        self.assertEqual(history['grouped']['manzil'], [])
        self.assertEqual(
            history['statistics'],
            {
                'total_sessions': 3,
                'total_mistakes': 3,
                'by_workflow_step': {
                    'sabq': {'total': 2, 'mistakes': 3},
                    'sabqi': {'total': 1, 'mistakes': 0},
                    'manzil': {'total': 0, 'mistakes': 0},
                },
            },
        )
        self.assertEqual(history['timeline'][1]['mistakes_count'], 2)

    def test_recitation_history_access(self) -> None:
        self.open_ticket()
        other = make_member('other_student', Role.STUDENT)
        other_p = self.identity.principal_for(other)

        by_teacher = self.engine.recitation_history(self.teacher_p, self.student.pk)
        self.assertEqual(by_teacher['statistics']['total_sessions'], 1)

        with self.assertRaises(Forbidden):
            self.engine.recitation_history(other_p, self.student.pk)
        with self.assertRaises(NotFound):
            self.engine.recitation_history(self.admin_p, self.teacher.pk)


class ReviewCoordinatorTest(WorkflowTestMixin, TestCase):
    """Approve, reject, reassign and close."""

    def test_full_session_is_approved_and_folded_into_ledger(self) -> None:
        ticket = self.open_ticket('sabq')
        self.assertEqual(ticket.status, Status.PENDING)

        started = self.engine.start(ticket.pk, self.teacher_p, ayah_range=RANGE_1_1_TO_1_5)
        self.assertEqual(started.status, Status.IN_PROGRESS)
        self.assertTrue(started.range_locked)

        marked = self.engine.add_mistake(ticket.pk, self.teacher_p, MADD)
        self.assertEqual(len(marked.mistakes), 1)

        submitted = self.engine.submit(ticket.pk, self.teacher_p)
        self.assertEqual(submitted.status, Status.SUBMITTED)

        approved, report = self.review.approve(ticket.pk, self.admin_p, 'good')
        self.assertEqual(approved.status, Status.APPROVED)
        self.assertEqual(approved.reviewed_at, self.clock.now)
        self.assertEqual(approved.reviewed_by_id, self.admin.pk)
        self.assertEqual(approved.review_notes, 'good')

        self.assertEqual(report.mistakes_processed, 1)
        self.assertEqual(report.mistakes_added, 1)
        records = load_records(PersonalMushaf.objects.get(student=self.student).mistakes)
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].ticket_id, ticket.pk)
        self.assertEqual(records[0].marked_by, self.teacher.pk)
        self.assertEqual(records[0].workflow_step.value, 'sabq')

        approval = self.sink.sent[-1]
        self.assertEqual(approval.kind, 'ticket_approved')
        self.assertEqual(set(approval.recipient_ids), {self.student.pk, self.teacher.pk})

    def test_second_approval_of_same_mistake_increments_repeat(self) -> None:
        for _ in range(2):
            ticket = self.submitted_ticket(mistakes=1)
            _, report = self.review.approve(ticket.pk, self.admin_p)

        self.assertEqual(report.mistakes_updated, 1)
        records = load_records(PersonalMushaf.objects.get(student=self.student).mistakes)
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].timeline.repeat_count, 2)

    def test_approve_only_from_submitted(self) -> None:
        ticket = self.started_ticket(mistakes=1)
        before = self.row(ticket)

        with self.assertRaises(InvalidState):
            self.review.approve(ticket.pk, self.admin_p, 'too early')

        self.assertEqual(self.row(ticket), before)
        self.assertFalse(PersonalMushaf.objects.filter(student=self.student).exists())

    def test_teacher_cannot_approve(self) -> None:
        ticket = self.submitted_ticket()
        with self.assertRaises(Forbidden):
            self.review.approve(ticket.pk, self.teacher_p)

    def test_extra_permission_grants_approval(self) -> None:
        MemberProfile.objects.filter(user=self.teacher2).update(
            extra_permissions=['tickets.approve']
        )
        senior = self.identity.principal_for(self.teacher2)
        ticket = self.submitted_ticket()

        approved, _ = self.review.approve(ticket.pk, senior)

        self.assertEqual(approved.reviewed_by_id, self.teacher2.pk)

    def test_reject_requires_notes(self) -> None:
        ticket = self.submitted_ticket()

        with self.assertRaises(ValidationError):
            self.review.reject(ticket.pk, self.admin_p, '   ')

        rejected = self.review.reject(ticket.pk, self.admin_p, 'Repeat the lesson')
        self.assertEqual(rejected.status, Status.REJECTED)
        self.assertEqual(rejected.review_notes, 'Repeat the lesson')
        self.assertEqual(self.sink.sent[-1].recipient_ids, (self.teacher.pk,))
        self.assertFalse(PersonalMushaf.objects.filter(student=self.student).exists())

    def test_reassign_from_submitted_preserves_history(self) -> None:
        ticket = self.started_ticket(mistakes=1)
        self.engine.update_session_notes(ticket.pk, self.teacher_p, 'Weak on madd')
        self.engine.submit(ticket.pk, self.teacher_p)

        reassigned = self.review.reassign(
            ticket.pk, self.admin_p, self.teacher2.pk, 'unavailable'
        )

        self.assertEqual(reassigned.status, Status.REASSIGNED)
        self.assertEqual(reassigned.reassigned_from_teacher_id, self.teacher.pk)
        self.assertEqual(reassigned.reassigned_from_teacher_name, 'Teacher1')
        self.assertEqual(reassigned.reassigned_to_teacher_id, self.teacher2.pk)
        self.assertEqual(reassigned.reassignment_reason, 'unavailable')
        self.assertEqual(reassigned.reassigned_at, self.clock.now)
        self.assertEqual(len(reassigned.previous_mistakes), 1)
        self.assertEqual(reassigned.previous_teacher_comment, 'Weak on madd')
        self.assertEqual(reassigned.mistakes, [])
        self.assertEqual(reassigned.session_notes, '')
        self.assertEqual(reassigned.teacher_id, self.teacher2.pk)
        self.assertTrue(reassigned.range_locked)

        notification = self.sink.sent[-1]
        self.assertEqual(notification.recipient_ids, (self.teacher2.pk,))
        self.assertEqual(
            notification.message,
            'A ticket has been reassigned to you. Reason: unavailable',
        )

    def test_reassign_is_lossless_from_every_allowed_status(self) -> None:
        for status in (Status.IN_PROGRESS, Status.PAUSED, Status.SUBMITTED):
            for count in (0, 1, 3):
                with self.subTest(status=status, mistakes=count):
                    ticket = self.started_ticket(mistakes=count)
                    if status == Status.PAUSED:
                        self.engine.pause(ticket.pk, self.teacher_p)
                    elif status == Status.SUBMITTED:
                        self.engine.submit(ticket.pk, self.teacher_p)
                    before = Ticket.objects.get(pk=ticket.pk).mistakes

                    after = self.review.reassign(ticket.pk, self.admin_p, self.teacher2.pk)

                    self.assertEqual(len(after.previous_mistakes), len(before))
                    self.assertEqual(after.previous_mistakes, before)
                    self.assertEqual(after.mistakes, [])
                    self.assertEqual(after.reassignment_history[-1]['previous_status'], status)

    def test_reassign_not_allowed_from_pending_or_approved(self) -> None:
        pending = self.open_ticket()
        with self.assertRaises(InvalidState):
            self.review.reassign(pending.pk, self.admin_p, self.teacher2.pk)

        approved = self.submitted_ticket()
        self.review.approve(approved.pk, self.admin_p)
        with self.assertRaises(InvalidState):
            self.review.reassign(approved.pk, self.admin_p, self.teacher2.pk)

    def test_failed_review_guards_leave_ticket_unchanged(self) -> None:
        pending = self.open_ticket()
        running = self.started_ticket(mistakes=1)
        approved = self.submitted_ticket(mistakes=1)
        self.review.approve(approved.pk, self.admin_p)
        closed = self.open_ticket('manzil')
        self.review.close(closed.pk, self.admin_p, 'duplicate')
        self.clock.advance(minutes=5)

        attempts = [
            ('approve', running, Status.IN_PROGRESS,
             lambda: self.review.approve(running.pk, self.admin_p, 'early')),
            ('approve', approved, Status.APPROVED,
             lambda: self.review.approve(approved.pk, self.admin_p)),
            ('reject', pending, Status.PENDING,
             lambda: self.review.reject(pending.pk, self.admin_p, 'not yet')),
            ('reject', running, Status.IN_PROGRESS,
             lambda: self.review.reject(running.pk, self.admin_p, 'not yet')),
            ('reassign', pending, Status.PENDING,
             lambda: self.review.reassign(pending.pk, self.admin_p, self.teacher2.pk)),
            ('reassign', approved, Status.APPROVED,
             lambda: self.review.reassign(approved.pk, self.admin_p, self.teacher2.pk)),
            ('reassign', closed, Status.CLOSED,
             lambda: self.review.reassign(closed.pk, self.admin_p, self.teacher2.pk)),
            ('close', closed, Status.CLOSED,
             lambda: self.review.close(closed.pk, self.admin_p, 'again')),
        ]
        ledger_before = PersonalMushaf.objects.values().get(student=self.student)
        for operation, ticket, status, attempt in attempts:
            with self.subTest(operation=operation, status=status):
                before = self.row(ticket)
                with self.assertRaises(InvalidState) as ctx:
                    attempt()
                self.assertEqual(ctx.exception.current_status, status)
                self.assertEqual(self.row(ticket), before)
        self.assertEqual(
            PersonalMushaf.objects.values().get(student=self.student), ledger_before
        )

    def test_reassign_to_unknown_or_same_teacher(self) -> None:
        ticket = self.started_ticket()
        with self.assertRaises(NotFound):
            self.review.reassign(ticket.pk, self.admin_p, self.student.pk)
        with self.assertRaises(ValidationError):
            self.review.reassign(ticket.pk, self.admin_p, self.teacher.pk)

    def test_new_teacher_resumes_reassigned_ticket(self) -> None:
        ticket = self.submitted_ticket(mistakes=2)
        self.review.reassign(ticket.pk, self.admin_p, self.teacher2.pk, 'sick')
        self.clock.advance(minutes=30)

        with self.assertRaises(Forbidden):
            self.engine.resume(ticket.pk, self.teacher_p)

        resumed = self.engine.resume(ticket.pk, self.teacher2_p)
        self.assertEqual(resumed.status, Status.IN_PROGRESS)
        self.assertEqual(resumed.started_at, self.clock.now)
        self.assertEqual(ticket_payload(resumed)['ayah_range'], RANGE_1_1_TO_1_5)

        with self.assertRaises(Forbidden):
            self.engine.heartbeat(ticket.pk, self.teacher_p)
        self.engine.heartbeat(ticket.pk, self.teacher2_p)

    def test_repeated_reassignment_keeps_every_hop(self) -> None:
        ticket = self.started_ticket(mistakes=1)
        self.review.reassign(ticket.pk, self.admin_p, self.teacher2.pk, 'first')
        self.engine.resume(ticket.pk, self.teacher2_p)
        self.engine.add_mistake(ticket.pk, self.teacher2_p, {'type': 'memory', 'category': 'memory'})
        self.engine.add_mistake(ticket.pk, self.teacher2_p, MADD)

        final = self.review.reassign(ticket.pk, self.admin_p, self.teacher.pk, 'second')

        history = final.reassignment_history
        self.assertEqual(len(history), 2)
        self.assertEqual(len(history[0]['previous_mistakes']), 1)
        self.assertEqual(len(history[1]['previous_mistakes']), 2)
        self.assertEqual(history[1]['from_teacher_id'], self.teacher2.pk)
        self.assertEqual(final.reassigned_from_teacher_id, self.teacher2.pk)

    def test_close_from_any_open_status(self) -> None:
        ticket = self.started_ticket()

        closed = self.review.close(ticket.pk, self.admin_p, 'student left')

        self.assertEqual(closed.status, Status.CLOSED)
        self.assertEqual(closed.closed_at, self.clock.now)
        self.assertIn('student left', closed.notes)
        with self.assertRaises(InvalidState):
            self.review.close(ticket.pk, self.admin_p)
        with self.assertRaises(Forbidden):
            self.review.close(self.open_ticket().pk, self.teacher_p)
