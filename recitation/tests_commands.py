"""Tests for the recitation management commands."""

from datetime import timedelta
from io import StringIO

from django.contrib.auth.models import User
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from .models import MemberProfile, Ticket
from .testing import make_member


class CreateSampleMembersTest(TestCase):
    def test_creates_members_and_pending_tickets(self) -> None:
        out = StringIO()

        call_command('create_sample_members', teachers=1, students=2, stdout=out)

        self.assertEqual(
            MemberProfile.objects.filter(role=MemberProfile.Role.TEACHER).count(), 1
        )
        self.assertEqual(
            MemberProfile.objects.filter(role=MemberProfile.Role.STUDENT).count(), 2
        )
        self.assertEqual(Ticket.objects.filter(status=Ticket.Status.PENDING).count(), 6)
        self.assertIn('Sample halaqa ready', out.getvalue())

    def test_is_idempotent_and_clears(self) -> None:
        call_command('create_sample_members', students=1, stdout=StringIO())
        call_command('create_sample_members', students=1, stdout=StringIO())
        self.assertEqual(Ticket.objects.count(), 3)

        call_command('create_sample_members', students=1, clear=True, stdout=StringIO())

        self.assertEqual(User.objects.filter(username='sample_student_1').count(), 1)
        self.assertEqual(Ticket.objects.count(), 3)


class ListStaleTicketsTest(TestCase):
    def setUp(self) -> None:
        self.teacher = make_member('teacher', MemberProfile.Role.TEACHER)
        self.student = make_member('student', MemberProfile.Role.STUDENT)

    def in_progress(self, silent_for: timedelta) -> Ticket:
        seen = timezone.now() - silent_for
        return Ticket.objects.create(
            student=self.student,
            teacher=self.teacher,
            workflow_step=Ticket.WorkflowStep.SABQ,
            status=Ticket.Status.IN_PROGRESS,
            started_at=seen,
            last_heartbeat_at=seen,
        )

    def test_reports_only_stale_sessions(self) -> None:
        stale = self.in_progress(timedelta(minutes=10))
        fresh = self.in_progress(timedelta(seconds=5))
        out = StringIO()

        call_command('list_stale_tickets', stdout=out)

        output = out.getvalue()
        self.assertIn(f'Ticket #{stale.pk}', output)
        self.assertNotIn(f'Ticket #{fresh.pk}', output)
        self.assertIn('1 stale session(s).', output)

    def test_nothing_stale(self) -> None:
        out = StringIO()

        call_command('list_stale_tickets', stdout=out)

        self.assertIn('No sessions silent', out.getvalue())
