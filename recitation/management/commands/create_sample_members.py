"""
Management command to create sample halaqa members for local testing.

Creates an admin, teachers and students with member profiles, plus one pending
ticket per student and workflow step so the review flow can be tried end to
end.
"""

from django.contrib.auth.models import User
from django.core.management.base import BaseCommand
from django.db import transaction

from recitation.models import MemberProfile, Ticket

SAMPLE_PREFIX = 'sample_'
PASSWORD = 'testpass123'


class Command(BaseCommand):
    help = "Create sample admin, teacher and student members with pending tickets"

    def add_arguments(self, parser):
        parser.add_argument(
            '--teachers',
            type=int,
            default=2,
            help='Number of sample teachers to create (default: 2)',
        )
        parser.add_argument(
            '--students',
            type=int,
            default=3,
            help='Number of sample students to create (default: 3)',
        )
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing sample members before creating new ones',
        )

    def handle(self, *args, **options):
        if options['clear']:
            self.stdout.write('Clearing existing sample members...')
            User.objects.filter(username__startswith=SAMPLE_PREFIX).delete()

        with transaction.atomic():
            self._create_member('admin', MemberProfile.Role.ADMIN, 'Sample', 'Admin')
            for i in range(1, options['teachers'] + 1):
                self._create_member(
                    f'teacher_{i}', MemberProfile.Role.TEACHER, 'Ustadh', str(i)
                )
            for i in range(1, options['students'] + 1):
                student = self._create_member(
                    f'student_{i}', MemberProfile.Role.STUDENT, 'Student', str(i)
                )
                for step in Ticket.WorkflowStep.values:
                    Ticket.objects.get_or_create(
                        student=student,
                        workflow_step=step,
                        status=Ticket.Status.PENDING,
                    )

        total_members = MemberProfile.objects.filter(
            user__username__startswith=SAMPLE_PREFIX
        ).count()
        total_tickets = Ticket.objects.filter(
            student__username__startswith=SAMPLE_PREFIX,
            status=Ticket.Status.PENDING,
        ).count()
        self.stdout.write(
            self.style.SUCCESS(
                f'Sample halaqa ready: {total_members} members, '
                f'{total_tickets} pending tickets (password: {PASSWORD})'
            )
        )

    def _create_member(self, name: str, role: str, first: str, last: str) -> User:
        username = f'{SAMPLE_PREFIX}{name}'
        user, created = User.objects.get_or_create(
            username=username,
            defaults={
                'email': f'{username}@example.com',
                'first_name': first,
                'last_name': last,
                'is_staff': role == MemberProfile.Role.ADMIN,
            },
        )
        if created:
            user.set_password(PASSWORD)
            user.save()
        MemberProfile.objects.update_or_create(user=user, defaults={'role': role})
        self.stdout.write(f"{'Created' if created else 'Found'} {role}: {username}")
        return user
