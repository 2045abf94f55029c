"""
Management command listing in-progress tickets whose heartbeat went stale.

Heartbeats are advisory: nothing is reclaimed automatically. An admin can use
this report to reassign or close abandoned sessions.
"""

from django.core.management.base import BaseCommand
from django.utils import timezone

from recitation.conf import get_setting
from recitation.workflow import workflow_engine


class Command(BaseCommand):
    help = "List in-progress tickets without a recent heartbeat"

    def handle(self, *args, **options):
        now = timezone.now()
        stale = workflow_engine.stale_sessions(now=now)
        threshold = get_setting('HEARTBEAT_STALE_AFTER_SECONDS')

        if not stale:
            self.stdout.write(
                self.style.SUCCESS(f'No sessions silent for more than {threshold}s.')
            )
            return

        for ticket in stale:
            silent = int((now - ticket.last_heartbeat_at).total_seconds())
            self.stdout.write(
                f'Ticket #{ticket.pk} ({ticket.workflow_step}) student={ticket.student_id} '
                f'teacher={ticket.teacher_id} silent for {silent}s'
            )
        self.stdout.write(self.style.WARNING(f'{len(stale)} stale session(s).'))
