"""Database models for the Recitation application.

Contains the MemberProfile, Ticket and PersonalMushaf ORM models used by the
*halaqa* project. The models are plain persistence: every state transition
lives in :mod:`recitation.workflow`, :mod:`recitation.review` and
:mod:`recitation.ledger`.
"""

# ---------------------------------------------------------------------------
# Django
from django.conf import settings
from django.db import models


class MemberProfile(models.Model):
    """Role and extra capabilities of a user inside the halaqa."""

    class Role(models.TextChoices):
        STUDENT = 'student', 'Student'
        TEACHER = 'teacher', 'Teacher'
        ADMIN = 'admin', 'Admin'
        SUPER_ADMIN = 'super_admin', 'Super admin'

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="member_profile",
        help_text="Associated user account",
    )
    role = models.CharField(
        max_length=20,
        choices=Role.choices,
        default=Role.STUDENT,
    )
    extra_permissions = models.JSONField(
        default=list,
        blank=True,
        help_text="Actions granted on top of the role, e.g. ['tickets.approve']",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Member Profile"
        verbose_name_plural = "Member Profiles"

    def __str__(self) -> str:
        return f"{self.user.username} ({self.get_role_display()})"


class Ticket(models.Model):
    """
    One recitation-review session for a student.

    Details:
      • ``mistakes`` – working set of MistakeEntry dicts, editable while the
        session is in progress or paused
      • ``from_*`` / ``to_*`` – listening range, frozen once ``range_locked``
      • ``reassigned_*`` / ``previous_*`` – audit of the latest reassignment;
        ``reassignment_history`` keeps every hop
    """

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        IN_PROGRESS = 'in-progress', 'In progress'
        PAUSED = 'paused', 'Paused'
        SUBMITTED = 'submitted', 'Submitted'
        APPROVED = 'approved', 'Approved'
        REJECTED = 'rejected', 'Rejected'
        REASSIGNED = 'reassigned', 'Reassigned'
        CLOSED = 'closed', 'Closed'

    class WorkflowStep(models.TextChoices):
        SABQ = 'sabq', 'Sabq (new lesson)'
        SABQI = 'sabqi', 'Sabqi (recent revision)'
        MANZIL = 'manzil', 'Manzil (long-term revision)'

    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="recitation_tickets",
    )
    teacher = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="teaching_tickets",
        help_text="Teacher holding the listening session",
    )
    assignment_id = models.PositiveBigIntegerField(null=True, blank=True)
    workflow_step = models.CharField(max_length=10, choices=WorkflowStep.choices)
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.PENDING
    )

    from_surah = models.PositiveSmallIntegerField(null=True, blank=True)
    from_ayah = models.PositiveSmallIntegerField(null=True, blank=True)
    to_surah = models.PositiveSmallIntegerField(null=True, blank=True)
    to_ayah = models.PositiveSmallIntegerField(null=True, blank=True)
    range_locked = models.BooleanField(default=False)

    mistakes = models.JSONField(default=list, blank=True)
    notes = models.TextField(blank=True, default="")
    session_notes = models.TextField(blank=True, default="")

    started_at = models.DateTimeField(null=True, blank=True)
    last_heartbeat_at = models.DateTimeField(null=True, blank=True)
    submitted_at = models.DateTimeField(null=True, blank=True)
    listening_duration_seconds = models.PositiveIntegerField(null=True, blank=True)

    reviewed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="reviewed_tickets",
    )
    reviewed_at = models.DateTimeField(null=True, blank=True)
    review_notes = models.TextField(blank=True, default="")

    # Plain ids so the audit trail survives teacher account deletion
    reassigned_from_teacher_id = models.PositiveBigIntegerField(null=True, blank=True)
    reassigned_from_teacher_name = models.CharField(
        max_length=150, blank=True, default=""
    )
    reassigned_to_teacher_id = models.PositiveBigIntegerField(null=True, blank=True)
    reassigned_to_teacher_name = models.CharField(
        max_length=150, blank=True, default=""
    )
    reassignment_reason = models.TextField(blank=True, default="")
    reassigned_at = models.DateTimeField(null=True, blank=True)
    previous_teacher_comment = models.TextField(blank=True, default="")
    previous_mistakes = models.JSONField(default=list, blank=True)
    reassignment_history = models.JSONField(default=list, blank=True)

    closed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Ticket"
        verbose_name_plural = "Tickets"
        indexes = [
            models.Index(
                fields=['student', 'workflow_step', 'status'],
                name='ticket_student_step_status',
            ),
            models.Index(fields=['teacher', 'status'], name='ticket_teacher_status'),
            models.Index(fields=['status', 'submitted_at'], name='ticket_status_submitted'),
        ]

    def __str__(self) -> str:
        return f"Ticket #{self.pk} {self.workflow_step} ({self.status})"


class PersonalMushaf(models.Model):
    """
    Deduplicated ledger of one student's recitation mistakes.

    ``mistakes`` holds the full list of records; ``version`` is bumped on every
    write and checked by the compare-and-swap update in the ledger.
    """

    student = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="personal_mushaf",
    )
    student_name = models.CharField(max_length=150, blank=True, default="")
    mistakes = models.JSONField(default=list, blank=True)
    version = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Personal Mushaf"
        verbose_name_plural = "Personal Mushafs"

    def __str__(self) -> str:
        name = self.student_name or str(self.student_id)
        return f"Personal Mushaf of {name} (v{self.version})"
