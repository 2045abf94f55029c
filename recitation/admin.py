"""
recitation.admin module.

Django-admin registrations for the *halaqa* recitation application.
"""

from django.contrib import admin

from .models import MemberProfile, PersonalMushaf, Ticket

# ---------------------------------------------------------------------------
# Admin registrations
# ---------------------------------------------------------------------------


@admin.register(MemberProfile)
class MemberProfileAdmin(admin.ModelAdmin):
    """Admin configuration for :class:`recitation.models.MemberProfile`."""

    list_display = ("user", "role", "created_at")
    list_filter = ("role",)
    search_fields = ("user__username", "user__email")
    readonly_fields = ("created_at", "updated_at")
    ordering = ("user__username",)


@admin.register(Ticket)
class TicketAdmin(admin.ModelAdmin):
    """
    Admin configuration for :class:`recitation.models.Ticket`.

    Workflow fields are read-only; ticket state changes go through the API.
    """

    list_display = (
        "id",
        "student",
        "teacher",
        "workflow_step",
        "status",
        "mistake_count",
        "submitted_at",
        "created_at",
    )
    list_filter = ("status", "workflow_step")
    search_fields = ("student__username", "teacher__username", "notes")
    readonly_fields = (
        "status",
        "range_locked",
        "started_at",
        "last_heartbeat_at",
        "submitted_at",
        "listening_duration_seconds",
        "reviewed_by",
        "reviewed_at",
        "reassigned_from_teacher_id",
        "reassigned_from_teacher_name",
        "reassigned_to_teacher_id",
        "reassigned_to_teacher_name",
        "reassignment_reason",
        "reassigned_at",
        "previous_teacher_comment",
        "previous_mistakes",
        "reassignment_history",
        "closed_at",
        "created_at",
        "updated_at",
    )
    ordering = ("-created_at",)

    @staticmethod
    def mistake_count(obj: "Ticket") -> int:
        """Number of mistakes in the working set."""
        return len(obj.mistakes or [])

    def get_queryset(self, request):
        """Optimize queryset with select_related."""
        return super().get_queryset(request).select_related('student', 'teacher')


@admin.register(PersonalMushaf)
class PersonalMushafAdmin(admin.ModelAdmin):
    """Admin configuration for :class:`recitation.models.PersonalMushaf`."""

    list_display = ("student", "student_name", "record_count", "version", "updated_at")
    search_fields = ("student__username", "student_name")
    # Ledger edits must go through the versioned write path
    readonly_fields = ("mistakes", "version", "created_at", "updated_at")
    ordering = ("student_name",)

    @staticmethod
    def record_count(obj: "PersonalMushaf") -> int:
        return len(obj.mistakes or [])
