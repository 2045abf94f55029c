"""
Ticket workflow: the listening-session state machine.

    pending -> in-progress <-> paused -> submitted -> approved | rejected
                                                    -> reassigned -> in-progress
    any status except closed -> closed

Transitions are written as ``apply_*`` functions that check every guard
before touching the ticket and return the notifications the change should
produce. ``TicketWorkflowEngine`` runs them against a row locked with
``select_for_update()`` inside ``transaction.atomic()``, saves, and only then
hands the notifications to the sink.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from django.core.paginator import Paginator
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from .collaborators import (
    TICKETS_APPROVE,
    TICKETS_CREATE,
    TICKETS_REVIEW,
    TICKETS_VIEW,
    AuthZ,
    Notification,
    Principal,
    deliver,
    is_allowed,
    load_collaborator,
)
from .conf import get_setting
from .exceptions import Forbidden, InvalidState, NotFound, ValidationError
from .models import Ticket
from .schemas import (
    AyahRange,
    MistakeEntry,
    OpenTicketCommand,
    RemoveMistakeCommand,
    SessionNotesCommand,
    StartTicketCommand,
    SubmitCommand,
    parse_payload,
)

logger = logging.getLogger(__name__)

Status = Ticket.Status
ACTIVE_STATUSES = (Status.IN_PROGRESS, Status.PAUSED)
MAX_PAGE_SIZE = 100

Transition = Callable[[Ticket, datetime], List[Notification]]


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def require_status(ticket: Ticket, allowed: Iterable[str], operation: str) -> None:
    allowed = tuple(allowed)
    if ticket.status not in allowed:
        raise InvalidState(
            f"Cannot {operation} a ticket that is {ticket.status}.",
            current_status=ticket.status,
        )


def require_session_owner(ticket: Ticket, principal: Principal, authz: AuthZ) -> None:
    """
    The assigned teacher owns the session; sessions started without a teacher
    belong to whoever holds the approval capability.
    """
    if ticket.teacher_id is not None:
        if ticket.teacher_id != principal.user_id:
            raise Forbidden("Only the assigned teacher can do this.")
    elif not is_allowed(authz, principal, TICKETS_APPROVE):
        raise Forbidden("Only an approver can do this on an unassigned session.")


def require_owner_or_approver(
    ticket: Ticket, principal: Principal, authz: AuthZ
) -> None:
    if is_allowed(authz, principal, TICKETS_APPROVE):
        return
    require_session_owner(ticket, principal, authz)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def apply_start(
    ticket: Ticket,
    principal: Principal,
    now: datetime,
    ayah_range: Optional[AyahRange] = None,
    assignment_id: Optional[int] = None,
) -> List[Notification]:
    require_status(ticket, [Status.PENDING], 'start')
    if ticket.range_locked and ayah_range is not None and ayah_range != ticket_range(ticket):
        raise ValidationError("The ayah range of this ticket is locked.")

    ticket.status = Status.IN_PROGRESS
    ticket.teacher_id = principal.teacher_id
    ticket.started_at = now
    ticket.last_heartbeat_at = now
    if ayah_range is not None:
        ticket.from_surah = ayah_range.from_surah
        ticket.from_ayah = ayah_range.from_ayah
        ticket.to_surah = ayah_range.to_surah
        ticket.to_ayah = ayah_range.to_ayah
    ticket.range_locked = True
    if assignment_id is not None:
        ticket.assignment_id = assignment_id
    return []


def apply_heartbeat(
    ticket: Ticket, principal: Principal, authz: AuthZ, now: datetime
) -> List[Notification]:
    require_status(ticket, [Status.IN_PROGRESS], 'send a heartbeat for')
    require_session_owner(ticket, principal, authz)
    ticket.last_heartbeat_at = now
    return []


def apply_pause(
    ticket: Ticket, principal: Principal, authz: AuthZ, now: datetime
) -> List[Notification]:
    require_status(ticket, [Status.IN_PROGRESS], 'pause')
    require_session_owner(ticket, principal, authz)
    ticket.status = Status.PAUSED
    return []


def apply_resume(
    ticket: Ticket, principal: Principal, authz: AuthZ, now: datetime
) -> List[Notification]:
    require_status(ticket, [Status.PAUSED, Status.REASSIGNED], 'resume')
    require_session_owner(ticket, principal, authz)
    if ticket.status == Status.REASSIGNED:
        # New teacher, new listening session on the same range
        ticket.started_at = now
    ticket.status = Status.IN_PROGRESS
    ticket.last_heartbeat_at = now
    return []


def apply_add_mistake(
    ticket: Ticket,
    principal: Principal,
    authz: AuthZ,
    entry: MistakeEntry,
    now: datetime,
) -> List[Notification]:
    require_status(ticket, ACTIVE_STATUSES, 'add a mistake to')
    require_session_owner(ticket, principal, authz)
    stamped = entry.model_copy(update={'timestamp': entry.timestamp or now})
    ticket.mistakes = [*ticket.mistakes, stamped.model_dump(mode='json', exclude_none=True)]
    return []


def apply_remove_mistake(
    ticket: Ticket, principal: Principal, authz: AuthZ, index: int
) -> List[Notification]:
    require_status(ticket, ACTIVE_STATUSES, 'remove a mistake from')
    require_session_owner(ticket, principal, authz)
    if not 0 <= index < len(ticket.mistakes):
        raise ValidationError(
            f"Mistake index {index} is out of range.",
            details=[{'field': 'index', 'message': f'must be in [0, {len(ticket.mistakes)})'}],
        )
    ticket.mistakes = [m for i, m in enumerate(ticket.mistakes) if i != index]
    return []


def apply_session_notes(
    ticket: Ticket, principal: Principal, authz: AuthZ, notes: str
) -> List[Notification]:
    require_status(ticket, ACTIVE_STATUSES, 'edit session notes of')
    require_session_owner(ticket, principal, authz)
    ticket.session_notes = notes
    return []


def apply_submit(
    ticket: Ticket,
    principal: Principal,
    authz: AuthZ,
    now: datetime,
    student_name: str,
    admin_ids: List[int],
    session_notes: Optional[str] = None,
) -> List[Notification]:
    require_status(ticket, ACTIVE_STATUSES, 'submit')
    require_owner_or_approver(ticket, principal, authz)

    ticket.status = Status.SUBMITTED
    ticket.submitted_at = now
    if ticket.started_at is not None:
        ticket.listening_duration_seconds = max(
            0, int((now - ticket.started_at).total_seconds())
        )
    if session_notes is not None:
        ticket.session_notes = session_notes
    return [
        Notification(
            kind='ticket_submitted',
            recipient_ids=tuple(admin_ids),
            message=f"{student_name}'s {ticket.workflow_step} ticket is ready for review",
            ticket_id=ticket.pk,
            data={'workflow_step': ticket.workflow_step, 'student_id': ticket.student_id},
        )
    ]


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def ticket_range(ticket: Ticket) -> Optional[AyahRange]:
    if ticket.from_surah is None:
        return None
    return AyahRange(
        from_surah=ticket.from_surah,
        from_ayah=ticket.from_ayah,
        to_surah=ticket.to_surah,
        to_ayah=ticket.to_ayah,
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def summarize_history(tickets: List[Ticket]) -> Dict[str, Any]:
    """Group tickets by workflow step with session and mistake totals."""
    grouped: Dict[str, List[Dict[str, Any]]] = {
        step: [] for step in Ticket.WorkflowStep.values
    }
    by_step = {step: {'total': 0, 'mistakes': 0} for step in Ticket.WorkflowStep.values}
    timeline = []
    for ticket in tickets:
        step = str(ticket.workflow_step)
        mistakes = len(ticket.mistakes or [])
        grouped[step].append(ticket_payload(ticket))
        by_step[step]['total'] += 1
        by_step[step]['mistakes'] += mistakes
        timeline.append(
            {
                'id': ticket.pk,
                'workflow_step': step,
                'status': str(ticket.status),
                'created_at': _iso(ticket.created_at),
                'reviewed_at': _iso(ticket.reviewed_at),
                'mistakes_count': mistakes,
            }
        )
    return {
        'grouped': grouped,
        'statistics': {
            'total_sessions': len(tickets),
            'total_mistakes': sum(s['mistakes'] for s in by_step.values()),
            'by_workflow_step': by_step,
        },
        'timeline': timeline,
    }


def ticket_payload(ticket: Ticket) -> Dict[str, Any]:
    """JSON-ready view of a ticket, ids only for related users."""
    ayah_range = ticket_range(ticket)
    return {
        'id': ticket.pk,
        'student_id': ticket.student_id,
        'teacher_id': ticket.teacher_id,
        'assignment_id': ticket.assignment_id,
        'workflow_step': ticket.workflow_step,
        'status': ticket.status,
        'ayah_range': ayah_range.model_dump() if ayah_range else None,
        'range_locked': ticket.range_locked,
        'mistakes': list(ticket.mistakes),
        'notes': ticket.notes,
        'session_notes': ticket.session_notes,
        'started_at': _iso(ticket.started_at),
        'last_heartbeat_at': _iso(ticket.last_heartbeat_at),
        'submitted_at': _iso(ticket.submitted_at),
        'listening_duration_seconds': ticket.listening_duration_seconds,
        'reviewed_by': ticket.reviewed_by_id,
        'reviewed_at': _iso(ticket.reviewed_at),
        'review_notes': ticket.review_notes,
        'reassigned_from_teacher_id': ticket.reassigned_from_teacher_id,
        'reassigned_from_teacher_name': ticket.reassigned_from_teacher_name,
        'reassigned_to_teacher_id': ticket.reassigned_to_teacher_id,
        'reassigned_to_teacher_name': ticket.reassigned_to_teacher_name,
        'reassignment_reason': ticket.reassignment_reason,
        'reassigned_at': _iso(ticket.reassigned_at),
        'previous_teacher_comment': ticket.previous_teacher_comment,
        'previous_mistakes': list(ticket.previous_mistakes),
        'reassignment_history': list(ticket.reassignment_history),
        'closed_at': _iso(ticket.closed_at),
        'created_at': _iso(ticket.created_at),
        'updated_at': _iso(ticket.updated_at),
    }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TicketWorkflowEngine:
    """Runs ticket transitions atomically and emits their notifications."""

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        authz=None,
        identity=None,
        sink=None,
    ) -> None:
        self.clock = clock or timezone.now
        self._authz = authz
        self._identity = identity
        self._sink = sink

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
    def sink(self):
        if self._sink is None:
            self._sink = load_collaborator('NOTIFICATION_SINK')
        return self._sink

    def require(self, principal: Principal, action: str) -> None:
        if not is_allowed(self.authz, principal, action):
            raise Forbidden(f"Not allowed to {action}.", action=action)

    def transition(
        self,
        ticket_id: int,
        principal: Principal,
        operation: str,
        apply: Transition,
    ) -> Ticket:
        """Lock the ticket, apply ``apply``, save and notify."""
        with transaction.atomic():
            ticket = Ticket.objects.select_for_update().filter(pk=ticket_id).first()
            if ticket is None:
                raise NotFound("Ticket not found.", ticket_id=ticket_id)
            before = ticket.status
            notifications = apply(ticket, self.clock())
            ticket.save()
        logger.info(
            f"Ticket {ticket.pk} {operation}: {before} -> {ticket.status} "
            f"by user {principal.user_id}"
        )
        deliver(self.sink, notifications)
        return ticket

    # -- commands ----------------------------------------------------------

    def open(
        self,
        principal: Principal,
        student_id: int,
        workflow_step: str,
        notes: str = "",
    ) -> Ticket:
        """Create a ``pending`` ticket for a student."""
        self.require(principal, TICKETS_CREATE)
        command = parse_payload(
            OpenTicketCommand,
            {'student_id': student_id, 'workflow_step': workflow_step, 'notes': notes},
        )
        student = self.identity.get_student(command.student_id)
        ticket = Ticket.objects.create(
            student_id=student.id,
            workflow_step=command.workflow_step.value,
            notes=command.notes,
        )
        logger.info(
            f"Ticket {ticket.pk} opened for student {student.id} "
            f"({ticket.workflow_step}) by user {principal.user_id}"
        )
        deliver(
            self.sink,
            [
                Notification(
                    kind='ticket_opened',
                    recipient_ids=(student.id,),
                    message=f"A new {ticket.workflow_step} ticket has been opened for you",
                    ticket_id=ticket.pk,
                )
            ],
        )
        return ticket

    def start(
        self,
        ticket_id: int,
        principal: Principal,
        ayah_range: Any = None,
        assignment_id: Optional[int] = None,
    ) -> Ticket:
        self.require(principal, TICKETS_REVIEW)
        command = parse_payload(
            StartTicketCommand,
            {'ayah_range': ayah_range, 'assignment_id': assignment_id},
        )
        return self.transition(
            ticket_id,
            principal,
            'start',
            lambda ticket, now: apply_start(
                ticket, principal, now, command.ayah_range, command.assignment_id
            ),
        )

    def heartbeat(self, ticket_id: int, principal: Principal) -> Ticket:
        self.require(principal, TICKETS_REVIEW)
        return self.transition(
            ticket_id,
            principal,
            'heartbeat',
            lambda ticket, now: apply_heartbeat(ticket, principal, self.authz, now),
        )

    def pause(self, ticket_id: int, principal: Principal) -> Ticket:
        self.require(principal, TICKETS_REVIEW)
        return self.transition(
            ticket_id,
            principal,
            'pause',
            lambda ticket, now: apply_pause(ticket, principal, self.authz, now),
        )

    def resume(self, ticket_id: int, principal: Principal) -> Ticket:
        self.require(principal, TICKETS_REVIEW)
        return self.transition(
            ticket_id,
            principal,
            'resume',
            lambda ticket, now: apply_resume(ticket, principal, self.authz, now),
        )

    def add_mistake(self, ticket_id: int, principal: Principal, mistake: Any) -> Ticket:
        self.require(principal, TICKETS_REVIEW)
        entry = parse_payload(MistakeEntry, mistake, 'Invalid mistake.')
        return self.transition(
            ticket_id,
            principal,
            'add_mistake',
            lambda ticket, now: apply_add_mistake(
                ticket, principal, self.authz, entry, now
            ),
        )

    def remove_mistake(self, ticket_id: int, principal: Principal, index: Any) -> Ticket:
        self.require(principal, TICKETS_REVIEW)
        command = parse_payload(RemoveMistakeCommand, {'index': index})
        return self.transition(
            ticket_id,
            principal,
            'remove_mistake',
            lambda ticket, now: apply_remove_mistake(
                ticket, principal, self.authz, command.index
            ),
        )

    def update_session_notes(
        self, ticket_id: int, principal: Principal, notes: Any
    ) -> Ticket:
        self.require(principal, TICKETS_REVIEW)
        command = parse_payload(SessionNotesCommand, {'session_notes': notes})
        return self.transition(
            ticket_id,
            principal,
            'session_notes',
            lambda ticket, now: apply_session_notes(
                ticket, principal, self.authz, command.session_notes
            ),
        )

    def submit(
        self,
        ticket_id: int,
        principal: Principal,
        session_notes: Optional[str] = None,
    ) -> Ticket:
        self.require(principal, TICKETS_REVIEW)
        command = parse_payload(SubmitCommand, {'session_notes': session_notes})

        def apply(ticket: Ticket, now: datetime) -> List[Notification]:
            return apply_submit(
                ticket,
                principal,
                self.authz,
                now,
                student_name=self.identity.display_name(ticket.student_id),
                admin_ids=self.identity.admin_ids(),
                session_notes=command.session_notes,
            )

        return self.transition(ticket_id, principal, 'submit', apply)

    # -- queries -----------------------------------------------------------

    def _visible(self, principal: Principal):
        tickets = Ticket.objects.all()
        if is_allowed(self.authz, principal, TICKETS_APPROVE):
            return tickets
        if is_allowed(self.authz, principal, TICKETS_REVIEW):
            return tickets.filter(
                Q(status=Status.PENDING) | Q(teacher_id=principal.user_id)
            )
        return tickets.filter(student_id=principal.user_id)

    def get(self, ticket_id: int, principal: Principal) -> Ticket:
        self.require(principal, TICKETS_VIEW)
        ticket = Ticket.objects.filter(pk=ticket_id).first()
        if ticket is None:
            raise NotFound("Ticket not found.", ticket_id=ticket_id)
        if not self._visible(principal).filter(pk=ticket_id).exists():
            raise Forbidden("Not allowed to view this ticket.")
        return ticket

    def list_for(
        self,
        principal: Principal,
        workflow_step: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Ticket]:
        self.require(principal, TICKETS_VIEW)
        tickets = self._visible(principal)
        if workflow_step:
            if workflow_step not in Ticket.WorkflowStep.values:
                raise ValidationError(f"Unknown workflow step '{workflow_step}'.")
            tickets = tickets.filter(workflow_step=workflow_step)
        if status:
            if status not in Status.values:
                raise ValidationError(f"Unknown status '{status}'.")
            tickets = tickets.filter(status=status)
        return list(tickets.order_by('-created_at', '-pk'))

    def recitation_history(self, principal: Principal, student_id: int) -> Dict[str, Any]:
        """
        Every ticket of one student, newest first, grouped by workflow step.

        Students may only read their own history; reviewers and approvers may
        read any student's.
        """
        self.require(principal, TICKETS_VIEW)
        if principal.user_id != student_id:
            self.require(principal, TICKETS_REVIEW)
        student = self.identity.get_student(student_id)
        tickets = list(
            Ticket.objects.filter(student_id=student.id).order_by('-created_at', '-pk')
        )
        return {
            'student_id': student.id,
            'student_name': student.name,
            **summarize_history(tickets),
        }

    def pending_review(
        self, principal: Principal, page: int = 1, limit: int = 20
    ) -> Dict[str, Any]:
        """Submitted tickets, oldest submission first."""
        self.require(principal, TICKETS_APPROVE)
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}."
            )
        submitted = Ticket.objects.filter(status=Status.SUBMITTED).order_by(
            'submitted_at', 'pk'
        )
        paginator = Paginator(submitted, limit)
        current = paginator.get_page(page)
        return {
            'tickets': [ticket_payload(ticket) for ticket in current.object_list],
            'pagination': {
                'page': current.number,
                'limit': limit,
                'total': paginator.count,
                'pages': paginator.num_pages,
            },
        }

    def stale_sessions(self, now: Optional[datetime] = None) -> List[Ticket]:
        """In-progress tickets whose heartbeat is older than the stale threshold."""
        now = now or self.clock()
        threshold = get_setting('HEARTBEAT_STALE_AFTER_SECONDS')
        cutoff = now - timedelta(seconds=threshold)
        return list(
            Ticket.objects.filter(
                status=Status.IN_PROGRESS, last_heartbeat_at__lt=cutoff
            ).order_by('last_heartbeat_at')
        )


workflow_engine = TicketWorkflowEngine()
