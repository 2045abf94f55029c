"""
Second-reviewer operations on submitted or running tickets.

Approval, rejection, reassignment and the administrative close all go through
``TicketWorkflowEngine.transition`` so they share its locking and
notification behaviour. Approval additionally folds the session's mistakes
into the student's Personal Mushaf inside the same transaction: if the ledger
write fails the ticket stays ``submitted``.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from .collaborators import (
    TICKETS_APPROVE,
    TICKETS_CLOSE,
    MemberRef,
    Notification,
    Principal,
)
from .exceptions import InvalidState, ValidationError
from .ledger import MistakeLedger, mistake_ledger
from .models import Ticket
from .schemas import (
    CloseCommand,
    LedgerMistakeInput,
    ReassignCommand,
    ReviewCommand,
    SyncReport,
    parse_payload,
)
from .workflow import TicketWorkflowEngine, require_status, workflow_engine

logger = logging.getLogger(__name__)

Status = Ticket.Status
REASSIGNABLE_STATUSES = (Status.IN_PROGRESS, Status.PAUSED, Status.SUBMITTED)


def _recipients(*user_ids: Optional[int]) -> Tuple[int, ...]:
    return tuple(dict.fromkeys(uid for uid in user_ids if uid is not None))


def apply_approve(
    ticket: Ticket, principal: Principal, now: datetime, review_notes: str
) -> List[Notification]:
    require_status(ticket, [Status.SUBMITTED], 'approve')
    ticket.status = Status.APPROVED
    ticket.reviewed_by_id = principal.user_id
    ticket.reviewed_at = now
    ticket.review_notes = review_notes
    return [
        Notification(
            kind='ticket_approved',
            recipient_ids=_recipients(ticket.student_id, ticket.teacher_id),
            message=f"Your {ticket.workflow_step} recitation has been approved",
            ticket_id=ticket.pk,
        )
    ]


def apply_reject(
    ticket: Ticket, principal: Principal, now: datetime, review_notes: str
) -> List[Notification]:
    require_status(ticket, [Status.SUBMITTED], 'reject')
    if not review_notes:
        raise ValidationError(
            "Review notes are required when rejecting a ticket.",
            details=[{'field': 'review_notes', 'message': 'must not be blank'}],
        )
    ticket.status = Status.REJECTED
    ticket.reviewed_by_id = principal.user_id
    ticket.reviewed_at = now
    ticket.review_notes = review_notes
    return [
        Notification(
            kind='ticket_rejected',
            recipient_ids=_recipients(ticket.teacher_id),
            message=f"Ticket #{ticket.pk} was rejected: {review_notes}",
            ticket_id=ticket.pk,
        )
    ]


def apply_reassign(
    ticket: Ticket,
    principal: Principal,
    now: datetime,
    new_teacher: MemberRef,
    previous_teacher_name: str,
    reason: str,
) -> List[Notification]:
    """
    Hand the ticket to ``new_teacher``.

    The working set and session notes move to ``previous_mistakes`` and
    ``previous_teacher_comment`` before being cleared, and a snapshot of the
    hop is appended to ``reassignment_history``.
    """
    require_status(ticket, REASSIGNABLE_STATUSES, 'reassign')
    if ticket.teacher_id == new_teacher.id:
        raise ValidationError(
            "The ticket is already assigned to this teacher.",
            details=[{'field': 'new_teacher_id', 'message': 'same as current teacher'}],
        )

    previous_mistakes = list(ticket.mistakes)
    previous_comment = ticket.session_notes
    ticket.reassignment_history = [
        *ticket.reassignment_history,
        {
            'from_teacher_id': ticket.teacher_id,
            'from_teacher_name': previous_teacher_name,
            'to_teacher_id': new_teacher.id,
            'to_teacher_name': new_teacher.name,
            'reason': reason,
            'reassigned_at': now.isoformat(),
            'reassigned_by': principal.user_id,
            'previous_status': str(ticket.status),
            'previous_mistakes': previous_mistakes,
            'previous_teacher_comment': previous_comment,
        },
    ]
    ticket.previous_mistakes = previous_mistakes
    ticket.previous_teacher_comment = previous_comment
    ticket.reassigned_from_teacher_id = ticket.teacher_id
    ticket.reassigned_from_teacher_name = previous_teacher_name
    ticket.reassigned_to_teacher_id = new_teacher.id
    ticket.reassigned_to_teacher_name = new_teacher.name
    ticket.reassignment_reason = reason
    ticket.reassigned_at = now

    ticket.teacher_id = new_teacher.id
    ticket.status = Status.REASSIGNED
    ticket.session_notes = ""
    ticket.mistakes = []
    return [
        Notification(
            kind='ticket_reassigned',
            recipient_ids=(new_teacher.id,),
            message=f"A ticket has been reassigned to you. Reason: {reason or 'not given'}",
            ticket_id=ticket.pk,
            data={'from_teacher_id': ticket.reassigned_from_teacher_id},
        )
    ]


def apply_close(
    ticket: Ticket, principal: Principal, now: datetime, reason: str
) -> List[Notification]:
    if ticket.status == Status.CLOSED:
        raise InvalidState("Ticket is already closed.", current_status=ticket.status)
    ticket.status = Status.CLOSED
    ticket.closed_at = now
    if reason:
        ticket.notes = f"{ticket.notes}\nClosed: {reason}" if ticket.notes else f"Closed: {reason}"
    return [
        Notification(
            kind='ticket_closed',
            recipient_ids=_recipients(ticket.teacher_id, ticket.student_id),
            message=f"Ticket #{ticket.pk} was closed" + (f": {reason}" if reason else ""),
            ticket_id=ticket.pk,
        )
    ]


class ReviewCoordinator:
    """Approve, reject, reassign and close tickets."""

    def __init__(
        self,
        workflow: Optional[TicketWorkflowEngine] = None,
        ledger: Optional[MistakeLedger] = None,
    ) -> None:
        self.workflow = workflow or workflow_engine
        self.ledger = ledger or mistake_ledger

    @property
    def identity(self):
        return self.workflow.identity

    def _ledger_marks(
        self, ticket: Ticket, marked_by: int, marked_by_name: str
    ) -> List[LedgerMistakeInput]:
        marks = []
        for entry in ticket.mistakes:
            data = {key: value for key, value in entry.items() if key != 'timestamp'}
            data.update(
                workflow_step=ticket.workflow_step,
                marked_by=marked_by,
                marked_by_name=marked_by_name,
                ticket_id=ticket.pk,
            )
            marks.append(
                parse_payload(LedgerMistakeInput, data, 'Invalid mistake on ticket.')
            )
        return marks

    def approve(
        self, ticket_id: int, principal: Principal, review_notes: str = ""
    ) -> Tuple[Ticket, SyncReport]:
        """Approve a submitted ticket and fold its mistakes into the ledger."""
        self.workflow.require(principal, TICKETS_APPROVE)
        command = parse_payload(ReviewCommand, {'review_notes': review_notes or ""})
        reports: List[SyncReport] = []

        def apply(ticket: Ticket, now: datetime) -> List[Notification]:
            notifications = apply_approve(ticket, principal, now, command.review_notes)
            marked_by = ticket.teacher_id or principal.user_id
            marks = self._ledger_marks(
                ticket, marked_by, self.identity.display_name(marked_by)
            )
            report = SyncReport(ticket_id=ticket.pk, student_id=ticket.student_id)
            if marks:
                result = self.ledger.fold(ticket.student_id, marks)
                report.mistakes_processed = len(marks)
                report.mistakes_added = result.added
                report.mistakes_updated = result.updated
            reports.append(report)
            return notifications

        ticket = self.workflow.transition(ticket_id, principal, 'approve', apply)
        return ticket, reports[0]

    def reject(
        self, ticket_id: int, principal: Principal, review_notes: str = ""
    ) -> Ticket:
        self.workflow.require(principal, TICKETS_APPROVE)
        command = parse_payload(ReviewCommand, {'review_notes': review_notes or ""})
        return self.workflow.transition(
            ticket_id,
            principal,
            'reject',
            lambda ticket, now: apply_reject(
                ticket, principal, now, command.review_notes
            ),
        )

    def reassign(
        self,
        ticket_id: int,
        principal: Principal,
        new_teacher_id: int,
        reason: str = "",
    ) -> Ticket:
        self.workflow.require(principal, TICKETS_APPROVE)
        command = parse_payload(
            ReassignCommand,
            {'new_teacher_id': new_teacher_id, 'reason': reason or ""},
        )
        new_teacher = self.identity.get_teacher(command.new_teacher_id)

        def apply(ticket: Ticket, now: datetime) -> List[Notification]:
            return apply_reassign(
                ticket,
                principal,
                now,
                new_teacher,
                self.identity.display_name(ticket.teacher_id),
                command.reason,
            )

        return self.workflow.transition(ticket_id, principal, 'reassign', apply)

    def close(self, ticket_id: int, principal: Principal, reason: str = "") -> Ticket:
        self.workflow.require(principal, TICKETS_CLOSE)
        command = parse_payload(CloseCommand, {'reason': reason or ""})
        return self.workflow.transition(
            ticket_id,
            principal,
            'close',
            lambda ticket, now: apply_close(ticket, principal, now, command.reason),
        )


review_coordinator = ReviewCoordinator()
