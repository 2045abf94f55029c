"""
Collaborators consumed by the recitation engines.

The workflow and ledger engines never reach into auth, user tables or
notification transports directly. They talk to four small collaborators:

* a clock (any zero-argument callable returning an aware datetime),
* ``AuthZ`` answering ``authorize(role, action)``,
* an ``IdentityStore`` resolving principals, teachers and students by id,
* a ``NotificationSink`` receiving fire-and-forget events.

The defaults below are backed by Django's ``auth.User`` and ``MemberProfile``;
tests swap them for the recording doubles in :mod:`recitation.testing`.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Protocol, Tuple

from django.contrib.auth import get_user_model
from django.db.models import Q
from django.utils.module_loading import import_string

from .conf import get_setting
from .exceptions import NotFound
from .models import MemberProfile

logger = logging.getLogger(__name__)

Role = MemberProfile.Role

# Actions checked by the engines
TICKETS_VIEW = 'tickets.view'
TICKETS_CREATE = 'tickets.create'
TICKETS_REVIEW = 'tickets.review'
TICKETS_APPROVE = 'tickets.approve'
TICKETS_CLOSE = 'tickets.close'
MUSHAF_VIEW = 'mushaf.view'
MUSHAF_VIEW_OWN = 'mushaf.view_own'
MUSHAF_WRITE = 'mushaf.write'
MUSHAF_RESOLVE = 'mushaf.resolve'

ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    Role.STUDENT.value: frozenset({TICKETS_VIEW, MUSHAF_VIEW_OWN}),
    Role.TEACHER.value: frozenset(
        {TICKETS_VIEW, TICKETS_REVIEW, MUSHAF_VIEW, MUSHAF_WRITE, MUSHAF_RESOLVE}
    ),
    Role.ADMIN.value: frozenset(
        {
            TICKETS_VIEW,
            TICKETS_CREATE,
            TICKETS_REVIEW,
            TICKETS_APPROVE,
            TICKETS_CLOSE,
            MUSHAF_VIEW,
            MUSHAF_WRITE,
            MUSHAF_RESOLVE,
        }
    ),
}
ROLE_PERMISSIONS[Role.SUPER_ADMIN.value] = ROLE_PERMISSIONS[Role.ADMIN.value]


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of an engine operation."""

    user_id: int
    role: str
    name: str = ""
    extra_permissions: FrozenSet[str] = frozenset()

    @property
    def teacher_id(self) -> Optional[int]:
        """Teacher identity, or ``None`` for callers without a teacher profile."""
        return self.user_id if self.role == Role.TEACHER else None


@dataclass(frozen=True)
class MemberRef:
    """Resolved id and display name of a teacher or student."""

    id: int
    name: str


@dataclass(frozen=True)
class Notification:
    kind: str
    recipient_ids: Tuple[int, ...]
    message: str
    ticket_id: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)


class AuthZ(Protocol):
    def authorize(self, role: str, action: str) -> bool: ...


class IdentityStore(Protocol):
    def principal_for(self, user: Any) -> Principal: ...

    def get_teacher(self, teacher_id: int) -> MemberRef: ...

    def get_student(self, student_id: int) -> MemberRef: ...

    def display_name(self, user_id: Optional[int]) -> str: ...

    def admin_ids(self) -> List[int]: ...


class NotificationSink(Protocol):
    def emit(self, notification: Notification) -> None: ...


class RolePermissionAuthz:
    """Role → action table lookup."""

    def __init__(self, table: Optional[Dict[str, FrozenSet[str]]] = None) -> None:
        self.table = table if table is not None else ROLE_PERMISSIONS

    def authorize(self, role: str, action: str) -> bool:
        return action in self.table.get(role, frozenset())


def is_allowed(authz: AuthZ, principal: Principal, action: str) -> bool:
    """Role permissions plus the principal's own extra grants."""
    return action in principal.extra_permissions or authz.authorize(
        principal.role, action
    )


class DjangoIdentityStore:
    """Identity lookups against ``auth.User`` and ``MemberProfile``."""

    @staticmethod
    def _name(user) -> str:
        return user.get_full_name() or user.get_username()

    @staticmethod
    def _role(user) -> str:
        profile = getattr(user, 'member_profile', None)
        if profile is not None:
            return profile.role
        if user.is_superuser:
            return Role.SUPER_ADMIN.value
        if user.is_staff:
            return Role.ADMIN.value
        return Role.STUDENT.value

    def principal_for(self, user) -> Principal:
        try:
            profile = MemberProfile.objects.get(user_id=user.pk)
        except MemberProfile.DoesNotExist:
            profile = None
        role = profile.role if profile else self._role(user)
        extra = frozenset(profile.extra_permissions) if profile else frozenset()
        return Principal(
            user_id=user.pk, role=role, name=self._name(user), extra_permissions=extra
        )

    def _get_member(self, user_id: int, role: str, label: str) -> MemberRef:
        user = (
            get_user_model()
            .objects.select_related('member_profile')
            .filter(pk=user_id)
            .first()
        )
        if user is None or self._role(user) != role:
            raise NotFound(f"{label} not found.", **{f"{label.lower()}_id": user_id})
        return MemberRef(id=user.pk, name=self._name(user))

    def get_teacher(self, teacher_id: int) -> MemberRef:
        return self._get_member(teacher_id, Role.TEACHER, 'Teacher')

    def get_student(self, student_id: int) -> MemberRef:
        return self._get_member(student_id, Role.STUDENT, 'Student')

    def display_name(self, user_id: Optional[int]) -> str:
        if user_id is None:
            return ""
        user = get_user_model().objects.filter(pk=user_id).first()
        return self._name(user) if user else ""

    def admin_ids(self) -> List[int]:
        admins = get_user_model().objects.filter(
            Q(member_profile__role__in=[Role.ADMIN, Role.SUPER_ADMIN])
            | Q(member_profile__isnull=True, is_staff=True),
            is_active=True,
        )
        return list(admins.order_by('pk').values_list('pk', flat=True))


class LoggingNotificationSink:
    """Writes notifications to the ``recitation.notifications`` logger."""

    log = logging.getLogger('recitation.notifications')

    def emit(self, notification: Notification) -> None:
        self.log.info(
            f"[{notification.kind}] to {list(notification.recipient_ids)} "
            f"(ticket {notification.ticket_id}): {notification.message}"
        )


def load_collaborator(setting_name: str) -> Any:
    """Instantiate the class named by a dotted-path ``RECITATION`` setting."""
    return import_string(get_setting(setting_name))()


def deliver(sink: NotificationSink, notifications: Iterable[Notification]) -> None:
    """Emit each notification; a failing sink never undoes committed state."""
    for notification in notifications:
        if not notification.recipient_ids:
            continue
        try:
            sink.emit(notification)
        except Exception as e:
            logger.warning(
                f"Notification '{notification.kind}' for ticket "
                f"{notification.ticket_id} failed: {e}"
            )
