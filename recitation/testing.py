"""Deterministic collaborators and fixtures for recitation tests."""

from datetime import datetime, timedelta
from typing import List, Optional

from django.contrib.auth.models import User
from django.utils import timezone

from .collaborators import Notification
from .models import MemberProfile


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or timezone.now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotificationSink:
    """Keeps every emitted notification in memory."""

    def __init__(self) -> None:
        self.sent: List[Notification] = []

    def emit(self, notification: Notification) -> None:
        self.sent.append(notification)

    def kinds(self) -> List[str]:
        return [n.kind for n in self.sent]


class FailingNotificationSink:
    """Sink whose transport is always down."""

    def emit(self, notification: Notification) -> None:
        raise ConnectionError("notification transport unavailable")


def make_member(
    username: str,
    role: str = MemberProfile.Role.STUDENT,
    password: str = 'testpass123',
    **extra,
) -> User:
    """Create a user with a ``MemberProfile`` of the given role."""
    user = User.objects.create_user(
        username=username,
        password=password,
        first_name=extra.pop('first_name', username.title()),
        **extra,
    )
    MemberProfile.objects.create(user=user, role=role)
    return user
