"""Access to the ``RECITATION`` settings dict with project defaults."""

from typing import Any

from django.conf import settings

DEFAULTS = {
    # "recent" recency bucket: trailing days, excluding today
    'RECENT_WINDOW_DAYS': 7,
    # trailing window of the per-day statistics trend
    'TREND_WINDOW_DAYS': 30,
    'MOST_COMMON_TYPES_LIMIT': 10,
    'LEDGER_MAX_RETRIES': 5,
    # advisory only; stale sessions are reported, never reclaimed automatically
    'HEARTBEAT_STALE_AFTER_SECONDS': 180,
    'NOTIFICATION_SINK': 'recitation.collaborators.LoggingNotificationSink',
    'IDENTITY_STORE': 'recitation.collaborators.DjangoIdentityStore',
    'AUTHZ': 'recitation.collaborators.RolePermissionAuthz',
}


def get_setting(name: str) -> Any:
    """Return ``settings.RECITATION[name]`` or its default."""
    overrides = getattr(settings, 'RECITATION', {}) or {}
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]
