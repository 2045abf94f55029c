"""Read-only aggregation over a Personal Mushaf snapshot."""

from collections import Counter
from datetime import datetime, timedelta
from typing import Iterable, Optional

from django.utils import timezone

from .conf import get_setting
from .schemas import LedgerMistake, MistakeStatistics, TrendPoint, TypeCount


def calculate_mistake_statistics(
    mistakes: Iterable[LedgerMistake],
    now: Optional[datetime] = None,
    trend_days: Optional[int] = None,
    top_types: Optional[int] = None,
) -> MistakeStatistics:
    """
    Aggregate counts over the given records.

    The caller chooses the snapshot (whole ledger or a filtered subset); the
    function never touches the database.

    Args:
        mistakes: Ledger records to aggregate
        now: Reference time for the trend window (defaults to ``timezone.now()``)
        trend_days: Trailing days covered by ``trend``
        top_types: Length of ``most_common_types``

    Returns:
        MistakeStatistics with per-step, per-category and per-type counts,
        resolution counts, repeat offenders, most common types and a per-day
        trend (ascending ISO dates, days without records omitted).
    """
    now = now or timezone.now()
    if trend_days is None:
        trend_days = get_setting('TREND_WINDOW_DAYS')
    if top_types is None:
        top_types = get_setting('MOST_COMMON_TYPES_LIMIT')

    stats = MistakeStatistics()
    by_type: Counter = Counter()
    by_category: Counter = Counter()
    per_day: Counter = Counter()
    trend_start = timezone.localdate(now) - timedelta(days=trend_days - 1)

    for mistake in mistakes:
        stats.total += 1
        step = mistake.workflow_step.value
        stats.by_workflow_step[step] = stats.by_workflow_step.get(step, 0) + 1
        by_category[mistake.category.value] += 1
        by_type[mistake.type] += 1

        if mistake.timeline.resolved:
            stats.resolved += 1
        else:
            stats.unresolved += 1
        if mistake.timeline.repeat_count > 1:
            stats.repeat_offenders += 1

        day = timezone.localdate(mistake.timeline.last_marked_at)
        if day >= trend_start:
            per_day[day] += 1

    stats.by_category = dict(by_category)
    stats.by_type = dict(by_type)
    # Frequency descending, ties by type name ascending
    ranked = sorted(by_type.items(), key=lambda item: (-item[1], item[0]))
    stats.most_common_types = [
        TypeCount(type=name, count=count) for name, count in ranked[:top_types]
    ]
    stats.trend = [
        TrendPoint(date=day.isoformat(), count=per_day[day]) for day in sorted(per_day)
    ]
    return stats
