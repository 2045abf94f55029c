"""
Content fingerprint of a recitation mistake.

Two marks describe the same mistake when they agree on every semantic
coordinate: type, category, page, surah, ayah, word, letter and workflow step.
Pixel position, notes, audio and attribution are not part of the key.
"""

from typing import Optional, Protocol, Tuple

from .schemas import MistakeCategory, WorkflowStep

Fingerprint = Tuple[
    str, str, Optional[int], Optional[int], Optional[int], Optional[int],
    Optional[int], str,
]


class _HasCoordinates(Protocol):
    type: str
    category: MistakeCategory
    page: Optional[int]
    surah: Optional[int]
    ayah: Optional[int]
    word_index: Optional[int]
    letter_index: Optional[int]
    workflow_step: WorkflowStep


def _value(item) -> str:
    return item.value if hasattr(item, 'value') else str(item)


def mistake_fingerprint(mistake: _HasCoordinates) -> Fingerprint:
    """Return the grouping key used to deduplicate ledger records."""
    return (
        mistake.type,
        _value(mistake.category),
        mistake.page,
        mistake.surah,
        mistake.ayah,
        mistake.word_index,
        mistake.letter_index,
        _value(mistake.workflow_step),
    )


def fingerprint_label(key: Fingerprint) -> str:
    """Compact string form for log lines."""
    return '|'.join('' if part is None else str(part) for part in key)
