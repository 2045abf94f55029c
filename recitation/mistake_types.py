"""Catalog of the mistake types a teacher can mark on the mushaf."""

from dataclasses import dataclass
from typing import Dict, List, Optional

from .exceptions import ValidationError
from .schemas import MistakeCategory


@dataclass(frozen=True)
class MistakeType:
    value: str
    label: str
    category: MistakeCategory
    description: str = ""

    def as_dict(self) -> Dict[str, str]:
        return {
            'value': self.value,
            'label': self.label,
            'category': self.category.value,
            'description': self.description,
        }


MISTAKE_TYPES: List[MistakeType] = [
    # Regular mistakes
    MistakeType('memory', 'Memory Error', MistakeCategory.MEMORY,
                'Student forgot or incorrectly recalled the text'),
    MistakeType('wrong_letter', 'Wrong Letter', MistakeCategory.LETTER,
                'Incorrect letter pronunciation'),
    MistakeType('missing_letter', 'Missing Letter', MistakeCategory.LETTER,
                'Letter was omitted from recitation'),
    MistakeType('extra_letter', 'Extra Letter', MistakeCategory.LETTER,
                'Letter was added incorrectly'),
    MistakeType('wrong_stop', 'Wrong Stop', MistakeCategory.STOP,
                'Incorrect stopping point'),
    MistakeType('missing_stop', 'Missing Stop', MistakeCategory.STOP,
                'Required stop was omitted'),
    MistakeType('repetition', 'Repetition (Atkees)', MistakeCategory.ATKEES,
                'Student repeated a word or phrase'),
    # Tajweed mistakes
    MistakeType('madd', 'Madd (Stretch)', MistakeCategory.TAJWEED,
                'Incorrect elongation of sound'),
    MistakeType('ikhfa', 'Ikhfa (Hiding)', MistakeCategory.TAJWEED,
                'Incorrect hiding of noon sakinah or tanween'),
    MistakeType('tech', 'Tech', MistakeCategory.TAJWEED,
                'Technical tajweed error'),
    MistakeType('heavy_letter', 'Heavy Letter', MistakeCategory.TAJWEED,
                'Letter should be pronounced with heaviness (tafkhim)'),
    MistakeType('no_rounding_lips', 'No Rounding of Lips', MistakeCategory.TAJWEED,
                'Lips should be rounded for proper pronunciation'),
    MistakeType('heavy_h', 'Heavy H', MistakeCategory.TAJWEED,
                'Heavy ha pronunciation error'),
    MistakeType('light_l', 'Light L', MistakeCategory.TAJWEED,
                'Light lam pronunciation error'),
    MistakeType('idgham', 'Idgham (Merging)', MistakeCategory.TAJWEED,
                'Incorrect merging of letters'),
    MistakeType('iqlab', 'Iqlab (Conversion)', MistakeCategory.TAJWEED,
                'Incorrect conversion of noon sakinah to meem'),
    MistakeType('qalqalah', 'Qalqalah (Echo)', MistakeCategory.TAJWEED,
                'Incorrect echo sound on qalqalah letters'),
    MistakeType('makhraj', 'Makhraj (Articulation Point)', MistakeCategory.TAJWEED,
                'Incorrect articulation point'),
    MistakeType('ghunna', 'Ghunna (Nasal Sound)', MistakeCategory.TAJWEED,
                'Incorrect nasal sound'),
    MistakeType('shaddah', 'Shaddah (Emphasis)', MistakeCategory.TAJWEED,
                'Incorrect emphasis on letter'),
    MistakeType('other', 'Other', MistakeCategory.OTHER,
                'Other types of mistakes'),
]

CATEGORY_LABELS: Dict[MistakeCategory, str] = {
    MistakeCategory.TAJWEED: 'Tajweed',
    MistakeCategory.LETTER: 'Letter',
    MistakeCategory.STOP: 'Stop',
    MistakeCategory.MEMORY: 'Memory',
    MistakeCategory.ATKEES: 'Atkees',
    MistakeCategory.OTHER: 'Other',
}


def types_in_category(category: MistakeCategory) -> List[MistakeType]:
    return [t for t in MISTAKE_TYPES if t.category == category]


def catalog_payload(category: Optional[str] = None) -> Dict[str, object]:
    """Catalog as served by ``GET /api/mistake-types/``, optionally one category."""
    if category:
        try:
            types = types_in_category(MistakeCategory(category))
        except ValueError as exc:
            raise ValidationError(f"Unknown mistake category '{category}'.") from exc
    else:
        types = MISTAKE_TYPES
    return {
        'types': [t.as_dict() for t in types],
        'categories': [
            {'value': member.value, 'label': label}
            for member, label in CATEGORY_LABELS.items()
        ],
    }
