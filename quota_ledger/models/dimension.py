"""
quota_ledger/models/dimension.py

Gated dimensions and their reset cadences.

A dimension is one kind of user action that is counted against a plan:
- text_message: chat message, resets every calendar day
- area_message: area-selection analysis, rolling 7 days
- standard_vocalize / pro_vocalize: audio generations, rolling 30 days
- document_upload: rolling 7 days
- lecture_upload: rolling 30 days
"""

from enum import Enum
from typing import Dict, Tuple

from quota_ledger.core.errors import ConfigurationError


class Cadence(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def days(self) -> int:
        return CADENCE_DAYS[self]


CADENCE_DAYS: Dict[Cadence, int] = {
    Cadence.DAILY: 1,
    Cadence.WEEKLY: 7,
    Cadence.MONTHLY: 30,
}


class Dimension(str, Enum):
    TEXT_MESSAGE = "text_message"
    AREA_MESSAGE = "area_message"
    STANDARD_VOCALIZE = "standard_vocalize"
    PRO_VOCALIZE = "pro_vocalize"
    DOCUMENT_UPLOAD = "document_upload"
    LECTURE_UPLOAD = "lecture_upload"

    @property
    def cadence(self) -> Cadence:
        return DIMENSION_CADENCE[self]

    @property
    def label(self) -> str:
        return DIMENSION_LABELS[self]

    @property
    def is_upload(self) -> bool:
        return self in UPLOAD_DIMENSIONS


DIMENSION_CADENCE: Dict[Dimension, Cadence] = {
    Dimension.TEXT_MESSAGE: Cadence.DAILY,
    Dimension.AREA_MESSAGE: Cadence.WEEKLY,
    Dimension.STANDARD_VOCALIZE: Cadence.MONTHLY,
    Dimension.PRO_VOCALIZE: Cadence.MONTHLY,
    Dimension.DOCUMENT_UPLOAD: Cadence.WEEKLY,
    Dimension.LECTURE_UPLOAD: Cadence.MONTHLY,
}

DIMENSION_LABELS: Dict[Dimension, str] = {
    Dimension.TEXT_MESSAGE: "message",
    Dimension.AREA_MESSAGE: "area selection",
    Dimension.STANDARD_VOCALIZE: "Standard Vocalize",
    Dimension.PRO_VOCALIZE: "Pro Vocalize",
    Dimension.DOCUMENT_UPLOAD: "document upload",
    Dimension.LECTURE_UPLOAD: "lecture upload",
}

UPLOAD_DIMENSIONS = frozenset({Dimension.DOCUMENT_UPLOAD, Dimension.LECTURE_UPLOAD})

# Payment metadata keys carrying purchased credits, in lookup order.
PAYMENT_METADATA_KEYS: Dict[Dimension, Tuple[str, ...]] = {
    Dimension.TEXT_MESSAGE: ("text_messages", "textMessages", "text"),
    Dimension.AREA_MESSAGE: ("area_messages", "areaMessages", "area"),
    Dimension.STANDARD_VOCALIZE: ("standard_vocalize", "standardVocalize"),
    Dimension.PRO_VOCALIZE: ("pro_vocalize", "proVocalize"),
    Dimension.DOCUMENT_UPLOAD: ("document_upload", "documentUpload"),
    Dimension.LECTURE_UPLOAD: ("lecture_upload", "lectureUpload"),
}

PRO_VOCALIZE_STYLES = frozenset({"ASMR", "Motivational", "Storytelling"})


def coerce_dimension(value) -> Dimension:
    """Return a Dimension or raise ConfigurationError for unknown values."""
    if isinstance(value, Dimension):
        return value
    try:
        return Dimension(value)
    except ValueError:
        raise ConfigurationError(f"Unknown dimension: {value!r}")


def dimension_for_vocalize_style(style: str) -> Dimension:
    """Pro styles count against pro_vocalize, everything else is standard."""
    if style in PRO_VOCALIZE_STYLES:
        return Dimension.PRO_VOCALIZE
    return Dimension.STANDARD_VOCALIZE
