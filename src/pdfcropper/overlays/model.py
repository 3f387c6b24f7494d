"""
Region descriptors: a marked rectangle on a page plus its question metadata.

Descriptors are immutable; the store swaps in updated copies with
``dataclasses.replace`` so a caller can never mutate stored state in place.
"""

import enum
import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from ..logging import get_logger

logger = get_logger(__name__)

ID_SEPARATOR = "§"
DEFAULT_COUNTER = "default"

COUNTER_STYLES = (
    DEFAULT_COUNTER,
    "upper-latin",
    "lower-latin",
    "upper-pqrs",
    "lower-pqrs",
    "decimal",
    "upper-roman",
    "lower-roman",
)

# Only these travel with a question; box and page vary per image
SHARED_FIELDS = ("question_type", "marking_scheme", "answer_options", "counter_style")
IDENTITY_FIELDS = ("subject", "section", "question_number")


class QuestionType(str, enum.Enum):
    SINGLE_CHOICE = "mcq"
    MULTI_CHOICE = "msq"
    NUMERIC_ANSWER = "nat"
    MULTI_SELECT_MATCH = "msm"

    @classmethod
    def parse(cls, value: Any) -> "QuestionType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown question type: {value!r}") from None


@dataclass(frozen=True)
class Box:
    """Rectangle in PDF point space."""
    left: float
    top: float
    right: float
    bottom: float

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in (self.left, self.top, self.right, self.bottom))


@dataclass(frozen=True)
class MarkingScheme:
    correct: float = 4
    incorrect: float = -1
    partial: Optional[float] = None


@dataclass(frozen=True)
class CounterStyle:
    primary: str = DEFAULT_COUNTER
    secondary: str = DEFAULT_COUNTER


@dataclass(frozen=True)
class RegionDescriptor:
    page: int
    box: Box
    subject: str
    question_number: int
    section: str = ""
    question_type: QuestionType = QuestionType.SINGLE_CHOICE
    marking_scheme: MarkingScheme = field(default_factory=MarkingScheme)
    answer_options: str = "4"
    counter_style: CounterStyle = field(default_factory=CounterStyle)
    image_index: int = 0
    # Composite id while stored; empty for a descriptor not yet committed
    id: str = ""

    def __post_init__(self) -> None:
        if isinstance(self.question_type, str) and not isinstance(self.question_type, QuestionType):
            try:
                object.__setattr__(self, "question_type", QuestionType.parse(self.question_type))
            except ValueError:
                pass  # left as-is; OverlayStore.validate rejects it

    @property
    def group_key(self) -> str:
        """Section name, or the subject when there is no section."""
        return self.section or self.subject

    @property
    def question_key(self) -> str:
        return question_key(self.group_key, self.question_number)

    @property
    def identity(self) -> Tuple[str, str, int]:
        return (self.subject, self.section, self.question_number)

    def shared_fields(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in SHARED_FIELDS}

    def with_shared_fields_of(self, other: "RegionDescriptor") -> "RegionDescriptor":
        return replace(self, **other.shared_fields())


def question_key(group_key: str, question_number: int) -> str:
    return f"{group_key}{ID_SEPARATOR}{question_number}"


def composite_id(group_key: str, question_number: int, image_index: int) -> str:
    return f"{group_key}{ID_SEPARATOR}{question_number}{ID_SEPARATOR}{image_index}"


def split_composite_id(region_id: str) -> Tuple[str, int, int]:
    """Inverse of composite_id; the group key itself may contain the separator."""
    group_key, question, image_index = region_id.rsplit(ID_SEPARATOR, 2)
    return group_key, int(question), int(image_index)


def parse_answer_options(answer_options: str) -> Tuple[int, int]:
    """
    Rows and columns encoded in an answer-option string.

    ``"4"`` means 4x4, ``"4x5"`` means 4 rows by 5 columns. Anything that
    does not parse falls back to 4x4.
    """
    parts = []
    for chunk in str(answer_options).lower().split("x"):
        chunk = chunk.strip()
        if chunk.isdigit():
            parts.append(int(chunk))

    if not parts:
        logger.warning(f"Answer options {answer_options!r} not in RxC format, defaulting to 4x4")
        return 4, 4
    if len(parts) == 1:
        return parts[0], parts[0]
    return parts[0], parts[1]
