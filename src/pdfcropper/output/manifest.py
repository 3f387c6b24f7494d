"""
Export tree and ``data.json`` manifest.

The export tree nests questions as subject -> section -> question number.
Its JSON form keeps only the fields the question type needs:

- ``marks.pm`` only for multi-choice (msq) questions;
- ``marks.max`` (correct x rows) only for matrix-match (msm) questions;
- ``answerOptions`` for every type except numeric-answer (nat);
- ``answerOptionsCounterType`` entries only when not "default".
"""

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .. import __version__
from ..overlays.model import (
    DEFAULT_COUNTER,
    Box,
    CounterStyle,
    MarkingScheme,
    QuestionType,
    RegionDescriptor,
    parse_answer_options,
)
from ..overlays.store import OverlayStore
from ..logging import get_logger

logger = get_logger(__name__)

GENERATED_BY = "pdfCropperPage"


class ManifestError(Exception):
    """Raised when manifest JSON cannot be turned into an export tree."""


@dataclass(frozen=True)
class PdfCoords:
    """One image of a question: a page plus a box in point space."""
    page: int
    x1: float
    y1: float
    x2: float
    y2: float

    @classmethod
    def from_descriptor(cls, descriptor: RegionDescriptor) -> "PdfCoords":
        box = descriptor.box
        return cls(descriptor.page, float(box.left), float(box.top), float(box.right), float(box.bottom))

    def to_box(self) -> Box:
        return Box(self.x1, self.y1, self.x2, self.y2)

    def to_dict(self) -> Dict[str, Any]:
        return {"page": self.page, "x1": self.x1, "y1": self.y1, "x2": self.x2, "y2": self.y2}


@dataclass(frozen=True)
class QuestionExport:
    question_number: int
    question_type: QuestionType
    marking_scheme: MarkingScheme
    pdf_data: Tuple[PdfCoords, ...]
    answer_options: str = ""
    counter_style: CounterStyle = field(default_factory=CounterStyle)

    @classmethod
    def normalized(cls, question_number: int, question_type: QuestionType,
                   marking_scheme: MarkingScheme, pdf_data: Tuple[PdfCoords, ...],
                   answer_options: str, counter_style: CounterStyle) -> "QuestionExport":
        """Build with only the fields that survive export for this type."""
        if question_type is QuestionType.MULTI_CHOICE:
            partial = marking_scheme.partial if marking_scheme.partial is not None else 0
            marking_scheme = replace(marking_scheme, partial=partial)
        else:
            marking_scheme = replace(marking_scheme, partial=None)
        if question_type is QuestionType.NUMERIC_ANSWER:
            answer_options = ""
        return cls(question_number, question_type, marking_scheme, tuple(pdf_data),
                   answer_options, counter_style)

    @property
    def max_marks(self) -> Optional[float]:
        if self.question_type is not QuestionType.MULTI_SELECT_MATCH:
            return None
        rows, _ = parse_answer_options(self.answer_options)
        return self.marking_scheme.correct * rows

    def to_dict(self) -> Dict[str, Any]:
        marks: Dict[str, Any] = {"cm": self.marking_scheme.correct}
        if self.question_type is QuestionType.MULTI_CHOICE:
            marks["pm"] = self.marking_scheme.partial
        marks["im"] = self.marking_scheme.incorrect
        if self.max_marks is not None:
            marks["max"] = self.max_marks

        data: Dict[str, Any] = {
            "que": self.question_number,
            "type": self.question_type.value,
            "marks": marks,
            "pdfData": [coords.to_dict() for coords in self.pdf_data],
        }
        if self.question_type is not QuestionType.NUMERIC_ANSWER:
            data["answerOptions"] = self.answer_options

        counter: Dict[str, str] = {}
        if self.counter_style.primary != DEFAULT_COUNTER:
            counter["primary"] = self.counter_style.primary
        if self.counter_style.secondary != DEFAULT_COUNTER:
            counter["secondary"] = self.counter_style.secondary
        if counter:
            data["answerOptionsCounterType"] = counter
        return data

    @classmethod
    def from_dict(cls, key: str, data: Dict[str, Any]) -> "QuestionExport":
        if not isinstance(data, dict):
            raise ManifestError(f"Question {key!r} is not an object")
        try:
            question_number = int(data.get("que", key))
            question_type = QuestionType.parse(data.get("type", QuestionType.SINGLE_CHOICE.value))
            marks = data["marks"]
            scheme = MarkingScheme(
                correct=marks["cm"],
                incorrect=marks["im"],
                partial=marks.get("pm"),
            )
            pdf_data = tuple(
                PdfCoords(int(c["page"]), float(c["x1"]), float(c["y1"]), float(c["x2"]), float(c["y2"]))
                for c in data["pdfData"]
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ManifestError(f"Question {key!r} is malformed: {exc}") from exc

        if not pdf_data:
            raise ManifestError(f"Question {key!r} has no pdfData")

        counter = data.get("answerOptionsCounterType") or {}
        style = CounterStyle(
            primary=counter.get("primary") or DEFAULT_COUNTER,
            secondary=counter.get("secondary") or DEFAULT_COUNTER,
        )
        return cls.normalized(
            question_number, question_type, scheme, pdf_data,
            str(data.get("answerOptions", "")), style,
        )


@dataclass
class ExportTree:
    """subject -> section -> question number -> QuestionExport"""
    subjects: Dict[str, Dict[str, Dict[int, QuestionExport]]] = field(default_factory=dict)

    def __post_init__(self):
        # A section belongs to exactly one subject; image names are keyed by section
        owners: Dict[str, str] = {}
        for subject, sections in self.subjects.items():
            for section in sections:
                owner = owners.setdefault(section, subject)
                if owner != subject:
                    raise ManifestError(
                        f"Section {section!r} appears under subjects {owner!r} and {subject!r}"
                    )

    def iter_questions(self) -> Iterator[Tuple[str, str, QuestionExport]]:
        for subject, sections in self.subjects.items():
            for section, questions in sections.items():
                for question in questions.values():
                    yield subject, section, question

    @property
    def question_count(self) -> int:
        return sum(1 for _ in self.iter_questions())

    @property
    def image_count(self) -> int:
        return sum(len(q.pdf_data) for _, _, q in self.iter_questions())

    def to_dict(self) -> Dict[str, Any]:
        return {
            subject: {
                section: {str(number): question.to_dict() for number, question in questions.items()}
                for section, questions in sections.items()
            }
            for subject, sections in self.subjects.items()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportTree":
        if not isinstance(data, dict):
            raise ManifestError("Export tree must be an object")

        subjects: Dict[str, Dict[str, Dict[int, QuestionExport]]] = {}
        for subject, sections in data.items():
            if not isinstance(sections, dict):
                raise ManifestError(f"Subject {subject!r} is not an object")
            for section, questions in sections.items():
                if not isinstance(questions, dict):
                    raise ManifestError(f"Section {section!r} is not an object")
                parsed = [
                    QuestionExport.from_dict(key, _migrate_question(question))
                    for key, question in questions.items()
                ]
                subjects.setdefault(subject, {})[section] = {
                    q.question_number: q for q in sorted(parsed, key=lambda q: q.question_number)
                }
        return cls(subjects)


def build_tree(store: OverlayStore) -> ExportTree:
    """
    Group the store's descriptors into an export tree.

    Subjects and sections keep first-appearance order; questions are sorted
    by number and each question's pdfData follows its image index.
    """
    subjects: Dict[str, Dict[str, Dict[int, QuestionExport]]] = {}
    seen = set()

    for descriptor in store:
        key = descriptor.question_key
        if key in seen:
            continue
        seen.add(key)

        images = store.question_images(key)
        first = images[0]
        question = QuestionExport.normalized(
            first.question_number,
            first.question_type,
            first.marking_scheme,
            tuple(PdfCoords.from_descriptor(image) for image in images),
            first.answer_options,
            first.counter_style,
        )
        subjects.setdefault(first.subject, {}).setdefault(first.group_key, {})[first.question_number] = question

    for sections in subjects.values():
        for section, questions in sections.items():
            sections[section] = dict(sorted(questions.items()))

    tree = ExportTree(subjects)
    logger.debug(f"Built export tree: {tree.question_count} questions, {tree.image_count} images")
    return tree


def descriptors_from_tree(tree: ExportTree) -> List[RegionDescriptor]:
    """Expand a tree back into descriptors, one per pdfData entry, in image order."""
    descriptors = []
    for subject, section, question in tree.iter_questions():
        for coords in question.pdf_data:
            descriptors.append(RegionDescriptor(
                page=coords.page,
                box=coords.to_box(),
                subject=subject,
                section=section,
                question_number=question.question_number,
                question_type=question.question_type,
                marking_scheme=question.marking_scheme,
                answer_options=question.answer_options,
                counter_style=question.counter_style,
            ))
    return descriptors


def build_manifest(tree: ExportTree, pdf_file_hash: Optional[str] = None) -> Dict[str, Any]:
    """Wrap a tree in the ``data.json`` envelope."""
    test_config: Dict[str, Any] = {}
    if pdf_file_hash:
        test_config["pdfFileHash"] = pdf_file_hash
    return {
        "appVersion": __version__,
        "generatedBy": GENERATED_BY,
        "pdfCropperData": tree.to_dict(),
        "testConfig": test_config,
    }


def parse_manifest(data: Any) -> Tuple[ExportTree, Dict[str, Any]]:
    """
    Read a manifest (or a bare tree from older exports).

    Returns:
        Tuple of (export tree, testConfig with empty values dropped)

    Raises:
        ManifestError: If the data is not a recognisable manifest
    """
    if not isinstance(data, dict):
        raise ManifestError("Manifest must be a JSON object")

    if "pdfCropperData" in data:
        tree_data = data["pdfCropperData"]
        test_config = dict(data.get("testConfig") or {})
        if "pdfFileHash" in data and "pdfFileHash" not in test_config:
            test_config["pdfFileHash"] = data["pdfFileHash"]
    elif "appVersion" in data or "generatedBy" in data:
        raise ManifestError("Manifest has no pdfCropperData")
    else:
        logger.info("Reading bare export tree without manifest envelope")
        tree_data, test_config = data, {}

    test_config = {k: v for k, v in test_config.items() if v}
    return ExportTree.from_dict(tree_data), test_config


def dumps_manifest(manifest: Dict[str, Any]) -> str:
    return json.dumps(manifest, indent=2, ensure_ascii=False)


def load_manifest_json(manifest_path: Path) -> Tuple[ExportTree, Dict[str, Any]]:
    """
    Load a manifest or bare tree from a JSON file.

    Raises:
        ManifestError: If the file is not valid JSON or not a manifest
    """
    try:
        with open(manifest_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ManifestError(f"Failed to read manifest {manifest_path}: {exc}") from exc

    tree, test_config = parse_manifest(data)
    logger.info(f"Loaded manifest from {manifest_path} with {tree.question_count} questions")
    return tree, test_config


def _migrate_question(data: Any) -> Any:
    """Bring older question records up to the current answerOptions field."""
    if not isinstance(data, dict):
        return data

    question_type = str(data.get("type", "")).lower()
    if question_type in (QuestionType.SINGLE_CHOICE.value, QuestionType.MULTI_CHOICE.value):
        data = dict(data)
        if "options" in data:
            data["answerOptions"] = str(data.pop("options") or 4)
        elif "totalOptions" in data:
            data["answerOptions"] = str(data.pop("totalOptions") or 4)
        else:
            data["answerOptions"] = str(data.get("answerOptions") or 4)
    elif question_type == QuestionType.MULTI_SELECT_MATCH.value and not data.get("answerOptions"):
        data = dict(data)
        data["answerOptions"] = "4x4"
    return data
