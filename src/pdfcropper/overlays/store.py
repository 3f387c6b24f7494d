"""
Overlay store: the authoritative set of region descriptors.

Invariants kept across every mutation:

- every stored box has positive width/height of at least ``min_dimension``;
- the images of a question are numbered 1..N without gaps;
- all images of a question share type, marking scheme, answer options
  and counter style;
- a group key (section, or subject when there is no section) belongs to
  exactly one subject.

Region ids embed the image index, so renumbering renames ids. Subscribers
are notified after a mutation has fully completed.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

from .model import (
    COUNTER_STYLES,
    ID_SEPARATOR,
    SHARED_FIELDS,
    CounterStyle,
    MarkingScheme,
    QuestionType,
    RegionDescriptor,
    composite_id,
)
from ..logging import get_logger

logger = get_logger(__name__)


class InvalidRegionError(ValueError):
    """Raised when a descriptor would violate the store's invariants."""


class UnknownRegionError(KeyError):
    """Raised when an id does not name a stored region."""


class ConcurrentMutationError(RuntimeError):
    """Raised when a mutation starts while another is still running."""


@dataclass(frozen=True)
class StoreEvent:
    kind: str                           # added | updated | renumbered | removed | cleared
    id: Optional[str] = None
    previous_id: Optional[str] = None


Observer = Callable[[StoreEvent], None]


class OverlayStore:
    def __init__(self, min_dimension: float = 2.0) -> None:
        self._min_dimension = min_dimension
        self._overlays: Dict[str, RegionDescriptor] = {}
        self._counts: Dict[str, int] = {}
        self._observers: List[Observer] = []
        self._write_lock = threading.Lock()
        self._pending: List[StoreEvent] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def min_dimension(self) -> float:
        return self._min_dimension

    def get(self, region_id: str) -> RegionDescriptor:
        try:
            return self._overlays[region_id]
        except KeyError:
            raise UnknownRegionError(region_id) from None

    def ids(self) -> List[str]:
        return list(self._overlays)

    def image_count(self, question_key: str) -> int:
        return self._counts.get(question_key, 0)

    def question_counts(self) -> Dict[str, int]:
        return dict(self._counts)

    def question_images(self, question_key: str) -> List[RegionDescriptor]:
        """Images of one question ordered by image index."""
        count = self._counts.get(question_key, 0)
        return [self._overlays[f"{question_key}{ID_SEPARATOR}{index}"] for index in range(1, count + 1)]

    def regions_by_page(self) -> Dict[int, List[RegionDescriptor]]:
        """Descriptors grouped by page, pages ascending, store order within a page."""
        grouped: Dict[int, List[RegionDescriptor]] = {}
        for descriptor in self._overlays.values():
            grouped.setdefault(descriptor.page, []).append(descriptor)
        return {page: grouped[page] for page in sorted(grouped)}

    def __len__(self) -> int:
        return len(self._overlays)

    def __iter__(self) -> Iterator[RegionDescriptor]:
        return iter(list(self._overlays.values()))

    def __contains__(self, region_id: object) -> bool:
        return region_id in self._overlays

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register ``observer``; returns a callable that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, descriptor: RegionDescriptor) -> None:
        """
        Check a descriptor against the store invariants without storing it.

        Raises:
            InvalidRegionError: On the first violated rule
        """
        box = descriptor.box
        if not isinstance(descriptor.page, int) or descriptor.page < 1:
            raise InvalidRegionError(f"Page must be a positive integer, got {descriptor.page!r}")
        if not box.is_finite():
            raise InvalidRegionError(f"Box has non-finite coordinates: {box}")
        if box.right <= box.left:
            raise InvalidRegionError(f"Box right ({box.right}) must exceed left ({box.left})")
        if box.bottom <= box.top:
            raise InvalidRegionError(f"Box bottom ({box.bottom}) must exceed top ({box.top})")
        if box.width < self._min_dimension or box.height < self._min_dimension:
            raise InvalidRegionError(
                f"Box {box.width:g}x{box.height:g} is smaller than the minimum "
                f"dimension {self._min_dimension:g}"
            )
        if not descriptor.subject:
            raise InvalidRegionError("Subject must not be empty")
        if not isinstance(descriptor.question_number, int) or descriptor.question_number < 1:
            raise InvalidRegionError(
                f"Question number must be a positive integer, got {descriptor.question_number!r}"
            )
        if not isinstance(descriptor.question_type, QuestionType):
            raise InvalidRegionError(f"Unknown question type: {descriptor.question_type!r}")
        if not isinstance(descriptor.marking_scheme, MarkingScheme):
            raise InvalidRegionError(f"Invalid marking scheme: {descriptor.marking_scheme!r}")
        style = descriptor.counter_style
        if not isinstance(style, CounterStyle) or style.primary not in COUNTER_STYLES \
                or style.secondary not in COUNTER_STYLES:
            raise InvalidRegionError(f"Invalid counter style: {style!r}")
        if descriptor.question_type is not QuestionType.NUMERIC_ANSWER and not descriptor.answer_options:
            raise InvalidRegionError("Answer options must not be empty")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def upsert(self, descriptor: RegionDescriptor) -> str:
        """
        Insert a new descriptor (empty ``id``) or update a stored one.

        An update whose subject/section/question differs from the stored
        identity re-parents the region: it leaves its old question (closing
        the numbering gap) and is appended to the new one, taking that
        question's shared fields if it already has images.

        Returns:
            The descriptor's id after the operation

        Raises:
            InvalidRegionError: If the descriptor is invalid or its section is already
                used by another subject; the store is unchanged
            UnknownRegionError: If ``descriptor.id`` is set but not stored
        """
        self.validate(descriptor)

        with self._mutation():
            if not descriptor.id:
                self._check_group_owner(descriptor)
                return self._append(descriptor)

            existing = self.get(descriptor.id)
            if existing.identity != descriptor.identity:
                self._check_group_owner(descriptor, moving=existing.id)
                return self._reparent(existing, descriptor)
            return self._update_in_place(existing, descriptor)

    def move(self, region_id: str, subject: str, section: str, question_number: int) -> str:
        """Move a region to another question, leaving its own fields otherwise as stored."""
        existing = self.get(region_id)
        target = replace(existing, subject=subject, section=section, question_number=question_number)
        self.validate(target)

        with self._mutation():
            if existing.identity == target.identity:
                return region_id
            self._check_group_owner(target, moving=region_id)
            return self._reparent(existing, target)

    def delete(self, region_id: str) -> None:
        """
        Remove a region and shift its higher-numbered siblings down by one.

        Raises:
            UnknownRegionError: If ``region_id`` is not stored
        """
        self.get(region_id)
        with self._mutation():
            self._remove(region_id)

    def bulk_edit(self, region_ids: Iterable[str], patch: Mapping[str, Any]) -> Dict[str, Exception]:
        """
        Apply a classification patch to many regions.

        Each id is handled on its own; the patch reaches every image of the
        id's question. Failures are collected instead of aborting the batch.

        Returns:
            Mapping of failed id to the exception that rejected it
        """
        failures: Dict[str, Exception] = {}
        try:
            fields = _coerce_patch(patch)
        except (InvalidRegionError, ValueError, TypeError) as exc:
            return {region_id: exc for region_id in region_ids}

        with self._mutation():
            for region_id in region_ids:
                try:
                    existing = self.get(region_id)
                    updated = replace(existing, **fields)
                    self.validate(updated)
                    self._update_in_place(existing, updated)
                except (InvalidRegionError, UnknownRegionError) as exc:
                    logger.warning(f"Bulk edit skipped {region_id}: {exc}")
                    failures[region_id] = exc
        return failures

    def remove_page(self, page: int) -> List[str]:
        """Remove every region on ``page``; returns the ids as they were before removal."""
        doomed = [d for d in self._overlays.values() if d.page == page]
        # Highest index first so pending ids are never renumbered under us
        doomed.sort(key=lambda d: (d.question_key, -d.image_index))
        with self._mutation():
            for descriptor in doomed:
                self._remove(descriptor.id)
        return [d.id for d in doomed]

    def clear(self) -> None:
        with self._mutation():
            self._overlays.clear()
            self._counts.clear()
            self._pending.append(StoreEvent("cleared"))

    def load(self, descriptors: Iterable[RegionDescriptor]) -> List[str]:
        """Append descriptors in order, as if committed one by one."""
        return [self.upsert(replace(d, id="", image_index=0)) for d in descriptors]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _mutation(self):
        if not self._write_lock.acquire(blocking=False):
            raise ConcurrentMutationError("Another store mutation is still running")
        try:
            yield
        finally:
            events, self._pending = self._pending, []
            self._write_lock.release()
            for event in events:
                for observer in list(self._observers):
                    observer(event)

    def _check_group_owner(self, descriptor: RegionDescriptor, moving: Optional[str] = None) -> None:
        group_key = descriptor.group_key
        for stored in self._overlays.values():
            if stored.id != moving and stored.group_key == group_key and stored.subject != descriptor.subject:
                raise InvalidRegionError(
                    f"{group_key!r} already belongs to subject {stored.subject!r}, "
                    f"not {descriptor.subject!r}"
                )

    def _append(self, descriptor: RegionDescriptor) -> str:
        key = descriptor.question_key
        count = self._counts.get(key, 0)
        if count:
            first = self._overlays[composite_id(descriptor.group_key, descriptor.question_number, 1)]
            descriptor = replace(
                descriptor.with_shared_fields_of(first),
                subject=first.subject,
                section=first.section,
            )

        image_index = count + 1
        region_id = composite_id(descriptor.group_key, descriptor.question_number, image_index)
        self._overlays[region_id] = replace(descriptor, id=region_id, image_index=image_index)
        self._counts[key] = image_index
        self._pending.append(StoreEvent("added", region_id))
        logger.debug(f"Added {region_id} on page {descriptor.page}")
        return region_id

    def _reparent(self, existing: RegionDescriptor, target: RegionDescriptor) -> str:
        self._remove(existing.id)
        new_id = self._append(replace(target, id="", image_index=0))
        logger.debug(f"Re-parented {existing.id} -> {new_id}")
        return new_id

    def _update_in_place(self, existing: RegionDescriptor, updated: RegionDescriptor) -> str:
        updated = replace(updated, id=existing.id, image_index=existing.image_index)
        self._overlays[existing.id] = updated
        self._pending.append(StoreEvent("updated", existing.id))

        shared = updated.shared_fields()
        if shared != existing.shared_fields():
            for sibling in self.question_images(existing.question_key):
                if sibling.id != existing.id and sibling.shared_fields() != shared:
                    self._overlays[sibling.id] = replace(sibling, **shared)
                    self._pending.append(StoreEvent("updated", sibling.id))
        return existing.id

    def _remove(self, region_id: str) -> None:
        removed = self._overlays.pop(region_id)
        key = removed.question_key
        count = self._counts[key]
        self._pending.append(StoreEvent("removed", region_id))

        renames: Dict[str, str] = {}
        for index in range(removed.image_index + 1, count + 1):
            old_id = composite_id(removed.group_key, removed.question_number, index)
            renames[old_id] = composite_id(removed.group_key, removed.question_number, index - 1)

        if renames:
            rebuilt: Dict[str, RegionDescriptor] = {}
            for old_id, descriptor in self._overlays.items():
                new_id = renames.get(old_id)
                if new_id is None:
                    rebuilt[old_id] = descriptor
                else:
                    rebuilt[new_id] = replace(descriptor, id=new_id, image_index=descriptor.image_index - 1)
                    self._pending.append(StoreEvent("renumbered", new_id, old_id))
            self._overlays = rebuilt

        if count - 1 == 0:
            del self._counts[key]
        else:
            self._counts[key] = count - 1
        logger.debug(f"Removed {region_id}; {key} now has {count - 1} images")


def _coerce_patch(patch: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(patch) - set(SHARED_FIELDS)
    if unknown:
        raise InvalidRegionError(f"Not classification fields: {', '.join(sorted(unknown))}")

    fields = dict(patch)
    if "question_type" in fields:
        fields["question_type"] = QuestionType.parse(fields["question_type"])
    if isinstance(fields.get("marking_scheme"), Mapping):
        fields["marking_scheme"] = MarkingScheme(**fields["marking_scheme"])
    if isinstance(fields.get("counter_style"), Mapping):
        fields["counter_style"] = CounterStyle(**fields["counter_style"])
    if "answer_options" in fields:
        fields["answer_options"] = str(fields["answer_options"])
    return fields
