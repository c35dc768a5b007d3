"""
Single-pass batch aggregation.

Instead of one store query per course or instructor, the facade fetches one
capped batch of review documents and partitions it here. The key step is an
emitter: each record yields zero or more (key, item) pairs, which is how one
review feeds the statistics of every instructor it names.
"""

import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Hashable,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from pydantic import ValidationError

from ..models.schema import Review
from ..store.base import DocumentStore, Filter, OrderBy
from .calculator import InstructorEntry

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
S = TypeVar("S")

Emitter = Callable[[Any], Iterable[Tuple[Any, Any]]]


class RecordShapeError(ValueError):
    """A stored record could not be interpreted"""


@dataclass
class CappedFetch:
    rows: List[dict]
    truncated: bool


@dataclass
class BatchResult(Generic[K, S]):
    stats: Dict[K, S] = field(default_factory=dict)
    truncated: bool = False
    skipped: int = 0


def fetch_capped(
    store: DocumentStore,
    collection: str,
    max_records: int,
    filters: Sequence[Filter] = (),
    fields: Optional[Sequence[str]] = None,
    order_by: Optional[OrderBy] = None,
) -> CappedFetch:
    """
    One round trip, bounded by max_records.

    A full page means rows may have been cut off, so it is flagged instead
    of being presented as complete.
    """
    rows = store.list(collection, filters=filters, limit=max_records, fields=fields, order_by=order_by)
    truncated = len(rows) >= max_records
    if truncated:
        logger.warning(
            f"Fetch from {collection} hit the {max_records} record cap, statistics may be incomplete"
        )
    return CappedFetch(rows=rows, truncated=truncated)


def load_review(record: Any) -> Review:
    if isinstance(record, Review):
        return record
    try:
        return Review.model_validate(record)
    except ValidationError as e:
        raise RecordShapeError(f"Malformed review {_record_id(record)}: {e.error_count()} error(s)") from e


def emit_by_course(record: Any) -> Iterator[Tuple[str, Review]]:
    review = load_review(record)
    yield review.course_code, review


def emit_by_instructor(record: Any) -> Iterator[Tuple[str, InstructorEntry]]:
    review = load_review(record)
    for detail in review.instructor_details:
        if detail.instructor_name:
            yield detail.instructor_name, InstructorEntry(review, detail)


def _record_id(record: Any) -> str:
    if isinstance(record, dict):
        return str(record.get("id", "?"))
    return str(getattr(record, "id", "?"))


class BatchAggregator:
    def partition(self, records: Iterable[Any], emit: Emitter) -> Tuple[Dict[Any, list], int]:
        """Group emitted items by key, skipping records that fail to parse"""
        partitions: Dict[Any, list] = {}
        skipped = 0
        for record in records:
            try:
                # Materialize first so a record is never half-emitted
                pairs = list(emit(record))
            except RecordShapeError as e:
                skipped += 1
                logger.warning(f"Skipping record: {e}")
                continue
            for key, item in pairs:
                partitions.setdefault(key, []).append(item)
        return partitions, skipped

    def aggregate(
        self,
        records: Iterable[Any],
        emit: Emitter,
        compute: Callable[[Any, list], S],
        truncated: bool = False,
    ) -> BatchResult:
        """
        Partition records once and compute statistics per key.

        Work is linear in the number of records regardless of how many
        keys they spread over.
        """
        partitions, skipped = self.partition(records, emit)
        stats = {key: compute(key, items) for key, items in partitions.items()}
        if skipped:
            logger.warning(f"Aggregation skipped {skipped} malformed record(s)")
        return BatchResult(stats=stats, truncated=truncated, skipped=skipped)
